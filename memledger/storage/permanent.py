"""Permanent-storage content store (Arweave-style bundler).

Uploads go to a bundler endpoint that answers with a transaction id.
Reads go through a gateway at ``<gateway><id>``. Freshly uploaded data
can take a while to settle: a gateway answering 202 is treated as a
transient failure so the retry layer waits for it.
"""

import logging
from typing import Optional

import httpx

from memledger.config import DEFAULT_ARWEAVE_GATEWAY
from memledger.protocols import LedgerError, NotFoundError, TransientStoreError
from memledger.storage.remote import HttpContentStore, is_remote_address

logger = logging.getLogger(__name__)


class PermanentContentStore(HttpContentStore):
    """Content store backed by a permanent-storage network.

    Args:
        upload_url: Bundler upload endpoint
        gateway: Read gateway base URL, ending in ``/``
        auth_token: Bearer token for the bundler (optional)
        timeout: Request timeout in seconds
        client: Optional pre-built httpx client
    """

    name = "arweave"

    def __init__(
        self,
        upload_url: str,
        gateway: str = DEFAULT_ARWEAVE_GATEWAY,
        auth_token: Optional[str] = None,
        timeout: float = 30.0,
        client: Optional[httpx.Client] = None,
    ):
        if not upload_url:
            raise ValueError("Permanent store needs an upload_url")
        super().__init__(timeout=timeout, client=client)
        self.upload_url = upload_url
        self.gateway = gateway if gateway.endswith("/") else f"{gateway}/"
        self.auth_token = auth_token

    def put(self, data: bytes) -> str:
        headers = {"Content-Type": "application/octet-stream"}
        if self.auth_token:
            headers["Authorization"] = f"Bearer {self.auth_token}"
        response = self._send("POST", self.upload_url, content=data, headers=headers)
        tx_id = self._check_upload(response).get("id")
        if not tx_id or not is_remote_address(tx_id):
            raise LedgerError(f"{self.name}: upload response carried no usable id")
        logger.debug(f"Uploaded {len(data)} bytes as transaction {tx_id}")
        return tx_id

    def get(self, address: str) -> bytes:
        if not is_remote_address(address):
            raise NotFoundError(address, backend=self.name)
        response = self._send("GET", f"{self.gateway}{address}")
        if response.status_code == 202:
            raise TransientStoreError(f"{self.name}: {address} is still pending")
        return self._check_download(response, address)
