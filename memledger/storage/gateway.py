"""IPFS content store: pin through Pinata or a node API, read through gateways.

Addresses are CIDs assigned by the network. The core never trusts them
for integrity: envelopes carry a content hash computed locally.
"""

import logging
import time
from typing import List, Optional

import httpx

from memledger.config import DEFAULT_IPFS_GATEWAYS
from memledger.protocols import LedgerError, NotFoundError, TransientStoreError
from memledger.storage.remote import HttpContentStore, is_remote_address

logger = logging.getLogger(__name__)

PINATA_API_URL = "https://api.pinata.cloud"


class GatewayContentStore(HttpContentStore):
    """Content store backed by an HTTP-gateway content network (IPFS).

    Args:
        api_url: IPFS node HTTP API base (used when no Pinata keys)
        gateways: Ordered read gateways, each ending in ``/ipfs/``
        pinata_api_key: Pinata API key (optional)
        pinata_api_secret: Pinata API secret (optional)
        timeout: Request timeout in seconds
        client: Optional pre-built httpx client
    """

    name = "ipfs"

    def __init__(
        self,
        api_url: Optional[str] = None,
        gateways: Optional[List[str]] = None,
        pinata_api_key: Optional[str] = None,
        pinata_api_secret: Optional[str] = None,
        timeout: float = 30.0,
        client: Optional[httpx.Client] = None,
    ):
        super().__init__(timeout=timeout, client=client)
        self.api_url = api_url.rstrip("/") if api_url else None
        self.gateways = list(gateways or DEFAULT_IPFS_GATEWAYS)
        self.pinata_api_key = pinata_api_key
        self.pinata_api_secret = pinata_api_secret
        if not self.api_url and not self._has_pinata():
            raise ValueError("IPFS store needs either an api_url or Pinata credentials")

    def _has_pinata(self) -> bool:
        return bool(self.pinata_api_key and self.pinata_api_secret)

    def put(self, data: bytes) -> str:
        if self._has_pinata():
            response = self._send(
                "POST",
                f"{PINATA_API_URL}/pinning/pinFileToIPFS",
                headers={
                    "pinata_api_key": self.pinata_api_key,
                    "pinata_secret_api_key": self.pinata_api_secret,
                },
                files={"file": (f"mlp-{int(time.time() * 1000)}", data)},
            )
            cid = self._check_upload(response).get("IpfsHash")
        else:
            response = self._send(
                "POST",
                f"{self.api_url}/api/v0/add",
                params={"pin": "true"},
                files={"file": ("blob", data)},
            )
            cid = self._check_upload(response).get("Hash")

        if not cid or not is_remote_address(cid):
            raise LedgerError(f"{self.name}: upload response carried no usable CID")
        logger.debug(f"Pinned {len(data)} bytes as {cid}")
        return cid

    def get(self, address: str) -> bytes:
        """Fetch by CID, trying each gateway in order, then the node API.

        Raises:
            NotFoundError: Every source answered 404
            TransientStoreError: At least one source failed (rather than 404)
                and none returned the content
        """
        if not is_remote_address(address):
            raise NotFoundError(address, backend=self.name)

        failures: List[str] = []
        for gateway in self.gateways:
            try:
                response = self._send("GET", f"{gateway}{address}")
                return self._check_download(response, address)
            except NotFoundError:
                continue
            except (TransientStoreError, LedgerError) as e:
                failures.append(str(e))
                continue

        if self.api_url:
            try:
                response = self._send("POST", f"{self.api_url}/api/v0/cat", params={"arg": address})
                return self._check_download(response, address)
            except NotFoundError:
                pass
            except (TransientStoreError, LedgerError) as e:
                failures.append(str(e))

        if failures:
            raise TransientStoreError(
                f"{self.name}: could not retrieve {address} ({len(failures)} source failures)"
            )
        raise NotFoundError(address, backend=self.name)
