"""Shared HTTP plumbing for remote content stores.

Maps transport failures onto the ledger's error taxonomy:
- timeouts, connection errors, 429 and 5xx -> TransientStoreError
- 404 -> NotFoundError
- other non-2xx -> LedgerError
"""

import logging
import re
from typing import Any, Dict, Optional

import httpx

from memledger.protocols import LedgerError, NotFoundError, TransientStoreError

logger = logging.getLogger(__name__)

# Provider-assigned ids: CIDs, Arweave transaction ids. No path separators.
_REMOTE_ADDRESS_RE = re.compile(r"^[A-Za-z0-9_-]{16,128}$")


def is_remote_address(address: str) -> bool:
    return bool(_REMOTE_ADDRESS_RE.match(address or ""))


def is_transient_status(status_code: int) -> bool:
    return status_code == 429 or status_code >= 500


class HttpContentStore:
    """Base for stores that talk to a content network over HTTP.

    Args:
        timeout: Request timeout in seconds
        client: Pre-built httpx client (tests pass one with a MockTransport)
    """

    name = "remote"

    def __init__(self, timeout: float = 30.0, client: Optional[httpx.Client] = None):
        self.timeout = timeout
        self._client = client
        self._owns_client = client is None

    @property
    def client(self) -> httpx.Client:
        if self._client is None:
            self._client = httpx.Client(timeout=self.timeout, follow_redirects=True)
        return self._client

    def close(self) -> None:
        if self._client is not None and self._owns_client:
            self._client.close()
            self._client = None

    def _send(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        """Send a request, translating transport failures.

        Raises:
            TransientStoreError: Timeout or connection failure
        """
        try:
            return self.client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            raise TransientStoreError(f"{self.name}: timeout calling {url}") from e
        except httpx.TransportError as e:
            raise TransientStoreError(f"{self.name}: transport error calling {url}: {e}") from e

    def _check_upload(self, response: httpx.Response) -> Dict[str, Any]:
        """Validate an upload response and return its JSON body."""
        if is_transient_status(response.status_code):
            raise TransientStoreError(f"{self.name}: upload returned HTTP {response.status_code}")
        if not response.is_success:
            raise LedgerError(
                f"{self.name}: upload rejected with HTTP {response.status_code}: "
                f"{response.text[:200]}"
            )
        try:
            body = response.json()
        except ValueError as e:
            raise LedgerError(f"{self.name}: upload response was not JSON") from e
        if not isinstance(body, dict):
            raise LedgerError(f"{self.name}: unexpected upload response shape")
        return body

    def _check_download(self, response: httpx.Response, address: str) -> bytes:
        if response.status_code == 404:
            raise NotFoundError(address, backend=self.name)
        if is_transient_status(response.status_code):
            raise TransientStoreError(f"{self.name}: HTTP {response.status_code} for {address}")
        if not response.is_success:
            raise LedgerError(f"{self.name}: HTTP {response.status_code} for {address}")
        return response.content
