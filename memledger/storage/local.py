"""Local filesystem content store.

One file per content address under ``root``. Addresses are derived from
the SHA-256 of the content, so ``put`` is idempotent: identical bytes
always map to the same file and a repeat put writes nothing.
"""

import logging
import re
from pathlib import Path
from typing import List

from memledger.crypto.codec import hash_bytes
from memledger.protocols import ContentIntegrityError, NotFoundError
from memledger.utils import atomic_write_bytes

logger = logging.getLogger(__name__)

ADDRESS_PREFIX = "local_"
OBJECT_SUFFIX = ".obj"
_ADDRESS_RE = re.compile(r"^local_[0-9a-f]{64}$")


def local_address(data: bytes) -> str:
    """Content address the local backend assigns to ``data``."""
    return f"{ADDRESS_PREFIX}{hash_bytes(data)}"


class LocalContentStore:
    """Content-addressed store on the local filesystem (dev and offline use)."""

    name = "local"

    def __init__(self, root: Path):
        self.root = Path(root).expanduser()
        self.root.mkdir(parents=True, exist_ok=True)

    def _path(self, address: str) -> Path:
        if not _ADDRESS_RE.match(address or ""):
            raise NotFoundError(address, backend=self.name)
        return self.root / f"{address}{OBJECT_SUFFIX}"

    def put(self, data: bytes) -> str:
        address = local_address(data)
        path = self.root / f"{address}{OBJECT_SUFFIX}"
        if path.exists():
            logger.debug(f"Content already stored at {address[:16]}")
            return address
        atomic_write_bytes(path, data, mode=0o600)
        return address

    def get(self, address: str) -> bytes:
        path = self._path(address)
        try:
            data = path.read_bytes()
        except FileNotFoundError as e:
            raise NotFoundError(address, backend=self.name) from e
        if local_address(data) != address:
            raise ContentIntegrityError(f"Stored content does not match address {address}")
        return data

    def exists(self, address: str) -> bool:
        try:
            return self._path(address).exists()
        except NotFoundError:
            return False

    def list(self) -> List[str]:
        """All stored addresses, sorted. Temp files are skipped."""
        return sorted(
            p.name[: -len(OBJECT_SUFFIX)]
            for p in self.root.glob(f"{ADDRESS_PREFIX}*{OBJECT_SUFFIX}")
            if _ADDRESS_RE.match(p.name[: -len(OBJECT_SUFFIX)])
        )

    def delete(self, address: str) -> bool:
        """Remove an object (reconciliation cleanup of orphaned blobs)."""
        path = self._path(address)
        if not path.exists():
            return False
        path.unlink()
        return True
