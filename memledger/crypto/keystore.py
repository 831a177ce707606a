"""
Local key store for memledger.

Layout of ``key_dir``:
- secret.key          default symmetric key (base64)
- signing.key         Ed25519 private key (base64)
- signing.pub         Ed25519 public key (base64)
- meta.json           written last; marks the store as initialised
- data/<key_id>.key   per-memory data keys (crypto-shredding)
- .lock               file lock guarding first-use initialisation

Every key file is written with owner-only permissions through
write-temp-then-rename.
"""

import fcntl
import json
import logging
import os
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterator, Optional

from memledger.crypto.codec import (
    DEFAULT_KEY_ID,
    KEY_LENGTH,
    SigningKeyPair,
    b64decode,
    b64encode,
    generate_signing_key_pair,
)
from memledger.protocols import KeyMaterialMissingError, KeyStoreError
from memledger.utils import atomic_write_bytes

logger = logging.getLogger(__name__)

SECRET_KEY_FILE = "secret.key"
SIGNING_KEY_FILE = "signing.key"
SIGNING_PUB_FILE = "signing.pub"
META_FILE = "meta.json"
LOCK_FILE = ".lock"
DATA_KEY_DIR = "data"


class KeyStore:
    """Lazily initialised, persisted key material.

    The first call that needs a key generates and persists the default
    symmetric key and the signing key pair. Initialisation is mutually
    exclusive across threads (a lock) and processes (``fcntl.flock``),
    so concurrent first-use callers never fork the key material.
    """

    def __init__(self, key_dir: Path):
        self.key_dir = Path(key_dir)
        self._lock = threading.Lock()
        self._secret_keys: Dict[str, bytes] = {}
        self._signing: Optional[SigningKeyPair] = None

    # ------------------------------------------------------------------
    # Locking
    # ------------------------------------------------------------------

    @contextmanager
    def _exclusive(self) -> Iterator[None]:
        with self._lock:
            try:
                self.key_dir.mkdir(parents=True, exist_ok=True)
                os.chmod(self.key_dir, 0o700)
                handle = open(self.key_dir / LOCK_FILE, "a+")
            except OSError as e:
                raise KeyStoreError(f"Cannot open key store at {self.key_dir}: {e}") from e
            try:
                fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
                yield
            finally:
                fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
                handle.close()

    # ------------------------------------------------------------------
    # Initialisation
    # ------------------------------------------------------------------

    def is_initialized(self) -> bool:
        return (self.key_dir / META_FILE).exists()

    def ensure_initialized(self) -> None:
        """Load key material, generating it on first use.

        Raises:
            KeyMaterialMissingError: If the store was initialised before
                but a key file is gone.
            KeyStoreError: If keys cannot be written. The caller's
                operation must abort; no unpersisted key is ever used.
        """
        if DEFAULT_KEY_ID in self._secret_keys and self._signing is not None:
            return
        with self._exclusive():
            if self.is_initialized():
                self._load_all()
            else:
                self._initialize()

    def _load_all(self) -> None:
        secret = self._read_key_file(self.key_dir / SECRET_KEY_FILE)
        private_key = self._read_text(self.key_dir / SIGNING_KEY_FILE)
        public_key = self._read_text(self.key_dir / SIGNING_PUB_FILE)
        meta = self._read_meta()
        created_at = meta.get("created_at")
        self._secret_keys[DEFAULT_KEY_ID] = secret
        self._signing = SigningKeyPair(
            public_key=public_key,
            private_key=private_key,
            created_at=datetime.fromisoformat(created_at) if created_at else None,
            key_id=meta.get("signing_key_id"),
        )

    def _initialize(self) -> None:
        secret_path = self.key_dir / SECRET_KEY_FILE
        signing_path = self.key_dir / SIGNING_KEY_FILE

        # Key files without meta.json are adopted, not replaced
        if secret_path.exists():
            secret = self._read_key_file(secret_path)
            logger.info(f"Adopting existing secret key in {self.key_dir}")
        else:
            secret = os.urandom(KEY_LENGTH)
            self._write(secret_path, b64encode(secret).encode("ascii"))

        if signing_path.exists() and (self.key_dir / SIGNING_PUB_FILE).exists():
            key_pair = SigningKeyPair(
                public_key=self._read_text(self.key_dir / SIGNING_PUB_FILE),
                private_key=self._read_text(signing_path),
            )
        else:
            key_pair = generate_signing_key_pair()
            self._write(signing_path, key_pair.private_key.encode("ascii"))
            self._write(self.key_dir / SIGNING_PUB_FILE, key_pair.public_key.encode("ascii"))

        now = datetime.now(timezone.utc)
        meta = {
            "created_at": now.isoformat(),
            "signing_key_id": key_pair.key_id,
            "algorithm": "chacha20-poly1305",
            "signature_algorithm": "Ed25519",
        }
        self._write(self.key_dir / META_FILE, json.dumps(meta, indent=2).encode("utf-8"))

        key_pair.created_at = key_pair.created_at or now
        self._secret_keys[DEFAULT_KEY_ID] = secret
        self._signing = key_pair
        logger.info(f"Initialized key store at {self.key_dir}")

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    def secret_key(self, key_id: str = DEFAULT_KEY_ID) -> bytes:
        """Get a symmetric key by id.

        Raises:
            KeyMaterialMissingError: If the key does not exist (for data
                keys this means the memory was shredded).
        """
        self.ensure_initialized()
        if key_id in self._secret_keys:
            return self._secret_keys[key_id]
        key = self._read_key_file(self._data_key_path(key_id))
        self._secret_keys[key_id] = key
        return key

    def signing_key_pair(self) -> SigningKeyPair:
        self.ensure_initialized()
        return self._signing

    # ------------------------------------------------------------------
    # Data keys and shredding
    # ------------------------------------------------------------------

    def create_data_key(self) -> str:
        """Create a dedicated key for one memory. Returns its id."""
        self.ensure_initialized()
        key_id = uuid.uuid4().hex
        key = os.urandom(KEY_LENGTH)
        with self._exclusive():
            self._write(self._data_key_path(key_id), b64encode(key).encode("ascii"))
        self._secret_keys[key_id] = key
        return key_id

    def destroy_data_key(self, key_id: str) -> bool:
        """Delete a data key, making its ciphertext permanently unreadable.

        Returns:
            True if a key was destroyed, False if it did not exist
        """
        if key_id == DEFAULT_KEY_ID:
            raise ValueError("The default key is destroyed with rotate_secret_key()")
        path = self._data_key_path(key_id)
        self._secret_keys.pop(key_id, None)
        with self._exclusive():
            if not path.exists():
                return False
            try:
                path.unlink()
            except OSError as e:
                raise KeyStoreError(f"Failed to destroy data key {key_id}: {e}") from e
        logger.info(f"Destroyed data key {key_id[:8]}")
        return True

    def rotate_secret_key(self) -> None:
        """Replace the default symmetric key.

        The previous key is not archived: everything sealed under it is
        shredded.
        """
        self.ensure_initialized()
        new_key = os.urandom(KEY_LENGTH)
        with self._exclusive():
            self._write(self.key_dir / SECRET_KEY_FILE, b64encode(new_key).encode("ascii"))
            meta = self._read_meta()
            meta["secret_rotated_at"] = datetime.now(timezone.utc).isoformat()
            self._write(self.key_dir / META_FILE, json.dumps(meta, indent=2).encode("utf-8"))
        self._secret_keys[DEFAULT_KEY_ID] = new_key
        logger.warning(f"Rotated default secret key in {self.key_dir}")

    # ------------------------------------------------------------------
    # File helpers
    # ------------------------------------------------------------------

    def _data_key_path(self, key_id: str) -> Path:
        if not key_id or not all(c in "0123456789abcdef" for c in key_id):
            raise KeyMaterialMissingError(f"Invalid data key id: {key_id!r}")
        return self.key_dir / DATA_KEY_DIR / f"{key_id}.key"

    def _write(self, path: Path, data: bytes) -> None:
        try:
            atomic_write_bytes(path, data, mode=0o600)
        except OSError as e:
            raise KeyStoreError(f"Failed to persist {path.name}: {e}") from e

    def _read_text(self, path: Path) -> str:
        try:
            return path.read_text(encoding="ascii").strip()
        except FileNotFoundError as e:
            raise KeyMaterialMissingError(f"Key file missing: {path}") from e
        except OSError as e:
            raise KeyStoreError(f"Cannot read {path}: {e}") from e

    def _read_key_file(self, path: Path) -> bytes:
        text = self._read_text(path)
        try:
            key = b64decode(text)
        except ValueError as e:
            raise KeyStoreError(f"Corrupt key file: {path}") from e
        if len(key) != KEY_LENGTH:
            raise KeyStoreError(f"Corrupt key file: {path}")
        return key

    def _read_meta(self) -> Dict[str, str]:
        try:
            return json.loads((self.key_dir / META_FILE).read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise KeyStoreError(f"Cannot read key store metadata: {e}") from e
