"""
Pytest fixtures and test configuration for memledger tests.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, List, Optional

import pytest

from memledger.config import LedgerConfig, StoreConfig
from memledger.crypto.codec import Codec
from memledger.crypto.keystore import KeyStore
from memledger.ledger import Ledger
from memledger.records.attestation import SigningIdentity
from memledger.records.blob import MemoryBlob
from memledger.records.envelope import Lineage, MemoryEnvelope
from memledger.records.kernel import IdentityKernel
from memledger.storage.index import EnvelopeIndex
from memledger.storage.local import LocalContentStore

FIXED_NOW = datetime(2025, 6, 1, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture(autouse=True)
def isolated_home(tmp_path, monkeypatch):
    """Keep every test away from the real ~/.config/mlp."""
    home = tmp_path / "mlp-home"
    monkeypatch.setenv("MEMLEDGER_HOME", str(home))
    for name in (
        "MEMLEDGER_STORE_PROVIDER",
        "MEMLEDGER_STORE_ENDPOINT",
        "MEMLEDGER_STORE_TOKEN",
        "MEMLEDGER_LOG_LEVEL",
        "PINATA_API_KEY",
        "PINATA_API_SECRET",
    ):
        monkeypatch.delenv(name, raising=False)
    return home


@pytest.fixture(autouse=True)
def clean_memledger_logger():
    """Remove all handlers from the memledger logger before/after each test."""
    logger = logging.getLogger("memledger")
    logger.handlers.clear()
    logger.setLevel(logging.NOTSET)
    yield
    for handler in logger.handlers:
        handler.close()
    logger.handlers.clear()
    logger.setLevel(logging.NOTSET)


@pytest.fixture
def now():
    return FIXED_NOW


@pytest.fixture
def key_store(tmp_path) -> KeyStore:
    return KeyStore(tmp_path / "keys")


@pytest.fixture
def codec(key_store) -> Codec:
    return Codec(key_store)


@pytest.fixture
def local_store(tmp_path) -> LocalContentStore:
    return LocalContentStore(tmp_path / "store")


@pytest.fixture
def index(tmp_path) -> EnvelopeIndex:
    return EnvelopeIndex(tmp_path / "index.db")


@pytest.fixture
def kernel(key_store) -> IdentityKernel:
    """A signed kernel with a couple of values."""
    k = IdentityKernel()
    k.add_value("honesty", confirmed=True)
    k.add_value("curiosity", confirmed=True)
    key_pair = key_store.signing_key_pair()
    k.sign(key_pair.private_key, key_pair.public_key)
    return k


@pytest.fixture
def identity(key_store, kernel) -> SigningIdentity:
    return SigningIdentity.from_key_store(key_store, kernel.kernel_id)


@pytest.fixture
def trusted_keys(kernel, codec):
    return {kernel.kernel_id: codec.public_key}


@pytest.fixture
def write_memory(local_store, codec, index, identity, now):
    """Write path without the Ledger facade: blob, envelope, sign, index.

    Returns a function taking the content plus envelope fields and
    returning the stored envelope.
    """

    def _write(
        content: Any,
        kind: str = "semantic",
        scope: str = "agent",
        tags: Optional[List[str]] = None,
        age_days: float = 1.0,
        sign: bool = True,
        policy_id: Optional[str] = None,
        risk_class: str = "low",
        lineage: Optional[Lineage] = None,
        created_at: Optional[str] = None,
    ) -> MemoryEnvelope:
        blob = MemoryBlob(content=content)
        address = local_store.put(blob.encrypt(codec))
        envelope = MemoryEnvelope(
            scope=scope,
            kind=kind,
            content_address=address,
            content_hash=blob.content_hash(),
            topic_tags=tags or [],
            access_policy_ref=policy_id,
            risk_class=risk_class,
            lineage=lineage or Lineage(),
            created_at=created_at or (now - timedelta(days=age_days)).isoformat(),
        )
        if sign:
            envelope.sign(identity)
        index.add(envelope, local_store.put(envelope.to_bytes()))
        return envelope

    return _write


@pytest.fixture
def ledger_config(tmp_path) -> LedgerConfig:
    home = tmp_path / "ledger"
    return LedgerConfig(home=home, store=StoreConfig(provider="local"))


@pytest.fixture
def ledger(ledger_config):
    """An initialised ledger on the local backend."""
    ledger = Ledger(ledger_config)
    ledger.init(values=["honesty", "privacy"])
    yield ledger
    ledger.close()
