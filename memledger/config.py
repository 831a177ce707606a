"""Configuration for memledger.

An explicit ``LedgerConfig`` is built once and handed to the key store,
codec and store constructors. Nothing reads paths from module globals.

Lookup order for settings:
1. ``<home>/config.json`` (optional)
2. Environment variables (override the file)
3. Built-in defaults
"""

import json
import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional

from memledger.utils import get_ledger_home

logger = logging.getLogger(__name__)

STORE_PROVIDERS = ("local", "ipfs", "arweave")

DEFAULT_IPFS_GATEWAYS = [
    "https://gateway.pinata.cloud/ipfs/",
    "https://ipfs.io/ipfs/",
    "https://dweb.link/ipfs/",
    "https://cloudflare-ipfs.com/ipfs/",
]

DEFAULT_ARWEAVE_GATEWAY = "https://arweave.net/"


@dataclass
class StoreConfig:
    """Content store selection and backend settings."""

    provider: str = "local"
    local_path: Optional[Path] = None
    endpoint: Optional[str] = None
    gateways: List[str] = field(default_factory=list)
    pinata_api_key: Optional[str] = None
    pinata_api_secret: Optional[str] = None
    auth_token: Optional[str] = None
    timeout: float = 30.0
    max_retries: int = 3

    def __post_init__(self):
        if self.provider not in STORE_PROVIDERS:
            raise ValueError(
                f"Unknown store provider {self.provider!r} "
                f"(expected one of {', '.join(STORE_PROVIDERS)})"
            )
        if self.local_path is not None:
            self.local_path = Path(self.local_path).expanduser()


@dataclass
class LedgerConfig:
    """Everything a Ledger needs to find its keys, kernel and content."""

    home: Path = field(default_factory=get_ledger_home)
    key_dir: Optional[Path] = None
    kernel_path: Optional[Path] = None
    index_path: Optional[Path] = None
    store: StoreConfig = field(default_factory=StoreConfig)
    fetch_concurrency: int = 4
    log_level: str = "INFO"

    def __post_init__(self):
        self.home = Path(self.home).expanduser()
        self.key_dir = Path(self.key_dir).expanduser() if self.key_dir else self.home / "keys"
        self.kernel_path = (
            Path(self.kernel_path).expanduser()
            if self.kernel_path
            else self.home / "identity-kernel.json"
        )
        self.index_path = (
            Path(self.index_path).expanduser() if self.index_path else self.home / "index.db"
        )
        if self.store.local_path is None:
            self.store.local_path = self.home / "storage"
        if self.fetch_concurrency < 1:
            raise ValueError(f"fetch_concurrency must be >= 1, got {self.fetch_concurrency}")


def _read_config_file(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    try:
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
    except (json.JSONDecodeError, OSError) as e:
        logger.warning(f"Ignoring unreadable config file {path}: {e}")
        return {}
    if not isinstance(data, dict):
        logger.warning(f"Ignoring config file {path}: top level must be an object")
        return {}
    return data


def _known(cls, data: Dict[str, Any]) -> Dict[str, Any]:
    names = {f.name for f in fields(cls)}
    return {k: v for k, v in data.items() if k in names}


def load_config(home: Optional[Path] = None) -> LedgerConfig:
    """Build a LedgerConfig from ``config.json`` and the environment.

    Args:
        home: Ledger home directory (default: ``get_ledger_home()``)

    Returns:
        A validated LedgerConfig
    """
    home = Path(home).expanduser() if home else get_ledger_home()
    file_data = _read_config_file(home / "config.json")

    store_data = dict(file_data.get("storage") or {})
    store_data["provider"] = os.environ.get("MEMLEDGER_STORE_PROVIDER") or store_data.get(
        "provider", "local"
    )
    store_data["endpoint"] = os.environ.get("MEMLEDGER_STORE_ENDPOINT") or store_data.get(
        "endpoint"
    )
    store_data["pinata_api_key"] = os.environ.get("PINATA_API_KEY") or store_data.get(
        "pinata_api_key"
    )
    store_data["pinata_api_secret"] = os.environ.get("PINATA_API_SECRET") or store_data.get(
        "pinata_api_secret"
    )
    store_data["auth_token"] = os.environ.get("MEMLEDGER_STORE_TOKEN") or store_data.get(
        "auth_token"
    )
    store = StoreConfig(**_known(StoreConfig, store_data))

    ledger_data = _known(LedgerConfig, file_data)
    ledger_data.pop("store", None)
    ledger_data["home"] = home
    ledger_data["log_level"] = os.environ.get("MEMLEDGER_LOG_LEVEL") or ledger_data.get(
        "log_level", "INFO"
    )
    return LedgerConfig(store=store, **ledger_data)
