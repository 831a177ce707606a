"""
memledger - a sovereign memory ledger.

Encrypted, attested, content-addressed memories for a digital agent,
and the context pack compiler that selects them for a session.
"""

from .config import LedgerConfig, StoreConfig, load_config
from .context_pack import CompileConstraints, ContextPack, ContextPackCompiler
from .ledger import Ledger, LoadedMemory, StoreReceipt
from .records import AccessPolicy, IdentityKernel, MemoryBlob, MemoryEnvelope

try:
    from importlib.metadata import version

    __version__ = version("memledger")
except Exception:
    __version__ = "0.0.0"

__all__ = [
    "AccessPolicy",
    "CompileConstraints",
    "ContextPack",
    "ContextPackCompiler",
    "IdentityKernel",
    "Ledger",
    "LedgerConfig",
    "LoadedMemory",
    "MemoryBlob",
    "MemoryEnvelope",
    "StoreConfig",
    "StoreReceipt",
    "load_config",
]
