"""Content-addressed storage backends and the local envelope index."""

from .factory import create_store
from .gateway import GatewayContentStore
from .index import EnvelopeIndex
from .local import LocalContentStore, local_address
from .permanent import PermanentContentStore
from .retry import RetryingStore, RetryPolicy, call_with_retry

__all__ = [
    "EnvelopeIndex",
    "GatewayContentStore",
    "LocalContentStore",
    "PermanentContentStore",
    "RetryPolicy",
    "RetryingStore",
    "call_with_retry",
    "create_store",
    "local_address",
]
