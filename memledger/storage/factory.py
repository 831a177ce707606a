"""Backend selection from configuration.

The ledger core only ever calls ``put``/``get`` (and ``list`` where
available). Which backend answers is decided here.
"""

import logging
from typing import Optional

import httpx

from memledger.config import DEFAULT_ARWEAVE_GATEWAY, StoreConfig
from memledger.protocols import ContentStore
from memledger.storage.gateway import GatewayContentStore
from memledger.storage.local import LocalContentStore
from memledger.storage.permanent import PermanentContentStore
from memledger.storage.retry import RetryingStore, RetryPolicy

logger = logging.getLogger(__name__)


def create_store(config: StoreConfig, client: Optional[httpx.Client] = None) -> ContentStore:
    """Build the content store ``config`` describes.

    Remote backends are wrapped so transient failures are retried with
    backoff (``config.max_retries``).

    Raises:
        ValueError: Missing settings for the selected provider.
    """
    if config.provider == "local":
        logger.debug(f"Using local content store at {config.local_path}")
        return LocalContentStore(config.local_path)

    if config.provider == "ipfs":
        store = GatewayContentStore(
            api_url=config.endpoint,
            gateways=config.gateways or None,
            pinata_api_key=config.pinata_api_key,
            pinata_api_secret=config.pinata_api_secret,
            timeout=config.timeout,
            client=client,
        )
    elif config.provider == "arweave":
        store = PermanentContentStore(
            upload_url=config.endpoint,
            gateway=config.gateways[0] if config.gateways else DEFAULT_ARWEAVE_GATEWAY,
            auth_token=config.auth_token,
            timeout=config.timeout,
            client=client,
        )
    else:
        raise ValueError(f"Unknown store provider: {config.provider}")

    logger.debug(f"Using {store.name} content store")
    return RetryingStore(store, RetryPolicy(max_retries=config.max_retries))
