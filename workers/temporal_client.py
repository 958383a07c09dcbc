"""Temporal client factory.

Connects to a local Temporal server or to Temporal Cloud, depending on the
credentials in TemporalConfig.
"""

from pathlib import Path
from typing import Optional, Union

from temporalio.client import Client
from temporalio.service import TLSConfig

from core.config import TemporalConfig
from core.observability.logging import get_logger

logger = get_logger(__name__)


async def get_temporal_client(config: Optional[TemporalConfig] = None) -> Client:
    """Create and return a Temporal client.

    Reads configuration from TemporalConfig (see TemporalConfig.from_env):
    - TEMPORAL_ENDPOINT: host:port of the frontend (default localhost:7233)
    - TEMPORAL_NAMESPACE: Namespace (default "default")
    - TEMPORAL_API_KEY: Temporal Cloud API key (enables TLS)
    - TEMPORAL_CERT_PATH / TEMPORAL_KEY_PATH: client certificate for mTLS

    Returns:
        Connected Temporal client
    """
    config = config or TemporalConfig.from_env()

    tls: Union[bool, TLSConfig] = bool(config.api_key)
    if config.cert_path:
        tls = TLSConfig(
            client_cert=Path(config.cert_path).read_bytes(),
            client_private_key=Path(config.key_path).read_bytes() if config.key_path else None,
        )

    client = await Client.connect(
        config.endpoint,
        namespace=config.namespace,
        api_key=config.api_key,
        tls=tls,
    )
    logger.info(f"Connected to Temporal at {config.endpoint} (namespace {config.namespace})")
    return client
