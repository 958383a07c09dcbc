"""Reconciliation engine wiring.

Builds every collaborator from an EngineConfig: the shared aiohttp session,
the Service Layer session manager and services, the identity provider, the
permission cache, the named queues with their activities, the operations
service and the periodic tasks. Queues and periodic tasks run on Temporal
workers; the client is connected on start unless one is passed in.
"""

from functools import partial
from typing import List, Optional

import aiohttp
from temporalio.client import Client

from activities.contacts import sync_contact
from activities.context import ActivityContext
from activities.contracts import sync_contract, sync_contract_sap_id, sync_delivered_quantities
from activities.delivery_places import sync_delivery_place
from activities.item_groups import sync_item_group
from connectors.sap.sl_client import SapServiceLayerClient
from connectors.sap.sl_services import SapServices
from connectors.sap.sl_session import SapSessionManager
from core.config import (
    QUEUE_SAP_CONTACT_UPDATE,
    QUEUE_SAP_CONTRACT_DELIVERED_QUANTITY_UPDATE,
    QUEUE_SAP_CONTRACT_SAPID_UPDATE,
    QUEUE_SAP_CONTRACT_UPDATE,
    QUEUE_SAP_DELIVERY_PLACE_UPDATE,
    PERIODIC_TASK_QUEUE,
    QUEUE_SAP_ITEM_GROUP_UPDATE,
    EngineConfig,
)
from core.models.operations import OperationType
from core.observability.logging import get_logger
from core.observability.metrics import JobMetrics
from core.security.session_store import SapSessionStore, SqliteSapSessionStore
from core.storage.db import init_db
from identity.keycloak import KeycloakIdentityProvider
from identity.provider import IdentityProvider, InMemoryIdentityProvider
from permissions.cache import InMemoryPermissionCache, PermissionCache, RedisPermissionCache
from permissions.rebuilder import PermissionCacheRebuilder
from workers.queue_manager import QueueManager
from workers.scheduler import Scheduler
from workers.temporal_client import get_temporal_client
from workflows.operations import OperationsService

logger = get_logger(__name__)

PERMISSION_REBUILD_TASK = "permission-cache-rebuild"
DELIVERED_QUANTITY_TASK = "delivered-quantity-sync"


class SyncEngine:
    """Owns the engine's collaborators and their lifecycle.

    Usage:
        async with SyncEngine(load_config()) as engine:
            report = await engine.operations.start_operation(OperationType.SAP_CONTACT_SYNC)
            await engine.queues.drain()
    """

    def __init__(
        self,
        config: EngineConfig,
        client: Optional[Client] = None,
        http: Optional[aiohttp.ClientSession] = None,
        identity: Optional[IdentityProvider] = None,
        permission_cache: Optional[PermissionCache] = None,
        session_store: Optional[SapSessionStore] = None,
    ):
        self.config = config
        self.client = client
        self._http = http
        self._owns_http = http is None
        self._identity = identity
        self._permission_cache = permission_cache
        self._session_store = session_store

        self.metrics = JobMetrics()
        self.queues: Optional[QueueManager] = None
        self.scheduler: Optional[Scheduler] = None
        self.sap: Optional[SapServices] = None
        self.identity: Optional[IdentityProvider] = None
        self.permission_cache: Optional[PermissionCache] = None
        self.operations: Optional[OperationsService] = None
        self._built = False

    def _build(self) -> None:
        if self._built:
            return

        init_db(self.config.db_path)
        prefix = self.config.temporal.task_queue_prefix
        self.queues = QueueManager(self.client, self.config.db_path, prefix, self.metrics)
        self.scheduler = Scheduler(self.client, f"{prefix}{PERIODIC_TASK_QUEUE}")

        if self._http is None:
            # Session cookies are sent explicitly per request
            self._http = aiohttp.ClientSession(cookie_jar=aiohttp.DummyCookieJar())

        session_manager = SapSessionManager(
            self.config.sap,
            self._http,
            self._session_store or SqliteSapSessionStore(self.config.db_path),
        )
        self.sap = SapServices.create(SapServiceLayerClient(self.config.sap, session_manager, self._http))

        if self._identity is not None:
            self.identity = self._identity
        elif self.config.keycloak.enabled:
            self.identity = KeycloakIdentityProvider(self.config.keycloak, self._http)
        else:
            logger.warning("KEYCLOAK_URL is not set, using an in-memory identity provider")
            self.identity = InMemoryIdentityProvider()

        cache_config = self.config.permission_cache
        if self._permission_cache is not None:
            self.permission_cache = self._permission_cache
        elif cache_config.redis_url:
            self.permission_cache = RedisPermissionCache.from_config(cache_config)
        else:
            self.permission_cache = InMemoryPermissionCache(cache_config.expire_time_ms)

        ctx = ActivityContext(
            db_path=self.config.db_path,
            sap=self.sap,
            identity=self.identity,
            item_groups=self.config.item_groups,
        )
        activities = {
            QUEUE_SAP_CONTACT_UPDATE: sync_contact,
            QUEUE_SAP_DELIVERY_PLACE_UPDATE: sync_delivery_place,
            QUEUE_SAP_ITEM_GROUP_UPDATE: sync_item_group,
            QUEUE_SAP_CONTRACT_UPDATE: sync_contract,
            QUEUE_SAP_CONTRACT_SAPID_UPDATE: sync_contract_sap_id,
            QUEUE_SAP_CONTRACT_DELIVERED_QUANTITY_UPDATE: sync_delivered_quantities,
        }
        for queue_name, activity in activities.items():
            self.queues.create_queue(queue_name, partial(activity, ctx), self.config.queues.get(queue_name))

        self.operations = OperationsService(self.queues, self.sap, self.config.db_path)

        if cache_config.enabled:
            rebuilder = PermissionCacheRebuilder(self.identity, self.permission_cache, self.config.db_path)
            self.scheduler.add(PERMISSION_REBUILD_TASK, rebuilder.rebuild_once, cache_config.rebuild_interval)
        if self.config.delivered_quantity_interval > 0:
            self.scheduler.add(
                DELIVERED_QUANTITY_TASK,
                partial(self.operations.start_operation, OperationType.SAP_CONTRACT_DELIVERED_QUANTITY_SYNC),
                self.config.delivered_quantity_interval,
            )

        self._built = True

    async def start(self, queue_names: Optional[List[str]] = None, with_scheduler: bool = True) -> None:
        """Start the given queues (all by default) and the periodic tasks."""
        if self.client is None:
            self.client = await get_temporal_client(self.config.temporal)
        self._build()
        await self.queues.start(queue_names)
        logger.info(f"Started queues: {', '.join(queue_names or self.queues.queue_names)}")
        if with_scheduler:
            await self.scheduler.start()

    async def stop(self) -> None:
        if self.scheduler is not None:
            await self.scheduler.stop()
        if self.queues is not None:
            await self.queues.stop()
        if self.permission_cache is not None:
            await self.permission_cache.close()
        if self._owns_http and self._http is not None:
            await self._http.close()
            self._http = None
        logger.info(f"Engine stopped: {self.metrics.get_summary()}")

    async def __aenter__(self) -> "SyncEngine":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()
