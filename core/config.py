"""Engine configuration.

Reads settings from environment variables. A `.env` file at the repository
root is loaded first if it exists.

Static item group data (categories, display names, prerequisites and minimum
profit estimations) is read from the JSON file named by SAP_ITEM_GROUP_CONFIG:

    {
        "item-group-categories": {"FROZEN": ["100"], "FRESH": ["200"]},
        "item-group-display-names": {"100": "Frozen berries"},
        "item-group-prerequisites": {"101": "100"},
        "item-group-minimum-profit-estimation": {"100": "0.5"}
    }
"""

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

from dotenv import load_dotenv

env_path = Path(__file__).resolve().parents[1] / ".env"
if env_path.exists():
    load_dotenv(env_path)


DEFAULT_DB_PATH = Path(__file__).resolve().parents[1] / "berries_sync.db"


class ConfigurationError(Exception):
    """Required configuration is missing or malformed."""
    pass


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_float(name: str, default: Optional[float]) -> Optional[float]:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    try:
        return float(value)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number, got {value!r}")


def _env_int(name: str, default: int) -> int:
    value = _env_float(name, default)
    return int(value)


# =============================================================================
# SAP Service Layer
# =============================================================================

@dataclass
class SapConfig:
    """Connection settings for the SAP Service Layer."""
    api_url: str = ""
    company_db: str = ""
    username: str = ""
    password: str = ""
    session_ttl_minutes: int = 30
    session_margin_minutes: int = 10
    page_size: int = 100
    pool_sessions: bool = False
    timeout_seconds: int = 60

    def validate(self) -> None:
        """Raise ConfigurationError listing every missing credential."""
        missing = [
            name for name, value in (
                ("SAP_API_URL", self.api_url),
                ("SAP_COMPANY_DB", self.company_db),
                ("SAP_USERNAME", self.username),
                ("SAP_PASSWORD", self.password),
            )
            if not value
        ]
        if missing:
            raise ConfigurationError(
                f"Missing SAP Service Layer configuration: {', '.join(missing)}"
            )

    @classmethod
    def from_env(cls) -> "SapConfig":
        return cls(
            api_url=os.getenv("SAP_API_URL", "").rstrip("/"),
            company_db=os.getenv("SAP_COMPANY_DB", ""),
            username=os.getenv("SAP_USERNAME", ""),
            password=os.getenv("SAP_PASSWORD", ""),
            session_ttl_minutes=_env_int("SAP_SESSION_TTL_MINUTES", 30),
            session_margin_minutes=_env_int("SAP_SESSION_MARGIN_MINUTES", 10),
            pool_sessions=_env_bool("SAP_POOL_SESSIONS", False),
            timeout_seconds=_env_int("SAP_TIMEOUT_SECONDS", 60),
        )


# =============================================================================
# Queues
# =============================================================================

QUEUE_SAP_CONTACT_UPDATE = "sapContactUpdate"
QUEUE_SAP_DELIVERY_PLACE_UPDATE = "sapDeliveryPlaceUpdate"
QUEUE_SAP_ITEM_GROUP_UPDATE = "sapItemGroupUpdate"
QUEUE_SAP_CONTRACT_UPDATE = "sapContractUpdate"
QUEUE_SAP_CONTRACT_SAPID_UPDATE = "sapContractSapIdUpdate"
QUEUE_SAP_CONTRACT_DELIVERED_QUANTITY_UPDATE = "sapContractDeliveredQuantityUpdate"

ALL_QUEUES = [
    QUEUE_SAP_CONTACT_UPDATE,
    QUEUE_SAP_DELIVERY_PLACE_UPDATE,
    QUEUE_SAP_ITEM_GROUP_UPDATE,
    QUEUE_SAP_CONTRACT_UPDATE,
    QUEUE_SAP_CONTRACT_SAPID_UPDATE,
    QUEUE_SAP_CONTRACT_DELIVERED_QUANTITY_UPDATE,
]

# Task queue of the periodic loops (permission rebuild, delivered quantities)
PERIODIC_TASK_QUEUE = "berriesPeriodic"

# Activities always need a start-to-close timeout
DEFAULT_MAX_TIMEOUT = 60.0 * 60  # seconds


@dataclass
class QueueOptions:
    """Worker settings for one named queue."""
    concurrent: int = 1
    after_process_delay: float = 0.0  # seconds
    max_timeout: Optional[float] = None  # seconds, DEFAULT_MAX_TIMEOUT when unset
    max_attempts: int = 10
    retry_delay: float = 1.0  # seconds before a retry requesting job runs again

    @property
    def effective_timeout(self) -> float:
        return self.max_timeout or DEFAULT_MAX_TIMEOUT

    @classmethod
    def from_env(cls, queue_name: str) -> "QueueOptions":
        """Read QUEUE_<NAME>_* variables, e.g. QUEUE_SAPCONTACTUPDATE_CONCURRENT."""
        prefix = f"QUEUE_{queue_name.upper()}_"
        defaults = cls()
        return cls(
            concurrent=max(1, _env_int(prefix + "CONCURRENT", defaults.concurrent)),
            after_process_delay=_env_float(prefix + "AFTER_PROCESS_DELAY", defaults.after_process_delay),
            max_timeout=_env_float(prefix + "MAX_TIMEOUT", defaults.max_timeout),
            max_attempts=max(1, _env_int(prefix + "MAX_ATTEMPTS", defaults.max_attempts)),
            retry_delay=max(0.0, _env_float(prefix + "RETRY_DELAY", defaults.retry_delay)),
        )


@dataclass
class QueuesConfig:
    options: Dict[str, QueueOptions] = field(default_factory=dict)

    def get(self, queue_name: str) -> QueueOptions:
        return self.options.get(queue_name) or QueueOptions()

    @classmethod
    def from_env(cls) -> "QueuesConfig":
        return cls(options={name: QueueOptions.from_env(name) for name in ALL_QUEUES})


# =============================================================================
# Temporal
# =============================================================================

@dataclass
class TemporalConfig:
    """Temporal connection settings.

    Every task queue name is prefixed with task_queue_prefix so several
    deployments (or test runs) can share one namespace.
    """
    endpoint: str = "localhost:7233"
    namespace: str = "default"
    api_key: Optional[str] = None
    cert_path: Optional[str] = None
    key_path: Optional[str] = None
    task_queue_prefix: str = ""

    @classmethod
    def from_env(cls) -> "TemporalConfig":
        return cls(
            endpoint=os.getenv("TEMPORAL_ENDPOINT", "localhost:7233"),
            namespace=os.getenv("TEMPORAL_NAMESPACE", "default"),
            api_key=os.getenv("TEMPORAL_API_KEY") or None,
            cert_path=os.getenv("TEMPORAL_CERT_PATH") or None,
            key_path=os.getenv("TEMPORAL_KEY_PATH") or None,
            task_queue_prefix=os.getenv("TEMPORAL_TASK_QUEUE_PREFIX", ""),
        )


# =============================================================================
# Item Groups
# =============================================================================

@dataclass
class ItemGroupConfig:
    """Static item group data keyed by SAP item group id."""
    categories: Dict[str, List[str]] = field(default_factory=dict)
    display_names: Dict[str, str] = field(default_factory=dict)
    prerequisites: Dict[str, str] = field(default_factory=dict)
    minimum_profit_estimations: Dict[str, float] = field(default_factory=dict)

    def get_category(self, sap_id: str) -> Optional[str]:
        for category, ids in self.categories.items():
            if sap_id in ids:
                return category
        return None

    def get_display_name(self, sap_id: str) -> Optional[str]:
        return self.display_names.get(sap_id)

    def get_prerequisite(self, sap_id: str) -> Optional[str]:
        return self.prerequisites.get(sap_id)

    def get_minimum_profit_estimation(self, sap_id: str) -> float:
        return float(self.minimum_profit_estimations.get(sap_id, 0))

    @classmethod
    def from_dict(cls, data: Dict) -> "ItemGroupConfig":
        categories = {
            category: [str(sap_id) for sap_id in ids]
            for category, ids in (data.get("item-group-categories") or {}).items()
        }
        return cls(
            categories=categories,
            display_names={str(k): v for k, v in (data.get("item-group-display-names") or {}).items()},
            prerequisites={str(k): str(v) for k, v in (data.get("item-group-prerequisites") or {}).items()},
            minimum_profit_estimations={
                str(k): float(v)
                for k, v in (data.get("item-group-minimum-profit-estimation") or {}).items()
            },
        )

    @classmethod
    def from_file(cls, path: Path) -> "ItemGroupConfig":
        try:
            with open(path, "r", encoding="utf-8") as f:
                return cls.from_dict(json.load(f))
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigurationError(f"Failed to read item group configuration {path}: {e}") from e


# =============================================================================
# Identity and permissions
# =============================================================================

@dataclass
class KeycloakConfig:
    """Keycloak admin API settings."""
    url: str = ""
    realm: str = ""
    client_id: str = ""
    client_secret: str = ""
    authz_client_id: Optional[str] = None  # resource server holding chat permissions

    @property
    def enabled(self) -> bool:
        return bool(self.url and self.realm)

    @classmethod
    def from_env(cls) -> "KeycloakConfig":
        return cls(
            url=os.getenv("KEYCLOAK_URL", "").rstrip("/"),
            realm=os.getenv("KEYCLOAK_REALM", ""),
            client_id=os.getenv("KEYCLOAK_ADMIN_CLIENT_ID", ""),
            client_secret=os.getenv("KEYCLOAK_ADMIN_CLIENT_SECRET", ""),
            authz_client_id=os.getenv("KEYCLOAK_AUTHZ_CLIENT_ID") or None,
        )


@dataclass
class PermissionCacheConfig:
    """Permission cache settings. Without a Redis URL an in-memory cache is used."""
    redis_url: Optional[str] = None
    expire_time_ms: int = 1000 * 60 * 60
    rebuild_interval: float = 0.0  # seconds between rebuild passes
    enabled: bool = True

    @classmethod
    def from_env(cls) -> "PermissionCacheConfig":
        return cls(
            redis_url=os.getenv("REDIS_URL") or None,
            expire_time_ms=_env_int("PERMISSION_CACHE_EXPIRE_MS", 1000 * 60 * 60),
            rebuild_interval=_env_float("PERMISSION_CACHE_REBUILD_INTERVAL", 0.0),
            enabled=_env_bool("PERMISSION_CACHE_ENABLED", True),
        )


# =============================================================================
# Aggregate
# =============================================================================

@dataclass
class EngineConfig:
    db_path: Path = DEFAULT_DB_PATH
    sap: SapConfig = field(default_factory=SapConfig)
    queues: QueuesConfig = field(default_factory=QueuesConfig)
    temporal: TemporalConfig = field(default_factory=TemporalConfig)
    item_groups: ItemGroupConfig = field(default_factory=ItemGroupConfig)
    keycloak: KeycloakConfig = field(default_factory=KeycloakConfig)
    permission_cache: PermissionCacheConfig = field(default_factory=PermissionCacheConfig)
    delivered_quantity_interval: float = 60.0 * 60  # seconds


def load_config() -> EngineConfig:
    """Build the engine configuration from the environment."""
    item_group_path = os.getenv("SAP_ITEM_GROUP_CONFIG")
    item_groups = ItemGroupConfig.from_file(Path(item_group_path)) if item_group_path else ItemGroupConfig()

    return EngineConfig(
        db_path=Path(os.getenv("BERRIES_SYNC_DB_PATH", str(DEFAULT_DB_PATH))),
        sap=SapConfig.from_env(),
        queues=QueuesConfig.from_env(),
        temporal=TemporalConfig.from_env(),
        item_groups=item_groups,
        keycloak=KeycloakConfig.from_env(),
        permission_cache=PermissionCacheConfig.from_env(),
        delivered_quantity_interval=_env_float("SAP_DELIVERED_QUANTITY_INTERVAL", 60.0 * 60),
    )
