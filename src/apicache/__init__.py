"""apicache -- Two-tier caching engine for API-backed client applications.

Responses and entities fetched from a remote API are kept in a bounded,
LRU-evicting memory tier and (for entities) a durable SQLite tier, each
record carrying its own expiration. A fetch decorator wraps the real network
call with cache-first semantics and can serve the last known value when the
network is down.

Typical usage::

    from apicache import CacheCoordinator, cached, get_preset

    coordinator = CacheCoordinator(get_preset("default"))

    @cached("/api/v3/lego/colors/", coordinator=coordinator)
    def list_colors(page: int = 1) -> dict:
        ...

Modules:
    models: Expiration, configuration and entity models.
    keys: Order-independent cache keys and composite primary keys.
    memory: Bounded in-memory LRU store with per-entry expiration.
    persistent: SQLite entity store.
    coordinator: Two-tier routing, statistics and the default instance.
    scheduler: Background sweep of expired persistent records.
    decorator: Cache-first wrapping of fetch callables.
    client: httpx clients with cached GET requests.
    config: XDG paths, config files, presets and environment overrides.
    exceptions: Exception hierarchy with exit-code mapping.
    cli: The ``apicache`` operator CLI.
"""

__version__ = "0.1.0"

from apicache.config import get_preset, load_config, resolve_config, save_config
from apicache.coordinator import (
    CacheCoordinator,
    CacheTarget,
    get_default_coordinator,
    reset_default_coordinator,
    set_default_coordinator,
)
from apicache.decorator import CachedFetcher, cached, is_transient_error
from apicache.exceptions import (
    ApiCacheError,
    CacheExpiredError,
    ConfigError,
    ConnectionError_,
    DeserializationError,
    InvalidKeyError,
    RecordNotFoundError,
    ResponseError,
    SerializationError,
    StoreUnavailableError,
)
from apicache.keys import CacheKey, composite_key
from apicache.memory import MemoryStore
from apicache.models import (
    CacheableModel,
    CacheConfig,
    CachedResponse,
    CacheStatistics,
    Expiration,
    ExpirationKind,
    ResourcePolicy,
)
from apicache.persistent import EntityStore
from apicache.scheduler import MaintenanceScheduler

__all__ = [
    "ApiCacheError",
    "CacheConfig",
    "CacheCoordinator",
    "CacheExpiredError",
    "CacheKey",
    "CacheStatistics",
    "CacheTarget",
    "CacheableModel",
    "CachedFetcher",
    "CachedResponse",
    "ConfigError",
    "ConnectionError_",
    "DeserializationError",
    "EntityStore",
    "Expiration",
    "ExpirationKind",
    "InvalidKeyError",
    "MaintenanceScheduler",
    "MemoryStore",
    "RecordNotFoundError",
    "ResourcePolicy",
    "ResponseError",
    "SerializationError",
    "StoreUnavailableError",
    "cached",
    "composite_key",
    "get_default_coordinator",
    "get_preset",
    "is_transient_error",
    "load_config",
    "reset_default_coordinator",
    "resolve_config",
    "save_config",
    "set_default_coordinator",
]
