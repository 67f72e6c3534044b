"""Routing of cache reads and writes across the memory and persistent tiers.

:class:`CacheCoordinator` owns one :class:`~apicache.memory.MemoryStore` and
one :class:`~apicache.persistent.EntityStore` (either may be absent) and
decides, per operation, which of them to consult:

* Reads go to the fastest enabled tier first: memory, then persistent.
* Writes go to every enabled tier, persistent first, so a value that cannot
  be serialised is not left behind in memory. Two-tier writes and removals
  run under one coordinator lock; the last completed write wins in both
  tiers.
* Policy is resolved per resource through
  :meth:`~apicache.models.CacheConfig.policy_for`.

A :class:`CacheTarget` names where a value lives in each tier. Targets
without an entity type and primary key only ever touch the memory tier.

By default a persistent hit does *not* warm the memory tier; set
:attr:`~apicache.models.CacheConfig.warm_memory_on_persistent_hit` to copy
hits across.

A process-wide instance is available through
:func:`get_default_coordinator`; it is built on first use and never torn
down implicitly.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable, Optional, TypeVar

from apicache.exceptions import CacheExpiredError, RecordNotFoundError, SerializationError
from apicache.keys import CacheKey
from apicache.memory import MemoryStore
from apicache.models import (
    CacheableModel,
    CacheConfig,
    CacheStatistics,
    Expiration,
    ResourcePolicy,
    collection_of,
    primary_key_of,
)
from apicache.persistent import EntityStore

if TYPE_CHECKING:
    from apicache.scheduler import MaintenanceScheduler

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=CacheableModel)


@dataclass(frozen=True)
class CacheTarget:
    """Where a cached value lives.

    Attributes:
        key: Memory tier key.
        resource: Name used for policy lookup. Defaults to ``key.path``.
        entity_type: Persistent tier entity class, if the value is an entity.
        primary_key: Persistent tier primary key (possibly composite).
        use_memory: False keeps the value out of the memory tier, so entity
            targets live in the persistent tier only.
    """

    key: CacheKey
    resource: Optional[str] = None
    entity_type: Optional[type[CacheableModel]] = None
    primary_key: Optional[str] = None
    use_memory: bool = True

    @classmethod
    def for_entity(
        cls,
        entity_type: type[CacheableModel],
        primary_key: str,
        resource: Optional[str] = None,
    ) -> CacheTarget:
        """Target an entity by collection and primary key in both tiers."""
        collection = collection_of(entity_type)
        return cls(
            key=CacheKey(collection, {"primary_key": primary_key}),
            resource=resource or collection,
            entity_type=entity_type,
            primary_key=primary_key,
        )

    @property
    def policy_name(self) -> str:
        return self.resource if self.resource is not None else self.key.path

    @property
    def is_entity(self) -> bool:
        return self.entity_type is not None and bool(self.primary_key)


class CacheCoordinator:
    """Two-tier cache front end.

    Args:
        config: Store-wide settings and per-resource policies.
        memory: Memory tier to use. Built from *config* when omitted and the
            memory tier is enabled.
        persistent: Persistent tier to use. Built from *config* (opening
            ``config.database_path``) when omitted and the persistent tier is
            enabled.
        clock: Returns the current time in epoch seconds; shared with the
            stores the coordinator builds.

    Example::

        coordinator = CacheCoordinator(get_preset("memory_only"))
        target = CacheTarget(CacheKey("/colors", {"page": 1}))
        coordinator.set(target, payload)
        coordinator.get(target)
    """

    def __init__(
        self,
        config: Optional[CacheConfig] = None,
        *,
        memory: Optional[MemoryStore[CacheKey, Any]] = None,
        persistent: Optional[EntityStore] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._config = config if config is not None else CacheConfig()
        self._clock = clock
        if memory is None and self._config.enabled and self._config.memory_enabled:
            memory = MemoryStore(max_size=self._config.max_memory_entries, clock=clock)
        if persistent is None and self._config.enabled and self._config.persistent_enabled:
            persistent = EntityStore(self._config.database_path, clock=clock)
        self._memory = memory
        self._persistent = persistent
        self._scheduler: Optional[MaintenanceScheduler] = None
        self._write_lock = threading.RLock()

    @property
    def config(self) -> CacheConfig:
        return self._config

    @property
    def memory(self) -> Optional[MemoryStore[CacheKey, Any]]:
        return self._memory

    @property
    def persistent(self) -> Optional[EntityStore]:
        return self._persistent

    @property
    def enabled(self) -> bool:
        return self._config.enabled

    def policy_for(self, resource: Optional[str]) -> ResourcePolicy:
        """Effective policy for *resource* (see :meth:`CacheConfig.policy_for`)."""
        return self._config.policy_for(resource)

    def _memory_active(self, target: Optional[CacheTarget] = None) -> bool:
        return (
            self._memory is not None
            and self._config.memory_enabled
            and (target is None or target.use_memory)
        )

    def _persistent_active(self, target: CacheTarget) -> bool:
        return (
            self._persistent is not None
            and self._config.persistent_enabled
            and target.is_entity
        )

    # ------------------------------------------------------------------ #
    # Reads
    # ------------------------------------------------------------------ #

    def lookup(self, target: CacheTarget) -> Any:
        """Return the live value for *target* from the fastest tier holding it.

        Raises:
            RecordNotFoundError: Neither tier holds a record, or caching is
                disabled for the resource.
            CacheExpiredError: A tier held a stale record; it has been
                removed and its value is on ``stale_value``.
            DeserializationError: The persistent record is corrupt.
            StoreUnavailableError: The persistent tier is unavailable.
        """
        policy = self.policy_for(target.policy_name)
        if not policy.enabled:
            raise RecordNotFoundError(f"Caching is disabled for {target.policy_name}")

        stale: Optional[CacheExpiredError] = None
        if self._memory_active(target):
            try:
                value = self._memory.lookup(target.key)
            except RecordNotFoundError:
                pass
            except CacheExpiredError as exc:
                stale = exc
            else:
                logger.debug("Memory cache hit: %s", target.key)
                return value

        if self._persistent_active(target):
            try:
                value = self._persistent.lookup(target.entity_type, target.primary_key)
            except RecordNotFoundError:
                pass
            except CacheExpiredError as exc:
                stale = stale or exc
            else:
                logger.debug("Persistent cache hit: %s", target.key)
                if self._config.warm_memory_on_persistent_hit and self._memory_active(target):
                    self._memory.set(target.key, value, policy.expiration)
                return value

        if stale is not None:
            logger.debug("Cache entry expired: %s", target.key)
            raise stale
        logger.debug("Cache miss: %s", target.key)
        raise RecordNotFoundError(f"No cached value for {target.key}")

    def get(self, target: CacheTarget) -> Any:
        """Return the live value for *target*, or ``None`` if absent or expired."""
        try:
            return self.lookup(target)
        except (RecordNotFoundError, CacheExpiredError):
            return None

    def lookup_stale(self, target: CacheTarget) -> Any:
        """Return the last known value for *target* ignoring freshness, or ``None``.

        Nothing is promoted, purged or deleted by this read.
        """
        if self._memory_active(target):
            value = self._memory.peek(target.key, include_expired=True)
            if value is not None:
                return value
        if self._persistent_active(target):
            return self._persistent.retrieve(
                target.entity_type, target.primary_key, include_expired=True
            )
        return None

    def get_entity(
        self,
        entity_type: type[T],
        primary_key: str,
        resource: Optional[str] = None,
    ) -> Optional[T]:
        """Return a cached entity by collection and primary key, or ``None``."""
        return self.get(CacheTarget.for_entity(entity_type, primary_key, resource))

    # ------------------------------------------------------------------ #
    # Writes
    # ------------------------------------------------------------------ #

    def set(
        self,
        target: CacheTarget,
        value: Any,
        expiration: Optional[Expiration] = None,
    ) -> bool:
        """Write *value* into every enabled tier for *target*.

        Args:
            target: Where the value lives.
            value: The value. Entity targets require an instance of
                ``target.entity_type``.
            expiration: Overrides the resource policy's expiration in both
                tiers.

        Returns:
            False if caching is disabled for the resource, else True.

        Raises:
            SerializationError: The value could not be persisted; no tier was
                written.
            StoreUnavailableError: The persistent tier is unavailable.
        """
        policy = self.policy_for(target.policy_name)
        if not policy.enabled:
            return False

        if self._persistent_active(target) and not isinstance(value, target.entity_type):
            raise SerializationError(
                f"Expected {target.entity_type.__name__} for {target.key}, "
                f"got {type(value).__name__}"
            )
        # Both tiers hold the same writer's value once the lock is released.
        with self._write_lock:
            if self._persistent_active(target):
                self._persistent.store(
                    value,
                    expiration or policy.persistent_expiration,
                    primary_key=target.primary_key,
                )
            if self._memory_active(target):
                self._memory.set(target.key, value, expiration or policy.expiration)
        return True

    def store_entity(
        self,
        entity: CacheableModel,
        expiration: Optional[Expiration] = None,
        *,
        primary_key: Optional[str] = None,
        resource: Optional[str] = None,
    ) -> bool:
        """Write an entity into every enabled tier under its (or an explicit) primary key."""
        key = primary_key_of(entity, primary_key)
        return self.set(CacheTarget.for_entity(type(entity), key, resource), entity, expiration)

    def remove(self, target: CacheTarget) -> None:
        """Remove *target* from every tier."""
        with self._write_lock:
            if self._memory is not None:
                self._memory.remove(target.key)
            if self._persistent is not None and target.is_entity:
                self._persistent.remove(target.entity_type, target.primary_key)

    def remove_entity(self, entity_type: type[CacheableModel], primary_key: str) -> None:
        self.remove(CacheTarget.for_entity(entity_type, primary_key))

    def clear_memory(self) -> None:
        if self._memory is not None:
            self._memory.clear()

    def clear_persistent(self) -> None:
        if self._persistent is not None:
            self._persistent.clear()

    def clear(self) -> None:
        """Empty both tiers."""
        self.clear_memory()
        self.clear_persistent()

    def clear_expired(self) -> int:
        """Sweep expired persistent records. Returns the number removed."""
        if self._persistent is None:
            return 0
        return self._persistent.clear_expired()

    # ------------------------------------------------------------------ #
    # Introspection and lifecycle
    # ------------------------------------------------------------------ #

    def statistics(self) -> CacheStatistics:
        """Counts for both tiers. Reading them does not sweep anything."""
        stats = CacheStatistics()
        if self._memory is not None:
            memory = self._memory.stats()
            stats.memory_items = self._memory.count
            stats.memory_capacity = memory["max_size"]
            stats.memory_hits = memory["hits"]
            stats.memory_misses = memory["misses"]
            stats.memory_evictions = memory["evictions"]
        if self._persistent is not None:
            stats.persistent_items = self._persistent.count()
            stats.persistent_expired_items = self._persistent.count_expired()
        return stats

    def start_maintenance(self) -> Optional[MaintenanceScheduler]:
        """Start the background sweep of the persistent tier.

        Returns the running scheduler, or ``None`` when there is no persistent
        tier or maintenance is disabled. Calling it again returns the same
        scheduler.
        """
        from apicache.scheduler import MaintenanceScheduler

        if self._persistent is None or not self._config.maintenance_enabled:
            return None
        if self._scheduler is None:
            self._scheduler = MaintenanceScheduler(
                self._persistent, interval=self._config.maintenance_interval_seconds
            )
        self._scheduler.start()
        return self._scheduler

    def stop_maintenance(self) -> None:
        if self._scheduler is not None:
            self._scheduler.stop()

    def close(self) -> None:
        """Stop maintenance and close the persistent tier."""
        self.stop_maintenance()
        if self._persistent is not None:
            self._persistent.close()

    def __enter__(self) -> CacheCoordinator:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()


# --- Process-wide default instance ---


_default: Optional[CacheCoordinator] = None
_default_lock = threading.Lock()


def get_default_coordinator() -> CacheCoordinator:
    """Return the process-wide coordinator, creating it on first use.

    The instance is built from :func:`~apicache.config.resolve_config` and
    starts its maintenance sweep. It is never closed implicitly; call
    ``close()`` on it at shutdown if needed.
    """
    global _default
    with _default_lock:
        if _default is None:
            from apicache.config import resolve_config

            _default = CacheCoordinator(resolve_config())
            _default.start_maintenance()
        return _default


def set_default_coordinator(coordinator: CacheCoordinator) -> None:
    """Install *coordinator* as the process-wide instance."""
    global _default
    with _default_lock:
        _default = coordinator


def reset_default_coordinator() -> Optional[CacheCoordinator]:
    """Forget the process-wide instance and return it (without closing it)."""
    global _default
    with _default_lock:
        previous, _default = _default, None
        return previous
