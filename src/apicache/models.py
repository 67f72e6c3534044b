"""Canonical Pydantic models shared across all apicache modules.

This is the single source of truth for data shapes in the project. The
models fall into three groups:

**Expiration** -- :class:`ExpirationKind` and :class:`Expiration`, the closed
``never`` / ``after`` / ``at`` variant deciding when a record goes stale.

**Configuration models** -- serialised as JSON or YAML by
:mod:`apicache.config`: :class:`ResourcePolicy` and :class:`CacheConfig`.

**Cached values** -- :class:`CacheableModel` (the entity identity contract
for the persistent tier), :class:`CachedResponse` (what the HTTP
integration keeps in the memory tier) and :class:`CacheStatistics`.

All models use Pydantic v2. Expirations are frozen so they can be shared
between policies and used as dictionary keys.
"""

from __future__ import annotations

import enum
from datetime import datetime, timezone
from typing import Any, ClassVar, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator

from apicache.exceptions import InvalidKeyError


# --- Expiration ---


class ExpirationKind(str, enum.Enum):
    """The three shapes an :class:`Expiration` can take."""

    NEVER = "never"
    AFTER = "after"
    AT = "at"


class Expiration(BaseModel):
    """When a cached record becomes stale.

    Build instances with the :meth:`never`, :meth:`after` and :meth:`at`
    constructors. An expiration is resolved to an absolute instant once, when
    the record is written; ``after`` durations of zero or less expire
    immediately.

    Configuration files may use shorthands, all of which validate to the same
    model::

        "never"                      -> Expiration.never()
        300                          -> Expiration.after(300)
        "2030-01-01T00:00:00+00:00"  -> Expiration.at(datetime(2030, 1, 1, tzinfo=utc))
        {"kind": "after", "seconds": 60}
    """

    model_config = ConfigDict(frozen=True)

    kind: ExpirationKind = ExpirationKind.NEVER
    seconds: Optional[float] = Field(
        default=None, description="Time to live for 'after' expirations"
    )
    instant: Optional[datetime] = Field(
        default=None, description="Absolute expiry time for 'at' expirations"
    )

    @model_validator(mode="before")
    @classmethod
    def _expand_shorthand(cls, data: Any) -> Any:
        if isinstance(data, bool):
            raise ValueError("expiration cannot be a boolean")
        if isinstance(data, (int, float)):
            return {"kind": ExpirationKind.AFTER, "seconds": data}
        if isinstance(data, datetime):
            return {"kind": ExpirationKind.AT, "instant": data}
        if isinstance(data, str):
            if data.strip().lower() == ExpirationKind.NEVER.value:
                return {"kind": ExpirationKind.NEVER}
            try:
                return {"kind": ExpirationKind.AFTER, "seconds": float(data)}
            except ValueError:
                return {"kind": ExpirationKind.AT, "instant": data}
        return data

    @model_validator(mode="after")
    def _check_variant(self) -> Expiration:
        if self.kind is ExpirationKind.AFTER and self.seconds is None:
            raise ValueError("'after' expiration requires 'seconds'")
        if self.kind is ExpirationKind.AT and self.instant is None:
            raise ValueError("'at' expiration requires 'instant'")
        return self

    @classmethod
    def never(cls) -> Expiration:
        """A record that only leaves the cache by removal, clearing or eviction."""
        return cls(kind=ExpirationKind.NEVER)

    @classmethod
    def after(cls, seconds: float) -> Expiration:
        """A record that goes stale *seconds* after it is written."""
        return cls(kind=ExpirationKind.AFTER, seconds=seconds)

    @classmethod
    def at(cls, instant: Union[datetime, float]) -> Expiration:
        """A record that goes stale at a fixed point in time.

        Args:
            instant: A :class:`~datetime.datetime` or epoch seconds. Naive
                datetimes follow the usual Python rule and are read as local
                time.
        """
        if not isinstance(instant, datetime):
            instant = datetime.fromtimestamp(float(instant), tz=timezone.utc)
        return cls(kind=ExpirationKind.AT, instant=instant)

    def resolve(self, now: float) -> Optional[float]:
        """Return the absolute expiry instant (epoch seconds) for a record written at *now*.

        ``None`` means the record never expires.
        """
        if self.kind is ExpirationKind.NEVER:
            return None
        if self.kind is ExpirationKind.AFTER:
            return now + float(self.seconds or 0.0)
        return self.instant.timestamp()

    def is_expired(self, now: float, created_at: Optional[float] = None) -> bool:
        """Return True if a record written at *created_at* is stale at *now*."""
        expires_at = self.resolve(now if created_at is None else created_at)
        return expires_at is not None and now >= expires_at

    def __str__(self) -> str:
        if self.kind is ExpirationKind.NEVER:
            return "never"
        if self.kind is ExpirationKind.AFTER:
            return f"after {self.seconds:g}s"
        return f"at {self.instant.isoformat()}"


# --- Configuration ---


class ResourcePolicy(BaseModel):
    """Caching rules for one resource (an endpoint path or entity collection).

    ``None`` expirations inherit the store-wide defaults of
    :class:`CacheConfig` when resolved by :meth:`CacheConfig.policy_for`.
    """

    enabled: bool = Field(default=True, description="Cache this resource")
    expiration: Optional[Expiration] = Field(
        default=None, description="Memory tier expiration"
    )
    persistent_expiration: Optional[Expiration] = Field(
        default=None, description="Persistent tier expiration"
    )
    cache_on_error: bool = Field(
        default=False,
        description="Serve the last known value when a fetch fails transiently",
    )


class CacheConfig(BaseModel):
    """Store-wide cache settings plus per-resource overrides.

    Loaded and saved by :func:`~apicache.config.load_config` and
    :func:`~apicache.config.save_config`; named presets live in
    :data:`apicache.config.PRESETS`.

    Example::

        CacheConfig(
            default_expiration=Expiration.after(600),
            max_memory_entries=200,
            resources={
                "/api/v3/lego/colors/": ResourcePolicy(
                    expiration=Expiration.after(3600), cache_on_error=True
                ),
            },
        )
    """

    enabled: bool = Field(default=True, description="Master switch for all caching")
    default_expiration: Expiration = Field(
        default_factory=lambda: Expiration.after(300),
        description="Memory tier expiration for resources without a policy",
    )
    max_memory_entries: int = Field(
        default=100, ge=1, description="Memory tier capacity before LRU eviction"
    )
    memory_enabled: bool = Field(default=True, description="Use the memory tier")
    persistent_enabled: bool = Field(
        default=True, description="Use the persistent tier for entities"
    )
    persistent_default_expiration: Expiration = Field(
        default_factory=lambda: Expiration.after(86400),
        description="Persistent tier expiration for resources without a policy",
    )
    database_path: Optional[str] = Field(
        default=None,
        description="SQLite file for the persistent tier (default: XDG cache dir)",
    )
    warm_memory_on_persistent_hit: bool = Field(
        default=False,
        description="Copy persistent tier hits into the memory tier",
    )
    maintenance_enabled: bool = Field(
        default=True, description="Run the background expired-record sweep"
    )
    maintenance_interval_seconds: float = Field(
        default=3600.0, gt=0, description="Seconds between maintenance sweeps"
    )
    resources: dict[str, ResourcePolicy] = Field(default_factory=dict)

    def policy_for(self, resource: Optional[str]) -> ResourcePolicy:
        """Resolve the effective policy for *resource*.

        An explicit entry in :attr:`resources` overrides the store-wide
        defaults; unknown resources inherit them. The master :attr:`enabled`
        switch always wins.
        """
        explicit = self.resources.get(resource) if resource is not None else None
        if explicit is None:
            return ResourcePolicy(
                enabled=self.enabled,
                expiration=self.default_expiration,
                persistent_expiration=self.persistent_default_expiration,
            )
        return ResourcePolicy(
            enabled=self.enabled and explicit.enabled,
            expiration=explicit.expiration or self.default_expiration,
            persistent_expiration=(
                explicit.persistent_expiration or self.persistent_default_expiration
            ),
            cache_on_error=explicit.cache_on_error,
        )


# --- Cached values ---


class CacheableModel(BaseModel):
    """Base class for entities eligible for the persistent tier.

    Subclasses declare a stable :attr:`collection_name` and expose a
    deterministic, non-empty :attr:`primary_key`. When an entity is only
    unique together with a second identifier (a part in a given colour, for
    instance), build the key with :func:`apicache.keys.composite_key` and pass
    it explicitly to :meth:`~apicache.persistent.EntityStore.store`.

    Example::

        class Color(CacheableModel):
            collection_name: ClassVar[str] = "colors"

            id: int
            name: str

            @property
            def primary_key(self) -> str:
                return str(self.id)
    """

    collection_name: ClassVar[str] = ""

    @property
    def primary_key(self) -> str:
        raise NotImplementedError(
            f"{type(self).__name__} must define a 'primary_key' property"
        )


def collection_of(entity_type: type[CacheableModel]) -> str:
    """Return the collection name of *entity_type*, validating it."""
    name = getattr(entity_type, "collection_name", "")
    if not isinstance(name, str) or not name:
        raise InvalidKeyError(
            f"{getattr(entity_type, '__name__', entity_type)!s} has no collection_name"
        )
    return name


def primary_key_of(entity: CacheableModel, override: Optional[str] = None) -> str:
    """Return the primary key to store *entity* under, validating it.

    Args:
        entity: The entity being cached.
        override: An explicit (usually composite) key that replaces the
            entity's own identity.
    """
    key = override if override is not None else entity.primary_key
    if not isinstance(key, str) or not key:
        raise InvalidKeyError(
            f"{type(entity).__name__} produced an empty primary key"
        )
    return key


class CachedResponse(BaseModel):
    """A successful HTTP response as kept in the memory tier."""

    status_code: int
    headers: dict[str, str] = Field(default_factory=dict)
    body: bytes = b""
    created_at: float = Field(description="Epoch seconds when the response was cached")


class CacheStatistics(BaseModel):
    """A point-in-time view of both tiers, produced by the coordinator."""

    memory_items: int = 0
    memory_capacity: int = 0
    memory_hits: int = 0
    memory_misses: int = 0
    memory_evictions: int = 0
    persistent_items: int = 0
    persistent_expired_items: int = Field(
        default=0, description="Persisted records past expiry awaiting a sweep"
    )

    @property
    def total_items(self) -> int:
        return self.memory_items + self.persistent_items
