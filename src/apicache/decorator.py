"""Cache-first wrapping of fetch operations.

:class:`CachedFetcher` wraps a caller supplied "perform the real fetch"
callable with cache semantics, and :func:`cached` turns that into a
decorator for plain and ``async`` functions::

    @cached("/api/v3/lego/colors/", coordinator=coordinator)
    def list_colors(page: int = 1) -> list[dict]:
        return client.get("/api/v3/lego/colors/", params={"page": page}).json()

For every call:

1. A :class:`~apicache.keys.CacheKey` is built from the resource path and
   the call's effective parameters.
2. When caching is disabled (globally or for the resource) or the operation
   is not idempotent, the fetch runs and its result is returned untouched.
3. Otherwise a live cached value is returned without running the fetch.
4. On a miss the fetch runs. A successful result is written to the cache.
   A failure is re-raised, unless the resource allows ``cache_on_error``
   and the failure is transient (see :func:`is_transient_error`), in which
   case the last known value is served if there is one.

Cache-layer errors never mask the fetch: read errors are logged and the
fetch runs, write errors are logged and the fetched value is returned, and
when both the fetch and the stale read fail the fetch's error propagates.
``None`` results are never cached.
"""

from __future__ import annotations

import asyncio
import dataclasses
import functools
import inspect
import logging
from typing import Any, Awaitable, Callable, Optional, TypeVar

import httpx

from apicache.coordinator import CacheCoordinator, CacheTarget, get_default_coordinator
from apicache.exceptions import (
    ApiCacheError,
    CacheExpiredError,
    ConnectionError_,
    RecordNotFoundError,
)
from apicache.keys import CacheKey
from apicache.models import CacheableModel, Expiration, ResourcePolicy

logger = logging.getLogger(__name__)

R = TypeVar("R")

_MISSING: Any = object()

TRANSIENT_ERRORS: tuple[type[BaseException], ...] = (
    httpx.TransportError,
    ConnectionError_,
    ConnectionError,
    TimeoutError,
    asyncio.TimeoutError,
)
"""Failures treated as transient connectivity problems, eligible for stale-fallback."""


def is_transient_error(
    exc: BaseException,
    transient_errors: tuple[type[BaseException], ...] = TRANSIENT_ERRORS,
) -> bool:
    """Return True for connectivity failures, False for application-level errors.

    HTTP status errors (401, 404, 500, ...) are application-level: the server
    answered, so serving stale data would hide a real response.
    """
    return isinstance(exc, transient_errors)


class CachedFetcher:
    """Runs fetch callables through a :class:`~apicache.coordinator.CacheCoordinator`.

    Args:
        coordinator: Coordinator to use. ``None`` resolves
            :func:`~apicache.coordinator.get_default_coordinator` on first
            use.
        transient_errors: Exception types that allow stale-fallback.
    """

    def __init__(
        self,
        coordinator: Optional[CacheCoordinator] = None,
        transient_errors: tuple[type[BaseException], ...] = TRANSIENT_ERRORS,
    ) -> None:
        self._coordinator = coordinator
        self._transient_errors = transient_errors

    @property
    def coordinator(self) -> CacheCoordinator:
        if self._coordinator is None:
            self._coordinator = get_default_coordinator()
        return self._coordinator

    # ------------------------------------------------------------------ #
    # Synchronous
    # ------------------------------------------------------------------ #

    def fetch(
        self,
        target: CacheTarget,
        fetch: Callable[[], R],
        *,
        idempotent: bool = True,
        expiration: Optional[Expiration] = None,
    ) -> R:
        """Return a cached value for *target*, or run *fetch* and cache its result.

        Args:
            target: Where the value lives in the cache.
            fetch: Performs the real network operation.
            idempotent: Non-idempotent operations bypass the cache entirely.
            expiration: Overrides the resource policy's expiration on write.
        """
        coordinator = self.coordinator
        policy = coordinator.policy_for(target.policy_name)
        if not idempotent or not policy.enabled:
            return fetch()

        stale = _MISSING
        try:
            return coordinator.lookup(target)
        except RecordNotFoundError:
            pass
        except CacheExpiredError as exc:
            stale = exc.stale_value
        except ApiCacheError as exc:
            logger.warning("Cache read failed for %s, fetching fresh: %s", target.key, exc)

        try:
            result = fetch()
        except Exception as exc:
            fallback = self._fallback(target, policy, exc, stale, coordinator.lookup_stale)
            if fallback is _MISSING:
                raise
            return fallback

        self._write(target, result, expiration, coordinator.set)
        return result

    # ------------------------------------------------------------------ #
    # Asynchronous
    # ------------------------------------------------------------------ #

    async def afetch(
        self,
        target: CacheTarget,
        fetch: Callable[[], Awaitable[R]],
        *,
        idempotent: bool = True,
        expiration: Optional[Expiration] = None,
    ) -> R:
        """Async counterpart of :meth:`fetch`.

        Persistent tier access runs in a worker thread so the event loop is
        never blocked on disk I/O. A cancelled fetch writes nothing.
        """
        coordinator = self.coordinator
        policy = coordinator.policy_for(target.policy_name)
        if not idempotent or not policy.enabled:
            return await fetch()

        stale = _MISSING
        try:
            return await self._offload(target, coordinator.lookup, target)
        except RecordNotFoundError:
            pass
        except CacheExpiredError as exc:
            stale = exc.stale_value
        except ApiCacheError as exc:
            logger.warning("Cache read failed for %s, fetching fresh: %s", target.key, exc)

        try:
            result = await fetch()
        except Exception as exc:
            if stale is _MISSING and policy.cache_on_error and self.is_transient(exc):
                try:
                    stale = await self._offload(target, coordinator.lookup_stale, target)
                except ApiCacheError as cache_exc:
                    logger.warning("Stale cache read failed for %s: %s", target.key, cache_exc)
            fallback = self._fallback(target, policy, exc, stale, None)
            if fallback is _MISSING:
                raise
            return fallback

        await self._offload(target, self._write, target, result, expiration, coordinator.set)
        return result

    @staticmethod
    async def _offload(target: CacheTarget, func: Callable[..., Any], *args: Any) -> Any:
        if target.is_entity or target.entity_type is not None:
            return await asyncio.to_thread(func, *args)
        return func(*args)

    # ------------------------------------------------------------------ #
    # Helpers
    # ------------------------------------------------------------------ #

    def is_transient(self, exc: BaseException) -> bool:
        return is_transient_error(exc, self._transient_errors)

    def _fallback(
        self,
        target: CacheTarget,
        policy: ResourcePolicy,
        exc: Exception,
        stale: Any,
        read_stale: Optional[Callable[[CacheTarget], Any]],
    ) -> Any:
        if not policy.cache_on_error or not self.is_transient(exc):
            return _MISSING
        if stale is _MISSING and read_stale is not None:
            try:
                stale = read_stale(target)
            except ApiCacheError as cache_exc:
                logger.warning("Stale cache read failed for %s: %s", target.key, cache_exc)
                return _MISSING
        if stale is _MISSING or stale is None:
            return _MISSING
        logger.warning("Serving stale cache entry for %s after fetch failure: %s", target.key, exc)
        return stale

    @staticmethod
    def _write(
        target: CacheTarget,
        result: Any,
        expiration: Optional[Expiration],
        write: Callable[[CacheTarget, Any, Optional[Expiration]], bool],
    ) -> None:
        if result is None:
            return
        try:
            if (
                target.entity_type is not None
                and not target.primary_key
                and isinstance(result, CacheableModel)
            ):
                target = dataclasses.replace(target, primary_key=result.primary_key)
            write(target, result, expiration)
        except ApiCacheError as exc:
            logger.warning("Could not cache result for %s: %s", target.key, exc)


# --- Decorator ---


def _key_parameters(signature: inspect.Signature, args: tuple, kwargs: dict) -> dict[str, Any]:
    bound = signature.bind(*args, **kwargs)
    bound.apply_defaults()
    parameters: dict[str, Any] = {}
    for name, value in bound.arguments.items():
        kind = signature.parameters[name].kind
        if name in ("self", "cls"):
            continue
        if kind is inspect.Parameter.VAR_KEYWORD:
            parameters.update(value)
        elif kind is inspect.Parameter.VAR_POSITIONAL:
            parameters.update({f"{name}[{i}]": item for i, item in enumerate(value)})
        else:
            parameters[name] = value
    return parameters


def cached(
    resource: Optional[str] = None,
    *,
    coordinator: Optional[CacheCoordinator] = None,
    key: Optional[Callable[..., CacheKey]] = None,
    entity_type: Optional[type[CacheableModel]] = None,
    primary_key: Optional[Callable[..., str]] = None,
    idempotent: bool = True,
    expiration: Optional[Expiration] = None,
    transient_errors: tuple[type[BaseException], ...] = TRANSIENT_ERRORS,
) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """Decorate a fetch function with cache-first semantics.

    Args:
        resource: Resource path used for the cache key and policy lookup.
            Defaults to the function's qualified name.
        coordinator: Coordinator to use; the process-wide default when
            omitted.
        key: Builds the :class:`~apicache.keys.CacheKey` from the call's
            arguments. By default the key is the resource plus every bound
            argument (``self``/``cls`` excluded).
        entity_type: Marks results as entities of this type so they are also
            written to the persistent tier.
        primary_key: Computes the (possibly composite) primary key from the
            call's arguments, which lets the persistent tier answer reads
            before the fetch runs.
        idempotent: ``False`` bypasses the cache for every call.
        expiration: Overrides the resource policy's expiration.
        transient_errors: Exception types that allow stale-fallback.

    The wrapper exposes ``cache_target(*args, **kwargs)`` and
    ``invalidate(*args, **kwargs)`` for the target a call maps to.
    """

    def decorator(func: Callable[..., Any]) -> Callable[..., Any]:
        fetcher = CachedFetcher(coordinator, transient_errors)
        signature = inspect.signature(func)
        name = resource or f"{func.__module__}.{func.__qualname__}"

        def cache_target(*args: Any, **kwargs: Any) -> CacheTarget:
            if key is not None:
                cache_key = key(*args, **kwargs)
            else:
                cache_key = CacheKey(name, _key_parameters(signature, args, kwargs))
            return CacheTarget(
                key=cache_key,
                resource=name,
                entity_type=entity_type,
                primary_key=primary_key(*args, **kwargs) if primary_key is not None else None,
            )

        def invalidate(*args: Any, **kwargs: Any) -> None:
            fetcher.coordinator.remove(cache_target(*args, **kwargs))

        if inspect.iscoroutinefunction(func):

            @functools.wraps(func)
            async def async_wrapper(*args: Any, **kwargs: Any) -> Any:
                return await fetcher.afetch(
                    cache_target(*args, **kwargs),
                    lambda: func(*args, **kwargs),
                    idempotent=idempotent,
                    expiration=expiration,
                )

            wrapper: Any = async_wrapper
        else:

            @functools.wraps(func)
            def sync_wrapper(*args: Any, **kwargs: Any) -> Any:
                return fetcher.fetch(
                    cache_target(*args, **kwargs),
                    lambda: func(*args, **kwargs),
                    idempotent=idempotent,
                    expiration=expiration,
                )

            wrapper = sync_wrapper

        wrapper.cache_target = cache_target
        wrapper.invalidate = invalidate
        wrapper.fetcher = fetcher
        return wrapper

    return decorator
