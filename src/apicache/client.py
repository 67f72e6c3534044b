"""HTTP integration: httpx clients whose GET requests go through the cache.

:class:`CachedClient` wraps :class:`httpx.Client` and
:class:`AsyncCachedClient` wraps :class:`httpx.AsyncClient`. Every request
is routed through a :class:`~apicache.decorator.CachedFetcher`:

- **GET** requests are keyed on the URL path, the query parameters and the
  representation headers (``Accept``, ``Accept-Language``). A 2xx response
  is stored in the memory tier as a :class:`~apicache.models.CachedResponse`
  and replayed on later hits.
- **Entity routes** -- a GET whose path matches an :class:`EntityRoute`
  (e.g. ``/api/v3/lego/colors/{id}/``) is a single entity. Its body is
  parsed into the route's entity type and kept in the persistent tier under
  the primary key taken from the path, so it survives restarts.
- **Other methods** are not idempotent and bypass the cache.
- **Errors** -- transport failures become
  :class:`~apicache.exceptions.ConnectionError_` (transient, eligible for
  stale-fallback when the resource policy sets ``cache_on_error``);
  non-2xx responses become :class:`~apicache.exceptions.ResponseError` and
  are never cached.

Every response carries two extensions: ``from_cache`` (bool) and
``cache_status``, one of ``"bypass"``, ``"miss"``, ``"hit"``, ``"stale"``,
``"database-hit"`` or ``"database-stale"``. Responses rebuilt from the
persistent tier also carry an ``X-Cache`` header with the database status.

Both clients must be used as context managers so the underlying transport
is opened and closed properly.

Example::

    routes = [EntityRoute("/api/v3/lego/colors/{id}/", Color)]
    with CachedClient("https://rebrickable.com", coordinator=coordinator,
                      entity_routes=routes) as client:
        colors = client.get("/api/v3/lego/colors/", params={"page": 1}).json()
        red = client.get("/api/v3/lego/colors/4/").json()
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional, Sequence

import httpx
from pydantic import ValidationError

from apicache.coordinator import CacheCoordinator, CacheTarget
from apicache.decorator import CachedFetcher
from apicache.exceptions import ConnectionError_, ResponseError
from apicache.keys import CacheKey, composite_key
from apicache.models import CacheableModel, CachedResponse

logger = logging.getLogger(__name__)

CACHEABLE_METHODS = frozenset({"GET"})

# Headers describing the wire encoding of a body that httpx has already decoded.
_DROPPED_HEADERS = frozenset({"content-encoding", "content-length", "transfer-encoding"})


def _is_path_param(segment: str) -> bool:
    return segment.startswith("{") and segment.endswith("}")


@dataclass(frozen=True)
class EntityRoute:
    """Maps a single-entity GET endpoint onto the persistent tier.

    Args:
        pattern: URL path template; ``{name}`` segments capture path
            parameters, e.g. ``/api/v3/lego/parts/{part_num}/colors/{color_id}/``.
        entity_type: Model the response body is parsed into.
        primary_key: Builds the primary key from the captured parameters
            (passed as keyword arguments). Defaults to
            :func:`~apicache.keys.composite_key` of the captured values in
            path order, so the template above gives ``"3001_4"``.
        resource: Name used for policy lookup. Defaults to *pattern*.
    """

    pattern: str
    entity_type: type[CacheableModel]
    primary_key: Optional[Callable[..., str]] = None
    resource: Optional[str] = None

    def __post_init__(self) -> None:
        if self.primary_key is None and not any(
            _is_path_param(segment) for segment in self.pattern.strip("/").split("/")
        ):
            raise ValueError(
                f"Entity route {self.pattern!r} has no path parameters and no primary_key builder"
            )

    def match(self, path: str) -> Optional[str]:
        """Return the primary key for *path*, or ``None`` if the route does not match."""
        pattern_segments = self.pattern.strip("/").split("/")
        path_segments = path.strip("/").split("/")
        if len(pattern_segments) != len(path_segments):
            return None

        values: dict[str, str] = {}
        for expected, actual in zip(pattern_segments, path_segments):
            if _is_path_param(expected):
                if not actual:
                    return None
                values[expected[1:-1]] = actual
            elif expected != actual:
                return None

        if self.primary_key is not None:
            return self.primary_key(**values)
        return composite_key(*values.values())


def _is_cacheable(request: httpx.Request) -> bool:
    return request.method.upper() in CACHEABLE_METHODS


def _to_cached(response: httpx.Response) -> CachedResponse:
    """Map a response to a :class:`CachedResponse`, raising on non-2xx."""
    if not response.is_success:
        raise ResponseError(
            f"{response.request.method} {response.request.url.path} "
            f"returned HTTP {response.status_code}",
            status_code=response.status_code,
        )
    headers = {
        name: value
        for name, value in response.headers.items()
        if name.lower() not in _DROPPED_HEADERS
    }
    return CachedResponse(
        status_code=response.status_code,
        headers=headers,
        body=response.content,
        created_at=time.time(),
    )


def _to_response(cached: CachedResponse, request: httpx.Request, status: str) -> httpx.Response:
    return httpx.Response(
        status_code=cached.status_code,
        headers=cached.headers,
        content=cached.body,
        request=request,
        extensions={"from_cache": status not in ("bypass", "miss"), "cache_status": status},
    )


def _entity_response(entity: CacheableModel, request: httpx.Request, status: str) -> httpx.Response:
    return httpx.Response(
        status_code=200,
        headers={"Content-Type": "application/json", "X-Cache": status},
        content=entity.model_dump_json().encode("utf-8"),
        request=request,
        extensions={"from_cache": True, "cache_status": status},
    )


class _RequestState:
    """Tracks what happened to one request while the fetcher ran."""

    def __init__(self, request: httpx.Request, route: Optional[EntityRoute]) -> None:
        self.request = request
        self.route = route
        self.attempted = False
        self.network: Optional[CachedResponse] = None

    def result(self, response: httpx.Response) -> Any:
        """Turn a live response into the value to cache (also remembered for replay)."""
        self.network = _to_cached(response)
        if self.route is None:
            return self.network
        try:
            return self.route.entity_type.model_validate_json(self.network.body)
        except (ValidationError, ValueError) as exc:
            logger.warning(
                "Response for %s is not a valid %s, not caching it: %s",
                self.request.url.path,
                self.route.entity_type.__name__,
                exc,
            )
            return None

    def response(self, value: Any, cacheable: bool) -> httpx.Response:
        if self.network is not None:
            return _to_response(self.network, self.request, "miss" if cacheable else "bypass")
        served_stale = self.attempted
        if self.route is not None:
            status = "database-stale" if served_stale else "database-hit"
            return _entity_response(value, self.request, status)
        return _to_response(value, self.request, "stale" if served_stale else "hit")


class _RoutingMixin:
    """Target selection shared by the sync and async clients."""

    _fetcher: CachedFetcher
    _entity_routes: tuple[EntityRoute, ...]

    def _route_for(self, request: httpx.Request) -> Optional[tuple[EntityRoute, str]]:
        if not self._entity_routes or not _is_cacheable(request):
            return None
        coordinator = self._fetcher.coordinator
        if coordinator.persistent is None or not coordinator.config.persistent_enabled:
            return None
        path = request.url.path
        for route in self._entity_routes:
            primary_key = route.match(path)
            if primary_key:
                return route, primary_key
        return None

    def _prepare(self, request: httpx.Request) -> tuple[CacheTarget, _RequestState]:
        key = CacheKey.from_url(str(request.url), headers=request.headers)
        matched = self._route_for(request)
        if matched is None:
            return CacheTarget(key=key, resource=request.url.path), _RequestState(request, None)
        route, primary_key = matched
        target = CacheTarget(
            key=key,
            resource=route.resource or route.pattern,
            entity_type=route.entity_type,
            primary_key=primary_key,
            use_memory=False,
        )
        return target, _RequestState(request, route)


class CachedClient(_RoutingMixin):
    """Synchronous HTTP client with a cache in front of GET requests.

    Args:
        base_url: Prefix for relative request paths.
        coordinator: Coordinator holding the cache. ``None`` uses the
            process-wide default.
        headers: Headers sent with every request.
        timeout: Request timeout in seconds.
        transport: Custom httpx transport (``httpx.MockTransport`` in tests).
        fetcher: Fetcher to route requests through; built from
            *coordinator* when omitted.
        entity_routes: Single-entity endpoints cached in the persistent tier.
            Ignored when the coordinator has no persistent tier.
    """

    def __init__(
        self,
        base_url: str = "",
        *,
        coordinator: Optional[CacheCoordinator] = None,
        headers: Optional[dict[str, str]] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.BaseTransport] = None,
        fetcher: Optional[CachedFetcher] = None,
        entity_routes: Sequence[EntityRoute] = (),
    ) -> None:
        self._base_url = base_url
        self._headers = {"Accept": "application/json", **(headers or {})}
        self._timeout = timeout
        self._transport = transport
        self._fetcher = fetcher or CachedFetcher(coordinator)
        self._entity_routes = tuple(entity_routes)
        self._client: Optional[httpx.Client] = None

    @property
    def fetcher(self) -> CachedFetcher:
        return self._fetcher

    # ------------------------------------------------------------------ #
    # Context manager
    # ------------------------------------------------------------------ #

    def __enter__(self) -> CachedClient:
        self._client = httpx.Client(
            base_url=self._base_url,
            headers=self._headers,
            timeout=self._timeout,
            transport=self._transport,
            follow_redirects=True,
        )
        return self

    def __exit__(self, *args: object) -> None:
        if self._client:
            self._client.close()
            self._client = None

    # ------------------------------------------------------------------ #
    # Public request methods
    # ------------------------------------------------------------------ #

    def request(
        self,
        method: str,
        path: str,
        params: Optional[dict[str, Any]] = None,
        headers: Optional[dict[str, str]] = None,
        **kwargs: Any,
    ) -> httpx.Response:
        """Send a request, answering GETs from the cache when possible.

        Args:
            method: HTTP method.
            path: URL path (appended to ``base_url``).
            params: Query parameters.
            headers: Extra request headers.
            **kwargs: Forwarded to :meth:`httpx.Client.build_request`
                (``json``, ``content``, ``data`` ...).

        Raises:
            ResponseError: On a non-2xx response.
            ConnectionError_: On network or timeout errors, unless a stale
                value was served instead.
        """
        assert self._client is not None, "Client not initialised -- use as context manager"
        request = self._client.build_request(method, path, params=params, headers=headers, **kwargs)
        target, state = self._prepare(request)

        def send() -> Any:
            state.attempted = True
            try:
                response = self._client.send(request)
            except httpx.TransportError as exc:
                raise ConnectionError_(f"Request to {request.url} failed: {exc}") from exc
            return state.result(response)

        cacheable = _is_cacheable(request)
        value = self._fetcher.fetch(target, send, idempotent=cacheable)
        return state.response(value, cacheable)

    def get(self, path: str, **kwargs: Any) -> httpx.Response:
        """Send a GET request. See :meth:`request`."""
        return self.request("GET", path, **kwargs)

    def post(self, path: str, **kwargs: Any) -> httpx.Response:
        return self.request("POST", path, **kwargs)

    def put(self, path: str, **kwargs: Any) -> httpx.Response:
        return self.request("PUT", path, **kwargs)

    def patch(self, path: str, **kwargs: Any) -> httpx.Response:
        return self.request("PATCH", path, **kwargs)

    def delete(self, path: str, **kwargs: Any) -> httpx.Response:
        return self.request("DELETE", path, **kwargs)


class AsyncCachedClient(_RoutingMixin):
    """Asynchronous counterpart of :class:`CachedClient`.

    Takes the same arguments (with an ``httpx.AsyncBaseTransport``) and must
    be used as an async context manager.

    Example::

        async with AsyncCachedClient(base_url, coordinator=coordinator) as client:
            response = await client.get("/api/v3/lego/colors/")
    """

    def __init__(
        self,
        base_url: str = "",
        *,
        coordinator: Optional[CacheCoordinator] = None,
        headers: Optional[dict[str, str]] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        fetcher: Optional[CachedFetcher] = None,
        entity_routes: Sequence[EntityRoute] = (),
    ) -> None:
        self._base_url = base_url
        self._headers = {"Accept": "application/json", **(headers or {})}
        self._timeout = timeout
        self._transport = transport
        self._fetcher = fetcher or CachedFetcher(coordinator)
        self._entity_routes = tuple(entity_routes)
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def fetcher(self) -> CachedFetcher:
        return self._fetcher

    # ------------------------------------------------------------------ #
    # Async context manager
    # ------------------------------------------------------------------ #

    async def __aenter__(self) -> AsyncCachedClient:
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            headers=self._headers,
            timeout=self._timeout,
            transport=self._transport,
            follow_redirects=True,
        )
        return self

    async def __aexit__(self, *args: object) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    # ------------------------------------------------------------------ #
    # Public request methods
    # ------------------------------------------------------------------ #

    async def request(
        self,
        method: str,
        path: str,
        params: Optional[dict[str, Any]] = None,
        headers: Optional[dict[str, str]] = None,
        **kwargs: Any,
    ) -> httpx.Response:
        """Send a request, answering GETs from the cache when possible.

        See :meth:`CachedClient.request`.
        """
        assert self._client is not None, "Client not initialised -- use as async context manager"
        request = self._client.build_request(method, path, params=params, headers=headers, **kwargs)
        target, state = self._prepare(request)

        async def send() -> Any:
            state.attempted = True
            try:
                response = await self._client.send(request)
            except httpx.TransportError as exc:
                raise ConnectionError_(f"Request to {request.url} failed: {exc}") from exc
            return state.result(response)

        cacheable = _is_cacheable(request)
        value = await self._fetcher.afetch(target, send, idempotent=cacheable)
        return state.response(value, cacheable)

    async def get(self, path: str, **kwargs: Any) -> httpx.Response:
        return await self.request("GET", path, **kwargs)

    async def post(self, path: str, **kwargs: Any) -> httpx.Response:
        return await self.request("POST", path, **kwargs)

    async def put(self, path: str, **kwargs: Any) -> httpx.Response:
        return await self.request("PUT", path, **kwargs)

    async def patch(self, path: str, **kwargs: Any) -> httpx.Response:
        return await self.request("PATCH", path, **kwargs)

    async def delete(self, path: str, **kwargs: Any) -> httpx.Response:
        return await self.request("DELETE", path, **kwargs)
