"""Tests for the @cached decorator."""

from __future__ import annotations

import asyncio
import inspect

import httpx
import pytest

from apicache.coordinator import CacheCoordinator, set_default_coordinator
from apicache.decorator import cached
from apicache.keys import CacheKey, composite_key
from apicache.models import CacheConfig, Expiration, ResourcePolicy

from entities import Color, PartColor

RESOURCE = "/api/v3/lego/colors/"


# ------------------------------------------------------------------ #
# Sync functions
# ------------------------------------------------------------------ #


class TestSyncDecorator:
    def test_caches_by_arguments(self, coordinator: CacheCoordinator) -> None:
        calls: list[int] = []

        @cached(RESOURCE, coordinator=coordinator)
        def list_colors(page: int = 1, page_size: int = 100) -> dict:
            calls.append(page)
            return {"page": page}

        assert list_colors(1) == {"page": 1}
        assert list_colors(page=1) == {"page": 1}
        assert list_colors(1, 100) == {"page": 1}
        assert list_colors(2) == {"page": 2}
        assert calls == [1, 2]

    def test_keyword_order_does_not_matter(self, coordinator: CacheCoordinator) -> None:
        calls = 0

        @cached(RESOURCE, coordinator=coordinator)
        def search(**filters) -> str:
            nonlocal calls
            calls += 1
            return "ok"

        search(a=1, b=2)
        search(b=2, a=1)
        assert calls == 1
        assert search.cache_target(a=1, b=2).key == CacheKey(RESOURCE, {"a": 1, "b": 2})

    def test_preserves_metadata(self, coordinator: CacheCoordinator) -> None:
        @cached(RESOURCE, coordinator=coordinator)
        def list_colors() -> list:
            """List every colour."""
            return []

        assert list_colors.__name__ == "list_colors"
        assert list_colors.__doc__ == "List every colour."

    def test_default_resource_is_qualified_name(self, coordinator: CacheCoordinator) -> None:
        @cached(coordinator=coordinator)
        def fetch_thing(x: int) -> int:
            return x

        assert fetch_thing.cache_target(1).key.path.endswith("fetch_thing")

    def test_methods_ignore_self(self, coordinator: CacheCoordinator) -> None:
        class Api:
            def __init__(self) -> None:
                self.calls = 0

            @cached(RESOURCE, coordinator=coordinator)
            def colors(self, page: int) -> int:
                self.calls += 1
                return page

        a, b = Api(), Api()
        a.colors(1)
        b.colors(1)
        assert a.calls + b.calls == 1

    def test_custom_key_builder(self, coordinator: CacheCoordinator) -> None:
        calls = 0

        @cached(RESOURCE, coordinator=coordinator, key=lambda page, token: CacheKey(RESOURCE, {"page": page}))
        def list_colors(page: int, token: str) -> int:
            nonlocal calls
            calls += 1
            return page

        list_colors(1, "token-a")
        list_colors(1, "token-b")
        assert calls == 1

    def test_invalidate(self, coordinator: CacheCoordinator) -> None:
        calls = 0

        @cached(RESOURCE, coordinator=coordinator)
        def list_colors(page: int) -> int:
            nonlocal calls
            calls += 1
            return page

        list_colors(1)
        list_colors.invalidate(1)
        list_colors(1)
        assert calls == 2

    def test_non_idempotent(self, coordinator: CacheCoordinator) -> None:
        calls = 0

        @cached(RESOURCE, coordinator=coordinator, idempotent=False)
        def create_set(name: str) -> str:
            nonlocal calls
            calls += 1
            return name

        create_set("x")
        create_set("x")
        assert calls == 2

    def test_expiration_override(self, coordinator: CacheCoordinator, clock) -> None:
        calls = 0

        @cached(RESOURCE, coordinator=coordinator, expiration=Expiration.after(1))
        def list_colors() -> int:
            nonlocal calls
            calls += 1
            return calls

        list_colors()
        clock.advance(1)
        list_colors()
        assert calls == 2

    def test_uses_default_coordinator(self, coordinator: CacheCoordinator) -> None:
        set_default_coordinator(coordinator)
        calls = 0

        @cached(RESOURCE)
        def list_colors() -> str:
            nonlocal calls
            calls += 1
            return "ok"

        list_colors()
        list_colors()
        assert calls == 1
        assert list_colors.fetcher.coordinator is coordinator


# ------------------------------------------------------------------ #
# Entities
# ------------------------------------------------------------------ #


class TestEntityDecorator:
    def test_entity_served_from_persistent_tier(self, coordinator: CacheCoordinator) -> None:
        calls = 0

        @cached(
            "/api/v3/lego/parts/colors/",
            coordinator=coordinator,
            entity_type=PartColor,
            primary_key=lambda part_num, color_id: composite_key(part_num, color_id),
        )
        def part_color(part_num: str, color_id: int) -> PartColor:
            nonlocal calls
            calls += 1
            return PartColor(part_num=part_num, color_id=color_id, num_sets=7)

        part_color("3001", 4)
        coordinator.clear_memory()
        assert part_color("3001", 4).num_sets == 7
        assert calls == 1
        assert coordinator.persistent.retrieve(PartColor, "3001_4") is not None


# ------------------------------------------------------------------ #
# Stale-fallback through the decorator
# ------------------------------------------------------------------ #


class TestDecoratorFallback:
    @pytest.fixture
    def fallback(self, db_path, clock) -> CacheCoordinator:
        config = CacheConfig(
            database_path=str(db_path),
            maintenance_enabled=False,
            resources={
                RESOURCE: ResourcePolicy(expiration=Expiration.after(60), cache_on_error=True)
            },
        )
        coord = CacheCoordinator(config, clock=clock)
        yield coord
        coord.close()

    def test_serves_stale_when_offline(self, fallback: CacheCoordinator, clock) -> None:
        online = True

        @cached(RESOURCE, coordinator=fallback)
        def list_colors() -> list:
            if not online:
                raise httpx.ConnectError("offline")
            return [Color(id=1, name="Blue")]

        list_colors()
        clock.advance(120)
        online = False
        assert list_colors() == [Color(id=1, name="Blue")]

    def test_async_serves_stale_when_offline(self, fallback: CacheCoordinator, clock) -> None:
        online = True

        @cached(RESOURCE, coordinator=fallback)
        async def list_colors() -> list:
            if not online:
                raise httpx.ConnectTimeout("offline")
            return ["Blue"]

        asyncio.run(list_colors())
        clock.advance(120)
        online = False
        assert asyncio.run(list_colors()) == ["Blue"]


# ------------------------------------------------------------------ #
# Async functions
# ------------------------------------------------------------------ #


class TestAsyncDecorator:
    def test_async_function_is_cached(self, coordinator: CacheCoordinator) -> None:
        calls = 0

        @cached(RESOURCE, coordinator=coordinator)
        async def list_colors(page: int) -> int:
            nonlocal calls
            calls += 1
            await asyncio.sleep(0)
            return page

        async def run():
            return [await list_colors(1), await list_colors(1), await list_colors(2)]

        assert asyncio.run(run()) == [1, 1, 2]
        assert calls == 2

    def test_async_wrapper_is_coroutine_function(self, coordinator: CacheCoordinator) -> None:
        @cached(RESOURCE, coordinator=coordinator)
        async def list_colors() -> int:
            return 1

        assert inspect.iscoroutinefunction(list_colors)
