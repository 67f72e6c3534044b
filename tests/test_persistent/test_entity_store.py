"""Tests for the SQLite entity store."""

from __future__ import annotations

import sqlite3
import threading
from pathlib import Path

import pytest

from apicache.exceptions import (
    CacheExpiredError,
    DeserializationError,
    InvalidKeyError,
    RecordNotFoundError,
    StoreUnavailableError,
)
from apicache.keys import composite_key
from apicache.models import Expiration
from apicache.persistent import EntityStore

from entities import Color, Minifig, PartColor, Unnamed


# ------------------------------------------------------------------ #
# Store / retrieve
# ------------------------------------------------------------------ #


class TestStoreRetrieve:
    def test_round_trip(self, entity_store: EntityStore) -> None:
        red = Color(id=4, name="Red", rgb="C91A09")
        entity_store.store(red, Expiration.after(3600))
        assert entity_store.retrieve(Color, "4") == red

    def test_missing_returns_none(self, entity_store: EntityStore) -> None:
        assert entity_store.retrieve(Color, "999") is None

    def test_lookup_missing_raises(self, entity_store: EntityStore) -> None:
        with pytest.raises(RecordNotFoundError):
            entity_store.lookup(Color, "999")

    def test_upsert_replaces(self, entity_store: EntityStore) -> None:
        entity_store.store(Color(id=1, name="Blue"))
        entity_store.store(Color(id=1, name="Bright Blue"))
        assert entity_store.retrieve(Color, "1").name == "Bright Blue"
        assert entity_store.count() == 1

    def test_collections_are_separate(self, entity_store: EntityStore) -> None:
        entity_store.store(Color(id=1, name="Blue"))
        entity_store.store(Minifig(set_num="1", name="Pirate"))
        assert entity_store.retrieve(Color, "1").name == "Blue"
        assert entity_store.retrieve(Minifig, "1").name == "Pirate"
        assert entity_store.collections() == {"colors": 1, "minifigs": 1}

    def test_remove(self, entity_store: EntityStore) -> None:
        entity_store.store(Color(id=1, name="Blue"))
        assert entity_store.remove(Color, "1") is True
        assert entity_store.remove(Color, "1") is False
        assert entity_store.retrieve(Color, "1") is None

    def test_survives_reopen(self, db_path: Path, clock) -> None:
        with EntityStore(db_path, clock=clock) as store:
            store.store(Color(id=7, name="Brown"), Expiration.never())
        with EntityStore(db_path, clock=clock) as store:
            assert store.retrieve(Color, "7").name == "Brown"

    def test_in_memory_database(self, clock) -> None:
        with EntityStore(":memory:", clock=clock) as store:
            store.store(Color(id=1, name="Blue"))
            assert store.retrieve(Color, "1").name == "Blue"

    def test_missing_collection_name_rejected(self, entity_store: EntityStore) -> None:
        with pytest.raises(InvalidKeyError):
            entity_store.store(Unnamed(id=1))

    def test_empty_primary_key_rejected(self, entity_store: EntityStore) -> None:
        with pytest.raises(InvalidKeyError):
            entity_store.store(Minifig(set_num="", name="Nobody"))


# ------------------------------------------------------------------ #
# Composite keys
# ------------------------------------------------------------------ #


class TestCompositeKeys:
    def test_same_part_different_colours(self, entity_store: EntityStore) -> None:
        entity_store.store(PartColor(part_num="3001", color_id=4, num_sets=10))
        entity_store.store(PartColor(part_num="3001", color_id=5, num_sets=3))
        assert entity_store.count(PartColor) == 2
        assert entity_store.retrieve(PartColor, "3001_4").num_sets == 10
        assert entity_store.retrieve(PartColor, "3001_5").num_sets == 3

    def test_explicit_primary_key(self, entity_store: EntityStore) -> None:
        color = Color(id=4, name="Red")
        entity_store.store(color, primary_key=composite_key("set-1", 4))
        entity_store.store(color, primary_key=composite_key("set-2", 4))
        assert entity_store.count(Color) == 2
        assert entity_store.retrieve(Color, "set-1_4") == color
        assert entity_store.retrieve(Color, "4") is None


# ------------------------------------------------------------------ #
# Expiration
# ------------------------------------------------------------------ #


class TestExpiration:
    def test_live_until_ttl(self, entity_store: EntityStore, clock) -> None:
        entity_store.store(Color(id=1, name="Blue"), Expiration.after(10))
        clock.advance(9.5)
        assert entity_store.retrieve(Color, "1") is not None
        clock.advance(0.5)
        assert entity_store.retrieve(Color, "1") is None

    def test_timestamps_are_whole_seconds(self, entity_store: EntityStore, db_path: Path, clock) -> None:
        entity_store.store(Color(id=1, name="Blue"), Expiration.after(60))
        entity_store.store(Color(id=2, name="Green"), Expiration.never())
        with sqlite3.connect(db_path) as conn:
            rows = conn.execute(
                "SELECT primary_key, created_at, expires_at FROM entity_cache ORDER BY primary_key"
            ).fetchall()
        assert rows == [
            ("1", 1_700_000_000, 1_700_000_060),
            ("2", 1_700_000_000, None),
        ]

    def test_sub_second_expiry_is_truncated(self, entity_store: EntityStore, db_path: Path, clock) -> None:
        clock.advance(0.7)
        entity_store.store(Color(id=1, name="Blue"), Expiration.after(0.5))
        with sqlite3.connect(db_path) as conn:
            row = conn.execute("SELECT created_at, expires_at FROM entity_cache").fetchone()
        assert row == (1_700_000_000, 1_700_000_001)
        assert entity_store.retrieve(Color, "1") is not None
        clock.advance(0.4)
        assert entity_store.retrieve(Color, "1") is None

    def test_expired_read_deletes_record(self, entity_store: EntityStore, clock) -> None:
        entity_store.store(Color(id=1, name="Blue"), Expiration.after(1))
        clock.advance(1)
        assert entity_store.retrieve(Color, "1") is None
        assert entity_store.count() == 0

    def test_lookup_reports_stale_entity(self, entity_store: EntityStore, clock) -> None:
        entity_store.store(Color(id=1, name="Blue"), Expiration.after(1))
        clock.advance(5)
        with pytest.raises(CacheExpiredError) as exc_info:
            entity_store.lookup(Color, "1")
        assert exc_info.value.stale_value == Color(id=1, name="Blue")
        assert entity_store.count() == 0

    def test_include_expired_leaves_record(self, entity_store: EntityStore, clock) -> None:
        entity_store.store(Color(id=1, name="Blue"), Expiration.after(1))
        clock.advance(5)
        assert entity_store.retrieve(Color, "1", include_expired=True).name == "Blue"
        assert entity_store.count() == 1

    def test_never_expires(self, entity_store: EntityStore, clock) -> None:
        entity_store.store(Color(id=1, name="Blue"), Expiration.never())
        clock.advance(10 * 365 * 86400)
        assert entity_store.retrieve(Color, "1") is not None

    def test_absolute_instant(self, entity_store: EntityStore, clock) -> None:
        entity_store.store(Color(id=1, name="Blue"), Expiration.at(clock.now + 60))
        clock.advance(59)
        assert entity_store.retrieve(Color, "1") is not None
        clock.advance(1)
        assert entity_store.retrieve(Color, "1") is None

    def test_default_expiration(self, db_path: Path, clock) -> None:
        with EntityStore(db_path, default_expiration=Expiration.after(10), clock=clock) as store:
            store.store(Color(id=1, name="Blue"))
            clock.advance(10)
            assert store.retrieve(Color, "1") is None


# ------------------------------------------------------------------ #
# Maintenance sweep
# ------------------------------------------------------------------ #


class TestClearExpired:
    def test_sweep_removes_only_expired(self, entity_store: EntityStore, clock) -> None:
        entity_store.store(Color(id=1, name="Blue"), Expiration.after(0.1))
        entity_store.store(Color(id=2, name="Green"), Expiration.after(0.1))
        entity_store.store(Color(id=3, name="Red"), Expiration.never())
        clock.advance(0.2)
        assert entity_store.count_expired() == 2
        assert entity_store.clear_expired() == 2
        assert entity_store.count() == 1
        assert entity_store.retrieve(Color, "3").name == "Red"

    def test_sweep_with_nothing_expired(self, entity_store: EntityStore) -> None:
        entity_store.store(Color(id=1, name="Blue"), Expiration.never())
        assert entity_store.clear_expired() == 0
        assert entity_store.count() == 1

    def test_clear_all_and_by_type(self, entity_store: EntityStore) -> None:
        entity_store.store(Color(id=1, name="Blue"))
        entity_store.store(Minifig(set_num="fig-1", name="Pirate"))
        entity_store.clear(Color)
        assert entity_store.collections() == {"minifigs": 1}
        entity_store.clear()
        entity_store.clear()
        assert entity_store.count() == 0

    def test_clear_collection_by_name(self, entity_store: EntityStore) -> None:
        entity_store.store(Color(id=1, name="Blue"))
        entity_store.store(Color(id=2, name="Green"))
        assert entity_store.clear_collection("colors") == 2
        assert entity_store.clear_collection("colors") == 0


# ------------------------------------------------------------------ #
# Failure modes
# ------------------------------------------------------------------ #


class TestFailures:
    def test_corrupt_record_raises(self, entity_store: EntityStore, db_path: Path) -> None:
        entity_store.store(Color(id=1, name="Blue"), Expiration.never())
        with sqlite3.connect(db_path) as conn:
            conn.execute("UPDATE entity_cache SET data = '{\"id\": \"not a number\"}'")
        with pytest.raises(DeserializationError):
            entity_store.retrieve(Color, "1")
        with pytest.raises(DeserializationError):
            entity_store.lookup(Color, "1")

    def test_unopenable_database(self, tmp_path: Path) -> None:
        # A directory cannot be opened as a database file.
        store = EntityStore(tmp_path)
        with pytest.raises(StoreUnavailableError):
            store.store(Color(id=1, name="Blue"))
        with pytest.raises(StoreUnavailableError):
            store.retrieve(Color, "1")
        store.close()

    def test_closed_store(self, db_path: Path) -> None:
        store = EntityStore(db_path)
        store.close()
        store.close()
        with pytest.raises(StoreUnavailableError):
            store.count()


# ------------------------------------------------------------------ #
# Concurrency
# ------------------------------------------------------------------ #


class TestConcurrency:
    def test_concurrent_writers_to_distinct_keys(self, entity_store: EntityStore) -> None:
        errors: list[BaseException] = []

        def writer(offset: int) -> None:
            try:
                for i in range(25):
                    entity_store.store(Color(id=offset * 100 + i, name=f"c{offset}-{i}"))
                    assert entity_store.retrieve(Color, str(offset * 100 + i)) is not None
            except BaseException as exc:  # pragma: no cover - surfaced below
                errors.append(exc)

        threads = [threading.Thread(target=writer, args=(n,)) for n in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert errors == []
        assert entity_store.count() == 200

    def test_concurrent_writers_same_key_last_wins(self, entity_store: EntityStore) -> None:
        def writer(name: str) -> None:
            for _ in range(20):
                entity_store.store(Color(id=1, name=name))

        threads = [threading.Thread(target=writer, args=(f"n{i}",)) for i in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert entity_store.count() == 1
        assert entity_store.retrieve(Color, "1").name in {"n0", "n1", "n2", "n3"}

    def test_short_lived_reader_threads_share_a_bounded_pool(self, db_path: Path) -> None:
        with EntityStore(db_path, max_readers=3) as store:
            store.store(Color(id=1, name="Blue"))
            found: list[bool] = []

            def reader() -> None:
                found.append(store.retrieve(Color, "1") is not None)

            for _ in range(50):
                threads = [threading.Thread(target=reader) for _ in range(4)]
                for t in threads:
                    t.start()
                for t in threads:
                    t.join()

            assert found == [True] * 200
            assert len(store._readers) <= 3

    def test_max_readers_must_be_positive(self, db_path: Path) -> None:
        with pytest.raises(ValueError):
            EntityStore(db_path, max_readers=0)
