"""SQLite-backed persistent tier for single entities.

:class:`EntityStore` keeps :class:`~apicache.models.CacheableModel` entities
in one table keyed by ``(collection_name, primary_key)``::

    CREATE TABLE entity_cache (
        collection_name TEXT NOT NULL,
        primary_key     TEXT NOT NULL,
        data            TEXT NOT NULL,     -- model_dump_json() of the entity
        created_at      INTEGER NOT NULL,
        expires_at      INTEGER,           -- NULL: never expires
        PRIMARY KEY (collection_name, primary_key)
    )

with indexes on ``expires_at`` (for :meth:`EntityStore.clear_expired`),
``created_at`` and ``collection_name``. Timestamps are integer seconds since
the Unix epoch. Expiry instants are truncated to the whole second, so a
persisted record may expire up to a second early but never late.

Writes go through a single writer connection guarded by a lock and are
committed with ``synchronous=FULL`` before the call returns. The database
runs in WAL mode; reads borrow a connection from a bounded pool
(``max_readers``) and never wait for the writer.

A store that fails to open remembers the failure and raises
:class:`~apicache.exceptions.StoreUnavailableError` from every operation;
it never falls back to "no caching".
"""

from __future__ import annotations

import logging
import math
import queue
import sqlite3
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Iterator, Optional, TypeVar, Union

from pydantic import BaseModel, ValidationError

from apicache.exceptions import (
    CacheExpiredError,
    DeserializationError,
    RecordNotFoundError,
    SerializationError,
    StoreUnavailableError,
)
from apicache.models import CacheableModel, Expiration, collection_of, primary_key_of

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=CacheableModel)

_MEMORY_PATH = ":memory:"

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS entity_cache (
        collection_name TEXT NOT NULL,
        primary_key TEXT NOT NULL,
        data TEXT NOT NULL,
        created_at INTEGER NOT NULL,
        expires_at INTEGER,
        PRIMARY KEY (collection_name, primary_key)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_entity_cache_expires_at ON entity_cache(expires_at)",
    "CREATE INDEX IF NOT EXISTS idx_entity_cache_created_at ON entity_cache(created_at)",
    "CREATE INDEX IF NOT EXISTS idx_entity_cache_collection ON entity_cache(collection_name)",
)


def _to_seconds(instant: float) -> int:
    return math.floor(instant)


class EntityStore:
    """Durable ``(collection, primary key) -> entity`` store with per-record expiration.

    Args:
        path: SQLite file. ``None`` uses
            :func:`~apicache.config.default_database_path`; ``":memory:"``
            keeps everything in a private in-memory database (reads then
            share the writer connection).
        default_expiration: Used by :meth:`store` when no expiration is
            given. ``None`` means records never expire.
        clock: Returns the current time in epoch seconds.
        timeout: Seconds SQLite waits on a locked database, and a read waits
            for a free pooled connection.
        max_readers: Upper bound on open reader connections.

    Example::

        with EntityStore(tmp_path / "cache.sqlite") as store:
            store.store(Color(id=1, name="Red"), Expiration.after(3600))
            store.retrieve(Color, "1")
    """

    def __init__(
        self,
        path: Union[str, Path, None] = None,
        default_expiration: Optional[Expiration] = None,
        clock: Callable[[], float] = time.time,
        timeout: float = 30.0,
        max_readers: int = 4,
    ) -> None:
        if max_readers < 1:
            raise ValueError(f"max_readers must be at least 1, got {max_readers}")
        if path is None:
            from apicache.config import default_database_path

            path = default_database_path()
        self._path = str(path)
        self._in_memory = self._path == _MEMORY_PATH
        self._default_expiration = default_expiration
        self._clock = clock
        self._timeout = timeout

        self._write_lock = threading.Lock()
        self._max_readers = max_readers
        self._idle_readers: queue.LifoQueue[sqlite3.Connection] = queue.LifoQueue()
        self._readers: list[sqlite3.Connection] = []
        self._readers_lock = threading.Lock()
        self._conn: Optional[sqlite3.Connection] = None
        self._open_error: Optional[BaseException] = None
        self._closed = False
        self._open()

    @property
    def path(self) -> str:
        return self._path

    # ------------------------------------------------------------------ #
    # Connection management
    # ------------------------------------------------------------------ #

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(self._path, timeout=self._timeout, check_same_thread=False)

    def _open(self) -> None:
        try:
            if not self._in_memory:
                Path(self._path).parent.mkdir(parents=True, exist_ok=True)
            conn = self._connect()
            try:
                conn.execute("PRAGMA journal_mode=WAL").fetchall()
                conn.execute("PRAGMA synchronous=FULL")
                conn.execute("PRAGMA cache_size=-10000")
                with conn:
                    for statement in _SCHEMA:
                        conn.execute(statement)
            except sqlite3.Error:
                conn.close()
                raise
        except (sqlite3.Error, OSError) as exc:
            self._open_error = exc
            logger.error("Unable to open persistent cache at %s: %s", self._path, exc)
            return
        self._conn = conn
        logger.debug("Opened persistent cache at %s", self._path)

    def _ensure_open(self) -> sqlite3.Connection:
        if self._closed:
            raise StoreUnavailableError(f"Persistent cache at {self._path} is closed")
        if self._open_error is not None or self._conn is None:
            raise StoreUnavailableError(
                f"Persistent cache at {self._path} is unavailable: {self._open_error}"
            ) from self._open_error
        return self._conn

    def _checkout_reader(self) -> sqlite3.Connection:
        try:
            return self._idle_readers.get_nowait()
        except queue.Empty:
            pass
        with self._readers_lock:
            if len(self._readers) < self._max_readers:
                conn = self._connect()
                self._readers.append(conn)
                return conn
        try:
            return self._idle_readers.get(timeout=self._timeout)
        except queue.Empty:
            raise StoreUnavailableError(
                f"No reader connection for {self._path} became free within {self._timeout}s"
            ) from None

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Serialise a write through the single writer connection and commit it."""
        with self._write_lock:
            conn = self._ensure_open()
            try:
                yield conn
                conn.commit()
            except sqlite3.Error as exc:
                conn.rollback()
                logger.error("Persistent cache write failed: %s", exc)
                raise StoreUnavailableError(f"Persistent cache write failed: {exc}") from exc
            except BaseException:
                conn.rollback()
                raise

    @contextmanager
    def _read(self) -> Iterator[sqlite3.Connection]:
        try:
            if self._in_memory:
                with self._write_lock:
                    yield self._ensure_open()
            else:
                self._ensure_open()
                conn = self._checkout_reader()
                try:
                    yield conn
                finally:
                    self._idle_readers.put(conn)
        except sqlite3.Error as exc:
            logger.error("Persistent cache read failed: %s", exc)
            raise StoreUnavailableError(f"Persistent cache read failed: {exc}") from exc

    def close(self) -> None:
        """Close every connection. Later operations raise StoreUnavailableError."""
        with self._write_lock:
            if self._closed:
                return
            self._closed = True
            if self._conn is not None:
                self._conn.close()
                self._conn = None
        with self._readers_lock:
            for conn in self._readers:
                conn.close()
            self._readers.clear()

    def __enter__(self) -> EntityStore:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    # ------------------------------------------------------------------ #
    # Serialisation
    # ------------------------------------------------------------------ #

    @staticmethod
    def _encode(entity: CacheableModel) -> str:
        if not isinstance(entity, BaseModel):
            raise SerializationError(
                f"Only pydantic models can be persisted, got {type(entity).__name__}"
            )
        try:
            return entity.model_dump_json()
        except (ValueError, TypeError) as exc:
            raise SerializationError(
                f"Could not serialise {type(entity).__name__}: {exc}"
            ) from exc

    @staticmethod
    def _decode(entity_type: type[T], data: str, primary_key: str) -> T:
        try:
            return entity_type.model_validate_json(data)
        except (ValidationError, ValueError) as exc:
            raise DeserializationError(
                f"Stored {entity_type.collection_name} record {primary_key!r} "
                f"is not a valid {entity_type.__name__}: {exc}"
            ) from exc

    # ------------------------------------------------------------------ #
    # Operations
    # ------------------------------------------------------------------ #

    def store(
        self,
        entity: CacheableModel,
        expiration: Optional[Expiration] = None,
        *,
        primary_key: Optional[str] = None,
    ) -> None:
        """Upsert *entity* under its collection and primary key.

        Args:
            entity: The entity to persist.
            expiration: When the record goes stale. Defaults to the store's
                ``default_expiration``.
            primary_key: Explicit key replacing ``entity.primary_key``, for
                composite identities.

        Raises:
            InvalidKeyError: The collection name or primary key is empty.
            SerializationError: The entity could not be encoded; nothing was written.
            StoreUnavailableError: The database is unavailable.
        """
        collection = collection_of(type(entity))
        key = primary_key_of(entity, primary_key)
        data = self._encode(entity)
        if expiration is None:
            expiration = self._default_expiration

        now = self._clock()
        expires_at = expiration.resolve(now) if expiration is not None else None
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO entity_cache
                (collection_name, primary_key, data, created_at, expires_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    collection,
                    key,
                    data,
                    _to_seconds(now),
                    _to_seconds(expires_at) if expires_at is not None else None,
                ),
            )

    def _select(self, collection: str, primary_key: str) -> Optional[tuple[str, Optional[int]]]:
        with self._read() as conn:
            return conn.execute(
                "SELECT data, expires_at FROM entity_cache "
                "WHERE collection_name = ? AND primary_key = ?",
                (collection, primary_key),
            ).fetchone()

    def _delete_if_expired(self, collection: str, primary_key: str, now: float) -> None:
        # A concurrent rewrite carries a fresh expires_at and survives this delete.
        with self._transaction() as conn:
            conn.execute(
                "DELETE FROM entity_cache WHERE collection_name = ? AND primary_key = ? "
                "AND expires_at IS NOT NULL AND expires_at <= ?",
                (collection, primary_key, now),
            )

    def lookup(self, entity_type: type[T], primary_key: str) -> T:
        """Return the live entity, telling a missing record from an expired one.

        Raises:
            RecordNotFoundError: No record exists.
            CacheExpiredError: The record was stale. It has been deleted; the
                decoded entity is on ``stale_value``.
            DeserializationError: The stored data does not decode into
                *entity_type*.
            StoreUnavailableError: The database is unavailable.
        """
        collection = collection_of(entity_type)
        row = self._select(collection, primary_key)
        if row is None:
            raise RecordNotFoundError(f"No {collection} record for {primary_key!r}")
        data, expires_at = row
        now = self._clock()
        if expires_at is not None and now >= expires_at:
            self._delete_if_expired(collection, primary_key, now)
            raise CacheExpiredError(
                f"{collection} record {primary_key!r} expired",
                stale_value=self._decode(entity_type, data, primary_key),
                expired_at=float(expires_at),
            )
        return self._decode(entity_type, data, primary_key)

    def retrieve(
        self,
        entity_type: type[T],
        primary_key: str,
        *,
        include_expired: bool = False,
    ) -> Optional[T]:
        """Return the entity stored under *primary_key*, or ``None``.

        An expired record is deleted as a side effect and reported as absent,
        unless *include_expired* is set, in which case it is returned as is
        and left in place (the stale-fallback read).

        Raises:
            DeserializationError: The stored data does not decode into
                *entity_type*. Corrupt records are never reported as misses.
            StoreUnavailableError: The database is unavailable.
        """
        collection = collection_of(entity_type)
        row = self._select(collection, primary_key)
        if row is None:
            return None
        data, expires_at = row
        if expires_at is not None and not include_expired:
            now = self._clock()
            if now >= expires_at:
                self._delete_if_expired(collection, primary_key, now)
                return None
        return self._decode(entity_type, data, primary_key)

    def remove(self, entity_type: type[CacheableModel], primary_key: str) -> bool:
        """Delete one record. Returns True if a record was deleted."""
        collection = collection_of(entity_type)
        with self._transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM entity_cache WHERE collection_name = ? AND primary_key = ?",
                (collection, primary_key),
            )
            return cursor.rowcount > 0

    def clear_expired(self) -> int:
        """Delete every record whose expiry has passed, in one statement.

        Returns:
            The number of records deleted.
        """
        now = self._clock()
        with self._transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM entity_cache WHERE expires_at IS NOT NULL AND expires_at <= ?",
                (now,),
            )
            removed = cursor.rowcount
        if removed:
            logger.debug("Deleted %d expired records from %s", removed, self._path)
        return removed

    def clear(self, entity_type: Optional[type[CacheableModel]] = None) -> None:
        """Delete every record, or every record of *entity_type*'s collection."""
        with self._transaction() as conn:
            if entity_type is None:
                conn.execute("DELETE FROM entity_cache")
            else:
                conn.execute(
                    "DELETE FROM entity_cache WHERE collection_name = ?",
                    (collection_of(entity_type),),
                )

    def clear_collection(self, collection: str) -> int:
        """Delete every record stored under *collection*. Returns the number removed."""
        with self._transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM entity_cache WHERE collection_name = ?", (collection,)
            )
            return cursor.rowcount

    def count(self, entity_type: Optional[type[CacheableModel]] = None) -> int:
        """Number of stored records, expired ones awaiting a sweep included."""
        with self._read() as conn:
            if entity_type is None:
                row = conn.execute("SELECT COUNT(*) FROM entity_cache").fetchone()
            else:
                row = conn.execute(
                    "SELECT COUNT(*) FROM entity_cache WHERE collection_name = ?",
                    (collection_of(entity_type),),
                ).fetchone()
        return int(row[0])

    def count_expired(self) -> int:
        """Number of stored records already past their expiry."""
        now = self._clock()
        with self._read() as conn:
            row = conn.execute(
                "SELECT COUNT(*) FROM entity_cache "
                "WHERE expires_at IS NOT NULL AND expires_at <= ?",
                (now,),
            ).fetchone()
        return int(row[0])

    def collections(self) -> dict[str, int]:
        """Record counts per collection name."""
        with self._read() as conn:
            rows = conn.execute(
                "SELECT collection_name, COUNT(*) FROM entity_cache "
                "GROUP BY collection_name ORDER BY collection_name"
            ).fetchall()
        return {name: int(total) for name, total in rows}

    def __repr__(self) -> str:
        return f"EntityStore({self._path!r})"
