"""Exception hierarchy for apicache.

All exceptions inherit from :class:`ApiCacheError`, which carries an
``exit_code`` attribute mapped to a constant from :mod:`apicache.exit_codes`.
The CLI entry point in :func:`apicache.cli.main` catches ``ApiCacheError``
and exits with the appropriate code.

Subclass hierarchy::

    ApiCacheError (exit 1)
    +-- InvalidKeyError         (exit 2)
    +-- RecordNotFoundError     (exit 3)
    +-- CacheExpiredError       (exit 3)
    +-- SerializationError      (exit 4)
    +-- DeserializationError    (exit 4)
    +-- StoreUnavailableError   (exit 5)
    +-- ConnectionError_        (exit 6)
    +-- ResponseError           (exit 1)
    +-- ConfigError             (exit 1)

:class:`CacheExpiredError` and :class:`RecordNotFoundError` are the internal
signals the stores use to tell "stale record" from "no record". Plain
``get()`` calls translate both into ``None``.
"""

from __future__ import annotations

from typing import Any, Optional

from apicache.exit_codes import (
    EXIT_CONNECTION_ERROR,
    EXIT_DATA_ERROR,
    EXIT_GENERIC_FAILURE,
    EXIT_INVALID_USAGE,
    EXIT_NOT_FOUND,
    EXIT_STORE_UNAVAILABLE,
)


class ApiCacheError(Exception):
    """Base exception for all apicache errors.

    Args:
        message: Human-readable error description.
        exit_code: Optional override for the class-level exit code.
    """

    exit_code: int = EXIT_GENERIC_FAILURE

    def __init__(self, message: str, exit_code: int | None = None):
        super().__init__(message)
        if exit_code is not None:
            self.exit_code = exit_code


class InvalidKeyError(ApiCacheError):
    """Raised when a cache key or entity primary key cannot be constructed."""

    exit_code = EXIT_INVALID_USAGE


class RecordNotFoundError(ApiCacheError):
    """Raised by ``lookup`` operations when no record exists for the key."""

    exit_code = EXIT_NOT_FOUND


class CacheExpiredError(ApiCacheError):
    """Raised by ``lookup`` operations when a record existed but is stale.

    The record has already been removed from its tier when this is raised.
    Its last value is kept on :attr:`stale_value` so that callers deciding on
    stale-fallback do not need a second read.

    Args:
        message: Human-readable error description.
        stale_value: The value the expired record held.
        expired_at: Epoch seconds at which the record became stale.
    """

    exit_code = EXIT_NOT_FOUND

    def __init__(
        self,
        message: str,
        stale_value: Any = None,
        expired_at: Optional[float] = None,
    ):
        super().__init__(message)
        self.stale_value = stale_value
        self.expired_at = expired_at


class SerializationError(ApiCacheError):
    """Raised when a value cannot be encoded for persistence. Nothing was written."""

    exit_code = EXIT_DATA_ERROR


class DeserializationError(ApiCacheError):
    """Raised when a persisted record cannot be decoded into the requested type."""

    exit_code = EXIT_DATA_ERROR


class StoreUnavailableError(ApiCacheError):
    """Raised on every operation against a persistent store that failed to open or was closed."""

    exit_code = EXIT_STORE_UNAVAILABLE


class ConnectionError_(ApiCacheError):
    """Raised on network-level failures (timeout, DNS resolution, connection refused).

    Named with a trailing underscore to avoid shadowing the built-in
    ``ConnectionError``. The fetch decorator treats it as transient.
    """

    exit_code = EXIT_CONNECTION_ERROR


class ResponseError(ApiCacheError):
    """Raised by the HTTP integration when the API answers with a non-2xx status.

    Args:
        message: Human-readable error description.
        status_code: The HTTP status code returned by the server.
    """

    def __init__(self, message: str, status_code: int):
        super().__init__(message)
        self.status_code = status_code


class ConfigError(ApiCacheError):
    """Raised for configuration problems (unreadable files, invalid values, unknown presets)."""

    exit_code = EXIT_GENERIC_FAILURE
