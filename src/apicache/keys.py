"""Canonical cache keys.

A :class:`CacheKey` is a logical resource path plus a mapping of parameter
names to string values. Its :attr:`~CacheKey.string_value` sorts parameters
by name before joining them, so two keys built from the same path and
parameters compare and hash equal regardless of insertion order::

    >>> CacheKey("/colors", {"page": 2, "ordering": "name"}).string_value
    '/colors?ordering=name&page=2'

Names and values are percent-encoded, so a value containing ``&`` or ``=``
cannot collide with a different parameter set. A list or tuple value is a
repeated parameter: its items keep their order and render as one
``name=value`` pair each, so ``?id=1&id=2`` and ``?id=1&id=3`` never share a
key.

:meth:`CacheKey.from_url` builds keys the way the HTTP integration needs
them: query string, extra parameters and the request headers that change a
response's representation (``Accept`` and ``Accept-Language``).
"""

from __future__ import annotations

from typing import Any, Iterator, Mapping, Optional, Union
from urllib.parse import quote

import httpx

from apicache.exceptions import InvalidKeyError

REPRESENTATION_HEADERS = ("Accept", "Accept-Language")
"""Request headers folded into keys built by :meth:`CacheKey.from_url`."""

_HEADER_PREFIX = "_header_"
_SAFE = "-_.~/:,"

ParameterValue = Union[str, tuple[str, ...]]


def _stringify(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


class CacheKey:
    """Order-independent identity of a cached resource.

    Args:
        path: Logical resource path, e.g. ``/api/v3/lego/colors/``.
        parameters: Parameter names mapped to values. Values are converted
            with ``str()`` (booleans become ``true``/``false``, ``None``
            becomes an empty string). A list or tuple is a repeated
            parameter and becomes a tuple of strings.

    Raises:
        InvalidKeyError: If *path* is empty or not a string, or a parameter
            name is not a non-empty string.
    """

    __slots__ = ("_path", "_parameters", "_string_value")

    def __init__(self, path: str, parameters: Optional[Mapping[str, Any]] = None) -> None:
        if not isinstance(path, str) or not path:
            raise InvalidKeyError(f"Cache key path must be a non-empty string, got {path!r}")
        items: dict[str, ParameterValue] = {}
        for name, value in (parameters or {}).items():
            if not isinstance(name, str) or not name:
                raise InvalidKeyError(f"Cache key parameter names must be non-empty strings, got {name!r}")
            if isinstance(value, (list, tuple)):
                items[name] = tuple(_stringify(item) for item in value)
            else:
                items[name] = _stringify(value)
        self._path = path
        self._parameters = tuple(sorted(items.items(), key=lambda item: item[0]))
        self._string_value = self._render()

    @classmethod
    def from_url(
        cls,
        url: str,
        params: Optional[Mapping[str, Any]] = None,
        headers: Optional[Mapping[str, str]] = None,
    ) -> CacheKey:
        """Build a key from a request URL.

        The key path is the URL path. Query string parameters, then *params*,
        then the representation headers present in *headers* (stored as
        ``_header_<Name>``) make up the parameters; later sources win on
        name clashes. A query parameter given more than once keeps every
        value, in order.
        """
        try:
            parsed = httpx.URL(url)
        except httpx.InvalidURL as exc:
            raise InvalidKeyError(f"Cannot build a cache key from {url!r}: {exc}") from exc

        query: dict[str, list[str]] = {}
        for name, value in parsed.params.multi_items():
            query.setdefault(name, []).append(value)
        parameters: dict[str, Any] = {
            name: values[0] if len(values) == 1 else tuple(values)
            for name, values in query.items()
        }
        parameters.update(params or {})
        if headers:
            lowered = {k.lower(): v for k, v in headers.items()}
            for header in REPRESENTATION_HEADERS:
                value = lowered.get(header.lower())
                if value is not None:
                    parameters[f"{_HEADER_PREFIX}{header}"] = value
        return cls(parsed.path or url, parameters)

    @property
    def path(self) -> str:
        return self._path

    @property
    def parameters(self) -> dict[str, ParameterValue]:
        """A copy of the parameters, sorted by name. Repeated ones map to tuples."""
        return dict(self._parameters)

    @property
    def string_value(self) -> str:
        """Canonical string form; a pure function of path and parameters."""
        return self._string_value

    def _render(self) -> str:
        query = "&".join(
            f"{quote(name, safe=_SAFE)}={quote(value, safe=_SAFE)}"
            for name, value in self
        )
        return f"{self._path}?{query}" if query else self._path

    def __iter__(self) -> Iterator[tuple[str, str]]:
        """Yield ``(name, value)`` pairs, one per value of a repeated parameter."""
        for name, value in self._parameters:
            if isinstance(value, tuple):
                for item in value:
                    yield name, item
            else:
                yield name, value

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, CacheKey):
            return NotImplemented
        return self._string_value == other._string_value

    def __hash__(self) -> int:
        return hash(self._string_value)

    def __str__(self) -> str:
        return self._string_value

    def __repr__(self) -> str:
        return f"CacheKey({self._string_value!r})"


def composite_key(*parts: Any, separator: str = "_") -> str:
    """Join identifying fields into one primary key string.

    Use this when an entity is only unique together with a second
    identifier, e.g. ``composite_key("3001", 4) == "3001_4"`` for a part in a
    given colour.

    Raises:
        InvalidKeyError: If no parts are given or any part is empty.
    """
    if not parts:
        raise InvalidKeyError("A composite key needs at least one part")
    rendered = [_stringify(part) for part in parts]
    if any(not part for part in rendered):
        raise InvalidKeyError(f"Composite key parts must be non-empty, got {parts!r}")
    return separator.join(rendered)
