"""Configuration management with XDG paths, atomic writes, presets and precedence resolution.

This module handles everything configurable about apicache:

* **Directory layout** -- XDG Base Directory compliant on Linux/BSD,
  ``~/.apicache/`` on macOS and Windows. See :func:`get_config_dir` and
  :func:`get_cache_dir`. The persistent tier lives in
  :func:`default_database_path` unless configured otherwise.
* **Config files** -- a :class:`~apicache.models.CacheConfig` serialised as
  JSON (``.json``) or YAML (``.yaml`` / ``.yml``). See :func:`load_config`
  and :func:`save_config`.
* **Presets** -- named configurations in :data:`PRESETS` (``default``,
  ``aggressive``, ``conservative``, ``memory_only``, ``persistent_only``,
  ``long_term``, ``short_term``, ``disabled``).
* **Precedence resolution** -- :func:`resolve_config` merges an explicit
  file or preset, the ``APICACHE_CONFIG`` file, the global config file and
  environment overrides into the effective configuration.

All file writes use an atomic temp-file-then-rename strategy
(:func:`_atomic_write`) so a crash never leaves a half-written config.
"""

from __future__ import annotations

import json
import os
import platform
import tempfile
from pathlib import Path
from typing import Any, Optional, Union

import yaml

from apicache.exceptions import ConfigError
from apicache.models import CacheConfig, Expiration, ResourcePolicy

_APP_NAME = "apicache"
_CONFIG_FILENAME = "config.json"
_DATABASE_FILENAME = "entity_cache.sqlite"

ENV_CONFIG = "APICACHE_CONFIG"
"""Path of a config file to load instead of the global one."""

ENV_DATABASE = "APICACHE_DATABASE"
"""Overrides :attr:`~apicache.models.CacheConfig.database_path`."""

ENV_DISABLED = "APICACHE_DISABLED"
"""When truthy (``1``, ``true``, ``yes``, ``on``) turns all caching off."""

_TRUTHY = {"1", "true", "yes", "on"}


# --- XDG path resolution ---


def _is_xdg_platform() -> bool:
    """Return True if the platform supports XDG Base Directory spec (Linux/FreeBSD)."""
    return platform.system() == "Linux" or platform.system().endswith("BSD")


def _fallback_base_dir() -> Path:
    """Fallback base directory for non-XDG platforms (macOS, Windows)."""
    return Path.home() / f".{_APP_NAME}"


def _xdg_base(env_var: str, default_segments: tuple[str, ...]) -> Path:
    """Resolve an XDG base directory from an env var with fallback segments under $HOME."""
    env_value = os.environ.get(env_var, "")
    if env_value:
        return Path(env_value)
    base = Path.home()
    for seg in default_segments:
        base = base / seg
    return base


def get_config_dir() -> Path:
    """Return the configuration directory, creating it if necessary.

    On Linux/BSD: ``$XDG_CONFIG_HOME/apicache/`` (default ``~/.config/apicache/``).
    On macOS/Windows: ``~/.apicache/``.
    """
    if _is_xdg_platform():
        path = _xdg_base("XDG_CONFIG_HOME", (".config",)) / _APP_NAME
    else:
        path = _fallback_base_dir()
    path.mkdir(parents=True, exist_ok=True)
    return path


def get_cache_dir() -> Path:
    """Return the cache directory, creating it if necessary.

    Holds the persistent tier's SQLite file. Its contents can be deleted at
    any time.

    On Linux/BSD: ``$XDG_CACHE_HOME/apicache/`` (default ``~/.cache/apicache/``).
    On macOS/Windows: ``~/.apicache/cache/``.
    """
    if _is_xdg_platform():
        path = _xdg_base("XDG_CACHE_HOME", (".cache",)) / _APP_NAME
    else:
        path = _fallback_base_dir() / "cache"
    path.mkdir(parents=True, exist_ok=True)
    return path


def default_database_path() -> Path:
    """Path of the persistent tier when no ``database_path`` is configured."""
    return get_cache_dir() / _DATABASE_FILENAME


def global_config_path() -> Path:
    """Path of the user-wide config file."""
    return get_config_dir() / _CONFIG_FILENAME


# --- Atomic file writes ---


def _atomic_write(path: Path, data: str) -> None:
    """Write data to file atomically using temp file + rename.

    The temporary file is created in the same directory as *path* so that
    ``os.replace`` is an atomic rename on POSIX systems. On any failure the
    temp file is cleaned up.
    """
    path.parent.mkdir(parents=True, exist_ok=True)

    fd = None
    tmp_path: Optional[str] = None
    try:
        fd = tempfile.NamedTemporaryFile(
            mode="w",
            dir=path.parent,
            prefix=f".{path.name}.",
            suffix=".tmp",
            delete=False,
            encoding="utf-8",
        )
        tmp_path = fd.name
        fd.write(data)
        fd.flush()
        os.fsync(fd.fileno())
        fd.close()
        fd = None  # prevent double-close below
        os.replace(tmp_path, path)
    except BaseException:
        if fd is not None:
            fd.close()
        if tmp_path is not None:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
        raise


# --- Config files ---


def _is_yaml(path: Path) -> bool:
    return path.suffix.lower() in (".yaml", ".yml")


def load_config(path: Union[str, Path]) -> CacheConfig:
    """Load a :class:`~apicache.models.CacheConfig` from a JSON or YAML file.

    Raises:
        ConfigError: If the file does not exist, cannot be parsed, or fails
            Pydantic validation.
    """
    path = Path(path)
    if not path.is_file():
        raise ConfigError(f"Config file not found: {path}")
    try:
        text = path.read_text(encoding="utf-8")
        data = yaml.safe_load(text) if _is_yaml(path) else json.loads(text)
        return CacheConfig.model_validate(data or {})
    except (json.JSONDecodeError, yaml.YAMLError, ValueError, OSError) as exc:
        raise ConfigError(f"Invalid cache config at {path}: {exc}") from exc


def save_config(config: CacheConfig, path: Union[str, Path, None] = None) -> Path:
    """Persist *config* atomically. Defaults to :func:`global_config_path`.

    Returns:
        The path written.
    """
    path = Path(path) if path is not None else global_config_path()
    data = config.model_dump(mode="json", exclude_none=True)
    if _is_yaml(path):
        text = yaml.safe_dump(data, sort_keys=False)
    else:
        text = json.dumps(data, indent=2) + "\n"
    _atomic_write(path, text)
    return path


# --- Presets ---


def _build_presets() -> dict[str, CacheConfig]:
    after = Expiration.after
    return {
        "default": CacheConfig(),
        "aggressive": CacheConfig(
            default_expiration=after(1800),
            max_memory_entries=500,
        ),
        "conservative": CacheConfig(
            default_expiration=after(60),
            max_memory_entries=50,
        ),
        "memory_only": CacheConfig(persistent_enabled=False, maintenance_enabled=False),
        "persistent_only": CacheConfig(memory_enabled=False),
        "long_term": CacheConfig(
            default_expiration=after(600),
            max_memory_entries=200,
            persistent_default_expiration=after(604800),
        ),
        "short_term": CacheConfig(
            default_expiration=after(120),
            persistent_default_expiration=after(3600),
            maintenance_interval_seconds=600,
        ),
        "disabled": CacheConfig(enabled=False, maintenance_enabled=False),
    }


PRESETS: dict[str, CacheConfig] = _build_presets()
"""Named configurations selectable with :func:`get_preset`."""


def get_preset(name: str) -> CacheConfig:
    """Return a copy of the preset called *name*.

    Raises:
        ConfigError: If no such preset exists.
    """
    try:
        return PRESETS[name].model_copy(deep=True)
    except KeyError:
        known = ", ".join(sorted(PRESETS))
        raise ConfigError(f"Unknown cache preset '{name}' (known: {known})") from None


def with_resource(config: CacheConfig, resource: str, **policy: Any) -> CacheConfig:
    """Return a copy of *config* with a :class:`ResourcePolicy` set for *resource*."""
    resources = dict(config.resources)
    resources[resource] = ResourcePolicy(**policy)
    return config.model_copy(update={"resources": resources})


# --- Precedence resolution ---


def _apply_env_overrides(config: CacheConfig) -> CacheConfig:
    updates: dict[str, Any] = {}
    database = os.environ.get(ENV_DATABASE, "")
    if database:
        updates["database_path"] = database
    if os.environ.get(ENV_DISABLED, "").strip().lower() in _TRUTHY:
        updates["enabled"] = False
    return config.model_copy(update=updates) if updates else config


def resolve_config(
    path: Union[str, Path, None] = None,
    preset: Optional[str] = None,
) -> CacheConfig:
    """Resolve the effective configuration.

    Precedence (highest first) for the base configuration:

    1. *path* -- an explicit config file.
    2. *preset* -- a named preset.
    3. ``$APICACHE_CONFIG`` -- a config file named by the environment.
    4. The global config file, if it exists.
    5. :class:`~apicache.models.CacheConfig` defaults.

    ``$APICACHE_DATABASE`` and ``$APICACHE_DISABLED`` are applied on top of
    whichever base configuration was chosen.

    Raises:
        ConfigError: If a named file is missing or invalid, or the preset is
            unknown.
    """
    if path is not None:
        config = load_config(path)
    elif preset is not None:
        config = get_preset(preset)
    elif os.environ.get(ENV_CONFIG):
        config = load_config(os.environ[ENV_CONFIG])
    else:
        global_path = global_config_path()
        config = load_config(global_path) if global_path.is_file() else CacheConfig()
    return _apply_env_overrides(config)
