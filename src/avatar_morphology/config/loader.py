"""
avatar-morphology: runtime config loader.

Layers, lowest first: built-in defaults, ``avatar_morphology.toml``, then
``AVATAR_MORPH_<SECTION>_<KEY>`` environment variables. The file is optional
unless a path is passed explicitly. Mapping document paths resolve against the
directory holding the config file.
"""

from __future__ import annotations

import os
import tomllib
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Final

from avatar_morphology.config.schema import (
    PATH_FIELDS,
    assert_valid_config,
    default_config,
    merge_config,
)

DEFAULT_CONFIG_FILE: Final[str] = "avatar_morphology.toml"
ENV_PREFIX: Final[str] = "AVATAR_MORPH_"

# Keys without a default still accept an environment value, as plain text.
_TEXT_ONLY_KEYS: Final[tuple[tuple[str, str], ...]] = (
    ("refinement", "base_url"),
    ("refinement", "api_key_env"),
    *((section, key) for section, key in PATH_FIELDS),
)

_TRUTHY: Final[frozenset[str]] = frozenset({"1", "true", "yes", "on"})
_FALSY: Final[frozenset[str]] = frozenset({"0", "false", "no", "off"})


class ConfigLoadError(ValueError):
    """Raised when the config file or an environment override is unusable."""


def load_config(
    config_path: str | Path | None = None,
    *,
    environ: Mapping[str, str] | None = None,
) -> dict[str, Any]:
    """Return the validated effective config for one process."""

    explicit = config_path is not None
    path = Path(config_path).expanduser() if explicit else Path.cwd() / DEFAULT_CONFIG_FILE
    path = path.resolve()

    config = assert_valid_config(merge_config(default_config(), _read_toml(path, required=explicit)))
    overrides = _env_overrides(config, os.environ if environ is None else environ)
    config = assert_valid_config(merge_config(config, overrides))

    for section, key in PATH_FIELDS:
        value = config[section].get(key)
        if isinstance(value, str):
            config[section][key] = _anchor(value, path.parent)
    return config


def resolve_secret(config: Mapping[str, Any], environ: Mapping[str, str] | None = None) -> str | None:
    """Read the refinement credential named by ``refinement.api_key_env``."""

    env_name = config.get("refinement", {}).get("api_key_env")
    if not isinstance(env_name, str):
        return None
    value = (os.environ if environ is None else environ).get(env_name, "").strip()
    return value or None


def _read_toml(path: Path, *, required: bool) -> dict[str, Any]:
    if not path.exists():
        if required:
            raise ConfigLoadError(f"config file not found: {path}")
        return {}
    try:
        return tomllib.loads(path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as exc:
        raise ConfigLoadError(f"invalid TOML in {path}: {exc}") from exc
    except (OSError, UnicodeDecodeError) as exc:
        raise ConfigLoadError(f"unable to read config file {path}: {exc}") from exc


def _env_overrides(config: Mapping[str, Any], environ: Mapping[str, str]) -> dict[str, dict[str, Any]]:
    typed: dict[tuple[str, str], object] = {
        (section, key): value
        for section, values in config.items()
        if section != "meta"
        for key, value in values.items()
        if isinstance(value, (bool, int, float, str))
    }
    for field in _TEXT_ONLY_KEYS:
        typed.setdefault(field, "")

    overrides: dict[str, dict[str, Any]] = {}
    for (section, key), current in sorted(typed.items()):
        name = f"{ENV_PREFIX}{section.upper()}_{key.upper()}"
        raw = environ.get(name)
        if raw is not None:
            overrides.setdefault(section, {})[key] = _coerce(name, raw.strip(), current)
    return overrides


def _coerce(name: str, raw: str, current: object) -> object:
    if isinstance(current, bool):
        lowered = raw.lower()
        if lowered in _TRUTHY or lowered in _FALSY:
            return lowered in _TRUTHY
        raise ConfigLoadError(f"{name} must be a boolean (true/false/1/0/yes/no/on/off)")
    if isinstance(current, int):
        try:
            return int(raw)
        except ValueError as exc:
            raise ConfigLoadError(f"{name} must be an integer") from exc
    if isinstance(current, float):
        try:
            return float(raw)
        except ValueError as exc:
            raise ConfigLoadError(f"{name} must be a number") from exc
    return raw


def _anchor(raw: str, base_dir: Path) -> str:
    candidate = Path(os.path.expandvars(raw)).expanduser()
    if not candidate.is_absolute():
        candidate = base_dir / candidate
    return Path(os.path.normpath(candidate)).as_posix()


__all__ = [
    "ConfigLoadError",
    "DEFAULT_CONFIG_FILE",
    "ENV_PREFIX",
    "load_config",
    "resolve_secret",
]
