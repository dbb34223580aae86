"""
shipwright — runtime config loader.

File: src/shipwright/config/loader.py

Purpose
- Build the effective configuration by stacking four layers, lowest first:
  built-in defaults, ``shipwright.toml``, ``SHIPWRIGHT_*`` environment
  variables and CLI overrides.

Behaviour
- Environment variables are bound to config keys from the default tree, so
  only real settings can be overridden (``SHIPWRIGHT_WORKER_TOKEN`` is a
  worker secret, never a config key).
- Lists come from comma-separated values; booleans accept the usual
  yes/no spellings.
- Relative paths resolve against the directory holding the config file.
- The file layer is validated on its own first so a broken file is reported
  before any override can mask it.
"""

from __future__ import annotations

import json
import os
import tomllib
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Final

from shipwright.config.schema import (
    PATH_FIELDS,
    assert_valid_config,
    default_config,
    dump_redacted,
    merge_config,
)

DEFAULT_CONFIG_FILE: Final[str] = "shipwright.toml"
ENV_PREFIX: Final[str] = "SHIPWRIGHT_"

_TRUTHY: Final[frozenset[str]] = frozenset({"1", "true", "t", "yes", "y", "on"})
_FALSY: Final[frozenset[str]] = frozenset({"0", "false", "f", "no", "n", "off"})

# Keys absent from the default tree that may still be set from the environment.
_OPTIONAL_ENV_KEYS: Final[tuple[tuple[str, ...], ...]] = (
    ("governance", "policy_path"),
    ("governance", "tool_policy_path"),
)


class ConfigLoadError(ValueError):
    """Raised when config cannot be loaded or overrides cannot be coerced."""


@dataclass(frozen=True, slots=True)
class EnvBinding:
    env_name: str
    key: tuple[str, ...]
    parse: Callable[[str, EnvBinding], object]

    @property
    def dotted(self) -> str:
        return ".".join(self.key)


def load_config(
    config_path: str | Path | None = None,
    *,
    cli_overrides: Mapping[str, object] | None = None,
    environ: Mapping[str, str] | None = None,
) -> dict[str, Any]:
    """Return the validated effective config (CLI > env > file > defaults)."""

    source = _resolve_config_path(config_path)
    file_layer = _read_toml(source, required=config_path is not None)
    assert_valid_config(merge_config(default_config(), file_layer))

    env = os.environ if environ is None else environ
    layers = (
        file_layer,
        env_overrides(env),
        _cli_layer(cli_overrides or {}),
    )
    effective: dict[str, Any] = dict(default_config())
    for layer in layers:
        effective = merge_config(effective, layer)

    return assert_valid_config(normalize_paths(effective, base_dir=source.parent))


def load_config_file(path: str | Path) -> dict[str, Any]:
    return load_config(path)


def env_bindings() -> tuple[EnvBinding, ...]:
    """Every ``SHIPWRIGHT_*`` variable the loader understands, sorted by name."""

    bindings: dict[str, EnvBinding] = {}
    for key, default in _leaves(default_config()):
        parser = _parser_for(default)
        if parser is not None:
            name = _env_name(key)
            bindings[name] = EnvBinding(name, key, parser)
    for key in _OPTIONAL_ENV_KEYS:
        bindings.setdefault(_env_name(key), EnvBinding(_env_name(key), key, _parse_str))
    return tuple(bindings[name] for name in sorted(bindings))


def env_overrides(environ: Mapping[str, str]) -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    for binding in env_bindings():
        raw = environ.get(binding.env_name)
        if raw is not None:
            _assign(overrides, binding.key, binding.parse(raw, binding))
    return overrides


def normalize_paths(config: Mapping[str, object], *, base_dir: Path) -> dict[str, Any]:
    """Resolve configured path fields against ``base_dir``."""

    normalized = merge_config({}, config)
    for key in PATH_FIELDS:
        section = normalized.get(key[0])
        if not isinstance(section, dict):
            continue
        raw = section.get(key[1])
        if isinstance(raw, str):
            section[key[1]] = _absolute_posix(raw, base_dir)
    return normalized


def effective_config(config: Mapping[str, object]) -> dict[str, Any]:
    return dump_redacted(config)


def dump_effective_config(config: Mapping[str, object]) -> str:
    """Compact, key-sorted JSON of the redacted config."""

    return json.dumps(
        effective_config(config), sort_keys=True, separators=(",", ":"), ensure_ascii=False
    )


# ---------------------------------------------------------------------------
# Layers
# ---------------------------------------------------------------------------


def _resolve_config_path(config_path: str | Path | None) -> Path:
    if config_path is None:
        return (Path.cwd() / DEFAULT_CONFIG_FILE).resolve()
    return Path(config_path).expanduser().resolve()


def _read_toml(path: Path, *, required: bool) -> dict[str, Any]:
    if not path.exists():
        if required:
            raise ConfigLoadError(f"config file not found: {path}")
        return {}
    try:
        with path.open("rb") as handle:
            return tomllib.load(handle)
    except tomllib.TOMLDecodeError as exc:
        raise ConfigLoadError(f"invalid TOML in {path}: {exc}") from exc
    except OSError as exc:
        raise ConfigLoadError(f"unable to read config file {path}: {exc}") from exc


def _cli_layer(overrides: Mapping[str, object]) -> dict[str, Any]:
    """Dotted keys (``runs.dispatch_limit``) or whole section mappings."""

    layer: dict[str, Any] = {}
    for raw_key in sorted(overrides):
        value = overrides[raw_key]
        if value is None:
            continue
        key = tuple(part for part in raw_key.split(".") if part)
        if not key:
            raise ConfigLoadError(f"invalid CLI override key {raw_key!r}")
        if isinstance(value, Mapping):
            value = merge_config({}, value)
        _assign(layer, key, value)
    return layer


# ---------------------------------------------------------------------------
# Environment coercion
# ---------------------------------------------------------------------------


def _parser_for(default: object) -> Callable[[str, EnvBinding], object] | None:
    if isinstance(default, bool):
        return _parse_bool
    if isinstance(default, int):
        return _parse_int
    if isinstance(default, str):
        return _parse_str
    if isinstance(default, list):
        return _parse_list
    return None


def _parse_str(raw: str, binding: EnvBinding) -> str:
    return raw.strip()


def _parse_list(raw: str, binding: EnvBinding) -> list[str]:
    return [item.strip() for item in raw.split(",") if item.strip()]


def _parse_int(raw: str, binding: EnvBinding) -> int:
    try:
        return int(raw.strip())
    except ValueError as exc:
        raise ConfigLoadError(f"{binding.env_name} -> {binding.dotted} must be an integer") from exc


def _parse_bool(raw: str, binding: EnvBinding) -> bool:
    lowered = raw.strip().lower()
    if lowered in _TRUTHY:
        return True
    if lowered in _FALSY:
        return False
    raise ConfigLoadError(
        f"{binding.env_name} -> {binding.dotted} must be a boolean (true/false/1/0/yes/no/on/off)"
    )


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _leaves(
    tree: Mapping[str, object], prefix: tuple[str, ...] = ()
) -> list[tuple[tuple[str, ...], object]]:
    found: list[tuple[tuple[str, ...], object]] = []
    for name in sorted(tree):
        value = tree[name]
        if isinstance(value, Mapping):
            found.extend(_leaves(value, (*prefix, name)))
        else:
            found.append(((*prefix, name), value))
    return found


def _assign(target: dict[str, Any], key: tuple[str, ...], value: object) -> None:
    node = target
    for part in key[:-1]:
        child = node.get(part)
        if not isinstance(child, dict):
            child = {}
            node[part] = child
        node = child
    node[key[-1]] = value


def _absolute_posix(raw: str, base_dir: Path) -> str:
    candidate = Path(os.path.expandvars(raw)).expanduser()
    if not candidate.is_absolute():
        candidate = base_dir / candidate
    return Path(os.path.normpath(candidate)).as_posix()


def _env_name(key: tuple[str, ...]) -> str:
    return ENV_PREFIX + "_".join(part.upper() for part in key)


__all__ = [
    "ConfigLoadError",
    "DEFAULT_CONFIG_FILE",
    "ENV_PREFIX",
    "EnvBinding",
    "dump_effective_config",
    "effective_config",
    "env_bindings",
    "env_overrides",
    "load_config",
    "load_config_file",
    "normalize_paths",
]
