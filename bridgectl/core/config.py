"""Routing configuration loading, validation, and change notification."""

from __future__ import annotations

import asyncio
import copy
import json
import logging
import os
import sys
from functools import lru_cache
from importlib import resources
from pathlib import Path
from typing import Any

import yaml
from jsonschema import ValidationError, validators

from bridgectl.core.errors import ConfigLoadError, ConfigValidationError
from bridgectl.core.model import (
    AdvancedConfig,
    DetectionConfig,
    FallbackConfig,
    RoutingConfig,
    Target,
    TimeoutConfig,
)
from bridgectl.core.signals import Signal

LOGGER = logging.getLogger(__name__)

CONFIG_ENV = "BRIDGECTL_CONFIG"
CONFIG_FILE_NAME = "config.json"


class UniqueKeyLoader(yaml.SafeLoader):
    """YAML loader that rejects duplicate mapping keys."""


def _construct_mapping(loader: UniqueKeyLoader, node: yaml.Node, deep: bool = False) -> dict[str, Any]:
    mapping: dict[str, Any] = {}
    for key_node, value_node in node.value:
        key = loader.construct_object(key_node, deep=deep)
        if key in mapping:
            raise ConfigValidationError(f"Duplicate key '{key}' in config document")
        mapping[key] = loader.construct_object(value_node, deep=deep)
    return mapping


UniqueKeyLoader.add_constructor(
    yaml.resolver.BaseResolver.DEFAULT_MAPPING_TAG,
    _construct_mapping,
)


@lru_cache(maxsize=1)
def _load_schema_validator() -> Any:
    schema_text = resources.files("bridgectl.schemas").joinpath("config.schema.json").read_text(
        encoding="utf-8"
    )
    schema = json.loads(schema_text)
    validator_cls = validators.validator_for(schema)
    validator_cls.check_schema(schema)
    return validator_cls(schema)


def _config_dir() -> Path:
    if sys.platform == "win32":
        return Path(os.environ.get("APPDATA") or Path.home()) / "bridgectl"
    if sys.platform == "darwin":
        return Path.home() / "Library" / "Application Support" / "bridgectl"
    xdg_config = Path(os.environ.get("XDG_CONFIG_HOME", Path.home() / ".config"))
    return xdg_config / "bridgectl"


def default_config_path() -> Path:
    override = os.environ.get(CONFIG_ENV)
    if override and override.strip():
        return Path(override.strip()).expanduser()
    return _config_dir() / CONFIG_FILE_NAME


def config_to_document(config: RoutingConfig) -> dict[str, Any]:
    """Render ``config`` in the on-disk (camelCase) document shape."""
    target = config.target.value if isinstance(config.target, Target) else config.target
    return {
        "target": target,
        "fallback": {
            "enabled": config.fallback.enabled,
            "order": [t.value for t in config.fallback.order],
        },
        "timeouts": {
            "connection": config.timeouts.connection,
            "healthCheck": config.timeouts.health_check,
            "reconnect": config.timeouts.reconnect,
        },
        "detection": {
            "interval": config.detection.interval,
            "cacheTtl": config.detection.cache_ttl,
        },
        "advanced": {
            "transport": config.advanced.transport,
            "paths": {t.value: p for t, p in config.advanced.paths.items()},
            "executables": {t.value: p for t, p in config.advanced.executables.items()},
            "debug": config.advanced.debug,
        },
    }


DEFAULT_CONFIG = RoutingConfig()


def _merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def validate_document(doc: Any, *, source: str = "config") -> None:
    if not isinstance(doc, dict):
        raise ConfigValidationError(f"{source} must contain a mapping at root")
    validator = _load_schema_validator()
    try:
        validator.validate(doc)
    except ValidationError as exc:
        path = ".".join(str(p) for p in exc.path)
        where = f" ({path})" if path else ""
        raise ConfigValidationError(f"Schema validation failed for {source}{where}: {exc.message}") from exc


def build_config(doc: dict[str, Any], *, source: str = "config") -> RoutingConfig:
    """Validate a (possibly partial) document and merge it over the defaults."""
    validate_document(doc, source=source)
    merged = _merge(config_to_document(DEFAULT_CONFIG), doc)

    target_raw = merged["target"]
    advanced = merged["advanced"]
    config = RoutingConfig(
        target="auto" if target_raw == "auto" else Target(target_raw),
        fallback=FallbackConfig(
            enabled=merged["fallback"]["enabled"],
            order=tuple(Target(t) for t in merged["fallback"]["order"]),
        ),
        timeouts=TimeoutConfig(
            connection=merged["timeouts"]["connection"],
            health_check=merged["timeouts"]["healthCheck"],
            reconnect=merged["timeouts"]["reconnect"],
        ),
        detection=DetectionConfig(
            interval=merged["detection"]["interval"],
            cache_ttl=merged["detection"]["cacheTtl"],
        ),
        advanced=AdvancedConfig(
            transport=advanced["transport"],
            paths={Target(t): p for t, p in advanced["paths"].items()},
            executables={Target(t): p for t, p in advanced["executables"].items()},
            debug=advanced["debug"],
        ),
    )
    ensure_valid(config)
    return config


def ensure_valid(config: Any) -> RoutingConfig:
    """Structural check of a config snapshot handed to the routing core.

    The loader already validates documents; this guards against snapshots
    built in code, so that routing never runs on guessed values.
    """
    if not isinstance(config, RoutingConfig):
        raise ConfigValidationError(f"Expected RoutingConfig, got {type(config).__name__}")
    if config.target != "auto" and not isinstance(config.target, Target):
        raise ConfigValidationError(f"Invalid target {config.target!r}")
    if not all(isinstance(t, Target) for t in config.fallback.order):
        raise ConfigValidationError("fallback.order must contain only targets")
    if len(set(config.fallback.order)) != len(config.fallback.order):
        raise ConfigValidationError("fallback.order must not repeat targets")
    for name in ("connection", "health_check", "reconnect"):
        value = getattr(config.timeouts, name)
        if isinstance(value, bool) or not isinstance(value, (int, float)) or value < 0:
            raise ConfigValidationError(f"timeouts.{name} must be a non-negative number")
    interval = config.detection.interval
    if isinstance(interval, bool) or not isinstance(interval, (int, float)) or interval <= 0:
        raise ConfigValidationError("detection.interval must be a positive number")
    ttl = config.detection.cache_ttl
    if isinstance(ttl, bool) or not isinstance(ttl, (int, float)) or ttl < 0:
        raise ConfigValidationError("detection.cacheTtl must be a non-negative number")
    if config.advanced.transport not in ("ipc", "process"):
        raise ConfigValidationError(f"Invalid transport {config.advanced.transport!r}")
    return config


def _read_document(path: Path) -> dict[str, Any] | None:
    try:
        content = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return None
    except OSError as exc:
        raise ConfigLoadError(f"Could not read config file {path}: {exc}") from exc

    try:
        loaded = yaml.load(content, Loader=UniqueKeyLoader)
    except yaml.YAMLError as exc:
        raise ConfigValidationError(f"Invalid config syntax in {path}: {exc}") from exc

    if loaded is None:
        return {}
    if not isinstance(loaded, dict):
        raise ConfigValidationError(f"Config file {path} must contain a mapping at root")
    return loaded


def load_config(path: Path | None = None) -> RoutingConfig:
    config_path = path or default_config_path()
    doc = _read_document(config_path)
    if doc is None:
        return DEFAULT_CONFIG
    return build_config(doc, source=str(config_path))


class ConfigManager:
    """Owns the current config snapshot and notifies subscribers of changes."""

    def __init__(self, path: Path | None = None) -> None:
        self.path = path or default_config_path()
        self.changed: Signal[RoutingConfig] = Signal("config.changed")
        self._config = DEFAULT_CONFIG
        self._watch_task: asyncio.Task[None] | None = None
        self._last_mtime: float | None = None

    def load(self) -> RoutingConfig:
        self._config = load_config(self.path)
        self._last_mtime = self._mtime()
        return self._config

    def get_config(self) -> RoutingConfig:
        return self._config

    def save(self, config: RoutingConfig) -> None:
        ensure_valid(config)
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(json.dumps(config_to_document(config), indent=2) + "\n", encoding="utf-8")
        except OSError as exc:
            raise ConfigLoadError(f"Could not write config file {self.path}: {exc}") from exc
        self._config = config
        self._last_mtime = self._mtime()
        self.changed.emit(config)

    def reset(self) -> None:
        self.save(DEFAULT_CONFIG)

    def get_nested(self, dot_path: str) -> Any:
        current: Any = config_to_document(self._config)
        for part in dot_path.split("."):
            if not isinstance(current, dict) or part not in current:
                raise KeyError(dot_path)
            current = current[part]
        return current

    def set_nested(self, dot_path: str, value: Any) -> RoutingConfig:
        doc = config_to_document(self._config)
        *parents, last = dot_path.split(".")
        current = doc
        for part in parents:
            if not isinstance(current.get(part), dict):
                current[part] = {}
            current = current[part]
        current[last] = value
        config = build_config(doc, source=dot_path)
        self.save(config)
        return config

    def start_watching(self, interval_s: float = 2.0) -> None:
        if self._watch_task is not None:
            return
        self._watch_task = asyncio.create_task(self._watch_loop(interval_s))

    async def stop_watching(self) -> None:
        task, self._watch_task = self._watch_task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _watch_loop(self, interval_s: float) -> None:
        while True:
            await asyncio.sleep(interval_s)
            try:
                self.reload_if_changed()
            except Exception:
                LOGGER.exception("Config watch iteration failed")

    def reload_if_changed(self) -> bool:
        """Reload the file when its mtime moved; keep the last good snapshot on error."""
        mtime = self._mtime()
        if mtime == self._last_mtime:
            return False
        self._last_mtime = mtime
        previous = self._config
        try:
            config = load_config(self.path)
        except (ConfigLoadError, ConfigValidationError) as exc:
            LOGGER.warning("Ignoring invalid config change in %s: %s", self.path, exc)
            return False
        self._config = config
        if config != previous:
            LOGGER.info("Config file %s changed", self.path)
            self.changed.emit(config)
            return True
        return False

    def _mtime(self) -> float | None:
        try:
            return self.path.stat().st_mtime
        except OSError:
            return None
