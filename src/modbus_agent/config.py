"""Agent configuration: load pool policy and device list from a JSON file."""

import json
import logging
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

from .errors import ConfigError
from .types import DeviceConfig, PoolConfig

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AgentConfig:
    pool: PoolConfig = field(default_factory=PoolConfig)
    devices: list[DeviceConfig] = field(default_factory=list)


def _build(cls: type, raw: Any, where: str) -> Any:
    if not isinstance(raw, dict):
        raise ConfigError(f"{where}: expected an object, got {type(raw).__name__}")
    known = {f.name for f in fields(cls)}
    unknown = sorted(set(raw) - known)
    if unknown:
        raise ConfigError(f"{where}: unknown keys {', '.join(unknown)}")
    try:
        return cls(**raw)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{where}: {exc}") from exc


def parse_config(raw: Any) -> AgentConfig:
    """Build an AgentConfig from decoded JSON: {"pool": {...}, "devices": [{...}, ...]}."""
    if not isinstance(raw, dict):
        raise ConfigError("Config root must be an object")
    unknown = sorted(set(raw) - {"pool", "devices"})
    if unknown:
        raise ConfigError(f"Unknown top-level keys: {', '.join(unknown)}")

    pool = _build(PoolConfig, raw.get("pool", {}), "pool")

    entries = raw.get("devices", [])
    if not isinstance(entries, list):
        raise ConfigError("devices must be a list")
    devices: list[DeviceConfig] = []
    seen: set[str] = set()
    for i, entry in enumerate(entries):
        device = _build(DeviceConfig, entry, f"devices[{i}]")
        if device.device_id in seen:
            raise ConfigError(f"Duplicate device id: {device.device_id!r}")
        seen.add(device.device_id)
        devices.append(device)
    return AgentConfig(pool=pool, devices=devices)


def load_config(path: str | Path) -> AgentConfig:
    """Load and validate a JSON config file. Raises ConfigError with the reason."""
    p = Path(path)
    if not p.is_file():
        raise ConfigError(f"Config file not found: {p}")
    try:
        raw = json.loads(p.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise ConfigError(f"Invalid JSON in config file {p}: {exc}") from exc
    config = parse_config(raw)
    logger.debug("Loaded %d devices from %s", len(config.devices), p)
    return config
