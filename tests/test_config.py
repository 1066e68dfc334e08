"""Tests for JSON configuration loading and DeviceConfig/PoolConfig validation."""

import json

import pytest

from modbus_agent import AgentConfig, Backend, ConfigError, DeviceConfig, PoolConfig, Transport, load_config
from modbus_agent.config import parse_config


def write_config(tmp_path, payload) -> str:
    path = tmp_path / "agent.json"
    path.write_text(json.dumps(payload) if not isinstance(payload, str) else payload, encoding="utf-8")
    return str(path)


def test_load_full_config(tmp_path) -> None:
    path = write_config(
        tmp_path,
        {
            "pool": {"max_connections_per_device": 2, "acquire_timeout": 5, "eviction_threshold": 4},
            "devices": [
                {"device_id": "boiler", "host": "10.0.0.5", "unit_id": 3, "backend": "pymodbus-sync"},
                {
                    "device_id": "meter",
                    "transport": "serial",
                    "serial_port": "/dev/ttyUSB0",
                    "baudrate": 19200,
                    "parity": "E",
                    "max_connections": 1,
                },
            ],
        },
    )

    config = load_config(path)

    assert config.pool == PoolConfig(max_connections_per_device=2, acquire_timeout=5, eviction_threshold=4)
    boiler, meter = config.devices
    assert boiler.backend is Backend.PYMODBUS_SYNC
    assert boiler.endpoint == "10.0.0.5:502"
    assert meter.transport is Transport.SERIAL
    assert meter.endpoint == "/dev/ttyUSB0@19200"


def test_empty_object_gives_defaults() -> None:
    assert parse_config({}) == AgentConfig()


def test_missing_file(tmp_path) -> None:
    with pytest.raises(ConfigError, match="not found"):
        load_config(tmp_path / "absent.json")


def test_invalid_json(tmp_path) -> None:
    with pytest.raises(ConfigError, match="Invalid JSON"):
        load_config(write_config(tmp_path, "{not json"))


@pytest.mark.parametrize(
    ("payload", "match"),
    [
        ([], "root must be an object"),
        ({"servers": []}, "Unknown top-level keys: servers"),
        ({"devices": {}}, "devices must be a list"),
        ({"devices": ["plc"]}, r"devices\[0\]: expected an object"),
        ({"devices": [{"device_id": "a", "colour": "red"}]}, r"devices\[0\]: unknown keys colour"),
        ({"devices": [{"host": "x"}]}, r"devices\[0\]"),
        ({"devices": [{"device_id": "a", "backend": "modbus-tk"}]}, r"devices\[0\]"),
        ({"devices": [{"device_id": "a", "unit_id": 300}]}, "unit_id"),
        ({"devices": [{"device_id": "a", "transport": "serial"}]}, "serial_port"),
        ({"devices": [{"device_id": "a"}, {"device_id": "a"}]}, "Duplicate device id"),
        ({"pool": {"max_connections_per_device": 0}}, "pool: max_connections_per_device"),
        ({"pool": {"acquire_timeout": -1}}, "acquire_timeout"),
        ({"pool": {"eviction_threshold": 0}}, "eviction_threshold"),
        ({"pool": {"health_check_interval": 0}}, "health_check_interval"),
    ],
)
def test_rejects_bad_config(payload, match: str) -> None:
    with pytest.raises(ConfigError, match=match):
        parse_config(payload)


def test_device_deadline_covers_retries() -> None:
    assert DeviceConfig(device_id="a", timeout=2.0, retries=2).deadline == 6.0


def test_cleanup_interval_defaults_to_half_idle_timeout() -> None:
    assert PoolConfig(idle_timeout=60).effective_cleanup_interval == 30
    assert PoolConfig(idle_timeout=60, cleanup_interval=5).effective_cleanup_interval == 5
