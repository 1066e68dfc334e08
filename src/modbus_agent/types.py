"""Core data model: backends, transports, device and pool configuration, pool statistics."""

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any


class Backend(str, Enum):
    """pymodbus client family a link is built on; chosen per device at configuration time."""

    PYMODBUS_SYNC = "pymodbus-sync"
    PYMODBUS_ASYNC = "pymodbus-async"


class Transport(str, Enum):
    TCP = "tcp"
    SERIAL = "serial"


class ModbusTable(str, Enum):
    """Register tables reachable through read_registers."""

    HOLDING_REGISTER = "holding_register"
    INPUT_REGISTER = "input_register"


class ConnectionState(str, Enum):
    IDLE = "idle"
    IN_USE = "in_use"
    CLOSED = "closed"


MAX_REGISTER_ADDRESS = 65535
MAX_READ_COUNT = 125
MAX_WRITE_COUNT = 123


@dataclass(frozen=True)
class DeviceConfig:
    """How to reach one Modbus device. device_id is the pool key."""

    device_id: str
    host: str = "localhost"
    port: int = 502
    unit_id: int = 1
    backend: Backend = Backend.PYMODBUS_ASYNC
    transport: Transport = Transport.TCP
    serial_port: str | None = None
    baudrate: int = 9600
    parity: str = "N"
    stopbits: int = 1
    bytesize: int = 8
    timeout: float = 3.0
    retries: int = 3
    max_address: int = MAX_REGISTER_ADDRESS
    max_connections: int | None = None

    def __post_init__(self) -> None:
        # Accept plain strings for the enum fields (JSON config, CLI options).
        object.__setattr__(self, "backend", Backend(self.backend))
        object.__setattr__(self, "transport", Transport(self.transport))
        if not self.device_id:
            raise ValueError("device_id cannot be empty")
        if not 0 <= self.unit_id <= 247:
            raise ValueError(f"unit_id must be 0..247, got {self.unit_id}")
        if not 1 <= self.port <= 65535:
            raise ValueError(f"port must be 1..65535, got {self.port}")
        if self.timeout <= 0:
            raise ValueError(f"timeout must be > 0, got {self.timeout}")
        if self.retries < 0:
            raise ValueError(f"retries must be >= 0, got {self.retries}")
        if not 0 <= self.max_address <= MAX_REGISTER_ADDRESS:
            raise ValueError(f"max_address must be 0..{MAX_REGISTER_ADDRESS}, got {self.max_address}")
        if self.max_connections is not None and self.max_connections < 1:
            raise ValueError(f"max_connections must be >= 1, got {self.max_connections}")
        if self.transport == Transport.SERIAL and not self.serial_port:
            raise ValueError(f"serial transport for {self.device_id!r} requires serial_port")

    @property
    def deadline(self) -> float:
        """Upper bound for one register operation, covering the library's own retries."""
        return self.timeout * (self.retries + 1)

    @property
    def endpoint(self) -> str:
        if self.transport == Transport.SERIAL:
            return f"{self.serial_port}@{self.baudrate}"
        return f"{self.host}:{self.port}"


@dataclass(frozen=True)
class PoolConfig:
    """Pool policy. None of these is fixed; every deployment can tune them."""

    max_connections_per_device: int = 1
    acquire_timeout: float = 30.0
    idle_timeout: float = 300.0
    eviction_threshold: int = 3
    cleanup_interval: float | None = None
    health_check_interval: float | None = 60.0

    def __post_init__(self) -> None:
        if self.max_connections_per_device < 1:
            raise ValueError(f"max_connections_per_device must be >= 1, got {self.max_connections_per_device}")
        if self.acquire_timeout < 0:
            raise ValueError(f"acquire_timeout must be >= 0, got {self.acquire_timeout}")
        if self.idle_timeout <= 0:
            raise ValueError(f"idle_timeout must be > 0, got {self.idle_timeout}")
        if self.eviction_threshold < 1:
            raise ValueError(f"eviction_threshold must be >= 1, got {self.eviction_threshold}")
        if self.cleanup_interval is not None and self.cleanup_interval <= 0:
            raise ValueError(f"cleanup_interval must be > 0, got {self.cleanup_interval}")
        if self.health_check_interval is not None and self.health_check_interval <= 0:
            raise ValueError(f"health_check_interval must be > 0, got {self.health_check_interval}")

    @property
    def effective_cleanup_interval(self) -> float:
        return self.cleanup_interval if self.cleanup_interval is not None else self.idle_timeout / 2


@dataclass(frozen=True)
class DeviceStats:
    max_connections: int
    in_use: int = 0
    idle: int = 0
    opening: int = 0
    waiting: int = 0


@dataclass(frozen=True)
class RequestStats:
    """Acquire outcomes since the pool was created. failed_connections counts links that would not open."""

    total: int = 0
    successful: int = 0
    failed: int = 0
    failed_connections: int = 0


@dataclass(frozen=True)
class PoolStats:
    closed: bool
    devices: dict[str, DeviceStats] = field(default_factory=dict)
    requests: RequestStats = field(default_factory=RequestStats)
    errors: dict[str, Any] = field(default_factory=dict)

    @property
    def in_use(self) -> int:
        return sum(d.in_use for d in self.devices.values())

    @property
    def idle(self) -> int:
        return sum(d.idle for d in self.devices.values())

    @property
    def waiting(self) -> int:
        return sum(d.waiting for d in self.devices.values())

    def to_dict(self) -> dict[str, Any]:
        return {
            "closed": self.closed,
            "in_use": self.in_use,
            "idle": self.idle,
            "waiting": self.waiting,
            "devices": {device_id: asdict(stats) for device_id, stats in self.devices.items()},
            "requests": asdict(self.requests),
            "errors": self.errors,
        }
