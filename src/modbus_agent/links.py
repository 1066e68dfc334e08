"""
Links: one underlying pymodbus client each, behind a common async read/write/close capability.

Two variants exist because pymodbus ships two incompatible client families:
the blocking clients (ModbusTcpClient, ModbusSerialClient) and the asyncio
clients (AsyncModbusTcpClient, AsyncModbusSerialClient). They differ in how
they connect, how they report missing replies and which calls suspend.
Links do not interpret failures; errors.classify_* does that for both.
"""

import asyncio
import logging
import threading
from abc import ABC, abstractmethod
from typing import Any, Callable

from pymodbus.client import (
    AsyncModbusSerialClient,
    AsyncModbusTcpClient,
    ModbusSerialClient,
    ModbusTcpClient,
)

from .types import Backend, DeviceConfig, ModbusTable, Transport

logger = logging.getLogger(__name__)


class ModbusLink(ABC):
    """Capability consumed by DeviceConnection. read/write return raw pymodbus responses."""

    def __init__(self, config: DeviceConfig) -> None:
        self.config = config

    @property
    @abstractmethod
    def connected(self) -> bool: ...

    @abstractmethod
    async def connect(self) -> bool: ...

    @abstractmethod
    async def read(self, table: ModbusTable, address: int, count: int) -> Any: ...

    @abstractmethod
    async def write(self, address: int, values: list[int]) -> Any: ...

    @abstractmethod
    async def close(self) -> None: ...


class PymodbusSyncLink(ModbusLink):
    """
    Blocking pymodbus client; every call runs in a worker thread so the event loop never blocks.

    A deadline only abandons the wait, so a timed-out call may still be running in
    its thread. The client lock makes the next call start after it finishes.
    """

    def __init__(self, config: DeviceConfig) -> None:
        super().__init__(config)
        self._client: ModbusTcpClient | ModbusSerialClient | None = None
        self._lock = threading.Lock()

    def _build(self) -> ModbusTcpClient | ModbusSerialClient:
        cfg = self.config
        if cfg.transport == Transport.SERIAL:
            return ModbusSerialClient(
                port=cfg.serial_port,
                baudrate=cfg.baudrate,
                bytesize=cfg.bytesize,
                parity=cfg.parity,
                stopbits=cfg.stopbits,
                timeout=cfg.timeout,
                retries=cfg.retries,
            )
        return ModbusTcpClient(
            host=cfg.host,
            port=cfg.port,
            timeout=cfg.timeout,
            retries=cfg.retries,
        )

    @property
    def connected(self) -> bool:
        return self._client is not None and bool(self._client.connected)

    async def connect(self) -> bool:
        if self._client is None:
            self._client = self._build()
        return bool(await asyncio.to_thread(self._locked, self._client.connect))

    def _locked(self, func: Callable[..., Any], *args: Any) -> Any:
        with self._lock:
            return func(*args)

    def _read_blocking(self, table: ModbusTable, address: int, count: int) -> Any:
        client = self._require_client()
        if table == ModbusTable.INPUT_REGISTER:
            return client.read_input_registers(address, count=count, device_id=self.config.unit_id)
        return client.read_holding_registers(address, count=count, device_id=self.config.unit_id)

    def _write_blocking(self, address: int, values: list[int]) -> Any:
        client = self._require_client()
        return client.write_registers(address, values, device_id=self.config.unit_id)

    def _require_client(self) -> ModbusTcpClient | ModbusSerialClient:
        if self._client is None:
            self._client = self._build()
        return self._client

    async def read(self, table: ModbusTable, address: int, count: int) -> Any:
        return await asyncio.to_thread(self._locked, self._read_blocking, table, address, count)

    async def write(self, address: int, values: list[int]) -> Any:
        return await asyncio.to_thread(self._locked, self._write_blocking, address, values)

    async def close(self) -> None:
        if self._client is not None:
            client, self._client = self._client, None
            await asyncio.to_thread(self._locked, client.close)


class PymodbusAsyncLink(ModbusLink):
    """asyncio pymodbus client; calls suspend on the event loop directly."""

    def __init__(self, config: DeviceConfig) -> None:
        super().__init__(config)
        self._client: AsyncModbusTcpClient | AsyncModbusSerialClient | None = None

    def _build(self) -> AsyncModbusTcpClient | AsyncModbusSerialClient:
        cfg = self.config
        if cfg.transport == Transport.SERIAL:
            return AsyncModbusSerialClient(
                port=cfg.serial_port,
                baudrate=cfg.baudrate,
                bytesize=cfg.bytesize,
                parity=cfg.parity,
                stopbits=cfg.stopbits,
                timeout=cfg.timeout,
                retries=cfg.retries,
            )
        return AsyncModbusTcpClient(
            host=cfg.host,
            port=cfg.port,
            timeout=cfg.timeout,
            retries=cfg.retries,
        )

    @property
    def connected(self) -> bool:
        return self._client is not None and bool(self._client.connected)

    async def connect(self) -> bool:
        if self._client is None:
            self._client = self._build()
        await self._client.connect()
        return bool(self._client.connected)

    async def read(self, table: ModbusTable, address: int, count: int) -> Any:
        client = self._require_client()
        if table == ModbusTable.INPUT_REGISTER:
            return await client.read_input_registers(address, count=count, device_id=self.config.unit_id)
        return await client.read_holding_registers(address, count=count, device_id=self.config.unit_id)

    async def write(self, address: int, values: list[int]) -> Any:
        client = self._require_client()
        return await client.write_registers(address, values, device_id=self.config.unit_id)

    def _require_client(self) -> AsyncModbusTcpClient | AsyncModbusSerialClient:
        if self._client is None:
            self._client = self._build()
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            client, self._client = self._client, None
            client.close()


_LINK_TYPES: dict[Backend, type[ModbusLink]] = {
    Backend.PYMODBUS_SYNC: PymodbusSyncLink,
    Backend.PYMODBUS_ASYNC: PymodbusAsyncLink,
}


def create_link(config: DeviceConfig) -> ModbusLink:
    """Build the link variant selected by config.backend (no I/O happens here)."""
    link = _LINK_TYPES[config.backend](config)
    logger.debug("Link for %s: %s via %s", config.device_id, type(link).__name__, config.endpoint)
    return link
