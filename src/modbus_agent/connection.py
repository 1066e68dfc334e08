"""DeviceConnection: one link to one device, bounds-checked register I/O, classified failures."""

from __future__ import annotations

import asyncio
import itertools
import logging
import time
from typing import TYPE_CHECKING, Any, Awaitable

from .errors import EVICTING_KINDS, ErrorKind, ModbusFailure, classify_exception, classify_response, make_failure
from .links import ModbusLink
from .types import MAX_READ_COUNT, MAX_WRITE_COUNT, ConnectionState, DeviceConfig, ModbusTable

if TYPE_CHECKING:
    from .pool import ConnectionPool

logger = logging.getLogger(__name__)

_ids = itertools.count(1)


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


class DeviceConnection:
    """
    Wraps a single ModbusLink. Register operations validate bounds locally
    (no I/O on violation), run under the device deadline and raise ModbusFailure
    for every failure. Owned by a ConnectionPool when created through one.
    """

    def __init__(
        self,
        config: DeviceConfig,
        link: ModbusLink,
        pool: ConnectionPool | None = None,
    ) -> None:
        self._config = config
        self._link = link
        self._pool = pool
        self._state = ConnectionState.IDLE
        self.connection_id = f"{config.device_id}#{next(_ids)}"
        self.created_at = time.monotonic()
        self.last_used = self.created_at
        self.use_count = 0
        self.consecutive_failures = 0
        self.health_failures = 0

    @property
    def device_id(self) -> str:
        return self._config.device_id

    @property
    def config(self) -> DeviceConfig:
        return self._config

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def pool(self) -> ConnectionPool | None:
        return self._pool

    @property
    def connected(self) -> bool:
        """False once closed or when the peer has dropped the link."""
        return self._state != ConnectionState.CLOSED and self._link.connected

    def __repr__(self) -> str:
        return f"<DeviceConnection {self.connection_id} {self._state.value}>"

    # State transitions are driven by the owning pool.

    def _checkout(self, count_use: bool = True) -> None:
        self._state = ConnectionState.IN_USE
        if count_use:
            self.use_count += 1

    def _checkin(self) -> None:
        self._state = ConnectionState.IDLE
        self.last_used = time.monotonic()

    async def open(self) -> None:
        """Connect the link within the device deadline; ConnectionFailed/Timeout on failure."""
        try:
            connected = await asyncio.wait_for(self._link.connect(), self._config.deadline)
        except Exception as exc:
            failure = classify_exception(exc, self.device_id)
            await self._discard_link()
            if failure is exc:
                raise
            raise failure from exc
        if not connected:
            await self._discard_link()
            raise make_failure(
                f"{self.device_id}: failed to connect to {self._config.endpoint}",
                ErrorKind.CONNECTION_FAILED,
                device_id=self.device_id,
            )
        logger.debug("Opened %s to %s", self.connection_id, self._config.endpoint)

    async def read_registers(
        self,
        address: int,
        count: int,
        table: ModbusTable = ModbusTable.HOLDING_REGISTER,
    ) -> list[int]:
        """Read count registers starting at address; returns the raw values."""
        self._check_address(address)
        if not _is_int(count) or not 1 <= count <= MAX_READ_COUNT:
            raise make_failure(
                f"{self.device_id}: register count must be 1..{MAX_READ_COUNT}, got {count!r}",
                ErrorKind.INVALID_REGISTER,
                device_id=self.device_id,
                address=address,
            )
        self._check_span(address, count)
        try:
            table = ModbusTable(table)
        except ValueError:
            raise make_failure(
                f"{self.device_id}: unsupported register table {table!r}",
                ErrorKind.INVALID_REGISTER,
                device_id=self.device_id,
                address=address,
            ) from None
        self._check_open(address)

        response = await self._call(self._link.read(table, address, count), address)
        registers = getattr(response, "registers", None)
        if registers is None or len(registers) < count:
            got = 0 if registers is None else len(registers)
            raise self._record(
                make_failure(
                    f"{self.device_id}: short register response at {address} ({got} of {count})",
                    ErrorKind.PROTOCOL_ERROR,
                    device_id=self.device_id,
                    address=address,
                )
            )
        self.consecutive_failures = 0
        return [int(v) for v in registers[:count]]

    async def write_registers(self, address: int, values: list[int]) -> None:
        """Write values to consecutive holding registers starting at address."""
        self._check_address(address)
        if not isinstance(values, (list, tuple)) or not 1 <= len(values) <= MAX_WRITE_COUNT:
            size = len(values) if isinstance(values, (list, tuple)) else values
            raise make_failure(
                f"{self.device_id}: write needs 1..{MAX_WRITE_COUNT} values, got {size!r}",
                ErrorKind.INVALID_REGISTER,
                device_id=self.device_id,
                address=address,
            )
        for v in values:
            if not _is_int(v) or not 0 <= v <= 0xFFFF:
                raise make_failure(
                    f"{self.device_id}: register value must be 0..65535, got {v!r}",
                    ErrorKind.INVALID_REGISTER,
                    device_id=self.device_id,
                    address=address,
                )
        self._check_span(address, len(values))
        self._check_open(address)

        await self._call(self._link.write(address, list(values)), address)
        self.consecutive_failures = 0

    async def close(self) -> None:
        """Close the link. Idempotent; only the first call touches pool accounting."""
        if self._detach():
            await self._discard_link()
            logger.debug("Closed %s", self.connection_id)

    def _detach(self) -> bool:
        """Mark CLOSED and leave pool accounting without suspending. False if already closed."""
        if self._state == ConnectionState.CLOSED:
            return False
        self._state = ConnectionState.CLOSED
        if self._pool is not None:
            self._pool._forget(self)
        return True

    async def _discard_link(self) -> None:
        try:
            await self._link.close()
        except Exception as e:
            logger.warning("Error closing link for %s: %s", self.connection_id, e)

    async def _call(self, operation: Awaitable[Any], address: int) -> Any:
        try:
            response = await asyncio.wait_for(operation, self._config.deadline)
        except Exception as exc:
            failure = self._record(classify_exception(exc, self.device_id, address))
            if failure is exc:
                raise
            raise failure from exc
        if response is None:
            raise self._record(
                make_failure(
                    f"{self.device_id}: empty response at {address}",
                    ErrorKind.PROTOCOL_ERROR,
                    device_id=self.device_id,
                    address=address,
                )
            )
        if isinstance(response, BaseException) or response.isError():
            raise self._record(classify_response(response, self.device_id, address))
        return response

    def _record(self, failure: ModbusFailure) -> ModbusFailure:
        if failure.kind in EVICTING_KINDS:
            self.consecutive_failures += 1
        logger.warning("%s failed (%s): %s", self.connection_id, failure.kind.value, failure.message)
        return failure

    def _check_address(self, address: Any) -> None:
        if not _is_int(address) or not 0 <= address <= self._config.max_address:
            raise make_failure(
                f"{self.device_id}: address {address!r} outside 0..{self._config.max_address}",
                ErrorKind.INVALID_ADDRESS,
                device_id=self.device_id,
                address=address if _is_int(address) else None,
            )

    def _check_span(self, address: int, count: int) -> None:
        if address + count - 1 > self._config.max_address:
            raise make_failure(
                f"{self.device_id}: {count} registers from {address} run past {self._config.max_address}",
                ErrorKind.INVALID_REGISTER,
                device_id=self.device_id,
                address=address,
            )

    def _check_open(self, address: int) -> None:
        if self._state == ConnectionState.CLOSED:
            raise make_failure(
                f"{self.device_id}: connection {self.connection_id} is closed",
                ErrorKind.CONNECTION_FAILED,
                device_id=self.device_id,
                address=address,
            )
