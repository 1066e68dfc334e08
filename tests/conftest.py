"""Shared fixtures: an in-memory link that stands in for a Modbus device."""

import asyncio
from typing import Any

import pytest

from modbus_agent.links import ModbusLink
from modbus_agent.types import DeviceConfig, ModbusTable


class FakeResponse:
    def __init__(self, registers: list[int] | None = None, exception_code: int | None = None) -> None:
        self.registers = registers if registers is not None else []
        self.exception_code = exception_code

    def isError(self) -> bool:
        return self.exception_code is not None


class FakeLink(ModbusLink):
    """Register memory shared through its factory; failure knobs are read at call time."""

    def __init__(self, config: DeviceConfig, factory: "LinkFactory") -> None:
        super().__init__(config)
        self.factory = factory
        self.calls: list[tuple[Any, ...]] = []
        self.close_count = 0
        self._connected = False

    @property
    def connected(self) -> bool:
        return self._connected

    async def connect(self) -> bool:
        self.calls.append(("connect",))
        if self.factory.connect_error is not None:
            raise self.factory.connect_error
        self._connected = self.factory.connect_result
        return self._connected

    async def read(self, table: ModbusTable, address: int, count: int) -> Any:
        self.calls.append(("read", table, address, count))
        if self.factory.delay:
            await asyncio.sleep(self.factory.delay)
        if self.factory.error is not None:
            raise self.factory.error
        if self.factory.response is not None:
            return self.factory.response
        return FakeResponse([self.factory.memory.get(a, 0) for a in range(address, address + count)])

    async def write(self, address: int, values: list[int]) -> Any:
        self.calls.append(("write", address, list(values)))
        if self.factory.error is not None:
            raise self.factory.error
        if self.factory.response is not None:
            return self.factory.response
        for i, v in enumerate(values):
            self.factory.memory[address + i] = v
        return FakeResponse()

    async def close(self) -> None:
        self.close_count += 1
        if self.factory.close_delay:
            await asyncio.sleep(self.factory.close_delay)
        self._connected = False

    def io_calls(self) -> list[tuple[Any, ...]]:
        return [c for c in self.calls if c[0] in ("read", "write")]


class LinkFactory:
    """link_factory for ConnectionPool that records every FakeLink it builds."""

    def __init__(self) -> None:
        self.links: list[FakeLink] = []
        self.memory: dict[int, int] = {}
        self.connect_result = True
        self.connect_error: BaseException | None = None
        self.error: BaseException | None = None
        self.response: Any = None
        self.delay = 0.0
        self.close_delay = 0.0

    def __call__(self, config: DeviceConfig) -> FakeLink:
        link = FakeLink(config, self)
        self.links.append(link)
        return link


@pytest.fixture
def link_factory() -> LinkFactory:
    return LinkFactory()


@pytest.fixture
def device() -> DeviceConfig:
    return DeviceConfig(device_id="dev-1", host="127.0.0.1", timeout=1.0, retries=0)


@pytest.fixture
def fake_link(device: DeviceConfig, link_factory: LinkFactory) -> FakeLink:
    return link_factory(device)
