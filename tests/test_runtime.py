"""Tests for ToolRuntime registration, validation-before-invocation and shutdown."""

import asyncio
import json
from unittest.mock import AsyncMock

import pytest

from modbus_agent import (
    ConnectionPool,
    DeviceConfig,
    ErrorKind,
    InvalidArgumentsError,
    ModbusFailure,
    PoolConfig,
    ToolConfig,
    ToolRuntime,
    UnknownToolError,
)
from modbus_agent.tools import NO_ARGS_SCHEMA, schema_validator, text_result

REGISTER_TOOLS = ["read_registers", "write_registers", "test_connection", "get_pool_status"]


@pytest.fixture
def pool(device: DeviceConfig, link_factory) -> ConnectionPool:
    return ConnectionPool([device], PoolConfig(), link_factory=link_factory)


def test_start_registers_register_tools(pool: ConnectionPool) -> None:
    runtime = ToolRuntime(pool)

    async def scenario():
        async with runtime:
            return [tool.describe()["name"] for tool in runtime.tools()]

    assert asyncio.run(scenario()) == REGISTER_TOOLS
    assert runtime.tools() == []
    assert pool.closed


def test_extra_tools_are_registered_after_builtin(pool: ConnectionPool) -> None:
    handler = AsyncMock(return_value=text_result("pong"))
    extra = ToolConfig(name="ping", description="ping", input_schema=NO_ARGS_SCHEMA, handler=handler)
    runtime = ToolRuntime(pool, extra_tools=[extra])

    async def scenario():
        async with runtime:
            return [t.name for t in runtime.tools()], await runtime.call("ping")

    names, result = asyncio.run(scenario())

    assert names == [*REGISTER_TOOLS, "ping"]
    assert result.text == "pong"
    handler.assert_awaited_once_with({})


def test_duplicate_tool_name_rejected(pool: ConnectionPool) -> None:
    extra = ToolConfig(name="read_registers", description="", input_schema=NO_ARGS_SCHEMA, handler=AsyncMock())
    runtime = ToolRuntime(pool, extra_tools=[extra])

    with pytest.raises(ValueError):
        asyncio.run(runtime.start())


def test_unknown_tool(pool: ConnectionPool) -> None:
    runtime = ToolRuntime(pool)

    async def scenario():
        async with runtime:
            await runtime.call("reboot_device", {})

    with pytest.raises(UnknownToolError) as exc_info:
        asyncio.run(scenario())
    assert exc_info.value.name == "reboot_device"


def test_invalid_arguments_never_reach_handler(pool: ConnectionPool) -> None:
    handler = AsyncMock(return_value=text_result("ran"))
    schema = {"type": "object", "properties": {"n": {"type": "integer"}}, "required": ["n"]}
    tool = ToolConfig(name="count", description="", input_schema=schema, handler=handler, validate=schema_validator(schema))
    runtime = ToolRuntime(pool, extra_tools=[tool])

    async def scenario():
        async with runtime:
            await runtime.call("count", {"n": "three"})

    with pytest.raises(InvalidArgumentsError) as exc_info:
        asyncio.run(scenario())

    assert exc_info.value.tool == "count"
    assert exc_info.value.result.valid is False
    handler.assert_not_awaited()


def test_invalid_register_call_does_no_io(pool: ConnectionPool, link_factory) -> None:
    runtime = ToolRuntime(pool)

    async def scenario():
        async with runtime:
            await runtime.call("write_registers", {"device_id": "dev-1", "address": 0})

    with pytest.raises(InvalidArgumentsError):
        asyncio.run(scenario())
    assert link_factory.links == []


def test_call_round_trip_through_device(pool: ConnectionPool, link_factory) -> None:
    runtime = ToolRuntime(pool)

    async def scenario():
        async with runtime:
            await runtime.call("write_registers", {"device_id": "dev-1", "address": 20, "values": [5, 6]})
            read = await runtime.call("read_registers", {"device_id": "dev-1", "address": 20, "count": 2})
            status = await runtime.call("get_pool_status")
            return read, status

    read, status = asyncio.run(scenario())

    assert json.loads(read.text)["values"] == [5, 6]
    assert json.loads(status.text)["idle"] == 1
    assert len(link_factory.links) == 1
    assert link_factory.links[0].close_count == 1


def test_device_failure_comes_back_as_error_result(pool: ConnectionPool, link_factory) -> None:
    runtime = ToolRuntime(pool)
    link_factory.connect_result = False

    async def scenario():
        async with runtime:
            return await runtime.call("test_connection", {"device_id": "dev-1"})

    result = asyncio.run(scenario())

    assert result.is_error is True
    assert result.to_dict()["isError"] is True


def test_call_after_shutdown_is_unknown_tool(pool: ConnectionPool) -> None:
    runtime = ToolRuntime(pool)

    async def scenario():
        await runtime.start()
        await runtime.shutdown()
        await runtime.call("get_pool_status")

    with pytest.raises(UnknownToolError):
        asyncio.run(scenario())


def test_acquire_after_shutdown_is_pool_exhausted(pool: ConnectionPool) -> None:
    runtime = ToolRuntime(pool)

    async def scenario():
        async with runtime:
            pass
        await pool.acquire("dev-1")

    with pytest.raises(ModbusFailure) as exc_info:
        asyncio.run(scenario())
    assert exc_info.value.kind is ErrorKind.POOL_EXHAUSTED
