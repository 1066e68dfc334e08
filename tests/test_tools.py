"""Tests for the tool contract and the register tools built over a pool."""

import asyncio
import json
from unittest.mock import AsyncMock

import pytest
from conftest import FakeResponse
from pymodbus.exceptions import ModbusIOException

from modbus_agent import (
    ConnectionPool,
    DeviceConfig,
    ImageContent,
    PoolConfig,
    ResourceContent,
    TextContent,
    ToolConfig,
    ToolResult,
    build_register_tools,
    guarded,
    make_failure,
    schema_validator,
)
from modbus_agent.tools import READ_REGISTERS_SCHEMA, WRITE_REGISTERS_SCHEMA, json_result, text_result


@pytest.fixture
def pool(device: DeviceConfig, link_factory) -> ConnectionPool:
    return ConnectionPool([device], PoolConfig(acquire_timeout=0.1), link_factory=link_factory)


@pytest.fixture
def tools(pool: ConnectionPool) -> dict[str, ToolConfig]:
    return {tool.name: tool for tool in build_register_tools(pool)}


def test_content_blocks_serialize() -> None:
    result = ToolResult(
        content=(
            TextContent("hello"),
            ImageContent(data="aGk=", mime_type="image/png"),
            ResourceContent(uri="modbus://dev-1/40001", mime_type="application/json"),
        )
    )
    assert result.to_dict() == {
        "content": [
            {"type": "text", "text": "hello"},
            {"type": "image", "data": "aGk=", "mimeType": "image/png"},
            {"type": "resource", "uri": "modbus://dev-1/40001", "mimeType": "application/json"},
        ],
        "isError": False,
    }
    assert result.text == "hello"


def test_json_result_is_pretty_text() -> None:
    result = json_result({"a": 1})
    assert result.is_error is False
    assert json.loads(result.text) == {"a": 1}
    assert text_result("x").content == (TextContent("x"),)


def test_tool_config_requires_name_and_object_schema() -> None:
    handler = AsyncMock(return_value=text_result("ok"))
    with pytest.raises(ValueError):
        ToolConfig(name="", description="", input_schema={"type": "object"}, handler=handler)
    with pytest.raises(ValueError):
        ToolConfig(name="t", description="", input_schema={"type": "array"}, handler=handler)


def test_tool_config_describe() -> None:
    tool = ToolConfig(name="t", description="does t", input_schema={"type": "object"}, handler=AsyncMock())
    assert tool.describe() == {"name": "t", "description": "does t", "inputSchema": {"type": "object"}}


def test_schema_validator_reports_every_problem() -> None:
    validate = schema_validator(READ_REGISTERS_SCHEMA)

    ok = validate({"device_id": "dev-1", "address": 0, "count": 2})
    assert ok.valid is True
    assert ok.errors == []

    bad = validate({"device_id": "dev-1", "address": "zero", "count": 2, "extra": True})
    assert bad.valid is False
    assert len(bad.errors) == 2
    assert any(e.startswith("address: ") for e in bad.errors)
    assert any("extra" in e for e in bad.errors)


def test_schema_validator_has_no_side_effects() -> None:
    validate = schema_validator(WRITE_REGISTERS_SCHEMA)
    args = {"device_id": "dev-1", "address": 3, "values": [1, 2]}
    validate(args)
    assert args == {"device_id": "dev-1", "address": 3, "values": [1, 2]}


def test_guarded_renders_failure() -> None:
    async def handler(args):
        raise make_failure("dev-1: device busy", "DeviceBusy", device_id="dev-1")

    result = asyncio.run(guarded(handler)({"device_id": "dev-1"}))

    assert result.is_error is True
    assert result.text == "dev-1: device busy"


def test_guarded_classifies_unexpected_exception() -> None:
    async def handler(args):
        raise KeyError("address")

    result = asyncio.run(guarded(handler)({"device_id": "dev-1"}))

    assert result.is_error is True
    assert result.text.startswith("dev-1: ")


def test_guarded_passes_success_through() -> None:
    expected = text_result("fine")
    handler = AsyncMock(return_value=expected)
    assert asyncio.run(guarded(handler)({})) is expected
    handler.assert_awaited_once_with({})


def test_read_registers_tool(tools, link_factory) -> None:
    link_factory.memory.update({4: 11, 5: 22})

    result = asyncio.run(tools["read_registers"].handler({"device_id": "dev-1", "address": 4, "count": 2}))

    assert result.is_error is False
    assert json.loads(result.text) == {"device_id": "dev-1", "address": 4, "table": "holding_register", "values": [11, 22]}


def test_read_input_registers_tool(tools, link_factory) -> None:
    result = asyncio.run(
        tools["read_registers"].handler({"device_id": "dev-1", "address": 0, "count": 1, "table": "input_register"})
    )
    assert json.loads(result.text)["table"] == "input_register"
    assert link_factory.links[0].io_calls()[0][1].value == "input_register"


def test_write_registers_tool(tools, link_factory) -> None:
    result = asyncio.run(tools["write_registers"].handler({"device_id": "dev-1", "address": 9, "values": [7, 8]}))

    assert result.is_error is False
    assert json.loads(result.text)["written"] == 2
    assert link_factory.memory == {9: 7, 10: 8}


def test_write_out_of_range_value_is_error_result(tools, link_factory) -> None:
    result = asyncio.run(tools["write_registers"].handler({"device_id": "dev-1", "address": 0, "values": [70000]}))

    assert result.is_error is True
    assert "0..65535" in result.text
    assert link_factory.links[0].io_calls() == []


def test_tool_failure_releases_connection(tools, pool, link_factory) -> None:
    link_factory.error = ModbusIOException("No response received")

    result = asyncio.run(tools["read_registers"].handler({"device_id": "dev-1", "address": 0, "count": 1}))

    assert result.is_error is True
    assert result.text.startswith("dev-1: ")
    assert pool.stats().devices["dev-1"].in_use == 0


def test_exception_response_is_error_result(tools, link_factory) -> None:
    link_factory.response = FakeResponse(exception_code=2)

    result = asyncio.run(tools["read_registers"].handler({"device_id": "dev-1", "address": 100, "count": 1}))

    assert result.is_error is True
    assert "exception response 2 (illegal data address) at address 100" in result.text


def test_unknown_device_is_error_result(tools) -> None:
    result = asyncio.run(tools["test_connection"].handler({"device_id": "nope"}))
    assert result.is_error is True
    assert "nope" in result.text


def test_test_connection_tool(tools, link_factory) -> None:
    result = asyncio.run(tools["test_connection"].handler({"device_id": "dev-1"}))

    assert json.loads(result.text) == {"device_id": "dev-1", "status": "connected"}
    assert link_factory.links[0].io_calls()[0][2:] == (0, 1)


def test_test_connection_reports_refused_device(tools, link_factory) -> None:
    link_factory.connect_result = False
    result = asyncio.run(tools["test_connection"].handler({"device_id": "dev-1"}))
    assert result.is_error is True
    assert "failed to connect" in result.text


def test_pool_status_tool(tools) -> None:
    result = asyncio.run(tools["get_pool_status"].handler({}))
    status = json.loads(result.text)
    assert status["closed"] is False
    assert status["devices"]["dev-1"]["max_connections"] == 1
    assert status["requests"]["total"] == 0
    assert status["errors"]["total"] == 0


def test_pool_exhausted_is_error_result(tools, pool) -> None:
    async def scenario():
        held = await pool.acquire("dev-1")
        result = await tools["read_registers"].handler({"device_id": "dev-1", "address": 0, "count": 1})
        pool.release(held)
        return result

    result = asyncio.run(scenario())

    assert result.is_error is True
    assert "No connection available" in result.text
