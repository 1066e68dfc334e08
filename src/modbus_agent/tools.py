"""Tool invocation contract: result/content shapes, registration records, and the register tools."""

from __future__ import annotations

import functools
import json
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Awaitable, Callable, ClassVar, Union

from jsonschema import Draft7Validator

from .errors import ModbusFailure, classify_exception, to_tool_result
from .types import ModbusTable

if TYPE_CHECKING:
    from .pool import ConnectionPool

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TextContent:
    type: ClassVar[str] = "text"
    text: str

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "text": self.text}


@dataclass(frozen=True)
class ImageContent:
    type: ClassVar[str] = "image"
    data: str
    mime_type: str

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "data": self.data, "mimeType": self.mime_type}


@dataclass(frozen=True)
class ResourceContent:
    type: ClassVar[str] = "resource"
    uri: str
    mime_type: str | None = None
    text: str | None = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"type": self.type, "uri": self.uri}
        if self.mime_type is not None:
            out["mimeType"] = self.mime_type
        if self.text is not None:
            out["text"] = self.text
        return out


ContentBlock = Union[TextContent, ImageContent, ResourceContent]


@dataclass(frozen=True)
class ToolResult:
    """What every tool handler returns. is_error is set only by errors.to_tool_result."""

    content: tuple[ContentBlock, ...]
    is_error: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {"content": [block.to_dict() for block in self.content], "isError": self.is_error}

    @property
    def text(self) -> str:
        """All text blocks joined by newlines (for display)."""
        return "\n".join(block.text for block in self.content if isinstance(block, TextContent))


@dataclass(frozen=True)
class ValidationResult:
    valid: bool
    errors: list[str] = field(default_factory=list)


Handler = Callable[[dict[str, Any]], Awaitable[ToolResult]]
Validator = Callable[[dict[str, Any]], ValidationResult]


@dataclass(frozen=True)
class ToolConfig:
    """Registration record for one tool, as consumed by a tool catalog."""

    name: str
    description: str
    input_schema: dict[str, Any]
    handler: Handler
    validate: Validator | None = None

    def __post_init__(self) -> None:
        if not self.name:
            raise ValueError("Tool name cannot be empty")
        if self.input_schema.get("type") != "object":
            raise ValueError(f"inputSchema for {self.name!r} must be an object schema")

    def describe(self) -> dict[str, Any]:
        return {"name": self.name, "description": self.description, "inputSchema": self.input_schema}


def text_result(text: str) -> ToolResult:
    return ToolResult(content=(TextContent(text),))


def json_result(payload: Any) -> ToolResult:
    return text_result(json.dumps(payload, indent=2))


def schema_validator(schema: dict[str, Any]) -> Validator:
    """Build a side-effect-free validate() that checks arguments against a JSON Schema."""
    Draft7Validator.check_schema(schema)
    validator = Draft7Validator(schema)

    def validate(args: dict[str, Any]) -> ValidationResult:
        errors = []
        for err in sorted(validator.iter_errors(args), key=lambda e: list(e.absolute_path)):
            where = ".".join(str(p) for p in err.absolute_path)
            errors.append(f"{where}: {err.message}" if where else err.message)
        return ValidationResult(valid=not errors, errors=errors)

    return validate


def guarded(handler: Handler) -> Handler:
    """
    Make a handler total: any failure raised in its body comes back as an
    error-shaped ToolResult instead of escaping to the caller.
    """

    @functools.wraps(handler)
    async def wrapper(args: dict[str, Any]) -> ToolResult:
        try:
            return await handler(args)
        except ModbusFailure as failure:
            logger.warning("Tool %s failed (%s): %s", handler.__name__, failure.kind.value, failure.message)
            return to_tool_result(failure)
        except Exception as exc:
            logger.exception("Unexpected error in tool %s", handler.__name__)
            return to_tool_result(classify_exception(exc, args.get("device_id") if isinstance(args, dict) else None))

    return wrapper


_DEVICE_ID = {"type": "string", "minLength": 1, "description": "Device identity as configured in the pool"}
_ADDRESS = {"type": "integer", "description": "Starting register address (0-based)"}

READ_REGISTERS_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "device_id": _DEVICE_ID,
        "address": _ADDRESS,
        "count": {"type": "integer", "description": "Number of registers to read"},
        "table": {"type": "string", "enum": [t.value for t in ModbusTable], "default": "holding_register"},
    },
    "required": ["device_id", "address", "count"],
    "additionalProperties": False,
}

WRITE_REGISTERS_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "device_id": _DEVICE_ID,
        "address": _ADDRESS,
        "values": {"type": "array", "items": {"type": "integer"}, "description": "Raw 16-bit register values"},
    },
    "required": ["device_id", "address", "values"],
    "additionalProperties": False,
}

DEVICE_ONLY_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {"device_id": _DEVICE_ID},
    "required": ["device_id"],
    "additionalProperties": False,
}

NO_ARGS_SCHEMA: dict[str, Any] = {"type": "object", "properties": {}, "required": [], "additionalProperties": False}


def build_register_tools(pool: ConnectionPool) -> list[ToolConfig]:
    """Tools over the given pool; each handler closes over it explicitly."""

    async def read_registers(args: dict[str, Any]) -> ToolResult:
        device_id = args["device_id"]
        table = ModbusTable(args.get("table", ModbusTable.HOLDING_REGISTER.value))
        async with pool.connection(device_id) as conn:
            values = await conn.read_registers(args["address"], args["count"], table=table)
        return json_result({"device_id": device_id, "address": args["address"], "table": table.value, "values": values})

    async def write_registers(args: dict[str, Any]) -> ToolResult:
        device_id = args["device_id"]
        async with pool.connection(device_id) as conn:
            await conn.write_registers(args["address"], args["values"])
        return json_result({"device_id": device_id, "address": args["address"], "written": len(args["values"])})

    async def test_connection(args: dict[str, Any]) -> ToolResult:
        device_id = args["device_id"]
        async with pool.connection(device_id) as conn:
            await conn.read_registers(0, 1)
        return json_result({"device_id": device_id, "status": "connected"})

    async def get_pool_status(args: dict[str, Any]) -> ToolResult:
        return json_result(pool.stats().to_dict())

    return [
        ToolConfig(
            name="read_registers",
            description="Read raw holding or input registers from a Modbus device.",
            input_schema=READ_REGISTERS_SCHEMA,
            handler=guarded(read_registers),
            validate=schema_validator(READ_REGISTERS_SCHEMA),
        ),
        ToolConfig(
            name="write_registers",
            description="Write raw values to consecutive holding registers on a Modbus device.",
            input_schema=WRITE_REGISTERS_SCHEMA,
            handler=guarded(write_registers),
            validate=schema_validator(WRITE_REGISTERS_SCHEMA),
        ),
        ToolConfig(
            name="test_connection",
            description="Check that a device answers by reading holding register 0.",
            input_schema=DEVICE_ONLY_SCHEMA,
            handler=guarded(test_connection),
            validate=schema_validator(DEVICE_ONLY_SCHEMA),
        ),
        ToolConfig(
            name="get_pool_status",
            description="Report per-device connection pool usage.",
            input_schema=NO_ARGS_SCHEMA,
            handler=guarded(get_pool_status),
            validate=schema_validator(NO_ARGS_SCHEMA),
        ),
    ]
