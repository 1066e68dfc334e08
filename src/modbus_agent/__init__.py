"""modbus-agent: pooled Modbus device access with one error model and one tool-result contract."""

__version__ = "0.1.0"

from .config import AgentConfig, load_config
from .connection import DeviceConnection
from .errors import (
    ConfigError,
    ErrorKind,
    ErrorStats,
    InvalidArgumentsError,
    ModbusAgentError,
    ModbusFailure,
    UnknownToolError,
    classify_exception,
    classify_response,
    make_failure,
    to_tool_result,
)
from .links import ModbusLink, PymodbusAsyncLink, PymodbusSyncLink, create_link
from .pool import ConnectionPool
from .runtime import ToolRuntime
from .tools import (
    ImageContent,
    ResourceContent,
    TextContent,
    ToolConfig,
    ToolResult,
    ValidationResult,
    build_register_tools,
    guarded,
    schema_validator,
)
from .types import Backend, ConnectionState, DeviceConfig, ModbusTable, PoolConfig, PoolStats, RequestStats, Transport

__all__ = [
    "__version__",
    "AgentConfig",
    "load_config",
    "DeviceConnection",
    "ConfigError",
    "ErrorKind",
    "ErrorStats",
    "InvalidArgumentsError",
    "ModbusAgentError",
    "ModbusFailure",
    "UnknownToolError",
    "classify_exception",
    "classify_response",
    "make_failure",
    "to_tool_result",
    "ModbusLink",
    "PymodbusAsyncLink",
    "PymodbusSyncLink",
    "create_link",
    "ConnectionPool",
    "ToolRuntime",
    "ImageContent",
    "ResourceContent",
    "TextContent",
    "ToolConfig",
    "ToolResult",
    "ValidationResult",
    "build_register_tools",
    "guarded",
    "schema_validator",
    "Backend",
    "ConnectionState",
    "DeviceConfig",
    "ModbusTable",
    "PoolConfig",
    "PoolStats",
    "RequestStats",
    "Transport",
]
