"""Error model for modbus-agent: the closed failure taxonomy and its classification table."""

from __future__ import annotations

import asyncio
import time
from collections import Counter, deque
from enum import Enum
from typing import TYPE_CHECKING, Any

from pymodbus.exceptions import (
    ConnectionException,
    ModbusException,
    ModbusIOException,
    ParameterException,
)

if TYPE_CHECKING:
    from .tools import ToolResult, ValidationResult


class ErrorKind(str, Enum):
    """Every failure surfaced by the device layer has exactly one of these kinds."""

    CONNECTION_FAILED = "ConnectionFailed"
    TIMEOUT = "Timeout"
    PROTOCOL_ERROR = "ProtocolError"
    INVALID_ADDRESS = "InvalidAddress"
    INVALID_REGISTER = "InvalidRegister"
    DEVICE_BUSY = "DeviceBusy"
    POOL_EXHAUSTED = "PoolExhausted"
    UNKNOWN_ERROR = "UnknownError"


# Repeated failures of these kinds get a pooled connection evicted.
EVICTING_KINDS = frozenset({ErrorKind.CONNECTION_FAILED, ErrorKind.PROTOCOL_ERROR})


class ModbusAgentError(Exception):
    """Base exception for modbus-agent."""

    pass


class ModbusFailure(ModbusAgentError):
    """
    A classified device-layer failure. Read-only once constructed; build it with
    make_failure() or one of the classify_* helpers.
    """

    def __init__(
        self,
        message: str,
        kind: ErrorKind,
        device_id: str | None = None,
        address: int | None = None,
    ) -> None:
        self._message = message
        self._kind = kind
        self._device_id = device_id
        self._address = address
        super().__init__(message)

    @property
    def message(self) -> str:
        return self._message

    @property
    def kind(self) -> ErrorKind:
        return self._kind

    @property
    def device_id(self) -> str | None:
        return self._device_id

    @property
    def address(self) -> int | None:
        return self._address

    def to_dict(self) -> dict[str, Any]:
        return {
            "message": self._message,
            "kind": self._kind.value,
            "device_id": self._device_id,
            "address": self._address,
        }

    def __repr__(self) -> str:
        return (
            f"ModbusFailure({self._message!r}, kind={self._kind.value}, "
            f"device_id={self._device_id!r}, address={self._address!r})"
        )


class ConfigError(ModbusAgentError):
    """Raised when a configuration file is missing, malformed or inconsistent."""

    pass


class UnknownToolError(ModbusAgentError):
    """Raised when a tool name is not registered."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Unknown tool: {name!r}")


class InvalidArgumentsError(ModbusAgentError):
    """Raised when a tool's validate() rejects its arguments; the handler is not run."""

    def __init__(self, tool: str, result: ValidationResult) -> None:
        self.tool = tool
        self.result = result
        super().__init__(f"Invalid arguments for {tool}: " + "; ".join(result.errors))


def make_failure(
    message: str,
    kind: ErrorKind | str,
    device_id: str | None = None,
    address: int | None = None,
) -> ModbusFailure:
    """Build a ModbusFailure. Raises ValueError for a kind outside ErrorKind."""
    return ModbusFailure(message, ErrorKind(kind), device_id=device_id, address=address)


def to_tool_result(failure: ModbusFailure) -> ToolResult:
    """Render a failure as the one error-shaped ToolResult: a single text block, isError set."""
    from .tools import TextContent, ToolResult

    return ToolResult(content=(TextContent(failure.message),), is_error=True)


# Standard Modbus exception codes carried by error responses.
_EXCEPTION_CODE_KINDS: dict[int, ErrorKind] = {
    1: ErrorKind.PROTOCOL_ERROR,      # illegal function
    2: ErrorKind.INVALID_REGISTER,    # illegal data address
    3: ErrorKind.INVALID_REGISTER,    # illegal data value
    4: ErrorKind.PROTOCOL_ERROR,      # device failure
    5: ErrorKind.DEVICE_BUSY,         # acknowledge, long operation in progress
    6: ErrorKind.DEVICE_BUSY,         # device busy
    8: ErrorKind.PROTOCOL_ERROR,      # memory parity error
    10: ErrorKind.CONNECTION_FAILED,  # gateway path unavailable
    11: ErrorKind.TIMEOUT,            # gateway target failed to respond
}

_EXCEPTION_CODE_NAMES: dict[int, str] = {
    1: "illegal function",
    2: "illegal data address",
    3: "illegal data value",
    4: "device failure",
    5: "acknowledge",
    6: "device busy",
    8: "memory parity error",
    10: "gateway path unavailable",
    11: "gateway target failed to respond",
}

# Ordered: the first matching group wins. "timeout" must precede "connect".
_MESSAGE_RULES: tuple[tuple[tuple[str, ...], ErrorKind], ...] = (
    (("timeout", "timed out", "no response"), ErrorKind.TIMEOUT),
    (("connect", "refused", "unreachable", "broken pipe", "reset by peer"), ErrorKind.CONNECTION_FAILED),
    (("register", "address error"), ErrorKind.INVALID_REGISTER),
    (("busy",), ErrorKind.DEVICE_BUSY),
    (("illegal", "invalid", "decode", "crc", "frame"), ErrorKind.PROTOCOL_ERROR),
)

# A reply arrived but could not be decoded.
_FRAME_NEEDLES = ("decode", "crc", "frame")


def _kind_from_message(message: str, default: ErrorKind) -> ErrorKind:
    lowered = message.lower()
    for needles, kind in _MESSAGE_RULES:
        if any(n in lowered for n in needles):
            return kind
    return default


def _describe(exc: BaseException) -> str:
    text = str(exc)
    return text if text else type(exc).__name__


def classify_exception(
    exc: BaseException,
    device_id: str | None = None,
    address: int | None = None,
) -> ModbusFailure:
    """
    Map any error raised (or returned) by either pymodbus client family to a ModbusFailure.
    An existing ModbusFailure is returned unchanged.
    """
    if isinstance(exc, ModbusFailure):
        return exc

    message = _describe(exc)
    if device_id is not None:
        message = f"{device_id}: {message}"

    if isinstance(exc, (TimeoutError, asyncio.TimeoutError)):
        kind = ErrorKind.TIMEOUT
        if not str(exc):
            message = f"{device_id}: operation timed out" if device_id is not None else "operation timed out"
    elif isinstance(exc, ConnectionException):
        kind = ErrorKind.CONNECTION_FAILED
    elif isinstance(exc, ParameterException):
        kind = ErrorKind.INVALID_REGISTER
    elif isinstance(exc, ModbusIOException):
        lowered = str(exc).lower()
        if "no response" in lowered or "timeout" in lowered or "timed out" in lowered:
            kind = ErrorKind.TIMEOUT
        elif any(n in lowered for n in _FRAME_NEEDLES):
            kind = ErrorKind.PROTOCOL_ERROR
        else:
            kind = ErrorKind.CONNECTION_FAILED
    elif isinstance(exc, ModbusException):
        kind = _kind_from_message(str(exc), ErrorKind.PROTOCOL_ERROR)
    elif isinstance(exc, OSError):
        kind = ErrorKind.CONNECTION_FAILED
    else:
        kind = _kind_from_message(str(exc), ErrorKind.UNKNOWN_ERROR)

    return make_failure(message, kind, device_id=device_id, address=address)


def classify_response(
    response: Any,
    device_id: str | None = None,
    address: int | None = None,
) -> ModbusFailure:
    """Classify a pymodbus response whose isError() is true."""
    if isinstance(response, BaseException):
        return classify_exception(response, device_id=device_id, address=address)

    code = getattr(response, "exception_code", None)
    if isinstance(code, int):
        kind = _EXCEPTION_CODE_KINDS.get(code, ErrorKind.PROTOCOL_ERROR)
        name = _EXCEPTION_CODE_NAMES.get(code, "unrecognized exception")
        message = f"Modbus exception response {code} ({name})"
    else:
        kind = ErrorKind.PROTOCOL_ERROR
        message = f"Modbus error response: {response}"
    if address is not None:
        message = f"{message} at address {address}"
    if device_id is not None:
        message = f"{device_id}: {message}"
    return make_failure(message, kind, device_id=device_id, address=address)


class ErrorStats:
    """Running counts of classified failures by kind and by device, plus the most recent ones."""

    def __init__(self, max_recent: int = 100) -> None:
        self.total = 0
        self.by_kind: Counter[str] = Counter()
        self.by_device: Counter[str] = Counter()
        self.recent: deque[dict[str, Any]] = deque(maxlen=max_recent)

    def record(self, failure: ModbusFailure) -> None:
        device_id = failure.device_id or "unknown"
        self.total += 1
        self.by_kind[failure.kind.value] += 1
        self.by_device[device_id] += 1
        self.recent.append(
            {
                "timestamp": time.time(),
                "kind": failure.kind.value,
                "device_id": device_id,
                "message": failure.message,
            }
        )

    def reset(self) -> None:
        self.total = 0
        self.by_kind.clear()
        self.by_device.clear()
        self.recent.clear()

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "by_kind": dict(self.by_kind),
            "by_device": dict(self.by_device),
            "recent": list(self.recent),
        }
