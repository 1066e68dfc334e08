#!/usr/bin/env python3
"""Command-line front end for modbus-agent using Typer."""

import asyncio
import json
import logging
from typing import Any, Optional

import typer
from typing_extensions import Annotated

from . import __version__  # type: ignore
from .config import AgentConfig, load_config
from .errors import ConfigError, ErrorKind, InvalidArgumentsError, ModbusFailure, UnknownToolError
from .links import create_link
from .pool import ConnectionPool
from .runtime import ToolRuntime
from .types import Backend, DeviceConfig, ModbusTable

app = typer.Typer(
    name="modbus-agent",
    help="Pooled Modbus register access and tool invocation.",
    no_args_is_help=True,
)

logger = logging.getLogger(__name__)

# Caller mistakes: reported like invalid input rather than device trouble.
_INPUT_KINDS = frozenset({ErrorKind.INVALID_ADDRESS, ErrorKind.INVALID_REGISTER})

# ============================================================================
# Shared options and helpers
# ============================================================================

ConfigOption = Annotated[
    Optional[str],
    typer.Option("--config", "-c", help="JSON config file with pool and devices", envvar="MODBUS_AGENT_CONFIG"),
]
HostOption = Annotated[
    Optional[str],
    typer.Option("--host", "-h", help="Device hostname or IP (when no --config)", envvar="MODBUS_AGENT_HOST"),
]
PortOption = Annotated[
    int,
    typer.Option("--port", "-p", help="Modbus TCP port", envvar="MODBUS_AGENT_PORT"),
]
UnitIdOption = Annotated[
    int,
    typer.Option("--unit-id", "-u", help="Modbus unit ID", envvar="MODBUS_AGENT_UNIT_ID"),
]
TimeoutOption = Annotated[
    float,
    typer.Option("--timeout", "-t", help="Per-request timeout in seconds", envvar="MODBUS_AGENT_TIMEOUT"),
]
RetriesOption = Annotated[
    int,
    typer.Option("--retries", "-r", help="Library retries per request", envvar="MODBUS_AGENT_RETRIES"),
]
BackendOption = Annotated[
    Backend,
    typer.Option("--backend", help="pymodbus client family", envvar="MODBUS_AGENT_BACKEND"),
]
DeviceOption = Annotated[
    Optional[str],
    typer.Option("--device", "-d", help="Device id (default: first configured device)"),
]
VerboseOption = Annotated[
    bool,
    typer.Option("--verbose", "-v", help="Enable debug logging"),
]
JsonOption = Annotated[
    bool,
    typer.Option("--json", help="Output as JSON"),
]
SignedOption = Annotated[
    bool,
    typer.Option("--signed", help="Treat register values as signed 16-bit integers"),
]


def setup_logging(verbose: bool) -> None:
    """Configure logging based on verbose flag."""
    level = logging.DEBUG if verbose else logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(levelname)s: %(message)s" if not verbose else "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )


def build_config(
    config_path: Optional[str],
    host: Optional[str],
    port: int,
    unit_id: int,
    timeout: float,
    retries: int,
    backend: Backend,
) -> AgentConfig:
    """Load the config file, or describe a single device from the command-line options."""
    if config_path:
        return load_config(config_path)
    if not host:
        typer.echo("Error: --config or --host is required for this command", err=True)
        raise typer.Exit(2)
    try:
        device = DeviceConfig(
            device_id=f"{host}:{port}:{unit_id}",
            host=host,
            port=port,
            unit_id=unit_id,
            timeout=timeout,
            retries=retries,
            backend=backend,
        )
    except ValueError as e:
        raise ConfigError(str(e)) from e
    return AgentConfig(devices=[device])


def create_pool(config: AgentConfig) -> ConnectionPool:
    """Create a ConnectionPool for the configured devices."""
    return ConnectionPool(config.devices, config.pool, link_factory=create_link)


def pick_device(config: AgentConfig, device: Optional[str]) -> str:
    if device:
        if all(d.device_id != device for d in config.devices):
            typer.echo(f"Error: Unknown device: {device!r}", err=True)
            raise typer.Exit(2)
        return device
    if not config.devices:
        typer.echo("Error: No devices configured", err=True)
        raise typer.Exit(2)
    return config.devices[0].device_id


def parse_int(value: str, signed: bool = False) -> int:
    """Parse integer value from string, supporting hex and validation."""
    v = value.strip()
    if v.lower().startswith("0x"):
        num = int(v, 16)
    else:
        num = int(v)

    if signed:
        if not (-32768 <= num <= 32767):
            raise ValueError(f"Signed 16-bit integer out of range: {num}")
    else:
        if not (0 <= num <= 65535):
            raise ValueError(f"Unsigned 16-bit integer out of range: {num}")

    return num


def to_signed(value: int) -> int:
    """Convert unsigned 16-bit to signed."""
    if value > 32767:
        return value - 65536
    return value


def from_signed(value: int) -> int:
    """Convert signed 16-bit to unsigned."""
    if value < 0:
        return value + 65536
    return value


def fail(e: BaseException, verbose: bool) -> typer.Exit:
    """Report an error on stderr and return the matching typer.Exit to raise."""
    if isinstance(e, ModbusFailure):
        typer.echo(f"Error: {e.kind.value}: {e.message}", err=True)
        return typer.Exit(2 if e.kind in _INPUT_KINDS else 3)
    if isinstance(e, (ConfigError, InvalidArgumentsError, UnknownToolError)):
        typer.echo(f"Error: {e}", err=True)
        return typer.Exit(2)
    typer.echo(f"Error: Unexpected error: {e}", err=True)
    if verbose:
        import traceback
        traceback.print_exception(type(e), e, e.__traceback__)
    return typer.Exit(4)


# ============================================================================
# Commands
# ============================================================================

@app.command()
def info(
    config_path: ConfigOption = None,
    verbose: VerboseOption = False,
    json_output: JsonOption = False,
) -> None:
    """
    Show package version, available backends and, with --config, the configured devices.

    Does not contact any device.
    """
    setup_logging(verbose)

    info_data: dict[str, Any] = {
        "version": __version__,
        "backends": [b.value for b in Backend],
    }
    if config_path:
        try:
            config = load_config(config_path)
        except ConfigError as e:
            raise fail(e, verbose)
        info_data["devices"] = [
            {"device_id": d.device_id, "endpoint": d.endpoint, "unit_id": d.unit_id, "backend": d.backend.value}
            for d in config.devices
        ]

    if json_output:
        typer.echo(json.dumps(info_data, indent=2))
    else:
        typer.echo(f"modbus-agent version: {info_data['version']}")
        typer.echo(f"Backends: {', '.join(info_data['backends'])}")
        for d in info_data.get("devices", []):
            typer.echo(f"Device: {d['device_id']} ({d['endpoint']}, unit {d['unit_id']}, {d['backend']})")


@app.command()
def tools(
    verbose: VerboseOption = False,
    json_output: JsonOption = False,
) -> None:
    """List the tools exposed to an orchestration layer."""
    setup_logging(verbose)

    async def run() -> list[dict[str, Any]]:
        async with ToolRuntime(ConnectionPool()) as runtime:
            return [tool.describe() for tool in runtime.tools()]

    described = asyncio.run(run())
    if json_output:
        typer.echo(json.dumps(described, indent=2))
    else:
        for d in described:
            typer.echo(f"{d['name']:<18} {d['description']}")


@app.command()
def call(
    name: Annotated[str, typer.Argument(help="Tool name (see `modbus-agent tools`)")],
    arguments: Annotated[str, typer.Argument(help="Tool arguments as a JSON object")] = "{}",
    config_path: ConfigOption = None,
    host: HostOption = None,
    port: PortOption = 502,
    unit_id: UnitIdOption = 1,
    timeout: TimeoutOption = 3.0,
    retries: RetriesOption = 1,
    backend: BackendOption = Backend.PYMODBUS_ASYNC,
    verbose: VerboseOption = False,
    json_output: JsonOption = False,
) -> None:
    """
    Invoke a tool and print its result.

    Exits 1 when the tool result has isError set.
    """
    setup_logging(verbose)

    try:
        args = json.loads(arguments)
    except json.JSONDecodeError as e:
        typer.echo(f"Error: Arguments are not valid JSON: {e}", err=True)
        raise typer.Exit(2)
    if not isinstance(args, dict):
        typer.echo("Error: Arguments must be a JSON object", err=True)
        raise typer.Exit(2)

    try:
        config = build_config(config_path, host, port, unit_id, timeout, retries, backend)

        async def run():
            async with ToolRuntime(create_pool(config)) as runtime:
                return await runtime.call(name, args)

        result = asyncio.run(run())
    except typer.Exit:
        raise
    except Exception as e:
        raise fail(e, verbose)

    typer.echo(json.dumps(result.to_dict(), indent=2) if json_output else result.text)
    if result.is_error:
        raise typer.Exit(1)


@app.command()
def read(
    address: Annotated[int, typer.Argument(help="Starting register address (0-based)")],
    count: Annotated[int, typer.Argument(help="Number of registers")] = 1,
    device: DeviceOption = None,
    table: Annotated[ModbusTable, typer.Option("--table", help="Register table")] = ModbusTable.HOLDING_REGISTER,
    config_path: ConfigOption = None,
    host: HostOption = None,
    port: PortOption = 502,
    unit_id: UnitIdOption = 1,
    timeout: TimeoutOption = 3.0,
    retries: RetriesOption = 1,
    backend: BackendOption = Backend.PYMODBUS_ASYNC,
    verbose: VerboseOption = False,
    json_output: JsonOption = False,
    signed: SignedOption = False,
) -> None:
    """
    Read raw registers from a device.

    Prints one value per line, or JSON with --json.
    """
    setup_logging(verbose)

    try:
        config = build_config(config_path, host, port, unit_id, timeout, retries, backend)
        device_id = pick_device(config, device)

        async def run() -> list[int]:
            pool = create_pool(config)
            try:
                async with pool.connection(device_id) as conn:
                    return await conn.read_registers(address, count, table=table)
            finally:
                await pool.close_all()

        values = asyncio.run(run())
    except typer.Exit:
        raise
    except Exception as e:
        raise fail(e, verbose)

    if signed:
        values = [to_signed(v) for v in values]
    if json_output:
        typer.echo(json.dumps({"device_id": device_id, "address": address, "table": table.value, "values": values}))
    else:
        for offset, value in enumerate(values):
            typer.echo(f"{address + offset}: {value}")


@app.command()
def write(
    address: Annotated[int, typer.Argument(help="Starting holding register address (0-based)")],
    values: Annotated[list[str], typer.Argument(help="Values to write (decimal or 0x hex)")],
    device: DeviceOption = None,
    config_path: ConfigOption = None,
    host: HostOption = None,
    port: PortOption = 502,
    unit_id: UnitIdOption = 1,
    timeout: TimeoutOption = 3.0,
    retries: RetriesOption = 1,
    backend: BackendOption = Backend.PYMODBUS_ASYNC,
    verbose: VerboseOption = False,
    signed: SignedOption = False,
) -> None:
    """
    Write values to consecutive holding registers.

    Use --signed to allow negative values (-32768 to 32767).
    """
    setup_logging(verbose)

    try:
        parsed = [from_signed(parse_int(v, signed)) for v in values]
    except ValueError as e:
        typer.echo(f"Error: Invalid value: {e}", err=True)
        raise typer.Exit(2)

    try:
        config = build_config(config_path, host, port, unit_id, timeout, retries, backend)
        device_id = pick_device(config, device)

        async def run() -> None:
            pool = create_pool(config)
            try:
                async with pool.connection(device_id) as conn:
                    await conn.write_registers(address, parsed)
            finally:
                await pool.close_all()

        asyncio.run(run())
    except typer.Exit:
        raise
    except Exception as e:
        raise fail(e, verbose)

    typer.echo(f"OK: Wrote {len(parsed)} registers at {address} on {device_id}")


@app.command()
def ping(
    device: DeviceOption = None,
    config_path: ConfigOption = None,
    host: HostOption = None,
    port: PortOption = 502,
    unit_id: UnitIdOption = 1,
    timeout: TimeoutOption = 3.0,
    retries: RetriesOption = 1,
    backend: BackendOption = Backend.PYMODBUS_ASYNC,
    verbose: VerboseOption = False,
) -> None:
    """
    Test connectivity by reading holding register 0.
    """
    setup_logging(verbose)

    try:
        config = build_config(config_path, host, port, unit_id, timeout, retries, backend)
        device_id = pick_device(config, device)

        async def run() -> str:
            pool = create_pool(config)
            try:
                async with pool.connection(device_id) as conn:
                    await conn.read_registers(0, 1)
                    return conn.config.endpoint
            finally:
                await pool.close_all()

        endpoint = asyncio.run(run())
    except typer.Exit:
        raise
    except Exception as e:
        raise fail(e, verbose)

    typer.echo(f"OK: Connected to {device_id} ({endpoint})")


def version_callback(value: bool) -> None:
    """Show version and exit."""
    if value:
        typer.echo(f"modbus-agent {__version__}")
        raise typer.Exit(0)


@app.callback()
def main(
    version: Annotated[
        Optional[bool],
        typer.Option("--version", callback=version_callback, is_eager=True, help="Show version and exit"),
    ] = None,
) -> None:
    """modbus-agent - pooled Modbus register access and tool invocation."""
    pass


if __name__ == "__main__":
    app()
