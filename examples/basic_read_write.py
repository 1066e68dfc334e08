#!/usr/bin/env python3
"""Example: borrow a pooled connection and read/write a few holding registers."""

import asyncio
import sys

from modbus_agent import ConnectionPool, DeviceConfig, ErrorKind, ModbusFailure, ModbusTable


async def run() -> None:
    plc = DeviceConfig(
        device_id="plc",
        host="192.168.1.10",  # change to your device IP
        port=502,
        unit_id=1,
        backend="pymodbus-async",
    )
    pool = ConnectionPool([plc])
    try:
        async with pool.connection("plc") as conn:
            values = await conn.read_registers(0, 4)
            print(f"holding 0..3 = {values}")

            values = await conn.read_registers(0, 2, table=ModbusTable.INPUT_REGISTER)
            print(f"input 0..1 = {values}")

            # Write (example; uncomment if your device allows)
            # await conn.write_registers(10, [1234, 0x00FF])

        print(f"pool: {pool.stats().to_dict()}")
    finally:
        await pool.close_all()


def main() -> None:
    try:
        asyncio.run(run())
    except ModbusFailure as e:
        print(f"{e.kind.value}: {e.message}", file=sys.stderr)
        sys.exit(2 if e.kind in (ErrorKind.INVALID_ADDRESS, ErrorKind.INVALID_REGISTER) else 1)


if __name__ == "__main__":
    main()
