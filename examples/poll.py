#!/usr/bin/env python3
"""Example: poll registers through the tool runtime on an interval; graceful shutdown on Ctrl+C."""

import asyncio

from modbus_agent import ConnectionPool, DeviceConfig, PoolConfig, ToolRuntime


async def poll(interval_s: float) -> None:
    devices = [
        DeviceConfig(device_id="boiler", host="192.168.1.10", unit_id=1),
        DeviceConfig(device_id="meter", host="192.168.1.11", unit_id=3, backend="pymodbus-sync"),
    ]
    pool = ConnectionPool(devices, PoolConfig(acquire_timeout=5.0, idle_timeout=60.0))

    async with ToolRuntime(pool) as runtime:
        print(f"Polling {[d.device_id for d in devices]} every {interval_s}s (Ctrl+C to stop)...")
        while True:
            results = await asyncio.gather(
                *(
                    runtime.call("read_registers", {"device_id": d.device_id, "address": 0, "count": 2})
                    for d in devices
                )
            )
            for device, result in zip(devices, results):
                # Failures come back as error results, never as exceptions.
                prefix = "ERROR " if result.is_error else ""
                print(f"{prefix}{device.device_id}: {result.text}")
            await asyncio.sleep(interval_s)


def main() -> None:
    try:
        asyncio.run(poll(1.0))
    except KeyboardInterrupt:
        print("\nStopped.")


if __name__ == "__main__":
    main()
