"""
Modbus Connection Pool

Bounds concurrent use of device links per device identity. Idle connections
are reused before new ones are opened; when a device is at its limit callers
wait in FIFO order until a connection is released, a slot is freed by an
eviction, or their timeout elapses.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator, Callable, Iterable

from .connection import DeviceConnection
from .errors import EVICTING_KINDS, ErrorKind, ErrorStats, ModbusFailure, make_failure
from .links import ModbusLink, create_link
from .types import ConnectionState, DeviceConfig, DeviceStats, PoolConfig, PoolStats, RequestStats

logger = logging.getLogger(__name__)

# Granted to a waiter in place of a connection: "a slot is reserved for you, open one".
_NEW_SLOT = object()


@dataclass
class _DeviceSlots:
    config: DeviceConfig
    limit: int
    connections: list[DeviceConnection] = field(default_factory=list)
    opening: int = 0
    waiters: deque[asyncio.Future] = field(default_factory=deque)

    def count(self) -> int:
        return len(self.connections) + self.opening

    def has_waiters(self) -> bool:
        return any(not w.done() for w in self.waiters)

    def next_waiter(self) -> asyncio.Future | None:
        while self.waiters:
            waiter = self.waiters.popleft()
            if not waiter.done():
                return waiter
        return None


class ConnectionPool:
    """
    Per-device bounded pool of DeviceConnection objects.

    Bookkeeping (connection lists, reservation counters, waiter queues) is only
    touched from the event loop thread and never across an await, so each
    acquire/release/evict step is atomic with respect to all others.
    """

    def __init__(
        self,
        devices: Iterable[DeviceConfig] = (),
        config: PoolConfig | None = None,
        link_factory: Callable[[DeviceConfig], ModbusLink] = create_link,
    ) -> None:
        self._config = config or PoolConfig()
        self._link_factory = link_factory
        self._slots: dict[str, _DeviceSlots] = {}
        self._closed = False
        self._cleanup_task: asyncio.Task | None = None
        self._health_task: asyncio.Task | None = None
        self._requests = {"total": 0, "successful": 0, "failed": 0, "failed_connections": 0}
        self._errors = ErrorStats()
        for device in devices:
            self.add_device(device)

    @property
    def config(self) -> PoolConfig:
        return self._config

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def errors(self) -> ErrorStats:
        return self._errors

    def add_device(self, device: DeviceConfig) -> None:
        if device.device_id in self._slots:
            raise ValueError(f"Duplicate device id: {device.device_id!r}")
        limit = device.max_connections or self._config.max_connections_per_device
        self._slots[device.device_id] = _DeviceSlots(config=device, limit=limit)

    def devices(self) -> list[DeviceConfig]:
        return [slots.config for slots in self._slots.values()]

    async def acquire(self, device_id: str, timeout: float | None = None) -> DeviceConnection:
        """
        Return a connection in IN_USE state for exclusive use by the caller.
        Raises PoolExhausted if none becomes available within timeout (default
        PoolConfig.acquire_timeout); other failures from opening a link pass through.
        """
        self._requests["total"] += 1
        try:
            conn = await self._acquire(device_id, timeout)
        except BaseException as exc:
            self._requests["failed"] += 1
            if isinstance(exc, ModbusFailure):
                self._errors.record(exc)
            raise
        self._requests["successful"] += 1
        return conn

    async def _acquire(self, device_id: str, timeout: float | None) -> DeviceConnection:
        if self._closed:
            raise make_failure("Connection pool is shutting down", ErrorKind.POOL_EXHAUSTED, device_id=device_id)
        slots = self._slots.get(device_id)
        if slots is None:
            raise make_failure(f"Unknown device: {device_id!r}", ErrorKind.INVALID_ADDRESS, device_id=device_id)
        if timeout is None:
            timeout = self._config.acquire_timeout

        # Nobody may overtake a queued waiter.
        if not slots.has_waiters():
            reused, dead = self._take_idle(slots)
            if reused is None and slots.count() < slots.limit:
                slots.opening += 1
                reserved = True
            else:
                reserved = False
            if dead:
                try:
                    await asyncio.gather(*(conn._discard_link() for conn in dead))
                except BaseException:
                    if reused is not None:
                        self.release(reused)
                    elif reserved:
                        slots.opening -= 1
                        self._grant_slot(slots)
                    raise
            if reused is not None:
                return reused
            if reserved:
                return await self._open(slots)

        if timeout <= 0:
            raise self._exhausted(slots, timeout)

        waiter = asyncio.get_running_loop().create_future()
        slots.waiters.append(waiter)
        logger.debug("Queued acquire for %s (%d waiting)", device_id, len(slots.waiters))
        try:
            await asyncio.wait({waiter}, timeout=timeout)
        except asyncio.CancelledError:
            self._abandon(slots, waiter)
            raise

        if not waiter.done():
            waiter.cancel()
            try:
                slots.waiters.remove(waiter)
            except ValueError:
                pass
            raise self._exhausted(slots, timeout)

        grant = waiter.result()
        if grant is _NEW_SLOT:
            return await self._open(slots)
        logger.debug("Handed %s to queued caller", grant.connection_id)
        return grant

    def release(self, connection: DeviceConnection) -> None:
        """Return a borrowed connection; the oldest waiter for its device gets it first."""
        slots = self._slots.get(connection.device_id)
        if connection.pool is not self or slots is None:
            logger.warning("Attempted to release %r, which this pool does not manage", connection)
            raise make_failure(
                f"Connection {connection.connection_id} does not belong to this pool",
                ErrorKind.UNKNOWN_ERROR,
                device_id=connection.device_id,
            )
        if connection.state == ConnectionState.CLOSED:
            # Already removed from accounting when it was closed.
            return
        if connection.state != ConnectionState.IN_USE or connection not in slots.connections:
            logger.warning("Attempted to release %r, which is not checked out", connection)
            raise make_failure(
                f"Connection {connection.connection_id} is not checked out",
                ErrorKind.UNKNOWN_ERROR,
                device_id=connection.device_id,
            )

        connection.last_used = time.monotonic()
        waiter = slots.next_waiter()
        if waiter is not None:
            connection.use_count += 1
            waiter.set_result(connection)
            return
        connection._checkin()
        logger.debug("Released %s", connection.connection_id)

    def _take_idle(self, slots: _DeviceSlots) -> tuple[DeviceConnection | None, list[DeviceConnection]]:
        """
        Check out the first idle connection whose link is still up. Idle ones
        found dead on the way are detached; the caller closes their links.
        """
        dead = []
        for conn in list(slots.connections):
            if conn.state != ConnectionState.IDLE:
                continue
            if not conn.connected:
                logger.info("Dropping %s: link lost while idle", conn.connection_id)
                conn._detach()
                dead.append(conn)
                continue
            conn._checkout()
            logger.debug("Reusing %s", conn.connection_id)
            return conn, dead
        return None, dead

    async def evict(self, connection: DeviceConnection) -> None:
        """Close and drop a connection so the next acquire can open a fresh one."""
        if connection.pool is not self:
            logger.warning("Attempted to evict %r, which this pool does not manage", connection)
            raise make_failure(
                f"Connection {connection.connection_id} does not belong to this pool",
                ErrorKind.UNKNOWN_ERROR,
                device_id=connection.device_id,
            )
        if connection.state != ConnectionState.CLOSED:
            logger.info(
                "Evicting %s after %d consecutive failures",
                connection.connection_id,
                connection.consecutive_failures,
            )
        await connection.close()

    @asynccontextmanager
    async def connection(self, device_id: str, timeout: float | None = None) -> AsyncIterator[DeviceConnection]:
        """
        Scoped acquisition: the connection is released on every exit path, or
        evicted when its consecutive link/protocol failures reach the threshold.
        """
        conn = await self.acquire(device_id, timeout)
        try:
            yield conn
        except ModbusFailure as failure:
            self._errors.record(failure)
            raise
        finally:
            if conn.consecutive_failures >= self._config.eviction_threshold:
                await self.evict(conn)
            else:
                self.release(conn)

    async def prune_idle(self) -> int:
        """Close idle connections unused for longer than idle_timeout. Returns how many."""
        cutoff = time.monotonic() - self._config.idle_timeout
        stale = [
            conn
            for slots in self._slots.values()
            for conn in slots.connections
            if conn.state == ConnectionState.IDLE and conn.last_used < cutoff
        ]
        # Leave accounting for all of them before the first await, so none can be acquired mid-prune.
        detached = [conn for conn in stale if conn._detach()]
        await asyncio.gather(*(conn._discard_link() for conn in detached))
        if detached:
            logger.info("Closed %d idle connections", len(detached))
        return len(detached)

    async def health_check(self) -> int:
        """
        Read one register over every idle connection. Dead links are dropped at
        once; a connection whose checks fail eviction_threshold times in a row is
        evicted. An exception response still proves the device is answering.
        Returns the number of connections evicted.
        """
        checked: list[tuple[DeviceConnection, float]] = []
        dead = []
        for slots in self._slots.values():
            for conn in list(slots.connections):
                if conn.state != ConnectionState.IDLE:
                    continue
                if not conn.connected:
                    conn._detach()
                    dead.append(conn)
                    continue
                checked.append((conn, conn.last_used))
                conn._checkout(count_use=False)

        try:
            results = await asyncio.gather(
                *(conn.read_registers(0, 1) for conn, _ in checked),
                return_exceptions=True,
            )
        except BaseException:
            for conn, _ in checked:
                self.release(conn)
            raise

        evicted = len(dead)
        for (conn, last_used), result in zip(checked, results):
            if isinstance(result, ModbusFailure) and (
                result.kind in EVICTING_KINDS or result.kind == ErrorKind.TIMEOUT
            ):
                conn.health_failures += 1
                logger.warning(
                    "Health check failed for %s (%d/%d): %s",
                    conn.connection_id,
                    conn.health_failures,
                    self._config.eviction_threshold,
                    result.message,
                )
            else:
                conn.health_failures = 0

            if (
                conn.health_failures >= self._config.eviction_threshold
                or conn.consecutive_failures >= self._config.eviction_threshold
            ):
                await self.evict(conn)
                evicted += 1
            else:
                self.release(conn)
                if conn.state == ConnectionState.IDLE:
                    conn.last_used = last_used

        if dead:
            logger.info("Dropped %d idle connections with lost links", len(dead))
            await asyncio.gather(*(conn._discard_link() for conn in dead))
        return evicted

    def start(self) -> None:
        """Start the background cleanup and health-check tasks (requires a running loop)."""
        if self._cleanup_task is None and not self._closed:
            loop = asyncio.get_running_loop()
            self._cleanup_task = loop.create_task(self._cleanup_loop())
            if self._config.health_check_interval is not None:
                self._health_task = loop.create_task(self._health_loop())
            logger.info("Connection pool started")

    async def close_all(self) -> None:
        """Shut down: fail every waiter with PoolExhausted and close all connections. Idempotent."""
        if self._closed:
            return
        self._closed = True

        for task in (self._cleanup_task, self._health_task):
            if task is not None:
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._cleanup_task = None
        self._health_task = None

        for slots in self._slots.values():
            while (waiter := slots.next_waiter()) is not None:
                waiter.set_exception(
                    make_failure(
                        "Connection pool is shutting down",
                        ErrorKind.POOL_EXHAUSTED,
                        device_id=slots.config.device_id,
                    )
                )

        conns = [conn for slots in self._slots.values() for conn in slots.connections]
        await asyncio.gather(*(conn.close() for conn in conns))
        logger.info("Connection pool closed (%d connections)", len(conns))

    def stats(self) -> PoolStats:
        devices = {}
        for device_id, slots in self._slots.items():
            in_use = sum(1 for c in slots.connections if c.state == ConnectionState.IN_USE)
            devices[device_id] = DeviceStats(
                max_connections=slots.limit,
                in_use=in_use,
                idle=len(slots.connections) - in_use,
                opening=slots.opening,
                waiting=sum(1 for w in slots.waiters if not w.done()),
            )
        return PoolStats(
            closed=self._closed,
            devices=devices,
            requests=RequestStats(**self._requests),
            errors=self._errors.to_dict(),
        )

    async def _open(self, slots: _DeviceSlots) -> DeviceConnection:
        """Open a connection into a slot already reserved via slots.opening."""
        conn = DeviceConnection(slots.config, self._link_factory(slots.config), pool=self)
        try:
            await conn.open()
        except BaseException:
            self._requests["failed_connections"] += 1
            slots.opening -= 1
            self._grant_slot(slots)
            raise
        slots.opening -= 1
        if self._closed:
            await conn.close()
            raise make_failure(
                "Connection pool is shutting down",
                ErrorKind.POOL_EXHAUSTED,
                device_id=slots.config.device_id,
            )
        slots.connections.append(conn)
        conn._checkout()
        logger.info("Created %s (%d/%d)", conn.connection_id, slots.count(), slots.limit)
        return conn

    def _forget(self, connection: DeviceConnection) -> None:
        """Close callback from DeviceConnection: drop it and let a waiter open a replacement."""
        slots = self._slots.get(connection.device_id)
        if slots is None or connection not in slots.connections:
            return
        slots.connections.remove(connection)
        self._grant_slot(slots)

    def _grant_slot(self, slots: _DeviceSlots) -> None:
        if self._closed or slots.count() >= slots.limit:
            return
        waiter = slots.next_waiter()
        if waiter is not None:
            slots.opening += 1
            waiter.set_result(_NEW_SLOT)

    def _abandon(self, slots: _DeviceSlots, waiter: asyncio.Future) -> None:
        """A queued caller was cancelled; give back anything it was already granted."""
        if not waiter.done():
            waiter.cancel()
            try:
                slots.waiters.remove(waiter)
            except ValueError:
                pass
            return
        if waiter.cancelled() or waiter.exception() is not None:
            return
        grant = waiter.result()
        if grant is _NEW_SLOT:
            slots.opening -= 1
            self._grant_slot(slots)
        else:
            self.release(grant)

    def _exhausted(self, slots: _DeviceSlots, timeout: float) -> ModbusFailure:
        logger.warning(
            "Pool exhausted for %s: %d/%d in use, no connection within %.3fs",
            slots.config.device_id,
            slots.count(),
            slots.limit,
            timeout,
        )
        return make_failure(
            f"No connection available for {slots.config.device_id} within {timeout:g}s",
            ErrorKind.POOL_EXHAUSTED,
            device_id=slots.config.device_id,
        )

    async def _cleanup_loop(self) -> None:
        interval = self._config.effective_cleanup_interval
        while not self._closed:
            await asyncio.sleep(interval)
            try:
                await self.prune_idle()
            except Exception as e:
                logger.warning("Error in cleanup loop: %s", e)

    async def _health_loop(self) -> None:
        interval = self._config.health_check_interval
        while not self._closed:
            await asyncio.sleep(interval)
            try:
                await self.health_check()
            except Exception as e:
                logger.warning("Error in health check loop: %s", e)
