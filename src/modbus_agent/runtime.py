"""ToolRuntime: process-wide tool registration on start, pool teardown on shutdown."""

from __future__ import annotations

import logging
from typing import Any, Iterable

from .errors import InvalidArgumentsError, UnknownToolError
from .pool import ConnectionPool
from .tools import ToolConfig, ToolResult, build_register_tools

logger = logging.getLogger(__name__)


class ToolRuntime:
    """
    Owns the pool for the lifetime of a process and the tool records built on it.
    Use as an async context manager, or call start()/shutdown() explicitly.
    """

    def __init__(self, pool: ConnectionPool, extra_tools: Iterable[ToolConfig] = ()) -> None:
        self.pool = pool
        self._extra_tools = list(extra_tools)
        self._tools: dict[str, ToolConfig] = {}
        self._started = False

    async def start(self) -> None:
        if self._started:
            return
        for tool in [*build_register_tools(self.pool), *self._extra_tools]:
            self.register(tool)
        self.pool.start()
        self._started = True
        logger.info("Tool runtime started with %d tools", len(self._tools))

    async def shutdown(self) -> None:
        self._tools.clear()
        await self.pool.close_all()
        self._started = False
        logger.info("Tool runtime stopped")

    async def __aenter__(self) -> "ToolRuntime":
        await self.start()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.shutdown()

    def register(self, tool: ToolConfig) -> None:
        if tool.name in self._tools:
            raise ValueError(f"Duplicate tool name: {tool.name!r}")
        self._tools[tool.name] = tool

    def tools(self) -> list[ToolConfig]:
        return list(self._tools.values())

    def get(self, name: str) -> ToolConfig:
        try:
            return self._tools[name]
        except KeyError:
            raise UnknownToolError(name) from None

    async def call(self, name: str, args: dict[str, Any] | None = None) -> ToolResult:
        """
        Validate then invoke a tool. Raises UnknownToolError / InvalidArgumentsError
        before any device or pool access; device failures come back inside the result.

        Rejected arguments are raised rather than returned as an error result: the
        catalog holds callers to each tool's schema, so a bad call is a caller bug,
        while isError results are reserved for failures reported by the device layer.
        """
        tool = self.get(name)
        args = args or {}
        if tool.validate is not None:
            result = tool.validate(args)
            if not result.valid:
                raise InvalidArgumentsError(name, result)
        logger.debug("Calling tool %s with %s", name, args)
        return await tool.handler(args)
