"""Tool registry built on Pydantic v2 models."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Iterable
from typing import Any

from langchain_core.tools import StructuredTool
from pydantic import BaseModel, ConfigDict, Field

from corpus_agent.obs.tracing import Timer

logger = logging.getLogger(__name__)


class ToolSpec(BaseModel):
    """Declarative tool specification for registration and validation."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    name: str
    description: str
    args_schema: type[BaseModel]
    handler: Callable[[Any], Awaitable[str]]
    tags: list[str] = Field(default_factory=list)

    async def invoke(self, payload: dict[str, Any]) -> str:
        data = self.args_schema.model_validate(payload)
        return await self.handler(data)


class ToolRegistry:
    """Stores tool specs and exports LangChain-compatible tool objects.

    Handlers are coroutines; the exported tools are async-only, which is what
    the agent engine's `astream_events` loop drives.
    """

    def __init__(self) -> None:
        self._tools: dict[str, ToolSpec] = {}

    def register(self, spec: ToolSpec) -> None:
        if spec.name in self._tools:
            raise ValueError(f"Tool already registered: {spec.name}")
        self._tools[spec.name] = spec

    async def execute(self, name: str, payload: dict[str, Any]) -> str:
        tool = self._tools.get(name)
        if tool is None:
            raise KeyError(f"Unknown tool: {name}")
        return await self._timed(tool, payload)

    def names(self) -> list[str]:
        return list(self._tools)

    def as_langchain_tools(self, allowed: Iterable[str] | None = None) -> list[StructuredTool]:
        """Export registered tools, restricted to `allowed` when given."""

        allowlist = set(allowed) if allowed is not None else None
        exported: list[StructuredTool] = []
        for tool in self._tools.values():
            if allowlist is not None and tool.name not in allowlist:
                continue
            exported.append(
                StructuredTool.from_function(
                    name=tool.name,
                    description=tool.description,
                    args_schema=tool.args_schema,
                    coroutine=self._bind(tool),
                )
            )
        return exported

    def _bind(self, tool: ToolSpec) -> Callable[..., Awaitable[str]]:
        async def _run(**kwargs: Any) -> str:
            return await self._timed(tool, kwargs)

        return _run

    @staticmethod
    async def _timed(tool: ToolSpec, payload: dict[str, Any]) -> str:
        with Timer() as timer:
            output = await tool.invoke(payload)
        logger.debug("Tool %s returned %d chars in %.1f ms", tool.name, len(output), timer.elapsed_ms)
        return output
