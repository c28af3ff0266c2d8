"""Agent execution engine adapter producing the run's event stream."""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import AsyncGenerator, AsyncIterator, Iterable
from contextlib import aclosing, asynccontextmanager
from typing import Any, Protocol

from langchain.agents import create_agent
from langgraph.checkpoint.memory import InMemorySaver
from langgraph.checkpoint.sqlite.aio import AsyncSqliteSaver

from corpus_agent.agent.registry import ToolRegistry
from corpus_agent.types import (
    AgentEvent,
    AssistantTextEvent,
    ErrorEvent,
    InitEvent,
    ResultEvent,
    ToolEndEvent,
    ToolProgressEvent,
    ToolStartEvent,
)

logger = logging.getLogger(__name__)

PROGRESS_EVENT_NAME = "tool_progress"


class AgentEngine(Protocol):
    """External agent runner: one prompt in, an async stream of events out."""

    def run(
        self,
        prompt: str,
        *,
        session_id: str | None = None,
        allowed_tools: Iterable[str] | None = None,
        abort: asyncio.Event | None = None,
    ) -> AsyncGenerator[AgentEvent, None]: ...


def build_system_prompt(collection_name: str, description: str | None = None) -> str:
    prompt = f'You are a research assistant answering questions about the documents of "{collection_name}".\n'
    if description:
        prompt += f"\nCollection description: {description}\n"
    prompt += """
When working with the documents:
1. Use semantic_search to find relevant passages across all indexed documents. It is your primary research tool.
2. Use list_indexed_documents to see which documents are available and indexed.
3. If a document is not indexed, use index_document with its full path first.
4. Use check_indexed when unsure whether a document is searchable.
5. Give structured, evidence-based answers that name the documents you relied on.
"""
    return prompt


@asynccontextmanager
async def open_checkpointer(path: str) -> AsyncIterator[AsyncSqliteSaver]:
    """Open the SQLite checkpointer that keeps agent sessions across restarts."""

    async with AsyncSqliteSaver.from_conn_string(path) as saver:
        await saver.setup()
        logger.info("Agent sessions are checkpointed in %s", path)
        yield saver


class LangChainAgentEngine:
    """Runs a LangChain tool-calling agent and maps its callback events.

    Sessions are LangGraph checkpointer threads, so passing a previous
    session id resumes that conversation's message history. Without a
    checkpointer the history lives in memory and is lost on restart.
    """

    def __init__(
        self,
        *,
        llm: Any,
        tool_registry: ToolRegistry,
        system_prompt: str,
        checkpointer: Any | None = None,
    ) -> None:
        self.llm = llm
        self.tool_registry = tool_registry
        self.system_prompt = system_prompt
        self.checkpointer = checkpointer or InMemorySaver()
        self._graphs: dict[tuple[str, ...], Any] = {}

    async def run(
        self,
        prompt: str,
        *,
        session_id: str | None = None,
        allowed_tools: Iterable[str] | None = None,
        abort: asyncio.Event | None = None,
    ) -> AsyncGenerator[AgentEvent, None]:
        session_id = session_id or str(uuid.uuid4())
        yield InitEvent(session_id=session_id)

        graph = self._graph(allowed_tools)
        config = {"configurable": {"thread_id": session_id}}
        open_tools: dict[str, str] = {}
        turns = 0
        try:
            stream = graph.astream_events(
                {"messages": [{"role": "user", "content": prompt}]},
                config=config,
                version="v2",
            )
            async with aclosing(stream) as events:
                async for raw in events:
                    if abort is not None and abort.is_set():
                        logger.info("Run for session %s aborted", session_id)
                        return
                    if raw["event"] == "on_chat_model_end" and not _enclosing_tool(raw, open_tools):
                        turns += 1
                    mapped = _map_event(raw, open_tools)
                    if mapped is not None:
                        yield mapped
        except Exception as exc:
            logger.exception("Agent run failed for session %s", session_id)
            yield ErrorEvent(error=str(exc) or type(exc).__name__)
            return

        yield ResultEvent(success=True, num_turns=turns)

    def _graph(self, allowed_tools: Iterable[str] | None) -> Any:
        key = tuple(sorted(allowed_tools)) if allowed_tools is not None else ("*",)
        graph = self._graphs.get(key)
        if graph is None:
            graph = create_agent(
                model=self.llm,
                tools=self.tool_registry.as_langchain_tools(allowed_tools),
                system_prompt=self.system_prompt,
                checkpointer=self.checkpointer,
            )
            self._graphs[key] = graph
        return graph


def _map_event(raw: dict[str, Any], open_tools: dict[str, str]) -> AgentEvent | None:
    kind = raw["event"]
    data = raw.get("data") or {}

    if kind == "on_chat_model_stream":
        # Text streamed by models running inside a tool (sub-agents) stays in the tool.
        if _enclosing_tool(raw, open_tools):
            return None
        text = _content_text(getattr(data.get("chunk"), "content", ""))
        return AssistantTextEvent(content=text) if text else None

    if kind == "on_tool_start":
        run_id = str(raw["run_id"])
        parent = _enclosing_tool(raw, open_tools)
        open_tools[run_id] = raw.get("name", "tool")
        tool_input = data.get("input")
        if not isinstance(tool_input, dict):
            tool_input = {"input": tool_input} if tool_input is not None else {}
        return ToolStartEvent(
            tool_use_id=run_id,
            tool_name=raw.get("name", "tool"),
            parent_tool_use_id=parent,
            input=tool_input,
        )

    if kind == "on_tool_end":
        run_id = str(raw["run_id"])
        open_tools.pop(run_id, None)
        output = data.get("output")
        is_error = getattr(output, "status", "success") == "error"
        return ToolEndEvent(tool_use_id=run_id, result=_tool_output(output), is_error=is_error)

    if kind == "on_tool_error":
        run_id = str(raw["run_id"])
        open_tools.pop(run_id, None)
        return ToolEndEvent(tool_use_id=run_id, result=str(data.get("error", "")), is_error=True)

    if kind == "on_custom_event" and raw.get("name") == PROGRESS_EVENT_NAME:
        tool_use_id = str(data.get("tool_use_id") or _enclosing_tool(raw, open_tools) or "")
        if not tool_use_id:
            return None
        return ToolProgressEvent(
            tool_use_id=tool_use_id,
            tool_name=str(data.get("tool_name") or open_tools.get(tool_use_id, "tool")),
            parent_tool_use_id=data.get("parent_tool_use_id"),
            elapsed_seconds=float(data.get("elapsed_seconds", 0.0)),
        )

    return None


def _enclosing_tool(raw: dict[str, Any], open_tools: dict[str, str]) -> str | None:
    """Nearest open tool run among the event's ancestors (root first in `parent_ids`)."""

    for parent_id in reversed(raw.get("parent_ids") or []):
        if str(parent_id) in open_tools:
            return str(parent_id)
    return None


def _content_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for item in content:
            if isinstance(item, dict):
                if item.get("type") == "text":
                    parts.append(str(item.get("text", "")))
            elif isinstance(item, str):
                parts.append(item)
        return "".join(parts)
    return ""


def _tool_output(output: Any) -> Any:
    content = getattr(output, "content", output)
    if content is None or isinstance(content, (str, int, float, bool, list, dict)):
        return content
    return str(content)
