"""Live activity tree built from the agent's tool events."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterable
from typing import Any, assert_never

from corpus_agent.errors import AggregationDrop
from corpus_agent.types import (
    ActivityNode,
    ActivityStatus,
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

SUB_AGENT_NAME = "Sub-Agent"


def wall_clock_ms() -> float:
    return time.time() * 1000.0


def describe_tool_input(
    tool_name: str,
    tool_input: dict[str, Any],
    *,
    sub_agent_tools: Iterable[str] = ("Task",),
) -> str:
    """Short human-readable summary of a tool call's input."""

    if tool_name in sub_agent_tools or tool_name == SUB_AGENT_NAME:
        return str(tool_input.get("description") or "Sub-task")
    if tool_name == "Read":
        return f"Reading: {tool_input.get('file_path') or tool_input.get('path') or 'file'}"
    if tool_name == "Glob":
        return f"Pattern: {tool_input.get('pattern') or '*'}"
    if tool_name == "Grep":
        return f'Searching: "{tool_input.get("pattern") or ""}"'
    if tool_name == "Bash":
        command = str(tool_input.get("command") or "")
        if not command:
            return "$ command"
        return f"$ {command[:60]}{'...' if len(command) > 60 else ''}"
    if tool_name == "semantic_search":
        return f'Searching: "{tool_input.get("query") or ""}"'
    return ", ".join(f"{key}: {str(value)[:30]}" for key, value in list(tool_input.items())[:2])


def find_node(nodes: list[ActivityNode], node_id: str) -> ActivityNode | None:
    """Depth-first search of the forest."""

    for node in nodes:
        if node.id == node_id:
            return node
        found = find_node(node.children, node_id)
        if found is not None:
            return found
    return None


class ActivityTreeAggregator:
    """Pure state machine that turns engine events into an activity forest.

    Not safe for concurrent delivery: exactly one producer per run. Events
    that cannot be applied (an end for an unknown tool, a second end for a
    finished tool) are recorded in `dropped` and logged; they never raise.
    A node whose parent has not been seen yet becomes a root.
    """

    def __init__(
        self,
        *,
        clock: Callable[[], float] = wall_clock_ms,
        sub_agent_tools: Iterable[str] = ("Task",),
    ) -> None:
        self.nodes: list[ActivityNode] = []
        self.assistant_text = ""
        self.dropped: list[AggregationDrop] = []
        self._clock = clock
        self._sub_agent_tools = frozenset(sub_agent_tools)

    def apply(self, event: AgentEvent) -> bool:
        """Apply one event; return True when the tree changed."""

        if isinstance(event, ToolStartEvent):
            self.tool_start(event.tool_use_id, event.tool_name, event.parent_tool_use_id, event.input)
            return True
        if isinstance(event, ToolProgressEvent):
            return self.tool_progress(
                event.tool_use_id, event.tool_name, event.parent_tool_use_id, event.elapsed_seconds
            )
        if isinstance(event, ToolEndEvent):
            return self.tool_end(event.tool_use_id, event.result, event.is_error)
        if isinstance(event, AssistantTextEvent):
            self.append_text(event.content)
            return False
        if isinstance(event, (ResultEvent, ErrorEvent)):
            return self.terminal()
        if isinstance(event, InitEvent):
            return False
        assert_never(event)

    def tool_start(
        self,
        tool_use_id: str,
        tool_name: str,
        parent_tool_use_id: str | None = None,
        tool_input: dict[str, Any] | None = None,
    ) -> ActivityNode:
        tool_input = dict(tool_input or {})
        existing = find_node(self.nodes, tool_use_id)
        if existing is not None:
            existing.input = tool_input
            existing.description = self._describe(tool_name, tool_input)
            return existing

        node = ActivityNode(
            id=tool_use_id,
            name=self._display_name(tool_name),
            status=ActivityStatus.RUNNING,
            description=self._describe(tool_name, tool_input),
            input=tool_input,
            start_time=self._clock(),
        )
        self._attach(node, parent_tool_use_id)
        return node

    def tool_progress(
        self,
        tool_use_id: str,
        tool_name: str,
        parent_tool_use_id: str | None,
        elapsed_seconds: float,
    ) -> bool:
        existing = find_node(self.nodes, tool_use_id)
        if existing is not None:
            if not existing.status.can_advance_to(ActivityStatus.RUNNING):
                self._drop("tool_progress", tool_use_id, "tool already finished")
                return False
            existing.status = ActivityStatus.RUNNING
            base = self._describe(tool_name, existing.input) if existing.input else ""
            existing.description = (
                f"{base} ({elapsed_seconds:.1f}s)" if base else f"Running for {elapsed_seconds:.1f}s"
            )
            return True

        # Progress can arrive before the start event.
        node = ActivityNode(
            id=tool_use_id,
            name=self._display_name(tool_name),
            status=ActivityStatus.RUNNING,
            description=f"Running for {elapsed_seconds:.1f}s",
            start_time=self._clock() - elapsed_seconds * 1000.0,
        )
        self._attach(node, parent_tool_use_id)
        return True

    def tool_end(self, tool_use_id: str, result: Any = None, is_error: bool = False) -> bool:
        node = find_node(self.nodes, tool_use_id)
        if node is None:
            self._drop("tool_end", tool_use_id, "no matching tool start")
            return False
        status = ActivityStatus.ERROR if is_error else ActivityStatus.DONE
        if not node.status.can_advance_to(status):
            self._drop("tool_end", tool_use_id, "tool already finished")
            return False

        node.status = status
        node.output = result
        node.end_time = self._clock()
        elapsed = (
            f"{(node.end_time - node.start_time) / 1000.0:.1f}"
            if node.start_time is not None
            else "?"
        )
        base = self._describe(node.name, node.input) if node.input else ""
        node.description = f"{base} ({elapsed}s)" if base else f"({elapsed}s)"
        return True

    def append_text(self, delta: str) -> None:
        self.assistant_text += delta

    def terminal(self) -> bool:
        """Finish every node still pending or running as done."""

        changed = False
        end_time = self._clock()
        stack = list(self.nodes)
        while stack:
            node = stack.pop()
            if node.status.can_advance_to(ActivityStatus.DONE):
                node.status = ActivityStatus.DONE
                if node.end_time is None:
                    node.end_time = end_time
                changed = True
            stack.extend(node.children)
        return changed

    def snapshot(self) -> list[dict[str, Any]]:
        return [node.to_dict() for node in self.nodes]

    def _attach(self, node: ActivityNode, parent_tool_use_id: str | None) -> None:
        if parent_tool_use_id:
            parent = find_node(self.nodes, parent_tool_use_id)
            if parent is not None:
                parent.children.append(node)
                return
            logger.debug("Parent %s of %s not seen yet; attaching at root", parent_tool_use_id, node.id)
        self.nodes.append(node)

    def _display_name(self, tool_name: str) -> str:
        return SUB_AGENT_NAME if tool_name in self._sub_agent_tools else tool_name

    def _describe(self, tool_name: str, tool_input: dict[str, Any]) -> str:
        return describe_tool_input(tool_name, tool_input, sub_agent_tools=self._sub_agent_tools)

    def _drop(self, kind: str, tool_use_id: str, reason: str) -> None:
        drop = AggregationDrop(kind=kind, tool_use_id=tool_use_id, reason=reason)
        self.dropped.append(drop)
        logger.warning("Dropped %s for %s: %s", kind, tool_use_id, reason)
