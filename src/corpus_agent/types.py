"""Shared domain models."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True)
class Document:
    """A source document that belongs to one collection."""

    doc_id: str
    collection_id: str
    name: str
    source_ref: str
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utc_now)


@dataclass(slots=True)
class Chunk:
    """An embedded span of a document's text."""

    chunk_id: str
    doc_id: str
    chunk_index: int
    text: str
    embedding: list[float]
    generation: int = 0
    created_at: datetime = field(default_factory=utc_now)


@dataclass(slots=True)
class SearchHit:
    """A retrieval result with its owning document and cosine similarity."""

    chunk: Chunk
    document: Document
    similarity: float


@dataclass(slots=True)
class IndexProgress:
    """Progress snapshot reported while indexing a folder."""

    total: int = 0
    completed: int = 0
    current_file: str | None = None
    status: str = "scanning"
    error: str | None = None
    notes: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "total": self.total,
            "completed": self.completed,
            "currentFile": self.current_file,
            "status": self.status,
            "notes": list(self.notes),
        }
        if self.error is not None:
            payload["error"] = self.error
        return payload


class ActivityStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    DONE = "done"
    ERROR = "error"

    @property
    def rank(self) -> int:
        return _STATUS_RANK[self]

    @property
    def is_terminal(self) -> bool:
        return self.rank == _TERMINAL_RANK

    def can_advance_to(self, target: ActivityStatus) -> bool:
        """Statuses only move forward, and a finished node never changes again."""
        return not self.is_terminal and target.rank >= self.rank


_STATUS_RANK = {
    ActivityStatus.PENDING: 0,
    ActivityStatus.RUNNING: 1,
    ActivityStatus.DONE: 2,
    ActivityStatus.ERROR: 2,
}
_TERMINAL_RANK = 2


@dataclass(slots=True)
class ActivityNode:
    """One tool invocation's lifecycle within a run.

    Timestamps are epoch milliseconds, matching what the UI renders.
    """

    id: str
    name: str
    status: ActivityStatus = ActivityStatus.PENDING
    description: str | None = None
    input: dict[str, Any] | None = None
    output: Any = None
    start_time: float | None = None
    end_time: float | None = None
    children: list["ActivityNode"] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "status": self.status.value,
            "description": self.description,
            "input": self.input,
            "output": self.output,
            "startTime": self.start_time,
            "endTime": self.end_time,
            "children": [child.to_dict() for child in self.children],
        }


# Agent engine events. Consumers dispatch with isinstance + assert_never.


@dataclass(frozen=True, slots=True)
class InitEvent:
    session_id: str


@dataclass(frozen=True, slots=True)
class AssistantTextEvent:
    content: str


@dataclass(frozen=True, slots=True)
class ToolStartEvent:
    tool_use_id: str
    tool_name: str
    parent_tool_use_id: str | None = None
    input: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class ToolProgressEvent:
    tool_use_id: str
    tool_name: str
    parent_tool_use_id: str | None = None
    elapsed_seconds: float = 0.0


@dataclass(frozen=True, slots=True)
class ToolEndEvent:
    tool_use_id: str
    result: Any = None
    is_error: bool = False


@dataclass(frozen=True, slots=True)
class ResultEvent:
    success: bool = True
    num_turns: int = 0
    cost_usd: float | None = None


@dataclass(frozen=True, slots=True)
class ErrorEvent:
    error: str


AgentEvent = (
    InitEvent
    | AssistantTextEvent
    | ToolStartEvent
    | ToolProgressEvent
    | ToolEndEvent
    | ResultEvent
    | ErrorEvent
)


@dataclass(slots=True)
class Run:
    """One conversational turn, from submission to terminal event."""

    run_id: str
    prompt: str
    session_id: str | None = None
    assistant_text: str = ""
    activity: list[ActivityNode] = field(default_factory=list)
    processing: bool = True
    cancelled: bool = False
    sealed: bool = False
    error: str | None = None
    result: ResultEvent | None = None
