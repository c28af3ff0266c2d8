import asyncio
from pathlib import Path
from typing import Any

import pytest

from corpus_agent.errors import ExtractionError
from corpus_agent.ingest.extractor import TextExtractor


class FakeClock:
    """Epoch-millisecond clock advanced by hand."""

    def __init__(self, start: float = 1_700_000_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds * 1000.0


class FakePdfExtractor(TextExtractor):
    """Treats `.pdf` fixtures as UTF-8 text; `%CORRUPT` marks an unreadable file."""

    extensions = (".pdf",)

    def _read(self, path: Path) -> str:
        raw = path.read_text(encoding="utf-8")
        if raw.startswith("%CORRUPT"):
            raise ExtractionError(f"Corrupt PDF: {path.name}")
        return raw


class ScriptedEngine:
    """Agent engine that replays a fixed event list.

    When `pause_after` is set, the first stream signals `started` after that
    many events and waits for `release` before continuing. Later calls replay
    the next list from `follow_ups`, or `events` again when none is left. The
    abort signal is recorded but not honoured, like an engine with events
    already in flight.
    """

    def __init__(
        self,
        events: list[Any],
        *,
        pause_after: int | None = None,
        fail_with: Exception | None = None,
        follow_ups: list[list[Any]] | None = None,
    ) -> None:
        self.events = events
        self.pause_after = pause_after
        self.fail_with = fail_with
        self.follow_ups = list(follow_ups or [])
        self.started = asyncio.Event()
        self.release = asyncio.Event()
        self.calls: list[dict[str, Any]] = []

    async def run(self, prompt, *, session_id=None, allowed_tools=None, abort=None):
        first = not self.calls
        self.calls.append(
            {
                "prompt": prompt,
                "session_id": session_id,
                "allowed_tools": list(allowed_tools or []),
                "abort": abort,
            }
        )
        events = self.events if first or not self.follow_ups else self.follow_ups.pop(0)
        for index, event in enumerate(events):
            if first and self.pause_after is not None and index == self.pause_after:
                self.started.set()
                await self.release.wait()
            yield event
        if self.fail_with is not None:
            raise self.fail_with


class Recorder:
    def __init__(self) -> None:
        self.messages: list[dict[str, Any]] = []

    async def __call__(self, message: dict[str, Any]) -> None:
        self.messages.append(message)

    @property
    def types(self) -> list[str]:
        return [message["type"] for message in self.messages]


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def recorder() -> Recorder:
    return Recorder()


@pytest.fixture
def fake_pdf_extractor() -> FakePdfExtractor:
    return FakePdfExtractor()


@pytest.fixture
def scripted_engine():
    return ScriptedEngine
