"""Per-connection coordinator for one conversational turn at a time."""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Awaitable, Callable
from contextlib import aclosing
from typing import Any, Literal, assert_never

from pydantic import BaseModel, ConfigDict, Field

from corpus_agent.agent.activity import ActivityTreeAggregator, wall_clock_ms
from corpus_agent.agent.engine import AgentEngine
from corpus_agent.config import AgentConfig
from corpus_agent.errors import AlreadyProcessingError, CorpusAgentError
from corpus_agent.obs.tracing import Timer, summarize_activity
from corpus_agent.retrieval.conversations import ConversationStore
from corpus_agent.types import (
    AgentEvent,
    AssistantTextEvent,
    ErrorEvent,
    InitEvent,
    ResultEvent,
    Run,
    ToolEndEvent,
    ToolProgressEvent,
    ToolStartEvent,
)

logger = logging.getLogger(__name__)


class Notification(BaseModel):
    """Outbound message for the UI, serialised with camelCase field names."""

    model_config = ConfigDict(populate_by_name=True)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)


class SessionNotification(Notification):
    type: Literal["session"] = "session"
    session_id: str = Field(alias="sessionId")


class TextNotification(Notification):
    type: Literal["message"] = "message"
    content: str


class ActivityNotification(Notification):
    type: Literal["agent_activity"] = "agent_activity"
    activity: list[dict[str, Any]]


class ResultNotification(Notification):
    type: Literal["result"] = "result"
    result: dict[str, Any]


class ErrorNotification(Notification):
    type: Literal["error"] = "error"
    error: str


Observer = Callable[[dict[str, Any]], Awaitable[None]]


class SessionStreamCoordinator:
    """Owns at most one active run for a single client connection.

    Construct one per connection and call `close()` when the connection goes
    away. The coordinator is the only consumer of the engine's event stream
    for its run, which keeps the activity aggregator single-producer.
    """

    def __init__(
        self,
        *,
        engine: AgentEngine,
        conversations: ConversationStore,
        observer: Observer,
        collection_id: str,
        config: AgentConfig | None = None,
        conversation_id: str | None = None,
        session_id: str | None = None,
        clock: Callable[[], float] = wall_clock_ms,
    ) -> None:
        self._engine = engine
        self._conversations = conversations
        self._observer = observer
        self.collection_id = collection_id
        self.config = config or AgentConfig()
        self.conversation_id = conversation_id
        self.session_id = session_id
        self._clock = clock
        self._run: Run | None = None
        self._abort: asyncio.Event | None = None
        # Set once the latest run has been sealed and persisted.
        self._drained = asyncio.Event()
        self._drained.set()
        self._observer_failed = False
        self._closed = False

    @property
    def processing(self) -> bool:
        return self._run is not None and self._run.processing

    @property
    def current_run(self) -> Run | None:
        return self._run

    async def submit(self, user_text: str) -> Run:
        """Run one turn to completion and return the sealed run.

        Raises:
            AlreadyProcessingError: a run is active on this connection.
        """

        if self._closed:
            raise CorpusAgentError("Session is closed")
        if self.processing:
            raise AlreadyProcessingError("A query is already being processed")

        run = Run(run_id=str(uuid.uuid4()), prompt=user_text, session_id=self.session_id)
        abort = asyncio.Event()
        previous, drained = self._drained, asyncio.Event()
        self._run, self._abort, self._drained = run, abort, drained
        aggregator = ActivityTreeAggregator(
            clock=self._clock, sub_agent_tools=self.config.sub_agent_tools
        )

        with Timer() as timer:
            try:
                if not previous.is_set():
                    logger.info("Run %s waiting for the cancelled run to drain", run.run_id)
                    await previous.wait()
                await self._open_conversation(user_text)
                await self._pump(run, aggregator, abort)
            finally:
                try:
                    await self._seal(run, aggregator)
                finally:
                    drained.set()

        logger.info(
            "Run %s sealed in %.1f ms (cancelled=%s, error=%s): %s",
            run.run_id,
            timer.elapsed_ms,
            run.cancelled,
            run.error,
            summarize_activity(run.activity),
        )
        return run

    def cancel(self) -> None:
        """Signal the engine to stop and release the connection for a new run.

        Returns immediately. Events already in flight still complete the
        activity tree but are not emitted, and the assistant text is frozen at
        what the client has seen. A run submitted next starts only after this
        one is sealed, so persisted messages keep their order.
        """

        run = self._run
        if run is None or not run.processing:
            return
        if self._abort is not None:
            self._abort.set()
        run.cancelled = True
        run.processing = False
        logger.info("Run %s cancelled", run.run_id)

    def close(self) -> None:
        self.cancel()
        self._closed = True

    async def _open_conversation(self, user_text: str) -> None:
        if self.conversation_id is None:
            limit = self.config.title_max_chars
            title = user_text[:limit] + "..." if len(user_text) > limit else user_text
            conversation = await self._conversations.create_conversation(
                self.collection_id, title, self.session_id
            )
            self.conversation_id = conversation.conversation_id
        else:
            await self._conversations.touch(self.conversation_id)
        await self._conversations.add_message(self.conversation_id, "user", user_text)

    async def _pump(self, run: Run, aggregator: ActivityTreeAggregator, abort: asyncio.Event) -> None:
        events = self._engine.run(
            run.prompt,
            session_id=self.session_id,
            allowed_tools=self.config.allowed_tools,
            abort=abort,
        )
        try:
            async with aclosing(events) as stream:
                async for event in stream:
                    if await self._handle(run, aggregator, event):
                        return
        except CorpusAgentError:
            raise
        except Exception as exc:
            logger.exception("Agent stream failed for run %s", run.run_id)
            run.error = str(exc) or type(exc).__name__
            await self._emit(run, ErrorNotification(error=run.error))

    async def _handle(self, run: Run, aggregator: ActivityTreeAggregator, event: AgentEvent) -> bool:
        """Apply one event and forward it; return True on a terminal event."""

        mutated = aggregator.apply(event)

        if isinstance(event, InitEvent):
            self.session_id = event.session_id
            run.session_id = event.session_id
            if self.conversation_id is not None:
                await self._conversations.set_session_id(self.conversation_id, event.session_id)
            await self._emit(run, SessionNotification(session_id=event.session_id))
            return False
        if isinstance(event, AssistantTextEvent):
            if not run.cancelled:
                run.assistant_text = aggregator.assistant_text
            await self._emit(run, TextNotification(content=event.content))
            return False
        if isinstance(event, (ToolStartEvent, ToolProgressEvent, ToolEndEvent)):
            if mutated:
                await self._emit(run, ActivityNotification(activity=aggregator.snapshot()))
            return False
        if isinstance(event, ResultEvent):
            run.result = event
            if mutated:
                await self._emit(run, ActivityNotification(activity=aggregator.snapshot()))
            await self._emit(
                run,
                ResultNotification(
                    result={
                        "success": event.success,
                        "cost": event.cost_usd,
                        "turns": event.num_turns,
                    }
                ),
            )
            return True
        if isinstance(event, ErrorEvent):
            run.error = event.error
            if mutated:
                await self._emit(run, ActivityNotification(activity=aggregator.snapshot()))
            await self._emit(run, ErrorNotification(error=event.error))
            return True
        assert_never(event)

    async def _seal(self, run: Run, aggregator: ActivityTreeAggregator) -> None:
        if run.sealed:
            return
        aggregator.terminal()
        run.activity = aggregator.nodes
        if not run.cancelled:
            run.assistant_text = aggregator.assistant_text
        run.processing = False
        run.sealed = True
        if run.assistant_text and self.conversation_id is not None:
            snapshot = aggregator.snapshot()
            await self._conversations.add_message(
                self.conversation_id,
                "assistant",
                run.assistant_text,
                activity=snapshot or None,
            )

    async def _emit(self, run: Run, notification: Notification) -> None:
        if run.cancelled or self._observer_failed:
            return
        try:
            await self._observer(notification.to_wire())
        except Exception:
            # The transport is gone; keep aggregating and persisting without it.
            logger.warning("Observer failed; stopping emission for this connection", exc_info=True)
            self._observer_failed = True
