import asyncio

import pytest

from corpus_agent.agent.session import SessionStreamCoordinator
from corpus_agent.config import DEFAULT_ALLOWED_TOOLS
from corpus_agent.errors import AlreadyProcessingError, CorpusAgentError, StoreError
from corpus_agent.retrieval.conversations import InMemoryConversationStore
from corpus_agent.types import (
    ActivityStatus,
    AssistantTextEvent,
    ErrorEvent,
    InitEvent,
    ResultEvent,
    ToolEndEvent,
    ToolStartEvent,
)


def _happy_path_events() -> list:
    return [
        InitEvent(session_id="session-1"),
        AssistantTextEvent(content="Let me look. "),
        ToolStartEvent("t1", "Task", None, {"description": "Survey papers"}),
        ToolStartEvent("t2", "semantic_search", "t1", {"query": "entropy"}),
        ToolEndEvent("t2", "Found 2 relevant passages"),
        ToolEndEvent("t1", "summary"),
        AssistantTextEvent(content="Entropy never decreases."),
        ResultEvent(success=True, num_turns=2, cost_usd=0.01),
    ]


def _coordinator(engine, recorder, conversations, clock, **kwargs) -> SessionStreamCoordinator:
    return SessionStreamCoordinator(
        engine=engine,
        conversations=conversations,
        observer=recorder,
        collection_id="c1",
        clock=clock,
        **kwargs,
    )


@pytest.fixture
def conversations() -> InMemoryConversationStore:
    return InMemoryConversationStore()


async def test_turn_streams_notifications_and_persists_messages(
    scripted_engine, recorder, conversations, clock
) -> None:
    engine = scripted_engine(_happy_path_events())
    coordinator = _coordinator(engine, recorder, conversations, clock)

    run = await coordinator.submit("What does the second law say?")

    assert recorder.types == [
        "session",
        "message",
        "agent_activity",
        "agent_activity",
        "agent_activity",
        "agent_activity",
        "message",
        "result",
    ]
    assert recorder.messages[0] == {"type": "session", "sessionId": "session-1"}
    assert recorder.messages[-1] == {
        "type": "result",
        "result": {"success": True, "cost": 0.01, "turns": 2},
    }
    tree = recorder.messages[5]["activity"]
    assert tree[0]["name"] == "Sub-Agent"
    assert tree[0]["children"][0]["id"] == "t2"
    assert tree[0]["status"] == "done"

    assert run.sealed is True
    assert run.processing is False
    assert run.assistant_text == "Let me look. Entropy never decreases."
    assert coordinator.processing is False
    assert coordinator.session_id == "session-1"

    messages = await conversations.get_messages(coordinator.conversation_id)
    assert [(m.role, m.content) for m in messages] == [
        ("user", "What does the second law say?"),
        ("assistant", "Let me look. Entropy never decreases."),
    ]
    assert messages[1].activity[0]["id"] == "t1"
    [conversation] = await conversations.list_conversations("c1")
    assert conversation.session_id == "session-1"
    assert engine.calls[0]["allowed_tools"] == DEFAULT_ALLOWED_TOOLS


async def test_second_submit_while_processing_is_rejected(
    scripted_engine, recorder, conversations, clock
) -> None:
    engine = scripted_engine(_happy_path_events(), pause_after=2)
    coordinator = _coordinator(engine, recorder, conversations, clock)

    task = asyncio.create_task(coordinator.submit("first"))
    await engine.started.wait()

    assert coordinator.processing is True
    with pytest.raises(AlreadyProcessingError):
        await coordinator.submit("second")

    engine.release.set()
    await task
    assert len(engine.calls) == 1


async def test_cancel_stops_emission_but_still_seals_and_persists(
    scripted_engine, recorder, conversations, clock
) -> None:
    events = [
        InitEvent(session_id="session-1"),
        AssistantTextEvent(content="Partial "),
        ToolStartEvent("t1", "index_document", None, {"file_path": "/docs/a.pdf"}),
        AssistantTextEvent(content="answer"),
        ToolEndEvent("t1", "Indexed"),
        ResultEvent(success=True, num_turns=1),
    ]
    engine = scripted_engine(events, pause_after=3)
    coordinator = _coordinator(engine, recorder, conversations, clock)

    task = asyncio.create_task(coordinator.submit("Index a.pdf"))
    await engine.started.wait()
    coordinator.cancel()

    assert coordinator.processing is False
    assert engine.calls[0]["abort"].is_set()

    engine.release.set()
    run = await task

    assert recorder.types == ["session", "message", "agent_activity"]
    assert run.cancelled is True
    assert run.sealed is True
    assert run.activity[0].status is ActivityStatus.DONE
    assert run.assistant_text == "Partial "
    messages = await conversations.get_messages(coordinator.conversation_id)
    assert messages[-1].role == "assistant"
    assert messages[-1].content == "Partial "
    assert messages[-1].activity[0]["status"] == "done"


async def test_resubmit_after_cancel_waits_for_the_cancelled_run(
    scripted_engine, recorder, conversations, clock
) -> None:
    first_turn = [
        InitEvent(session_id="session-1"),
        AssistantTextEvent(content="Old answer"),
        ToolStartEvent("t1", "semantic_search", None, {"query": "entropy"}),
        AssistantTextEvent(content=" with a late tail"),
        ToolEndEvent("t1", "Found 1 relevant passage"),
        ResultEvent(success=True, num_turns=1),
    ]
    second_turn = [
        InitEvent(session_id="session-1"),
        AssistantTextEvent(content="New answer"),
        ResultEvent(success=True, num_turns=1),
    ]
    engine = scripted_engine(first_turn, pause_after=3, follow_ups=[second_turn])
    coordinator = _coordinator(engine, recorder, conversations, clock)

    first = asyncio.create_task(coordinator.submit("q1"))
    await engine.started.wait()
    coordinator.cancel()
    second = asyncio.create_task(coordinator.submit("q2"))
    for _ in range(5):
        await asyncio.sleep(0)

    assert coordinator.processing is True
    assert len(engine.calls) == 1

    engine.release.set()
    cancelled_run, next_run = await asyncio.gather(first, second)

    assert cancelled_run.cancelled is True
    assert cancelled_run.assistant_text == "Old answer"
    assert next_run.assistant_text == "New answer"
    assert engine.calls[1]["session_id"] == "session-1"
    messages = await conversations.get_messages(coordinator.conversation_id)
    assert [(m.role, m.content) for m in messages] == [
        ("user", "q1"),
        ("assistant", "Old answer"),
        ("user", "q2"),
        ("assistant", "New answer"),
    ]
    assert recorder.types[-2:] == ["message", "result"]
    assert " with a late tail" not in [m.get("content") for m in recorder.messages]


async def test_error_event_seals_open_tools_and_reports_error(
    scripted_engine, recorder, conversations, clock
) -> None:
    events = [
        InitEvent(session_id="session-1"),
        ToolStartEvent("t1", "semantic_search", None, {"query": "phonons"}),
        ErrorEvent(error="rate limited"),
        AssistantTextEvent(content="never delivered"),
    ]
    coordinator = _coordinator(scripted_engine(events), recorder, conversations, clock)

    run = await coordinator.submit("Explain phonons")

    assert recorder.types == ["session", "agent_activity", "agent_activity", "error"]
    assert recorder.messages[2]["activity"][0]["status"] == "done"
    assert recorder.messages[-1] == {"type": "error", "error": "rate limited"}
    assert run.error == "rate limited"
    assert run.assistant_text == ""
    messages = await conversations.get_messages(coordinator.conversation_id)
    assert [m.role for m in messages] == ["user"]


async def test_engine_exception_becomes_error_notification(
    scripted_engine, recorder, conversations, clock
) -> None:
    engine = scripted_engine(
        [InitEvent(session_id="s"), AssistantTextEvent(content="Half")],
        fail_with=RuntimeError("socket reset"),
    )
    coordinator = _coordinator(engine, recorder, conversations, clock)

    run = await coordinator.submit("hello")

    assert recorder.types == ["session", "message", "error"]
    assert run.error == "socket reset"
    assert run.sealed is True
    messages = await conversations.get_messages(coordinator.conversation_id)
    assert messages[-1].content == "Half"
    assert messages[-1].activity is None


async def test_domain_errors_propagate_after_sealing(
    scripted_engine, recorder, conversations, clock
) -> None:
    engine = scripted_engine([InitEvent(session_id="s")], fail_with=StoreError("database locked"))
    coordinator = _coordinator(engine, recorder, conversations, clock)

    with pytest.raises(StoreError):
        await coordinator.submit("hello")

    assert coordinator.processing is False
    assert coordinator.current_run.sealed is True


async def test_failing_observer_does_not_abort_the_run(scripted_engine, conversations, clock) -> None:
    calls = []

    async def observer(message) -> None:
        calls.append(message["type"])
        raise ConnectionResetError("client went away")

    coordinator = SessionStreamCoordinator(
        engine=scripted_engine(_happy_path_events()),
        conversations=conversations,
        observer=observer,
        collection_id="c1",
        clock=clock,
    )

    run = await coordinator.submit("question")

    assert calls == ["session"]
    assert run.sealed is True
    assert run.result.num_turns == 2
    messages = await conversations.get_messages(coordinator.conversation_id)
    assert len(messages) == 2


async def test_resumed_session_reuses_conversation_and_engine_session(
    scripted_engine, recorder, conversations, clock
) -> None:
    conversation = await conversations.create_conversation("c1", "Earlier chat", "prev-session")
    engine = scripted_engine(
        [InitEvent(session_id="prev-session"), AssistantTextEvent(content="Welcome back"), ResultEvent()]
    )
    coordinator = _coordinator(
        engine,
        recorder,
        conversations,
        clock,
        conversation_id=conversation.conversation_id,
        session_id="prev-session",
    )

    await coordinator.submit("Continue please")

    assert engine.calls[0]["session_id"] == "prev-session"
    assert len(await conversations.list_conversations("c1")) == 1
    messages = await conversations.get_messages(conversation.conversation_id)
    assert [m.content for m in messages] == ["Continue please", "Welcome back"]


async def test_long_prompt_is_truncated_for_conversation_title(
    scripted_engine, recorder, conversations, clock
) -> None:
    prompt = "Summarize the experimental setup used across every thermodynamics paper"
    coordinator = _coordinator(scripted_engine([ResultEvent()]), recorder, conversations, clock)

    await coordinator.submit(prompt)

    [conversation] = await conversations.list_conversations("c1")
    assert conversation.title == prompt[:50] + "..."


async def test_closed_session_rejects_new_turns(scripted_engine, recorder, conversations, clock) -> None:
    coordinator = _coordinator(scripted_engine([ResultEvent()]), recorder, conversations, clock)
    coordinator.close()

    with pytest.raises(CorpusAgentError):
        await coordinator.submit("hello")
