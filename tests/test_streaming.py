import asyncio

import pytest

from common.events import (
    AssistantDeltaEvent,
    AssistantMessageEvent,
    ErrorEvent,
    EventEmitter,
    MetadataEvent,
    TurnStateEvent,
)
from chatdeck.models import DEFAULT_SESSION_NAME, GenerationOptions, Message
from chatdeck.streaming import (
    REGENERATE_ERROR_MARKER,
    SEND_ERROR_MARKER,
    StreamingOrchestrator,
    TurnState,
    api_messages,
)


def _orchestrator(store, client, events: list, on_event=None) -> StreamingOrchestrator:
    def callback(event):
        events.append(event)
        if on_event is not None:
            on_event(event)

    return StreamingOrchestrator(store, client, EventEmitter(callback))


@pytest.mark.asyncio
async def test_send_streams_and_accumulates(store, client, server):
    events: list = []
    orchestrator = _orchestrator(store, client, events)
    session = store.current_session

    outcome = await orchestrator.send(session.id, "hi")

    assert outcome.completed
    assert outcome.content == "Hello world"
    deltas = [e.content for e in events if isinstance(e, AssistantDeltaEvent)]
    assert deltas == ["Hel", "Hello", "Hello world"]
    assert [e.text for e in events if isinstance(e, AssistantDeltaEvent)] == ["Hel", "lo", " world"]

    messages = store.get_session(session.id).messages
    assert messages == [
        Message(role="user", content="hi"),
        Message(role="assistant", content="Hello world"),
    ]
    assert store.is_streaming is False
    assert orchestrator.state is TurnState.IDLE

    states = [e.state for e in events if isinstance(e, TurnStateEvent)]
    assert states == ["sending", "streaming", "finalizing", "idle"]
    assert any(isinstance(e, AssistantMessageEvent) for e in events)
    await orchestrator.drain()


@pytest.mark.asyncio
async def test_request_carries_system_prompt_model_and_options(store, client, server):
    orchestrator = _orchestrator(store, client, [])
    session = store.current_session
    store.update_system_prompt(session.id, "Be terse.")
    store.update_options(session.id, {"temperature": 0.2, "stop": ["###"]})

    await orchestrator.send(session.id, "hi")
    await orchestrator.drain()

    request = server.calls[0]
    assert request["model"] == "ollama_chat/llama3"
    assert request["api_base"] == "http://ollama.test:11434"
    assert request["stream"] is True
    assert request["temperature"] == 0.2
    assert request["stop"] == ["###"]
    assert request["messages"] == [
        {"role": "system", "content": "Be terse."},
        {"role": "user", "content": "hi"},
    ]


def test_api_messages_omits_empty_system_prompt(store):
    session = store.update_session(store.current_session.id, system_prompt="")
    history = [Message(role="user", content="hi")]
    assert api_messages(session, history) == [{"role": "user", "content": "hi"}]


@pytest.mark.asyncio
async def test_each_fragment_is_committed_before_the_next(store, client):
    seen: list[str] = []
    session = store.current_session

    def on_event(event):
        if isinstance(event, AssistantDeltaEvent):
            seen.append(store.get_session(session.id).messages[-1].content)

    orchestrator = _orchestrator(store, client, [], on_event)
    await orchestrator.send(session.id, "hi")
    await orchestrator.drain()

    assert seen == ["Hel", "Hello", "Hello world"]


@pytest.mark.asyncio
async def test_stop_keeps_partial_content(store, client, server):
    session = store.current_session
    holder: dict = {}

    def on_event(event):
        if isinstance(event, AssistantDeltaEvent) and event.content == "Hello":
            holder["orchestrator"].stop()

    orchestrator = _orchestrator(store, client, [], on_event)
    holder["orchestrator"] = orchestrator

    outcome = await orchestrator.send(session.id, "hi")
    await orchestrator.drain()

    assert outcome.status == "cancelled"
    assert outcome.content == "Hello"
    assert store.get_session(session.id).messages[-1].content == "Hello"
    assert store.is_streaming is False
    assert orchestrator.state is TurnState.IDLE
    assert server.metadata_calls == []
    assert store.get_session(session.id).name == DEFAULT_SESSION_NAME


@pytest.mark.asyncio
async def test_stop_while_waiting_for_first_chunk(store, client, server, wait_for):
    server.gate = asyncio.Event()
    orchestrator = _orchestrator(store, client, [])
    session = store.current_session

    task = asyncio.create_task(orchestrator.send(session.id, "hi"))
    await wait_for(lambda: orchestrator.state is TurnState.STREAMING)
    assert orchestrator.stop() is True

    outcome = await task
    assert outcome.status == "cancelled"
    assert outcome.content == ""
    assert store.get_session(session.id).messages[-1] == Message(role="assistant", content="")
    assert store.is_streaming is False


def test_stop_when_idle_is_a_noop(store, client):
    orchestrator = _orchestrator(store, client, [])
    assert orchestrator.stop() is False


@pytest.mark.asyncio
async def test_request_failure_writes_error_marker(store, client, server):
    server.fail = RuntimeError("connection refused")
    events: list = []
    orchestrator = _orchestrator(store, client, events)
    session = store.current_session

    outcome = await orchestrator.send(session.id, "hi")

    assert outcome.status == "failed"
    assert store.get_session(session.id).messages[-1].content == SEND_ERROR_MARKER
    assert store.get_session(session.id).messages[0].content == "hi"
    errors = [e for e in events if isinstance(e, ErrorEvent)]
    assert len(errors) == 1
    assert "connection refused" in errors[0].message
    assert store.is_streaming is False
    assert server.metadata_calls == []


@pytest.mark.asyncio
async def test_mid_stream_failure_replaces_partial_text(store, client, server):
    server.fail_after = 1
    orchestrator = _orchestrator(store, client, [])
    session = store.current_session

    outcome = await orchestrator.send(session.id, "hi")

    assert outcome.status == "failed"
    assert store.get_session(session.id).messages[-1].content == SEND_ERROR_MARKER
    assert server.streams[0].closed is True


@pytest.mark.asyncio
async def test_non_streaming_option_uses_single_response(store, client, server):
    events: list = []
    orchestrator = _orchestrator(store, client, events)
    session = store.current_session
    store.update_options(session.id, GenerationOptions(stream=False))

    outcome = await orchestrator.send(session.id, "hi")
    await orchestrator.drain()

    assert outcome.content == "Full reply"
    assert server.calls[0]["stream"] is False
    assert not any(isinstance(e, AssistantDeltaEvent) for e in events)
    assert store.get_session(session.id).messages[-1].content == "Full reply"


@pytest.mark.asyncio
async def test_send_skips_blank_text_and_missing_model(store, client, server):
    orchestrator = _orchestrator(store, client, [])
    session = store.current_session

    assert (await orchestrator.send(session.id, "   ")).status == "skipped"
    assert (await orchestrator.send("missing", "hi")).status == "skipped"

    store.update_model(session.id, "")
    assert (await orchestrator.send(session.id, "hi")).status == "skipped"
    assert server.calls == []


@pytest.mark.asyncio
async def test_only_one_turn_streams_at_a_time(store, client, server, wait_for):
    server.gate = asyncio.Event()
    orchestrator = _orchestrator(store, client, [])
    first = store.current_session
    second = store.add_session()

    task = asyncio.create_task(orchestrator.send(first.id, "one"))
    await wait_for(lambda: store.is_streaming)

    blocked = await orchestrator.send(second.id, "two")
    assert blocked.status == "skipped"
    assert store.get_session(second.id).messages == []

    server.gate.set()
    outcome = await task
    await orchestrator.drain()
    assert outcome.completed
    assert len(server.calls) == 1


@pytest.mark.asyncio
async def test_regenerate_replaces_last_assistant_message(store, client, server):
    session = store.current_session
    store.update_messages(
        session.id,
        [
            Message(role="user", content="q1"),
            Message(role="assistant", content="a1"),
            Message(role="user", content="q2"),
            Message(role="assistant", content="a2"),
        ],
    )
    store.rename_session(session.id, "Named")
    orchestrator = _orchestrator(store, client, [])

    outcome = await orchestrator.regenerate(session.id)

    assert outcome.completed
    request = server.calls[0]["messages"]
    assert [m["content"] for m in request] == [session.system_prompt, "q1", "a1", "q2"]
    messages = store.get_session(session.id).messages
    assert len(messages) == 4
    assert messages[1].content == "a1"
    assert messages[3] == Message(role="assistant", content="Hello world")


@pytest.mark.asyncio
async def test_regenerate_failure_uses_regenerate_marker(store, client, server):
    session = store.current_session
    store.update_messages(
        session.id,
        [Message(role="user", content="q1"), Message(role="assistant", content="a1")],
    )
    server.fail = RuntimeError("boom")
    orchestrator = _orchestrator(store, client, [])

    outcome = await orchestrator.regenerate(session.id)

    assert outcome.status == "failed"
    assert store.get_session(session.id).messages[-1].content == REGENERATE_ERROR_MARKER


@pytest.mark.asyncio
async def test_regenerate_without_assistant_message_is_skipped(store, client, server):
    session = store.current_session
    store.update_messages(session.id, [Message(role="user", content="q1")])
    orchestrator = _orchestrator(store, client, [])

    assert (await orchestrator.regenerate(session.id)).status == "skipped"
    assert server.calls == []


@pytest.mark.asyncio
async def test_first_reply_triggers_metadata_for_default_name(store, client, server):
    events: list = []
    orchestrator = _orchestrator(store, client, events)
    session = store.current_session

    await orchestrator.send(session.id, "hello there")
    await orchestrator.drain()

    updated = store.get_session(session.id)
    assert updated.name == "Greeting Exchange"
    assert updated.tags == ["greeting", "smalltalk"]
    assert updated.notes == "The user said hello."
    metadata = [e for e in events if isinstance(e, MetadataEvent)]
    assert sorted(e.kind for e in metadata) == ["name", "notes", "tags"]
    assert all(e.success for e in metadata)


@pytest.mark.asyncio
async def test_rename_during_turn_suppresses_metadata(store, client, server):
    session = store.current_session

    def on_event(event):
        if isinstance(event, AssistantDeltaEvent) and event.content == "Hel":
            store.rename_session(session.id, "My Chat")

    orchestrator = _orchestrator(store, client, [], on_event)
    await orchestrator.send(session.id, "hi")
    await orchestrator.drain()

    assert server.metadata_calls == []
    assert store.get_session(session.id).name == "My Chat"


@pytest.mark.asyncio
async def test_named_session_gets_no_metadata(store, client, server):
    session = store.current_session
    store.rename_session(session.id, "Already named")
    orchestrator = _orchestrator(store, client, [])

    await orchestrator.send(session.id, "hi")
    await orchestrator.drain()

    assert server.metadata_calls == []
