"""Tests for StreamingSession and SessionRegistry."""

import asyncio
from itertools import chain, repeat

import pytest

from aichat_threads.core import ASSISTANT, CANCELLED, COMPLETED, PROCESSING, USER, Message
from aichat_threads.producer import EchoReplyProducer, ModelNotLoadedError, ReplyProducer
from aichat_threads.streaming import (
    COMPLETED_EVENT,
    CONNECTED,
    ERROR,
    LOCAL_MODEL_NOT_LOADED,
    MESSAGE_UPDATE,
    SessionRegistry,
    SessionState,
    StreamingSession,
    TokenMeter,
)
from aichat_threads.validation import FenceRepairValidator, ResponseValidator


def ticking(step=0.5):
    now = [0.0]

    def clock():
        now[0] += step
        return now[0]

    return clock


def _user(content="hello world", msg_id="u1"):
    return Message(id=msg_id, role=USER, content=content, status=COMPLETED)


def _snap(content, msg_id="a1", **kwargs):
    return Message(id=msg_id, role=ASSISTANT, content=content, status=PROCESSING, **kwargs)


class ScriptedProducer(ReplyProducer):
    """Yields fixed snapshots, then optionally raises."""

    name = "scripted"

    def __init__(self, snapshots, error=None, store=None):
        self.snapshots = snapshots
        self.error = error
        self.store = store
        self.requests = []
        self.stored_at_start = None

    async def stream(self, request):
        self.requests.append(request)
        if self.store is not None:
            self.stored_at_start = [m.id for m in self.store.get_thread_messages(request.thread_id)]
        for snapshot in self.snapshots:
            yield snapshot
        if self.error is not None:
            raise self.error


class BlockingProducer(ReplyProducer):
    """Yields one snapshot with a tool call, then waits forever."""

    name = "blocking"

    def __init__(self):
        self.blocked = asyncio.Event()
        self.closed = False

    async def stream(self, request):
        try:
            yield _snap("Let me search.", tool_calls=[{"id": "call-1", "name": "search"}])
            self.blocked.set()
            await asyncio.Event().wait()
        finally:
            self.closed = True


async def collect(events):
    return [event async for event in events]


@pytest.mark.asyncio
async def test_completed_exchange(store):
    thread = await store.create_thread()
    session = StreamingSession(store, EchoReplyProducer(), thread.id, _user(), clock=ticking())

    events = await collect(session.events())
    types = [e.type for e in events]

    assert types[0] == CONNECTED
    assert types[-1] == COMPLETED_EVENT
    assert set(types[1:-1]) == {MESSAGE_UPDATE}
    assert len(types) == 2 + 6

    updates = [e.message for e in events[1:-1]]
    assert all(m.status == PROCESSING for m in updates)
    assert len({m.id for m in updates}) == 1
    assert updates[-1].content == 'I received your message: "hello world"'

    final = events[-1].message
    assert final.id == updates[0].id
    assert final.status == COMPLETED
    assert events[-1].data["threadId"] == thread.id
    assert events[-1].data["totalTokens"] == final.total_tokens > 0
    assert events[-1].data["medianTokensPerSecond"] > 0
    assert session.state == SessionState.COMPLETED

    stored = store.get_thread_messages(thread.id)
    assert [m.id for m in stored] == ["u1", final.id]
    assert stored[1].status == COMPLETED
    assert stored[1].content == final.content
    assert stored[1].total_tokens == final.total_tokens


@pytest.mark.asyncio
async def test_user_message_committed_before_reply(store):
    thread = await store.create_thread()
    await store.update_thread_prompt(thread.id, "Be brief.")
    producer = ScriptedProducer([_snap("ok")], store=store)

    await collect(StreamingSession(store, producer, thread.id, _user()).events())

    assert producer.stored_at_start == ["u1"]
    request = producer.requests[0]
    assert request.custom_prompt == "Be brief."
    assert request.history == []
    assert request.user_message.id == "u1"


@pytest.mark.asyncio
async def test_snapshots_mirrored_in_store(store):
    thread = await store.create_thread()
    producer = ScriptedProducer([_snap("Hel"), _snap("Hello", msg_id="other-id"), _snap("Hello there")])
    session = StreamingSession(store, producer, thread.id, _user())

    seen = []
    async for event in session.events():
        if event.type == MESSAGE_UPDATE:
            stored = store.get_thread_messages(thread.id)[-1]
            seen.append((stored.id, stored.content, stored.status))

    # The first snapshot's id is kept for the whole exchange.
    assert seen == [("a1", "Hel", PROCESSING), ("a1", "Hello", PROCESSING), ("a1", "Hello there", PROCESSING)]
    assert len(store.get_thread_messages(thread.id)) == 2
    assert store.get_thread_messages(thread.id)[-1].status == COMPLETED


@pytest.mark.asyncio
async def test_producer_without_snapshots(store):
    thread = await store.create_thread()
    events = await collect(StreamingSession(store, ScriptedProducer([]), thread.id, _user()).events())

    assert [e.type for e in events] == [CONNECTED, COMPLETED_EVENT]
    final = events[-1].message
    assert final.role == ASSISTANT
    assert final.content == ""
    assert store.get_thread_messages(thread.id)[-1].id == final.id


@pytest.mark.asyncio
async def test_cancel_while_waiting_on_producer(store):
    thread = await store.create_thread()
    producer = BlockingProducer()
    session = StreamingSession(store, producer, thread.id, _user())

    task = asyncio.create_task(collect(session.events()))
    await producer.blocked.wait()
    assert session.cancel_requested is False
    assert session.cancel()
    events = await task

    assert [e.type for e in events] == [CONNECTED, MESSAGE_UPDATE, MESSAGE_UPDATE]
    final = events[-1]
    assert final.is_terminal
    assert final.message.status == CANCELLED
    assert final.message.tool_calls == [{"id": "call-1", "name": "search"}]
    assert COMPLETED_EVENT not in [e.type for e in events]
    assert session.state == SessionState.CANCELLED
    assert producer.closed

    stored = store.get_thread_messages(thread.id)[-1]
    assert stored.status == CANCELLED
    assert stored.content == "Let me search."
    assert not session.cancel()


@pytest.mark.asyncio
async def test_cancel_beats_pending_snapshots(store):
    thread = await store.create_thread()
    producer = ScriptedProducer([_snap("one"), _snap("one two"), _snap("one two three")])
    session = StreamingSession(store, producer, thread.id, _user())

    events = []
    async for event in session.events():
        events.append(event)
        if event.type == MESSAGE_UPDATE and not session.cancel_requested:
            session.cancel()

    assert [e.type for e in events] == [CONNECTED, MESSAGE_UPDATE, MESSAGE_UPDATE]
    assert events[-1].message.status == CANCELLED
    assert events[-1].message.content == "one"
    assert store.get_thread_messages(thread.id)[-1].status == CANCELLED


@pytest.mark.asyncio
async def test_cancel_before_any_snapshot(store):
    thread = await store.create_thread()
    session = StreamingSession(store, BlockingProducer(), thread.id, _user())

    events = session.events()
    assert (await events.__anext__()).type == CONNECTED
    session.cancel()
    rest = await collect(events)

    assert [e.type for e in rest] == [MESSAGE_UPDATE]
    assert rest[0].message.status == CANCELLED
    assert rest[0].message.content == ""
    # Nothing was streamed, so only the user message is stored.
    assert [m.id for m in store.get_thread_messages(thread.id)] == ["u1"]


@pytest.mark.asyncio
async def test_producer_error(store):
    thread = await store.create_thread()
    producer = ScriptedProducer([_snap("partial")], error=RuntimeError("backend exploded"))
    session = StreamingSession(store, producer, thread.id, _user())

    events = await collect(session.events())

    assert [e.type for e in events] == [CONNECTED, MESSAGE_UPDATE, ERROR]
    assert events[-1].data == {"error": "backend exploded"}
    assert session.state == SessionState.ERRORED
    assert store.get_thread_messages(thread.id)[-1].status == CANCELLED


@pytest.mark.asyncio
async def test_model_not_loaded(store):
    thread = await store.create_thread()
    producer = ScriptedProducer([], error=ModelNotLoadedError("llama-3"))
    session = StreamingSession(store, producer, thread.id, _user())

    events = await collect(session.events())

    assert [e.type for e in events] == [CONNECTED, LOCAL_MODEL_NOT_LOADED]
    assert events[-1].data == {
        "modelId": "llama-3",
        "error": "Model not loaded. Please load the model first.",
    }
    assert events[-1].is_terminal
    assert session.state == SessionState.MODEL_UNAVAILABLE
    assert [m.id for m in store.get_thread_messages(thread.id)] == ["u1"]


@pytest.mark.asyncio
async def test_store_failure_becomes_error_event(store):
    thread = await store.create_thread()
    store.persistence.fail_writes = OSError("disk full")
    session = StreamingSession(store, ScriptedProducer([_snap("x")]), thread.id, _user())

    events = await collect(session.events())

    assert [e.type for e in events] == [CONNECTED, ERROR]
    assert events[-1].data == {"error": "disk full"}


@pytest.mark.asyncio
async def test_validator_repairs_final_reply(store):
    thread = await store.create_thread()
    producer = ScriptedProducer([_snap("```python\nprint(1)  ")])
    session = StreamingSession(store, producer, thread.id, _user(), validator=FenceRepairValidator())

    events = await collect(session.events())

    assert events[-2].message.content == "```python\nprint(1)  "
    assert events[-1].message.content == "```python\nprint(1)\n```"
    assert store.get_thread_messages(thread.id)[-1].content == "```python\nprint(1)\n```"


@pytest.mark.asyncio
async def test_validator_failure_keeps_reply(store):
    class Broken(ResponseValidator):
        async def validate(self, message):
            raise ValueError("nope")

    thread = await store.create_thread()
    session = StreamingSession(store, ScriptedProducer([_snap("fine")]), thread.id, _user(), validator=Broken())

    events = await collect(session.events())

    assert events[-1].type == COMPLETED_EVENT
    assert events[-1].message.content == "fine"


@pytest.mark.asyncio
async def test_unknown_thread_moves_to_new_thread(store):
    await store.load()
    session = StreamingSession(store, ScriptedProducer([_snap("hi")]), "missing", _user())

    events = await collect(session.events())

    assert session.requested_thread_id == "missing"
    assert session.thread_id != "missing"
    assert all(e.data["threadId"] == session.thread_id for e in events[1:])
    assert [m.id for m in store.get_thread_messages(session.thread_id)] == ["u1", "a1"]


@pytest.mark.asyncio
async def test_consumer_disconnect_marks_reply_cancelled(store):
    thread = await store.create_thread()
    session = StreamingSession(store, BlockingProducer(), thread.id, _user())

    events = session.events()
    await events.__anext__()
    update = await events.__anext__()
    await events.aclose()

    assert session.state == SessionState.CANCELLED
    assert store.get_thread_messages(thread.id)[-1].id == update.message.id
    assert store.get_thread_messages(thread.id)[-1].status == CANCELLED


@pytest.mark.asyncio
async def test_consumer_task_cancelled_while_producer_runs(store):
    thread = await store.create_thread()
    producer = BlockingProducer()
    session = StreamingSession(store, producer, thread.id, _user())

    task = asyncio.create_task(collect(session.events()))
    await producer.blocked.wait()
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert session.state == SessionState.CANCELLED
    assert producer.closed
    stored = store.get_thread_messages(thread.id)[-1]
    assert stored.role == ASSISTANT
    assert stored.status == CANCELLED


@pytest.mark.asyncio
async def test_session_runs_once(store):
    thread = await store.create_thread()
    session = StreamingSession(store, ScriptedProducer([]), thread.id, _user())
    await collect(session.events())

    with pytest.raises(RuntimeError):
        await collect(session.events())


@pytest.mark.asyncio
async def test_registry_cancel_by_either_message_id(store):
    thread = await store.create_thread()
    registry = SessionRegistry()
    producer = BlockingProducer()
    session = StreamingSession(store, producer, thread.id, _user(msg_id="u-42"))

    task = asyncio.create_task(collect(registry.run(session)))
    await producer.blocked.wait()

    assert registry.active(thread.id) == [session]
    assert not registry.cancel(thread.id, "unknown")
    assert not registry.cancel("other-thread", "u-42")
    assert registry.cancel(thread.id, "u-42")

    events = await task
    assert events[-1].message.status == CANCELLED
    assert registry.active() == []
    assert not registry.cancel(thread.id, "u-42")


@pytest.mark.asyncio
async def test_registry_cancel_by_assistant_id(store):
    thread = await store.create_thread()
    registry = SessionRegistry()
    producer = BlockingProducer()
    session = StreamingSession(store, producer, thread.id, _user())

    task = asyncio.create_task(collect(registry.run(session)))
    await producer.blocked.wait()

    assert registry.cancel(thread.id, "a1")
    await task
    assert session.state == SessionState.CANCELLED


def test_token_meter():
    meter = TokenMeter(ticking(0.5))
    meter.observe("abcdefgh")
    meter.observe("abcdefgh")
    meter.observe("abcdefghij")

    # 8 chars -> 2 tokens, no growth, 2 chars -> at least 1 token
    assert meter.total_tokens == 3
    assert meter.rates == [4.0, 1.0]
    assert meter.median_tokens_per_second == 2.5
    assert TokenMeter().median_tokens_per_second is None


def test_token_meter_start_resets_baseline():
    meter = TokenMeter(ticking(0.5))
    meter.start()
    meter.observe("abcdefgh")
    assert meter.rates == [4.0]


@pytest.mark.asyncio
async def test_rate_excludes_time_before_streaming(store):
    thread = await store.create_thread()
    readings = chain([0.0, 100.0, 101.0], repeat(101.0))
    session = StreamingSession(
        store, ScriptedProducer([_snap("abcdefgh")]), thread.id, _user(), clock=lambda: next(readings)
    )

    events = await collect(session.events())

    assert events[-1].data["medianTokensPerSecond"] == 2.0
    assert events[-1].data["totalTokens"] == 2
