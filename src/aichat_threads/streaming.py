"""Streaming session: one user message in, one assistant reply out.

A ``StreamingSession`` drives a ``ReplyProducer`` and turns its snapshots
into an ordered stream of ``StreamEvent``s::

    OPENED -> STREAMING -> COMPLETED | CANCELLED | ERRORED | MODEL_UNAVAILABLE

Every snapshot is mirrored into the ``ThreadStore`` in place, so the stored
assistant message always reflects the latest snapshot. The completed reply
is validated and committed exactly once. Every session ends with exactly
one terminal event; failures never escape ``events()``.

Events go over the wire as Server-Sent Events whose ``data`` field is a JSON
object with a ``type`` discriminant.
"""

import asyncio
import json
import logging
import statistics
import time
import uuid
from dataclasses import dataclass, field, fields, replace
from enum import Enum
from typing import Any, AsyncIterator, Callable

from .core import ASSISTANT, CANCELLED, COMPLETED, PROCESSING, Message
from .producer import ModelNotLoadedError, ReplyProducer, ReplyRequest
from .store import ThreadStore
from .validation import PassthroughValidator, ResponseValidator

logger = logging.getLogger(__name__)

# Event types
CONNECTED = "connected"
MESSAGE_UPDATE = "message-update"
COMPLETED_EVENT = "completed"
ERROR = "error"
LOCAL_MODEL_NOT_LOADED = "local-model-not-loaded"

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


class SessionState(str, Enum):
    OPENED = "opened"
    STREAMING = "streaming"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    ERRORED = "errored"
    MODEL_UNAVAILABLE = "model_unavailable"

    @property
    def is_terminal(self) -> bool:
        return self not in (SessionState.OPENED, SessionState.STREAMING)


@dataclass
class StreamEvent:
    """One event on the session channel.

    ``data`` holds the payload; a ``message`` entry is kept as a ``Message``
    and converted to its wire form on encoding.
    """

    type: str
    data: dict[str, Any] = field(default_factory=dict)

    @property
    def message(self) -> Message | None:
        return self.data.get("message")

    @property
    def is_terminal(self) -> bool:
        if self.type in (COMPLETED_EVENT, ERROR, LOCAL_MODEL_NOT_LOADED):
            return True
        return self.type == MESSAGE_UPDATE and self.message is not None and self.message.status == CANCELLED

    def to_dict(self) -> dict:
        payload: dict[str, Any] = {"type": self.type}
        for key, value in self.data.items():
            payload[key] = value.to_dict() if isinstance(value, Message) else value
        return payload

    @classmethod
    def from_dict(cls, payload: dict) -> "StreamEvent":
        data = {k: v for k, v in payload.items() if k != "type"}
        if isinstance(data.get("message"), dict):
            data["message"] = Message.from_dict(data["message"])
        return cls(type=payload["type"], data=data)

    def to_sse(self) -> str:
        return f"data: {json.dumps(self.to_dict(), ensure_ascii=False)}\n\n"


def parse_sse(text: str) -> list[StreamEvent]:
    """Decode a Server-Sent Events body into ``StreamEvent``s.

    Comment lines (keepalives) and events without data are skipped.
    """
    events = []
    for block in text.replace("\r\n", "\n").split("\n\n"):
        data_lines = [line[5:].lstrip() for line in block.split("\n") if line.startswith("data:")]
        if not data_lines:
            continue
        events.append(StreamEvent.from_dict(json.loads("\n".join(data_lines))))
    return events


class TokenMeter:
    """Estimates throughput from how fast snapshot content grows.

    Roughly four characters make a token; each growth step counts at least
    one token.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._last = clock()
        self._chars = 0
        self.total_tokens = 0
        self.rates: list[float] = []

    def start(self) -> None:
        """Measure the first growth step from now."""
        self._last = self._clock()

    def observe(self, content: str) -> None:
        now = self._clock()
        grown = len(content) - self._chars
        if grown <= 0:
            return
        tokens = max(1, grown // 4)
        self._chars = len(content)
        self.total_tokens += tokens
        elapsed = now - self._last
        self._last = now
        if elapsed > 0:
            self.rates.append(tokens / elapsed)

    @property
    def median_tokens_per_second(self) -> float | None:
        return statistics.median(self.rates) if self.rates else None


# Fields mirrored from a snapshot into the stored message.
_SNAPSHOT_FIELDS = [f.name for f in fields(Message) if f.name not in ("id", "extra")]


def _snapshot_patch(message: Message) -> dict[str, Any]:
    return {name: getattr(message, name) for name in _SNAPSHOT_FIELDS}


def _new_message_id() -> str:
    return f"assistant-{uuid.uuid4().hex}"


async def _next_snapshot(iterator: AsyncIterator[Message]) -> Message:
    return await iterator.__anext__()


class StreamingSession:
    """State machine for a single user message -> assistant reply exchange."""

    def __init__(
        self,
        store: ThreadStore,
        producer: ReplyProducer,
        thread_id: str,
        user_message: Message,
        *,
        validator: ResponseValidator | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self.producer = producer
        self.requested_thread_id = thread_id
        self.thread_id = thread_id
        self.user_message = user_message
        self.validator = validator or PassthroughValidator()
        self.state = SessionState.OPENED
        self.message: Message | None = None
        self.metrics = TokenMeter(clock)
        self._abort = asyncio.Event()
        self._started = False
        self._closing = False
        self._stored = False

    @property
    def message_id(self) -> str | None:
        return self.message.id if self.message else None

    @property
    def cancel_requested(self) -> bool:
        return self._abort.is_set()

    def cancel(self) -> bool:
        """Ask the session to stop. Returns False once the session is ending."""
        if self._closing or self.state.is_terminal:
            return False
        logger.info("Cancel requested for thread %s message %s", self.thread_id, self.message_id)
        self._abort.set()
        return True

    async def events(self) -> AsyncIterator[StreamEvent]:
        """Run the exchange, yielding its events in order."""
        if self._started:
            raise RuntimeError("Streaming session already started")
        self._started = True

        yield StreamEvent(CONNECTED, {"threadId": self.thread_id})

        snapshots = self._snapshots()
        try:
            await self._commit_user_message()
            self.state = SessionState.STREAMING
            self.metrics.start()
            async for snapshot in snapshots:
                await self._apply_snapshot(snapshot)
                yield self._message_event(MESSAGE_UPDATE)

            if self._abort.is_set():
                terminal = await self._finish_cancelled()
            else:
                terminal = await self._finish_completed()
        except ModelNotLoadedError as e:
            logger.warning("Model %s not loaded for thread %s", e.model_id, self.thread_id)
            terminal = await self._finish_failed(
                SessionState.MODEL_UNAVAILABLE,
                StreamEvent(LOCAL_MODEL_NOT_LOADED, {"modelId": e.model_id, "error": e.message}),
            )
        except Exception as e:
            logger.error("Streaming failed for thread %s: %s", self.thread_id, e)
            terminal = await self._finish_failed(
                SessionState.ERRORED,
                StreamEvent(ERROR, {"error": str(e) or type(e).__name__}),
            )
        except (GeneratorExit, asyncio.CancelledError):
            # Consumer went away; nobody is left to receive a terminal event.
            self._abort.set()
            if not self.state.is_terminal:
                self.state = SessionState.CANCELLED
                await self._mark_stored_cancelled()
            raise
        finally:
            await snapshots.aclose()

        logger.info("Session for thread %s ended: %s", self.thread_id, self.state.value)
        yield terminal

    # ── Phases ──────────────────────────────────────────────────────

    async def _commit_user_message(self) -> None:
        result = await self.store.add_message(self.thread_id, self.user_message)
        if result.created_new_thread:
            logger.warning("Thread %s unknown, exchange moved to thread %s", self.thread_id, result.thread.id)
        self.thread_id = result.thread.id

    async def _snapshots(self) -> AsyncIterator[Message]:
        thread = self.store.get_thread(self.thread_id)
        request = ReplyRequest(
            thread_id=self.thread_id,
            user_message=self.user_message,
            history=[m for m in (thread.messages if thread else []) if m.id != self.user_message.id],
            custom_prompt=thread.custom_prompt if thread else None,
            abort=self._abort,
        )
        iterator = self.producer.stream(request)
        abort_wait = asyncio.ensure_future(self._abort.wait())
        step: asyncio.Future | None = None
        try:
            while not self._abort.is_set():
                step = asyncio.ensure_future(_next_snapshot(iterator))
                await asyncio.wait({step, abort_wait}, return_when=asyncio.FIRST_COMPLETED)
                if self._abort.is_set():
                    # Cancel wins even when a snapshot was already produced.
                    return
                try:
                    snapshot = step.result()
                except StopAsyncIteration:
                    return
                step = None
                yield snapshot
        finally:
            abort_wait.cancel()
            if step is not None:
                # The producer cannot be closed while a step is still inside it.
                step.cancel()
                await asyncio.gather(step, return_exceptions=True)
            aclose = getattr(iterator, "aclose", None)
            if aclose is not None:
                await aclose()

    async def _apply_snapshot(self, snapshot: Message) -> None:
        message_id = self.message.id if self.message else (snapshot.id or _new_message_id())
        if snapshot.id and snapshot.id != message_id:
            logger.warning("Snapshot id %s does not match message %s, keeping %s", snapshot.id, message_id, message_id)

        self.message = replace(snapshot, id=message_id, role=ASSISTANT, status=PROCESSING)
        self.metrics.observe(self.message.content)

        if not self._stored:
            result = await self.store.add_message(self.thread_id, replace(self.message))
            self.thread_id = result.thread.id
            self._stored = True
        elif not await self.store.update_message(self.thread_id, message_id, _snapshot_patch(self.message)):
            logger.warning("Message %s vanished from thread %s during streaming", message_id, self.thread_id)

    async def _finish_completed(self) -> StreamEvent:
        self._closing = True
        message = self.message or Message(id=_new_message_id(), role=ASSISTANT, content="")
        message = replace(message, status=COMPLETED)
        if message.total_tokens is None and self.metrics.total_tokens:
            message.total_tokens = self.metrics.total_tokens
        if message.median_tokens_per_second is None:
            message.median_tokens_per_second = self.metrics.median_tokens_per_second
        message = await self._validate(message)

        if self._stored:
            if not await self.store.update_message(self.thread_id, message.id, _snapshot_patch(message)):
                logger.warning("Message %s vanished from thread %s before commit", message.id, self.thread_id)
        else:
            result = await self.store.add_message(self.thread_id, replace(message))
            self.thread_id = result.thread.id
            self._stored = True

        self.message = message
        self.state = SessionState.COMPLETED
        event = self._message_event(COMPLETED_EVENT)
        if message.median_tokens_per_second is not None:
            event.data["medianTokensPerSecond"] = message.median_tokens_per_second
        if message.total_tokens is not None:
            event.data["totalTokens"] = message.total_tokens
        return event

    async def _finish_cancelled(self) -> StreamEvent:
        self._closing = True
        if self.message is None:
            self.message = Message(id=_new_message_id(), role=ASSISTANT, content="", status=CANCELLED)
        else:
            self.message = replace(self.message, status=CANCELLED)
        if self._stored:
            await self.store.update_message(self.thread_id, self.message.id, {"status": CANCELLED})
        self.state = SessionState.CANCELLED
        return self._message_event(MESSAGE_UPDATE)

    async def _finish_failed(self, state: SessionState, event: StreamEvent) -> StreamEvent:
        self._closing = True
        self.state = state
        await self._mark_stored_cancelled()
        return event

    # ── Helpers ─────────────────────────────────────────────────────

    async def _validate(self, message: Message) -> Message:
        try:
            validated = await self.validator.validate(message)
        except Exception as e:
            logger.warning("Validation failed for message %s, keeping original: %s", message.id, e)
            return message
        if validated.id != message.id:
            validated = replace(validated, id=message.id)
        return validated

    async def _mark_stored_cancelled(self) -> None:
        if self.message is not None and not self.message.is_terminal:
            self.message = replace(self.message, status=CANCELLED)
        if not self._stored or self.message is None:
            return
        try:
            await self.store.update_message(self.thread_id, self.message.id, {"status": CANCELLED})
        except Exception as e:
            logger.error("Failed to mark message %s cancelled: %s", self.message.id, e)

    def _message_event(self, event_type: str) -> StreamEvent:
        return StreamEvent(event_type, {"message": replace(self.message), "threadId": self.thread_id})


class SessionRegistry:
    """Live sessions, looked up for out-of-band cancellation.

    Several sessions may run against the same thread; their commits land in
    whatever order they complete.
    """

    def __init__(self):
        self._sessions: list[StreamingSession] = []

    def active(self, thread_id: str | None = None) -> list[StreamingSession]:
        return [
            s for s in self._sessions
            if thread_id is None or thread_id in (s.thread_id, s.requested_thread_id)
        ]

    async def run(self, session: StreamingSession) -> AsyncIterator[StreamEvent]:
        """Yield the session's events while it is registered."""
        self._sessions.append(session)
        try:
            async for event in session.events():
                yield event
        finally:
            self._sessions.remove(session)

    def cancel(self, thread_id: str, message_id: str) -> bool:
        """Cancel the live session on ``thread_id`` handling ``message_id``.

        ``message_id`` may name either the assistant reply or the user
        message that started the exchange.
        """
        for session in self.active(thread_id):
            if message_id in (session.message_id, session.user_message.id):
                return session.cancel()
        return False
