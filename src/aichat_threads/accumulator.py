"""Client-side accumulation of streaming events.

Snapshots replace, never append: each ``message-update`` or ``completed``
event carries the full message, which overwrites the entry with the same
id. The terminal event is authoritative; anything after it is ignored.
"""

from dataclasses import dataclass, field
from typing import Iterable

from .core import CANCELLED, Message
from .streaming import (
    COMPLETED_EVENT,
    ERROR,
    LOCAL_MODEL_NOT_LOADED,
    MESSAGE_UPDATE,
    StreamEvent,
)


def apply_snapshot(messages: list[Message], snapshot: Message) -> list[Message]:
    """Return ``messages`` with ``snapshot`` replacing the entry of the same id."""
    for index, msg in enumerate(messages):
        if msg.id == snapshot.id:
            return [*messages[:index], snapshot, *messages[index + 1:]]
    return [*messages, snapshot]


@dataclass
class StreamAccumulator:
    """Folds a session's event stream into a message list."""

    messages: list[Message] = field(default_factory=list)
    outcome: str | None = None  # "completed" | "cancelled" | "error" | "local-model-not-loaded"
    error: str | None = None
    model_id: str | None = None
    metrics: dict = field(default_factory=dict)

    @property
    def terminal(self) -> bool:
        return self.outcome is not None

    def apply(self, event: StreamEvent) -> None:
        if self.terminal:
            return

        if event.type in (MESSAGE_UPDATE, COMPLETED_EVENT) and event.message is not None:
            self.messages = apply_snapshot(self.messages, event.message)
            if event.type == COMPLETED_EVENT:
                self.outcome = COMPLETED_EVENT
                for key in ("medianTokensPerSecond", "totalTokens"):
                    if key in event.data:
                        self.metrics[key] = event.data[key]
            elif event.message.status == CANCELLED:
                self.outcome = CANCELLED
        elif event.type == ERROR:
            self.outcome = ERROR
            self.error = event.data.get("error")
        elif event.type == LOCAL_MODEL_NOT_LOADED:
            self.outcome = LOCAL_MODEL_NOT_LOADED
            self.error = event.data.get("error")
            self.model_id = event.data.get("modelId")

    def feed(self, events: Iterable[StreamEvent]) -> "StreamAccumulator":
        for event in events:
            self.apply(event)
        return self
