"""Abstract base class for assistant reply producers."""

import asyncio
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import AsyncIterator

from .core import ASSISTANT, PROCESSING, Message, utcnow


class ModelNotLoadedError(Exception):
    """The selected local model is not loaded; loading it and retrying can succeed."""

    def __init__(self, model_id: str, message: str = "Model not loaded. Please load the model first."):
        super().__init__(message)
        self.model_id = model_id
        self.message = message


@dataclass
class ReplyRequest:
    """Everything a producer needs to answer one user message."""

    thread_id: str
    user_message: Message
    history: list[Message] = field(default_factory=list)
    custom_prompt: str | None = None
    abort: asyncio.Event = field(default_factory=asyncio.Event)


class ReplyProducer(ABC):
    """Base class for model backends.

    A producer turns a ``ReplyRequest`` into a sequence of full snapshots of
    the assistant message. Each snapshot supersedes the previous one; the
    last snapshot is the final reply. Producers should stop early once
    ``request.abort`` is set, and raise ``ModelNotLoadedError`` when their
    model is unavailable.
    """

    name: str

    @abstractmethod
    def stream(self, request: ReplyRequest) -> AsyncIterator[Message]:
        """Yield successive snapshots of the assistant reply."""
        ...


class EchoReplyProducer(ReplyProducer):
    """Development producer that streams the user's message back word by word."""

    name = "echo"

    def __init__(self, delay: float = 0.0):
        self.delay = delay

    async def stream(self, request: ReplyRequest) -> AsyncIterator[Message]:
        reply_id = f"assistant-{uuid.uuid4().hex}"
        started = utcnow()
        words = f'I received your message: "{request.user_message.content}"'.split(" ")
        for count in range(1, len(words) + 1):
            if request.abort.is_set():
                return
            if self.delay:
                await asyncio.sleep(self.delay)
            yield Message(
                id=reply_id,
                role=ASSISTANT,
                content=" ".join(words[:count]),
                timestamp=started,
                status=PROCESSING,
                model=self.name,
            )
