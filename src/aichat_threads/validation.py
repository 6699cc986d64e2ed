"""Post-generation repair of assistant replies."""

import logging
from abc import ABC, abstractmethod
from dataclasses import replace

from .core import Message

logger = logging.getLogger(__name__)

FENCE = "```"


class ResponseValidator(ABC):
    """Normalizes a finished reply before it is committed.

    Implementations may rewrite ``content`` but must keep the message id.
    """

    @abstractmethod
    async def validate(self, message: Message) -> Message:
        ...


class PassthroughValidator(ResponseValidator):
    async def validate(self, message: Message) -> Message:
        return message


class FenceRepairValidator(ResponseValidator):
    """Closes a dangling code fence and trims trailing whitespace."""

    async def validate(self, message: Message) -> Message:
        content = message.content.rstrip()
        fences = sum(1 for line in content.splitlines() if line.lstrip().startswith(FENCE))
        if fences % 2:
            logger.debug("Closing unterminated code fence in message %s", message.id)
            content = f"{content}\n{FENCE}"
        if content == message.content:
            return message
        return replace(message, content=content)
