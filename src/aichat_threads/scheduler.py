"""Trailing-write persistence scheduler.

Mutations call ``request()`` after changing in-memory state. At most one
write runs at a time; requests that arrive while it runs are coalesced into
a single follow-up write. Each write serializes the state as it is when the
write starts, so the follow-up always reflects the newest state rather than
the state at request time.
"""

import asyncio
import logging
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)


class PersistScheduler:
    """Serializes and coalesces writes produced by ``write``.

    ``write`` is an async callable that takes its snapshot synchronously
    before its first suspension point.
    """

    def __init__(self, write: Callable[[], Awaitable[None]]):
        self._write = write
        self._requested = 0
        self._waiters: list[tuple[int, asyncio.Future]] = []
        self._drainer: asyncio.Task | None = None
        self.writes_started = 0

    @property
    def in_flight(self) -> bool:
        return self._drainer is not None

    async def request(self) -> None:
        """Wait until a write that began after this call has finished.

        Raises whatever the covering write raised.
        """
        loop = asyncio.get_running_loop()
        self._requested += 1
        future = loop.create_future()
        self._waiters.append((self._requested, future))
        if self._drainer is None:
            self._drainer = loop.create_task(self._drain())
        await future

    async def wait_idle(self) -> None:
        while self._drainer is not None:
            await asyncio.shield(self._drainer)

    async def _drain(self) -> None:
        try:
            while self._waiters:
                covered = self._requested
                self.writes_started += 1
                try:
                    await self._write()
                except Exception as e:
                    logger.error("Persist failed: %s", e)
                    self._settle(covered, e)
                else:
                    self._settle(covered, None)
        except BaseException:
            for _, future in self._waiters:
                if not future.done():
                    future.cancel()
            self._waiters.clear()
            raise
        finally:
            self._drainer = None

    def _settle(self, covered: int, error: Exception | None) -> None:
        remaining = []
        for ticket, future in self._waiters:
            if ticket > covered:
                remaining.append((ticket, future))
                continue
            if future.done():
                continue
            if error is None:
                future.set_result(None)
            else:
                future.set_exception(error)
        self._waiters = remaining
