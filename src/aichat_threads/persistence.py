"""Durable storage backends for the thread collection.

The store never touches the file system directly; it reads and writes one
serialized snapshot through a ``ThreadPersistence`` port. ``FilePersistence``
is the production backend (one JSON file per workspace) and
``MemoryPersistence`` keeps the snapshot in memory for tests and tooling.
"""

import asyncio
import logging
import os
from abc import ABC, abstractmethod
from pathlib import Path

from .config import get_chats_path

logger = logging.getLogger(__name__)


class ThreadPersistence(ABC):
    """Read/write port for a serialized thread collection."""

    @abstractmethod
    async def read(self) -> str | None:
        """Return the stored snapshot, or None if nothing was ever written."""
        ...

    @abstractmethod
    async def write(self, text: str) -> None:
        """Replace the stored snapshot. Failures must raise."""
        ...


class FilePersistence(ThreadPersistence):
    """Stores the snapshot in a single UTF-8 JSON file."""

    def __init__(self, path: Path | str):
        self.path = Path(path)

    @classmethod
    def for_workspace(cls, workspace_root: Path | str) -> "FilePersistence":
        return cls(get_chats_path(workspace_root))

    async def read(self) -> str | None:
        try:
            return await asyncio.to_thread(self.path.read_text, encoding="utf-8")
        except FileNotFoundError:
            return None

    async def write(self, text: str) -> None:
        await asyncio.to_thread(self._write_atomic, text)

    def _write_atomic(self, text: str) -> None:
        # Readers only ever see a complete file.
        tmp_path = self.path.with_name(f".{self.path.name}.tmp")
        tmp_path.write_text(text, encoding="utf-8")
        os.replace(tmp_path, self.path)
        logger.debug("Wrote %d bytes to %s", len(text), self.path)

    def __repr__(self) -> str:
        return f"FilePersistence({str(self.path)!r})"


class MemoryPersistence(ThreadPersistence):
    """Keeps the snapshot in memory and counts I/O calls."""

    def __init__(self, text: str | None = None):
        self.text = text
        self.reads = 0
        self.writes: list[str] = []
        self.fail_writes: Exception | None = None

    async def read(self) -> str | None:
        self.reads += 1
        return self.text

    async def write(self, text: str) -> None:
        if self.fail_writes is not None:
            raise self.fail_writes
        self.writes.append(text)
        self.text = text
