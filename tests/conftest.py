"""Shared test fixtures for aichat-threads."""

import json
from datetime import datetime, timedelta, timezone
from itertools import count

import pytest

from aichat_threads.config import CHATS_FILENAME
from aichat_threads.persistence import MemoryPersistence
from aichat_threads.store import ThreadStore

T0 = datetime(2025, 1, 15, 10, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Wall clock that advances one second per reading."""

    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        self.now += timedelta(seconds=1)
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def backend():
    return MemoryPersistence()


@pytest.fixture
def make_store(clock):
    """Build a store whose persistence is in memory, one backend per workspace."""
    backends: dict[str, MemoryPersistence] = {}

    def factory(root):
        return backends.setdefault(str(root), MemoryPersistence())

    def make(workspace="/ws", text=None):
        if text is not None:
            backends[str(workspace)] = MemoryPersistence(text)
        ids = count(1)
        store = ThreadStore(workspace, factory, clock=clock, id_factory=lambda: f"thread-{next(ids)}")
        store.backends = backends
        return store

    return make


@pytest.fixture
def store(make_store):
    return make_store()


@pytest.fixture
def seeded_chats():
    """A persisted collection as written by older clients.

    One thread uses ISO strings, the other epoch milliseconds, and a
    message carries a key this package does not model.
    """
    epoch_ms = int(datetime(2025, 1, 14, 9, 0, 0, tzinfo=timezone.utc).timestamp() * 1000)
    return [
        {
            "id": "thread-a",
            "name": "Fix auth bug",
            "customPrompt": "You are terse.",
            "messages": [
                {
                    "id": "u1",
                    "role": "user",
                    "content": "Why does login fail?",
                    "timestamp": "2025-01-15T10:00:00.000Z",
                    "status": "completed",
                },
                {
                    "id": "a1",
                    "role": "assistant",
                    "content": "The token is expired.",
                    "timestamp": "2025-01-15T10:00:05.000Z",
                    "status": "completed",
                    "model": "llama-3",
                    "totalTokens": 5,
                    "reaction": "thumbs-up",
                },
            ],
            "createdAt": "2025-01-15T10:00:00.000Z",
            "updatedAt": "2025-01-15T10:00:05.000Z",
        },
        {
            "id": "thread-b",
            "name": "Dark mode",
            "messages": [
                {"id": "u2", "role": "user", "content": "Add dark mode", "timestamp": epoch_ms},
            ],
            "createdAt": epoch_ms,
            "updatedAt": epoch_ms,
        },
    ]


@pytest.fixture
def seeded_workspace(tmp_path, seeded_chats):
    """A workspace directory holding a chats file."""
    (tmp_path / CHATS_FILENAME).write_text(json.dumps(seeded_chats), encoding="utf-8")
    return tmp_path
