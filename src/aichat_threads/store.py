"""In-memory thread store with trailing-write JSON persistence.

``ThreadStore`` is the single owner of the thread collection for one
workspace. Every mutation is applied synchronously to memory and then
persisted through a ``PersistScheduler``; the durable file is an
eventually-consistent projection of the in-memory state.

Missing threads or messages are reported through ``False``/``None``/empty
results. Write failures propagate to the caller.
"""

import asyncio
import json
import logging
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Iterable, Mapping

from .core import ASSISTANT, USER, Message, Thread, ThreadSummary, utcnow
from .persistence import FilePersistence, ThreadPersistence
from .scheduler import PersistScheduler

logger = logging.getLogger(__name__)

PersistenceFactory = Callable[[Path], ThreadPersistence]


@dataclass
class AddMessageResult:
    """Outcome of ``ThreadStore.add_message``.

    ``created_new_thread`` is True when the requested thread id was unknown
    and the message went into a freshly created thread instead.
    """

    thread: Thread
    created_new_thread: bool = False


@dataclass
class DeletionResult:
    """Ids removed by ``ThreadStore.delete_message_from_all_threads``."""

    deleted_message_ids: list[str] = field(default_factory=list)
    affected_thread_ids: list[str] = field(default_factory=list)


def serialize_threads(threads: Iterable[Thread]) -> str:
    return json.dumps([t.to_dict() for t in threads], indent=2, ensure_ascii=False)


def deserialize_threads(text: str) -> list[Thread]:
    data = json.loads(text)
    if not isinstance(data, list):
        raise ValueError(f"Expected a list of threads, got {type(data).__name__}")
    return [Thread.from_dict(item) for item in data]


def _new_id() -> str:
    return uuid.uuid4().hex


class ThreadStore:
    """Owns the threads of one workspace."""

    def __init__(
        self,
        workspace_root: Path | str,
        persistence_factory: PersistenceFactory = FilePersistence.for_workspace,
        *,
        clock: Callable[[], datetime] = utcnow,
        id_factory: Callable[[], str] = _new_id,
    ):
        self._persistence_factory = persistence_factory
        self._clock = clock
        self._id_factory = id_factory
        self._bind(Path(workspace_root))

    def _bind(self, workspace_root: Path) -> None:
        self.workspace_root = workspace_root
        self.persistence = self._persistence_factory(workspace_root)
        # The scheduler's writer holds on to this exact dict and backend, so a
        # write still pending after a workspace switch lands in the old file.
        self._threads: dict[str, Thread] = {}
        self._loaded = False
        self._load_lock = asyncio.Lock()
        self._scheduler = PersistScheduler(_make_writer(self.persistence, self._threads))

    @property
    def is_loaded(self) -> bool:
        return self._loaded

    @property
    def scheduler(self) -> PersistScheduler:
        return self._scheduler

    # ── Loading and saving ──────────────────────────────────────────

    async def load(self) -> None:
        """Read the persisted collection once; later calls are no-ops."""
        if self._loaded:
            return

        persistence, threads = self.persistence, self._threads
        async with self._load_lock:
            if self._loaded or persistence is not self.persistence:
                return

            loaded = _read_threads(await _safe_read(persistence), persistence)
            if persistence is not self.persistence:
                # Workspace changed while reading.
                return

            threads.clear()
            for thread in loaded:
                threads[thread.id] = thread
            self._loaded = True

        logger.info("Loaded %d threads from %r", len(threads), persistence)

    async def save(self) -> None:
        """Persist the full collection. Raises on write failure."""
        if not self._loaded:
            await self.load()
        await self._scheduler.request()

    # ── Reads ───────────────────────────────────────────────────────

    def get_thread(self, thread_id: str) -> Thread | None:
        return self._threads.get(thread_id)

    def get_thread_messages(self, thread_id: str) -> list[Message]:
        thread = self._threads.get(thread_id)
        return thread.messages if thread else []

    def get_thread_list(self) -> list[ThreadSummary]:
        summaries = [
            ThreadSummary(
                id=t.id,
                name=t.name,
                message_count=len(t.messages),
                created_at=t.created_at,
                updated_at=t.updated_at,
                custom_prompt=t.custom_prompt,
            )
            for t in self._threads.values()
        ]
        summaries.sort(key=lambda s: s.updated_at, reverse=True)
        return summaries

    def get_most_recent_thread(self) -> Thread | None:
        if not self._threads:
            return None
        return max(self._threads.values(), key=lambda t: t.updated_at)

    # ── Thread mutations ────────────────────────────────────────────

    async def create_thread(self, name: str | None = None) -> Thread:
        await self.load()
        thread = self._insert_thread(name)
        await self.save()
        logger.info("Created thread %s (%s)", thread.id, thread.name)
        return thread

    async def get_or_create_thread(self, thread_id: str | None = None) -> Thread:
        await self.load()
        if thread_id:
            thread = self._threads.get(thread_id)
            if thread:
                return thread
        return await self.create_thread()

    async def delete_thread(self, thread_id: str) -> bool:
        await self.load()
        if self._threads.pop(thread_id, None) is None:
            return False
        await self.save()
        logger.info("Deleted thread %s", thread_id)
        return True

    async def rename_thread(self, thread_id: str, name: str) -> bool:
        await self.load()
        thread = self._threads.get(thread_id)
        if thread is None:
            return False
        thread.name = name
        self._touch(thread)
        await self.save()
        return True

    async def update_thread_prompt(self, thread_id: str, prompt: str | None) -> bool:
        """Set the thread's custom prompt; ``None`` removes it."""
        await self.load()
        thread = self._threads.get(thread_id)
        if thread is None:
            return False
        thread.custom_prompt = prompt
        self._touch(thread)
        await self.save()
        return True

    async def clear_thread(self, thread_id: str) -> bool:
        await self.load()
        thread = self._threads.get(thread_id)
        if thread is None:
            return False
        thread.messages = []
        self._touch(thread)
        await self.save()
        logger.info("Cleared messages in thread %s", thread_id)
        return True

    # ── Message mutations ───────────────────────────────────────────

    async def add_message(self, thread_id: str, message: Message) -> AddMessageResult:
        """Append ``message`` to a thread, creating a thread if needed.

        A message whose id is already present in the thread replaces the
        existing entry in place.
        """
        await self.load()
        thread = self._threads.get(thread_id)
        created = thread is None
        if thread is None:
            thread = self._insert_thread(None)
            logger.warning("Thread %s not found, added message to new thread %s", thread_id, thread.id)

        index = thread.find_message_index(message.id)
        if index == -1:
            thread.messages.append(message)
        else:
            thread.messages[index] = _keep_terminal_status(thread.messages[index], message)
        self._touch(thread)
        await self.save()
        return AddMessageResult(thread=thread, created_new_thread=created)

    async def update_message(self, thread_id: str, message_id: str, patch: Mapping[str, Any]) -> bool:
        await self.load()
        thread = self._threads.get(thread_id)
        if thread is None:
            return False
        index = thread.find_message_index(message_id)
        if index == -1:
            return False

        current = thread.messages[index]
        thread.messages[index] = _keep_terminal_status(current, current.patched(patch))
        self._touch(thread)
        await self.save()
        return True

    async def delete_message(self, thread_id: str, message_id: str) -> bool:
        await self.load()
        thread = self._threads.get(thread_id)
        if thread is None:
            return False
        index = thread.find_message_index(message_id)
        if index == -1:
            return False

        del thread.messages[index]
        self._touch(thread)
        await self.save()
        logger.info("Deleted message %s from thread %s", message_id, thread_id)
        return True

    async def delete_message_from_all_threads(self, message_id: str) -> DeletionResult:
        """Remove a message everywhere, with the assistant reply paired to it.

        When the removed message is a user message and the next message in
        the same thread is an assistant message, that reply goes too. The
        store persists once for the whole operation, and only if anything
        was removed.
        """
        await self.load()
        result = DeletionResult()

        for thread in self._threads.values():
            index = thread.find_message_index(message_id)
            if index == -1:
                continue

            end = index + 1
            target = thread.messages[index]
            if target.role == USER and end < len(thread.messages) and thread.messages[end].role == ASSISTANT:
                end += 1

            for msg in thread.messages[index:end]:
                if msg.id not in result.deleted_message_ids:
                    result.deleted_message_ids.append(msg.id)
            del thread.messages[index:end]

            self._touch(thread)
            result.affected_thread_ids.append(thread.id)

        if result.affected_thread_ids:
            await self.save()
            logger.info(
                "Deleted messages %s from threads %s",
                result.deleted_message_ids,
                result.affected_thread_ids,
            )
        return result

    # ── Workspace ───────────────────────────────────────────────────

    def update_workspace_root(self, workspace_root: Path | str) -> None:
        """Point the store at another workspace.

        Unsaved in-memory state is dropped; the new workspace is read on the
        next ``load()``. Same root: nothing happens.
        """
        workspace_root = Path(workspace_root)
        if workspace_root == self.workspace_root:
            return
        logger.info("Workspace root changed to %s, clearing thread cache", workspace_root)
        self._bind(workspace_root)

    # ── Internals ───────────────────────────────────────────────────

    def _insert_thread(self, name: str | None) -> Thread:
        thread_id = self._id_factory()
        while thread_id in self._threads:
            thread_id = self._id_factory()

        now = self._clock()
        thread = Thread(
            id=thread_id,
            name=name or f"Conversation {len(self._threads) + 1}",
            messages=[],
            created_at=now,
            updated_at=now,
        )
        self._threads[thread.id] = thread
        return thread

    def _touch(self, thread: Thread) -> None:
        thread.updated_at = max(self._clock(), thread.updated_at)


def _make_writer(persistence: ThreadPersistence, threads: dict[str, Thread]):
    async def write() -> None:
        text = serialize_threads(threads.values())
        await persistence.write(text)

    return write


async def _safe_read(persistence: ThreadPersistence) -> str | None:
    try:
        return await persistence.read()
    except (OSError, UnicodeDecodeError) as e:
        logger.warning("Failed to read threads from %r, starting fresh: %s", persistence, e)
        return None


def _read_threads(text: str | None, persistence: ThreadPersistence) -> list[Thread]:
    if text is None:
        logger.info("No existing threads in %r, starting fresh", persistence)
        return []
    try:
        return deserialize_threads(text)
    except (ValueError, KeyError, TypeError) as e:
        logger.warning("Malformed threads in %r, starting fresh: %s", persistence, e)
        return []


def _keep_terminal_status(current: Message, updated: Message) -> Message:
    """A message that reached a terminal status keeps it."""
    if current.is_terminal and updated.status != current.status:
        logger.debug("Message %s already %s, ignoring status %s", current.id, current.status, updated.status)
        return replace(updated, status=current.status)
    return updated
