"""Core data models for aichat-threads."""

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Mapping, Optional

USER = "user"
ASSISTANT = "assistant"
SYSTEM = "system"
ROLES = (USER, ASSISTANT, SYSTEM)

PROCESSING = "processing"
COMPLETED = "completed"
CANCELLED = "cancelled"
TERMINAL_STATUSES = (COMPLETED, CANCELLED)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> datetime:
    """Coerce a persisted timestamp into an aware datetime.

    Accepts ISO-8601 strings (a trailing "Z" is allowed), epoch milliseconds
    as written by JavaScript clients, or datetime objects. Naive values are
    taken as UTC.
    """
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, bool):
        raise ValueError(f"Invalid timestamp: {value!r}")
    elif isinstance(value, (int, float)):
        dt = datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    elif isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        dt = datetime.fromisoformat(text)
    else:
        raise ValueError(f"Invalid timestamp: {value!r}")

    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def format_timestamp(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


# attribute name -> wire key, for optional message fields
_MESSAGE_OPTIONAL_KEYS = {
    "status": "status",
    "tool_calls": "toolCalls",
    "tool_results": "toolResults",
    "model": "model",
    "median_tokens_per_second": "medianTokensPerSecond",
    "total_tokens": "totalTokens",
    "citations": "citations",
    "images": "images",
    "notes": "notes",
}
_MESSAGE_REQUIRED_KEYS = {"id": "id", "role": "role", "content": "content", "timestamp": "timestamp"}
_MESSAGE_ATTRS = {**_MESSAGE_REQUIRED_KEYS, **_MESSAGE_OPTIONAL_KEYS}
_MESSAGE_ATTR_FOR_KEY = {key: attr for attr, key in _MESSAGE_ATTRS.items()}


@dataclass
class Message:
    """One turn in a thread."""

    id: str
    role: str  # "user" | "assistant" | "system"
    content: str
    timestamp: datetime = field(default_factory=utcnow)
    status: Optional[str] = None  # "processing" | "completed" | "cancelled"
    tool_calls: Optional[list] = None
    tool_results: Optional[list] = None
    model: Optional[str] = None
    median_tokens_per_second: Optional[float] = None
    total_tokens: Optional[int] = None
    citations: Optional[list] = None
    images: Optional[list] = None
    notes: Optional[list] = None
    extra: dict = field(default_factory=dict)  # unknown persisted keys, kept verbatim

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> dict:
        data = {
            "id": self.id,
            "role": self.role,
            "content": self.content,
            "timestamp": format_timestamp(self.timestamp),
        }
        for attr, key in _MESSAGE_OPTIONAL_KEYS.items():
            value = getattr(self, attr)
            if value is not None:
                data[key] = value
        for key, value in self.extra.items():
            data.setdefault(key, value)
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Message":
        if not isinstance(data, Mapping):
            raise ValueError(f"Message must be an object, got {type(data).__name__}")
        role = data["role"]
        if role not in ROLES:
            raise ValueError(f"Unknown message role: {role!r}")

        kwargs: dict[str, Any] = {
            "id": str(data["id"]),
            "role": role,
            "content": data.get("content") or "",
            "timestamp": parse_timestamp(data["timestamp"]) if "timestamp" in data else utcnow(),
        }
        for attr, key in _MESSAGE_OPTIONAL_KEYS.items():
            if data.get(key) is not None:
                kwargs[attr] = data[key]
        kwargs["extra"] = {k: v for k, v in data.items() if k not in _MESSAGE_ATTR_FOR_KEY}
        return cls(**kwargs)

    def patched(self, patch: Mapping[str, Any]) -> "Message":
        """Return a copy with ``patch`` applied.

        Keys may be attribute names (``tool_calls``) or wire keys
        (``toolCalls``). A ``None`` value clears an optional field. The id
        never changes. Raises ``ValueError`` for an unknown role, a cleared
        timestamp or non-string content.
        """
        changes: dict[str, Any] = {}
        extra = dict(self.extra)
        for key, value in patch.items():
            attr = key if key in _MESSAGE_ATTRS else _MESSAGE_ATTR_FOR_KEY.get(key)
            if attr is None:
                extra[key] = value
                continue
            if attr == "id":
                continue
            if attr == "role" and value not in ROLES:
                raise ValueError(f"Unknown message role: {value!r}")
            if attr == "timestamp":
                if value is None:
                    raise ValueError("Message timestamp cannot be cleared")
                value = parse_timestamp(value)
            elif attr == "content":
                if value is None:
                    value = ""
                elif not isinstance(value, str):
                    raise ValueError(f"Message content must be a string, got {type(value).__name__}")
            changes[attr] = value
        return replace(self, extra=extra, **changes)


@dataclass
class Thread:
    """A named, ordered conversation."""

    id: str
    name: str
    messages: list[Message] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    summary: Optional[str] = None
    custom_prompt: Optional[str] = None

    def find_message_index(self, message_id: str) -> int:
        for index, msg in enumerate(self.messages):
            if msg.id == message_id:
                return index
        return -1

    def to_dict(self) -> dict:
        data: dict[str, Any] = {
            "id": self.id,
            "name": self.name,
        }
        if self.summary is not None:
            data["summary"] = self.summary
        if self.custom_prompt is not None:
            data["customPrompt"] = self.custom_prompt
        data["messages"] = [msg.to_dict() for msg in self.messages]
        data["createdAt"] = format_timestamp(self.created_at)
        data["updatedAt"] = format_timestamp(self.updated_at)
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Thread":
        if not isinstance(data, Mapping):
            raise ValueError(f"Thread must be an object, got {type(data).__name__}")
        messages = data.get("messages") or []
        if not isinstance(messages, list):
            raise ValueError("Thread messages must be a list")

        created_at = parse_timestamp(data["createdAt"])
        updated_at = parse_timestamp(data.get("updatedAt", data["createdAt"]))
        return cls(
            id=str(data["id"]),
            name=data.get("name") or "",
            messages=[Message.from_dict(m) for m in messages],
            created_at=created_at,
            updated_at=max(created_at, updated_at),
            summary=data.get("summary"),
            custom_prompt=data.get("customPrompt"),
        )


@dataclass
class ThreadSummary:
    """Listing entry for a thread, without its messages."""

    id: str
    name: str
    message_count: int
    created_at: datetime
    updated_at: datetime
    custom_prompt: Optional[str] = None

    def to_dict(self) -> dict:
        data = {
            "id": self.id,
            "name": self.name,
            "messageCount": self.message_count,
            "createdAt": format_timestamp(self.created_at),
            "updatedAt": format_timestamp(self.updated_at),
        }
        if self.custom_prompt is not None:
            data["customPrompt"] = self.custom_prompt
        return data
