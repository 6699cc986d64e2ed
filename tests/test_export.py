"""Tests for export functionality."""

import json
from datetime import datetime, timezone

import pytest

from aichat_threads.core import ASSISTANT, CANCELLED, COMPLETED, USER, Message, Thread
from aichat_threads.export import safe_filename, thread_to_json, thread_to_markdown


@pytest.fixture
def sample_thread():
    return Thread(
        id="thread-a",
        name="Fix authentication bug",
        messages=[
            Message(
                id="u1",
                role=USER,
                content="Fix the login bug in auth.ts",
                timestamp=datetime(2025, 1, 15, 10, 0, 0, tzinfo=timezone.utc),
                status=COMPLETED,
            ),
            Message(
                id="a1",
                role=ASSISTANT,
                content="I'll fix the authentication bug. Here's the change:\n\n```typescript\nconst token = await validateToken(input);\n```",
                timestamp=datetime(2025, 1, 15, 10, 0, 30, tzinfo=timezone.utc),
                status=COMPLETED,
                model="llama-3",
                total_tokens=21,
            ),
            Message(
                id="a2",
                role=ASSISTANT,
                content="Also checking",
                timestamp=datetime(2025, 1, 15, 10, 1, 0, tzinfo=timezone.utc),
                status=CANCELLED,
            ),
        ],
        created_at=datetime(2025, 1, 15, 10, 0, 0, tzinfo=timezone.utc),
        updated_at=datetime(2025, 1, 15, 10, 1, 0, tzinfo=timezone.utc),
        custom_prompt="You are a security reviewer.",
    )


class TestMarkdownExport:
    def test_includes_thread_name(self, sample_thread):
        assert "# Fix authentication bug" in thread_to_markdown(sample_thread)

    def test_includes_metadata(self, sample_thread):
        result = thread_to_markdown(sample_thread)
        assert "**Prompt:** You are a security reviewer." in result
        assert "**Messages:** 3" in result
        assert "**Summary:**" not in result

    def test_includes_messages_with_roles(self, sample_thread):
        result = thread_to_markdown(sample_thread)
        assert "## User (2025-01-15 10:00)" in result
        assert "## Assistant (2025-01-15 10:00) [llama-3]" in result
        assert "validateToken" in result

    def test_preserves_code_fences(self, sample_thread):
        assert "```typescript" in thread_to_markdown(sample_thread)

    def test_marks_cancelled_replies(self, sample_thread):
        result = thread_to_markdown(sample_thread)
        assert result.count("_Cancelled_") == 1
        assert result.index("Also checking") < result.index("_Cancelled_")

    def test_empty_thread(self, sample_thread):
        sample_thread.messages = []
        result = thread_to_markdown(sample_thread)
        assert "# Fix authentication bug" in result
        assert "**Messages:** 0" in result


class TestJsonExport:
    def test_matches_persisted_shape(self, sample_thread):
        data = json.loads(thread_to_json(sample_thread))
        assert data["id"] == "thread-a"
        assert data["customPrompt"] == "You are a security reviewer."
        assert data["createdAt"] == "2025-01-15T10:00:00Z"
        assert len(data["messages"]) == 3

    def test_message_fields(self, sample_thread):
        msg = json.loads(thread_to_json(sample_thread))["messages"][1]
        assert msg["timestamp"] == "2025-01-15T10:00:30Z"
        assert msg["totalTokens"] == 21
        assert msg["model"] == "llama-3"
        assert "toolCalls" not in msg


@pytest.mark.parametrize(
    "name, expected",
    [
        ("Fix auth: bug/fix?", "Fix auth bugfix"),
        ("***", "thread"),
        ("x" * 80, "x" * 50),
    ],
)
def test_safe_filename(name, expected):
    assert safe_filename(name) == expected
