"""Export threads to Markdown and JSON formats."""

import json

from .core import CANCELLED, Thread

EXPORT_FORMATS = ("md", "json")


def thread_to_markdown(thread: Thread) -> str:
    """Export a thread and its messages as clean Markdown."""
    lines = [f"# {thread.name}", ""]

    if thread.summary:
        lines.append(f"**Summary:** {thread.summary}")
    if thread.custom_prompt:
        lines.append(f"**Prompt:** {thread.custom_prompt}")
    lines.append(f"**Created:** {thread.created_at.isoformat()}")
    lines.append(f"**Updated:** {thread.updated_at.isoformat()}")
    lines.append(f"**Messages:** {len(thread.messages)}")
    lines.extend(["", "---", ""])

    for msg in thread.messages:
        role_label = msg.role.capitalize()
        ts = f" ({msg.timestamp.strftime('%Y-%m-%d %H:%M')})"
        model = f" [{msg.model}]" if msg.model else ""
        lines.append(f"## {role_label}{ts}{model}")
        lines.append("")
        lines.append(msg.content)
        if msg.status == CANCELLED:
            lines.extend(["", "_Cancelled_"])
        lines.extend(["", "---", ""])

    return "\n".join(lines)


def thread_to_json(thread: Thread) -> str:
    """Export a thread in the same shape it is persisted in."""
    return json.dumps(thread.to_dict(), indent=2, ensure_ascii=False)


def safe_filename(name: str) -> str:
    return "".join(c if c.isalnum() or c in "-_ " else "" for c in name)[:50] or "thread"
