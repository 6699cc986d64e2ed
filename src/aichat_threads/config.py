"""Workspace and storage path resolution."""

import os
from pathlib import Path

CHATS_FILENAME = "mindstrike-chats.json"


def get_workspace_root() -> Path:
    """Return the active workspace root directory."""
    env = os.environ.get("AICHAT_WORKSPACE_ROOT")
    if env:
        return Path(env).expanduser()

    return Path.cwd()


def get_chats_path(workspace_root: Path | str) -> Path:
    """Return the thread file for a workspace (one file per workspace)."""
    return Path(workspace_root) / CHATS_FILENAME
