"""Request bodies for the HTTP API."""

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class ThreadCreate(_CamelModel):
    name: Optional[str] = None


class ThreadUpdate(_CamelModel):
    name: Optional[str] = None
    custom_prompt: Optional[str] = Field(None, alias="customPrompt")


class ChatRequest(_CamelModel):
    message: str = ""
    thread_id: str = Field("default", alias="threadId")
    message_id: Optional[str] = Field(None, alias="messageId")
    images: list[Any] = Field(default_factory=list)
    notes: list[Any] = Field(default_factory=list)


class CancelRequest(_CamelModel):
    thread_id: str = Field(..., alias="threadId")
    message_id: str = Field(..., alias="messageId")


class WorkspaceUpdate(_CamelModel):
    workspace_root: str = Field(..., alias="workspaceRoot")
