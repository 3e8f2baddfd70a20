from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from .conversation_models import Attachment, ConversationTurn


class SessionCreate(BaseModel):
    provider: Optional[str] = None
    model: Optional[str] = None


class SessionCreated(BaseModel):
    session_id: str


class ModelSelect(BaseModel):
    provider: str = Field(min_length=1)
    model: str = Field(min_length=1)


class MessageCreate(BaseModel):
    content: str = ""
    attachments: List[Attachment] = Field(default_factory=list)


class MessageEdit(BaseModel):
    content: str


class FinalPromptEdit(BaseModel):
    content: str


class SavePromptBody(BaseModel):
    title: str = Field(min_length=1)
    description: str = ""
    tags: List[str] = Field(default_factory=list)


class SavePromptResponse(BaseModel):
    id: str
    version: int


class Accepted(BaseModel):
    status: Literal["accepted"] = "accepted"
    session_id: str
    operation: str


class InterruptResponse(BaseModel):
    aborted: bool


class RestoreResponse(BaseModel):
    restored: bool


class ModelView(BaseModel):
    id: str
    name: str
    api_type: Optional[str] = None


class ProviderView(BaseModel):
    """Provider descriptor without credentials."""

    id: str
    name: str
    type: str
    enabled: bool
    models: List[ModelView] = Field(default_factory=list)


class NotificationView(BaseModel):
    id: str
    kind: str
    message: str
    created_at: str


class ArtifactsView(BaseModel):
    requirement_report: Optional[str] = None
    thinking_points: Optional[List[str]] = None
    initial_prompt: Optional[str] = None
    advice: Optional[List[str]] = None
    final_prompt: Optional[Dict[str, Any]] = None
    final_text: str = ""


class SessionState(BaseModel):
    session_id: str
    stage: str
    is_typing: bool
    is_generating: bool
    provider: Optional[str] = None
    model: Optional[str] = None
    final_view: Dict[str, str]
    saved_prompt_id: Optional[str] = None
    artifacts: ArtifactsView
    turns: List[ConversationTurn] = Field(default_factory=list)
    notifications: List[NotificationView] = Field(default_factory=list)
