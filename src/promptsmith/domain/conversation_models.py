from __future__ import annotations

from typing import List, Literal, Optional

from pydantic import BaseModel, Field


Role = Literal["user", "assistant"]
AttachmentKind = Literal["image", "document", "audio", "video"]


class Attachment(BaseModel):
    """Opaque file payload produced by the attachment subsystem; ``data`` is base64."""

    id: str
    name: str
    type: AttachmentKind = "document"
    mime_type: str = Field(default="application/octet-stream", alias="mimeType")
    size: int = 0
    data: str = ""

    model_config = {"populate_by_name": True}


class ConversationTurn(BaseModel):
    id: str
    role: Role
    content: str
    created_at: str
    updated_at: str
    is_transient: bool = False
    is_deleted: bool = False
    is_being_edited: bool = False
    original_content: Optional[str] = None
    attachments: List[Attachment] = Field(default_factory=list)


class ChatMessagePayload(BaseModel):
    """A single entry of the history sent to a provider."""

    role: Literal["system", "user", "assistant"]
    content: str
    attachments: List[Attachment] = Field(default_factory=list)
