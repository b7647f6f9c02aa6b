"""Request and response shapes for the chat endpoint."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


@dataclass(frozen=True)
class NamedBlob:
    """A single attachment handed to content ingestion."""

    filename: str
    mime_type: str
    data: bytes

    @property
    def size(self) -> int:
        return len(self.data)


@dataclass(frozen=True)
class ChatFormRequest:
    """Parsed multipart submission for one chat turn."""

    model: str
    api_key: str
    text: str = ""
    stream: bool = False
    chat_id: Optional[int] = None
    attachments: List[NamedBlob] = field(default_factory=list)

    @property
    def has_attachments(self) -> bool:
        return bool(self.attachments)


class BufferedChatResponse(BaseModel):
    """Non-streaming reply body."""

    model_config = ConfigDict(populate_by_name=True)

    chat_id: int = Field(serialization_alias="chatId")
    response: List[Dict[str, Any]]


__all__ = ["BufferedChatResponse", "ChatFormRequest", "NamedBlob"]
