"""Pydantic models for multimodal conversation content.

Parts use the provider's camelCase JSON shape on every surface (provider
requests, client responses, and the persisted ``content`` column), so a part
read back from history can be forwarded to the model unchanged. Snake-case keys
are accepted on input.
"""

from __future__ import annotations

import base64
from typing import Any, Iterable, List, Literal, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, TypeAdapter

Role = Literal["user", "model"]


class TextPart(BaseModel):
    """Plain text content."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    text: str = Field(min_length=1)


class InlineData(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    mime_type: str = Field(
        min_length=1,
        validation_alias=AliasChoices("mimeType", "mime_type"),
        serialization_alias="mimeType",
    )
    data: str = Field(min_length=1, description="Base64-encoded payload")


class InlineBinaryPart(BaseModel):
    """Binary payload embedded directly in the request."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    inline_data: InlineData = Field(
        validation_alias=AliasChoices("inlineData", "inline_data"),
        serialization_alias="inlineData",
    )

    @classmethod
    def from_bytes(cls, data: bytes, mime_type: str) -> "InlineBinaryPart":
        encoded = base64.b64encode(data).decode("ascii")
        return cls(inline_data=InlineData(mime_type=mime_type, data=encoded))

    @property
    def mime_type(self) -> str:
        return self.inline_data.mime_type

    def decode(self) -> bytes:
        return base64.b64decode(self.inline_data.data)


class FileData(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    mime_type: str = Field(
        min_length=1,
        validation_alias=AliasChoices("mimeType", "mime_type"),
        serialization_alias="mimeType",
    )
    uri: str = Field(
        min_length=1,
        validation_alias=AliasChoices("fileUri", "file_uri", "uri"),
        serialization_alias="fileUri",
    )


class RemoteFileRefPart(BaseModel):
    """Reference to an object previously uploaded to the provider."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    file_data: FileData = Field(
        validation_alias=AliasChoices("fileData", "file_data"),
        serialization_alias="fileData",
    )

    @classmethod
    def from_uri(cls, uri: str, mime_type: str) -> "RemoteFileRefPart":
        return cls(file_data=FileData(mime_type=mime_type, uri=uri))

    @property
    def mime_type(self) -> str:
        return self.file_data.mime_type

    @property
    def uri(self) -> str:
        return self.file_data.uri


ContentPart = Union[TextPart, InlineBinaryPart, RemoteFileRefPart]

_PARTS_ADAPTER: TypeAdapter[List[ContentPart]] = TypeAdapter(List[ContentPart])


def parse_parts(raw: Any) -> list[ContentPart]:
    """Validate a JSON-compatible list into content parts."""

    return _PARTS_ADAPTER.validate_python(raw)


def dump_parts(parts: Iterable[ContentPart]) -> list[dict[str, Any]]:
    """Serialize parts into the camelCase wire shape."""

    return [part.model_dump(by_alias=True) for part in parts]


class ConversationTurn(BaseModel):
    """One role-tagged message composed of content parts."""

    model_config = ConfigDict(frozen=True)

    role: Role
    parts: List[ContentPart]

    def to_payload(self) -> dict[str, Any]:
        return {"role": self.role, "parts": dump_parts(self.parts)}


class Chat(BaseModel):
    """Stored conversation header."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    id: int
    created_at: Optional[str] = Field(default=None, serialization_alias="createdAt")


__all__ = [
    "Chat",
    "ContentPart",
    "ConversationTurn",
    "FileData",
    "InlineBinaryPart",
    "InlineData",
    "RemoteFileRefPart",
    "Role",
    "TextPart",
    "dump_parts",
    "parse_parts",
]
