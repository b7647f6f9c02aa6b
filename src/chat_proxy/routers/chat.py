"""Multipart chat endpoint."""

from __future__ import annotations

import logging
from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException, Request, Response
from fastapi.responses import JSONResponse, StreamingResponse
from starlette.datastructures import FormData, UploadFile
from starlette.exceptions import HTTPException as StarletteHTTPException

from ..chat import ChatOrchestrator
from ..chat.orchestrator import StreamingReply
from ..config import Settings, get_settings
from ..errors import AttachmentTooLarge, ChatProxyError, ClientInputError
from ..schemas.chat import BufferedChatResponse, ChatFormRequest, NamedBlob
from ..schemas.content import dump_parts

logger = logging.getLogger(__name__)

router = APIRouter(tags=["chat"])

NDJSON_MEDIA_TYPE = "application/x-ndjson"
_READ_CHUNK_SIZE = 1024 * 1024
_TRUTHY = {"true", "1", "yes", "on"}
# Largest value an SQLite INTEGER column can hold
_MAX_CHAT_ID = 2**63 - 1


def get_orchestrator(request: Request) -> ChatOrchestrator:
    orchestrator = getattr(request.app.state, "chat_orchestrator", None)
    if orchestrator is None:
        raise HTTPException(status_code=500, detail="Chat orchestrator unavailable")
    return orchestrator


def get_app_settings(request: Request) -> Settings:
    settings = getattr(request.app.state, "settings", None)
    return settings if settings is not None else get_settings()


def _text_field(form: FormData, name: str) -> str:
    value = form.get(name)
    if isinstance(value, str):
        return value
    return ""


def _parse_chat_id(raw: str) -> Optional[int]:
    raw = raw.strip()
    if not raw:
        return None
    try:
        value = int(raw)
    except ValueError:
        logger.debug("Ignoring non-integer chatId %r", raw)
        return None
    if value <= 0 or value > _MAX_CHAT_ID:
        logger.debug("Ignoring out-of-range chatId %r", raw)
        return None
    return value


async def _read_upload(upload: UploadFile, max_bytes: int) -> bytes:
    chunks: list[bytes] = []
    total = 0
    while True:
        chunk = await upload.read(_READ_CHUNK_SIZE)
        if not chunk:
            break
        total += len(chunk)
        if total > max_bytes:
            raise AttachmentTooLarge(
                f"Attachment {upload.filename or 'upload'} exceeded {max_bytes} bytes limit"
            )
        chunks.append(chunk)
    return b"".join(chunks)


async def parse_chat_form(form: FormData, settings: Settings) -> ChatFormRequest:
    """Build a :class:`ChatFormRequest`; any non-text field counts as an attachment."""

    model = _text_field(form, "model").strip()
    api_key = _text_field(form, "apikey").strip()
    if not model or not api_key:
        raise ClientInputError("Both 'model' and 'apikey' form fields are required")

    attachments: list[NamedBlob] = []
    for field_name, value in form.multi_items():
        if isinstance(value, str):
            continue
        data = await _read_upload(value, settings.attachments_max_size_bytes)
        attachments.append(
            NamedBlob(
                filename=value.filename or field_name,
                mime_type=value.content_type or "",
                data=data,
            )
        )

    return ChatFormRequest(
        model=model,
        api_key=api_key,
        text=_text_field(form, "input"),
        stream=_text_field(form, "stream").strip().lower() in _TRUTHY,
        chat_id=_parse_chat_id(_text_field(form, "chatId")),
        attachments=attachments,
    )


def _to_http_exception(exc: ChatProxyError) -> HTTPException:
    if exc.status_code >= 500:
        logger.error("Chat request failed: %s", exc.message)
    else:
        logger.info("Rejected chat request: %s", exc.message)
    return HTTPException(status_code=exc.status_code, detail=exc.message)


@router.post("/chat", response_model=None)
async def chat(
    request: Request,
    orchestrator: ChatOrchestrator = Depends(get_orchestrator),
    settings: Settings = Depends(get_app_settings),
) -> Response:
    """Run one chat turn and reply with JSON or an NDJSON stream."""

    try:
        async with request.form() as form:
            payload = await parse_chat_form(form, settings)
        reply = await orchestrator.handle(payload)
    except ChatProxyError as exc:
        raise _to_http_exception(exc) from exc
    except StarletteHTTPException:
        raise
    except Exception as exc:
        logger.exception("Unexpected error while handling chat request")
        raise HTTPException(status_code=500, detail=f"Internal error: {exc}") from exc

    if isinstance(reply, StreamingReply):
        return StreamingResponse(
            reply.body,
            media_type=NDJSON_MEDIA_TYPE,
            headers={
                "X-Chat-ID": str(reply.chat_id),
                "Cache-Control": "no-cache",
            },
        )

    body: dict[str, Any] = BufferedChatResponse(
        chat_id=reply.chat_id,
        response=dump_parts(reply.parts),
    ).model_dump(by_alias=True)
    return JSONResponse(body)


__all__ = ["get_app_settings", "get_orchestrator", "parse_chat_form", "router"]
