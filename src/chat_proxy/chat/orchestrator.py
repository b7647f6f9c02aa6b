"""Chat orchestrator coordinating the store, ingestion, invocation and relay."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import AsyncIterator, List, Optional, Union

from ..errors import ClientInputError
from ..repository import ConversationStore
from ..schemas.chat import ChatFormRequest
from ..schemas.content import ContentPart, ConversationTurn
from ..services.ingestion import ContentIngestor
from ..services.invocation import ModelInvoker, ResponseFormatHints
from .relay import PartBatches, StreamRelay

logger = logging.getLogger(__name__)


class RequestState(str, Enum):
    RESOLVING_CHAT = "ResolvingChat"
    RESOLVING_USER_CONTENT = "ResolvingUserContent"
    PERSISTING_USER_TURN = "PersistingUserTurn"
    LOADING_HISTORY = "LoadingHistory"
    INVOKING_MODEL = "InvokingModel"
    STREAMING_RESPONSE = "StreamingResponse"
    BUFFERED_RESPONSE = "BufferedResponse"
    PERSISTING_MODEL_TURN = "PersistingModelTurn"
    DONE = "Done"
    FAILED = "Failed"


@dataclass
class TurnContext:
    """Per-request bookkeeping; nothing here outlives the request."""

    model: str
    streaming: bool
    state: RequestState = RequestState.RESOLVING_CHAT
    chat_id: Optional[int] = None
    history: List[ConversationTurn] = field(default_factory=list)

    def advance(self, state: RequestState) -> None:
        logger.debug(
            "chat=%s model=%s %s -> %s",
            self.chat_id,
            self.model,
            self.state.value,
            state.value,
        )
        self.state = state


@dataclass(frozen=True)
class BufferedReply:
    chat_id: int
    parts: List[ContentPart]


@dataclass(frozen=True)
class StreamingReply:
    chat_id: int
    body: AsyncIterator[bytes]


ChatReply = Union[BufferedReply, StreamingReply]


class ChatOrchestrator:
    """Run one chat turn from form submission to model reply."""

    def __init__(
        self,
        store: ConversationStore,
        ingestor: ContentIngestor,
        invoker: ModelInvoker,
        relay: StreamRelay | None = None,
    ):
        self._store = store
        self._ingestor = ingestor
        self._invoker = invoker
        self._relay = relay or StreamRelay()

    async def handle(
        self,
        request: ChatFormRequest,
        hints: ResponseFormatHints | None = None,
    ) -> ChatReply:
        if not request.text.strip() and not request.has_attachments:
            raise ClientInputError("Message must contain text or at least one attachment")

        context = TurnContext(model=request.model, streaming=request.stream)
        try:
            return await self._run(context, request, hints)
        except BaseException:
            context.advance(RequestState.FAILED)
            raise

    async def _run(
        self,
        context: TurnContext,
        request: ChatFormRequest,
        hints: ResponseFormatHints | None,
    ) -> ChatReply:
        context.chat_id = await self._resolve_chat(request.chat_id)

        context.advance(RequestState.RESOLVING_USER_CONTENT)
        parts = await self._ingestor.ingest(
            request.text, request.attachments, request.api_key
        )
        if not parts:
            raise ClientInputError("Message must contain text or at least one attachment")

        context.advance(RequestState.PERSISTING_USER_TURN)
        await self._store.append_message(context.chat_id, "user", parts)

        context.advance(RequestState.LOADING_HISTORY)
        context.history = await self._store.get_history(context.chat_id)

        context.advance(RequestState.INVOKING_MODEL)
        result = await self._invoker.invoke(
            request.model,
            request.api_key,
            context.history,
            streaming=context.streaming,
            hints=hints,
        )
        if isinstance(result, list):
            return await self._buffer(context, result)
        return await self._stream(context, result)

    async def _resolve_chat(self, chat_id: Optional[int]) -> int:
        if chat_id is not None:
            existing = await self._store.get_chat(chat_id)
            if existing is not None:
                return existing.id
            logger.info("Chat %s not found; starting a new conversation", chat_id)
        new_id = await self._store.create_chat()
        logger.info("Created chat %s", new_id)
        return new_id

    async def _buffer(
        self, context: TurnContext, parts: List[ContentPart]
    ) -> BufferedReply:
        context.advance(RequestState.BUFFERED_RESPONSE)

        context.advance(RequestState.PERSISTING_MODEL_TURN)
        if parts:
            await self._store.append_message(context.chat_id, "model", parts)
        context.advance(RequestState.DONE)
        return BufferedReply(chat_id=context.chat_id, parts=parts)

    async def _stream(
        self, context: TurnContext, source: PartBatches
    ) -> StreamingReply:
        primed = await self._relay.prime(source)
        context.advance(RequestState.STREAMING_RESPONSE)
        chat_id = context.chat_id

        async def persist(parts: List[ContentPart]) -> None:
            context.advance(RequestState.PERSISTING_MODEL_TURN)
            await self._store.append_message(chat_id, "model", parts)
            context.advance(RequestState.DONE)

        return StreamingReply(chat_id=chat_id, body=self._relay.relay(primed, persist))


__all__ = [
    "BufferedReply",
    "ChatOrchestrator",
    "ChatReply",
    "RequestState",
    "StreamingReply",
    "TurnContext",
]
