from __future__ import annotations

import logging
from unittest.mock import AsyncMock, MagicMock

import pytest

from chat_proxy.chat.orchestrator import (
    BufferedReply,
    ChatOrchestrator,
    StreamingReply,
)
from chat_proxy.errors import ClientInputError, ModelError
from chat_proxy.repository import ChatRepository
from chat_proxy.schemas.chat import ChatFormRequest, NamedBlob
from chat_proxy.schemas.content import TextPart


@pytest.fixture
async def repository(tmp_path):
    repo = ChatRepository(tmp_path / "chat.db")
    await repo.initialize()
    try:
        yield repo
    finally:
        await repo.close()


def make_orchestrator(repository, *, parts=None, reply=None, stream_batches=None):
    ingestor = MagicMock()
    ingestor.ingest = AsyncMock(
        return_value=parts if parts is not None else [TextPart(text="hi")]
    )

    async def fake_stream():
        for batch in stream_batches or []:
            if isinstance(batch, BaseException):
                raise batch
            yield batch

    async def invoke(model, api_key, history, *, streaming, hints=None):
        invoker.histories.append(list(history))
        if streaming:
            return fake_stream()
        return list(reply or [])

    invoker = MagicMock()
    invoker.histories = []
    invoker.invoke = AsyncMock(side_effect=invoke)
    return ChatOrchestrator(repository, ingestor, invoker), ingestor, invoker


def request(**overrides) -> ChatFormRequest:
    values = {"model": "gemini-test", "api_key": "key", "text": "hi"}
    values.update(overrides)
    return ChatFormRequest(**values)


@pytest.mark.anyio
async def test_buffered_turn_persists_user_then_model(repository):
    orchestrator, _, invoker = make_orchestrator(
        repository, reply=[TextPart(text="hello back")]
    )

    reply = await orchestrator.handle(request())

    assert isinstance(reply, BufferedReply)
    assert reply.parts == [TextPart(text="hello back")]
    history = await repository.get_history(reply.chat_id)
    assert [turn.role for turn in history] == ["user", "model"]
    # The model saw the freshly persisted user turn
    assert [turn.role for turn in invoker.histories[0]] == ["user"]


@pytest.mark.anyio
async def test_empty_model_reply_is_not_persisted(repository):
    orchestrator, _, _ = make_orchestrator(repository, reply=[])

    reply = await orchestrator.handle(request())

    assert reply.parts == []
    history = await repository.get_history(reply.chat_id)
    assert [turn.role for turn in history] == ["user"]


@pytest.mark.anyio
async def test_existing_chat_is_reused_and_unknown_chat_is_replaced(repository):
    orchestrator, _, _ = make_orchestrator(repository, reply=[TextPart(text="ok")])
    existing = await repository.create_chat()

    reused = await orchestrator.handle(request(chat_id=existing))
    replaced = await orchestrator.handle(request(chat_id=existing + 100))

    assert reused.chat_id == existing
    assert replaced.chat_id not in (existing, existing + 100)


@pytest.mark.anyio
async def test_blank_message_is_rejected_before_any_work(repository):
    orchestrator, ingestor, invoker = make_orchestrator(repository)

    with pytest.raises(ClientInputError):
        await orchestrator.handle(request(text="  \n "))
    ingestor.ingest.assert_not_awaited()
    invoker.invoke.assert_not_awaited()


@pytest.mark.anyio
async def test_ingestion_without_parts_is_rejected(repository):
    orchestrator, _, invoker = make_orchestrator(repository, parts=[])
    blob = NamedBlob(filename="a.png", mime_type="image/png", data=b"x")

    with pytest.raises(ClientInputError):
        await orchestrator.handle(request(text="", attachments=[blob]))
    invoker.invoke.assert_not_awaited()


@pytest.mark.anyio
async def test_streaming_turn_persists_accumulated_reply(repository):
    orchestrator, _, _ = make_orchestrator(
        repository,
        stream_batches=[[TextPart(text="a")], [TextPart(text="b")]],
    )

    reply = await orchestrator.handle(request(stream=True))

    assert isinstance(reply, StreamingReply)
    body = [chunk async for chunk in reply.body]
    assert body == [b'[{"text": "a"}]\n', b'[{"text": "b"}]\n']
    history = await repository.get_history(reply.chat_id)
    assert history[-1].role == "model"
    assert history[-1].parts == [TextPart(text="a"), TextPart(text="b")]


@pytest.mark.anyio
async def test_streaming_failure_before_first_batch_raises(repository):
    orchestrator, _, _ = make_orchestrator(
        repository, stream_batches=[ModelError("blocked")]
    )

    with pytest.raises(ModelError):
        await orchestrator.handle(request(stream=True))


@pytest.mark.anyio
async def test_state_transitions_are_logged(repository, caplog):
    orchestrator, _, _ = make_orchestrator(repository, reply=[TextPart(text="x")])

    with caplog.at_level(logging.DEBUG, logger="chat_proxy.chat.orchestrator"):
        await orchestrator.handle(request())

    transitions = [record.getMessage() for record in caplog.records]
    assert any("ResolvingChat -> ResolvingUserContent" in line for line in transitions)
    assert any("PersistingModelTurn -> Done" in line for line in transitions)
