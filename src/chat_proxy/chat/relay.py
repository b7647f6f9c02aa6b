"""Relay model part batches to the client as NDJSON while collecting the reply."""

from __future__ import annotations

import json
import logging
from typing import AsyncIterator, Awaitable, Callable, List, Optional

import anyio

from ..errors import ChatProxyError
from ..schemas.content import ContentPart, dump_parts

logger = logging.getLogger(__name__)

PartBatches = AsyncIterator[List[ContentPart]]
PersistCallback = Callable[[List[ContentPart]], Awaitable[None]]


def encode_batch(batch: List[ContentPart]) -> bytes:
    return (json.dumps(dump_parts(batch)) + "\n").encode("utf-8")


def encode_error(message: str) -> bytes:
    return (json.dumps({"error": message}) + "\n").encode("utf-8")


class PrimedStream:
    """A part stream whose first batch has already been pulled."""

    def __init__(self, source: PartBatches, first: Optional[List[ContentPart]]):
        self._source = source
        self._first = first

    def __aiter__(self) -> "PrimedStream":
        return self

    async def __anext__(self) -> List[ContentPart]:
        if self._first is not None:
            batch, self._first = self._first, None
            return batch
        return await self._source.__anext__()

    async def aclose(self) -> None:
        aclose = getattr(self._source, "aclose", None)
        if aclose is not None:
            await aclose()


class StreamRelay:
    """Frame each batch as one NDJSON line and persist the reply exactly once."""

    async def prime(self, source: PartBatches) -> PrimedStream:
        """Pull the first batch so early provider failures raise before streaming."""

        try:
            first = await source.__anext__()
        except StopAsyncIteration:
            first = None
        except BaseException:
            await _close_source(source)
            raise
        return PrimedStream(source, first)

    async def relay(
        self,
        source: PartBatches,
        persist: PersistCallback,
    ) -> AsyncIterator[bytes]:
        accumulated: List[ContentPart] = []
        try:
            async for batch in source:
                if not batch:
                    continue
                accumulated.extend(batch)
                yield encode_batch(batch)
        except ChatProxyError as exc:
            logger.error("Model stream failed after %d part(s): %s", len(accumulated), exc.message)
            yield encode_error(exc.message)
        except (anyio.get_cancelled_exc_class(), GeneratorExit):
            logger.debug("Client disconnected after %d part(s)", len(accumulated))
            raise
        finally:
            with anyio.CancelScope(shield=True):
                await _close_source(source)
                if accumulated:
                    try:
                        await persist(list(accumulated))
                    except Exception:
                        logger.exception("Failed to persist streamed model turn")


async def _close_source(source: PartBatches) -> None:
    aclose = getattr(source, "aclose", None)
    if aclose is None:
        return
    try:
        await aclose()
    except Exception:
        logger.debug("Error while closing model stream", exc_info=True)


__all__ = ["PrimedStream", "StreamRelay", "encode_batch", "encode_error"]
