"""Model invocation adapter and provider response normalization."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, AsyncGenerator, Mapping, Sequence

from pydantic import ValidationError

from ..errors import ModelError
from ..gemini import GeminiClient
from ..schemas.content import (
    ContentPart,
    ConversationTurn,
    InlineBinaryPart,
    RemoteFileRefPart,
    TextPart,
)
from .model_profiles import IMAGE, KNOWN_MODALITIES, ModelProfile, ModelProfileRegistry

logger = logging.getLogger(__name__)

# Finish reasons that legitimately end a stream without content in that chunk
_BENIGN_FINISH_REASONS = {None, "STOP", "FINISH_REASON_UNSPECIFIED", "MAX_TOKENS"}
_QUIET_PROBABILITIES = {"NEGLIGIBLE", "LOW", "HARM_PROBABILITY_UNSPECIFIED"}


@dataclass(frozen=True)
class ResponseFormatHints:
    """Caller preferences for the shape of the model's reply."""

    response_modalities: tuple[str, ...] | None = None
    response_mime_type: str | None = None


def _pick(mapping: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in mapping:
            return mapping[key]
    return None


def _describe_safety(ratings: Any) -> str | None:
    if not isinstance(ratings, Sequence):
        return None
    flagged: list[str] = []
    for rating in ratings:
        if not isinstance(rating, Mapping):
            continue
        category = _pick(rating, "category") or "UNKNOWN"
        probability = _pick(rating, "probability") or "UNKNOWN"
        if rating.get("blocked") or probability not in _QUIET_PROBABILITIES:
            flagged.append(f"{category}={probability}")
    if not flagged:
        return None
    return "safety ratings: " + ", ".join(flagged)


def _normalize_part(raw: Any) -> ContentPart | None:
    if not isinstance(raw, Mapping):
        return None
    if raw.get("thought") is True:
        return None

    text = raw.get("text")
    if isinstance(text, str):
        return TextPart(text=text) if text else None

    inline = _pick(raw, "inlineData", "inline_data")
    if isinstance(inline, Mapping):
        return InlineBinaryPart.model_validate({"inlineData": dict(inline)})

    file_data = _pick(raw, "fileData", "file_data")
    if isinstance(file_data, Mapping):
        return RemoteFileRefPart.model_validate({"fileData": dict(file_data)})

    logger.debug("Ignoring unsupported response part with keys %s", list(raw.keys()))
    return None


def extract_parts(payload: Any, *, allow_empty: bool = False) -> list[ContentPart]:
    """Return the first candidate's parts from a generate-content response.

    Both camelCase (REST) and snake_case (SDK dumps) field names are accepted,
    as is a body wrapped in a top-level ``response`` key. A prompt block always
    raises :class:`ModelError`. A response without candidates or parts raises
    too, unless ``allow_empty`` is set and nothing indicates a refusal, which
    is how stream chunks that only carry usage metadata are treated.
    """

    if isinstance(payload, Mapping) and "candidates" not in payload:
        wrapped = payload.get("response")
        if isinstance(wrapped, Mapping):
            payload = wrapped
    if not isinstance(payload, Mapping):
        raise ModelError("Gemini returned an unexpected response shape", detail=payload)

    feedback = _pick(payload, "promptFeedback", "prompt_feedback")
    if isinstance(feedback, Mapping):
        block_reason = _pick(feedback, "blockReason", "block_reason")
        if block_reason:
            message = f"Gemini blocked the prompt: {block_reason}"
            block_message = _pick(feedback, "blockReasonMessage", "block_reason_message")
            if block_message:
                message += f" ({block_message})"
            safety = _describe_safety(_pick(feedback, "safetyRatings", "safety_ratings"))
            if safety:
                message += f"; {safety}"
            raise ModelError(message, detail=dict(feedback))

    candidates = payload.get("candidates")
    if not isinstance(candidates, Sequence) or not candidates:
        if allow_empty:
            return []
        raise ModelError("Gemini response contained no candidates", detail=dict(payload))

    candidate = candidates[0]
    if not isinstance(candidate, Mapping):
        raise ModelError("Gemini returned a malformed candidate", detail=candidate)

    content = candidate.get("content")
    raw_parts = content.get("parts") if isinstance(content, Mapping) else None
    parts: list[ContentPart] = []
    if isinstance(raw_parts, Sequence):
        for raw in raw_parts:
            try:
                part = _normalize_part(raw)
            except ValidationError as exc:
                raise ModelError(
                    f"Gemini returned an invalid content part: {exc.errors()[0]['msg']}",
                    detail=raw,
                ) from exc
            if part is not None:
                parts.append(part)

    if parts:
        return parts

    finish_reason = _pick(candidate, "finishReason", "finish_reason")
    if allow_empty and finish_reason in _BENIGN_FINISH_REASONS:
        return []

    message = "Gemini response contained no content"
    if finish_reason:
        message += f" (finish reason: {finish_reason})"
    finish_message = _pick(candidate, "finishMessage", "finish_message")
    if finish_message:
        message += f": {finish_message}"
    safety = _describe_safety(_pick(candidate, "safetyRatings", "safety_ratings"))
    if safety:
        message += f"; {safety}"
    raise ModelError(message, detail=dict(candidate))


class ModelInvoker:
    """Build provider requests from history and normalize the replies."""

    def __init__(
        self,
        client: GeminiClient,
        profiles: ModelProfileRegistry | None = None,
    ) -> None:
        self._client = client
        self._profiles = profiles or ModelProfileRegistry()

    def build_request(
        self,
        model: str,
        history: Sequence[ConversationTurn],
        hints: ResponseFormatHints | None = None,
    ) -> dict[str, Any]:
        if not history:
            raise ModelError("Cannot invoke a model without any conversation turns")

        profile = self._profiles.resolve(model)
        if profile.uses_full_history:
            turns = list(history)
        else:
            latest = next((turn for turn in reversed(history) if turn.role == "user"), None)
            if latest is None:
                raise ModelError(f"Model {model} needs a user turn to respond to")
            turns = [latest]

        payload: dict[str, Any] = {"contents": [turn.to_payload() for turn in turns]}
        config = self._generation_config(model, profile, hints)
        if config:
            payload["generationConfig"] = config
        return payload

    @staticmethod
    def _generation_config(
        model: str,
        profile: ModelProfile,
        hints: ResponseFormatHints | None,
    ) -> dict[str, Any]:
        if hints is not None and hints.response_modalities is not None:
            modalities = tuple(item.upper() for item in hints.response_modalities)
        else:
            modalities = profile.response_modalities

        unknown = sorted(set(modalities) - KNOWN_MODALITIES)
        if unknown:
            raise ModelError(f"Unsupported response modalities requested: {unknown}")
        if IMAGE in modalities and not profile.supports_image_output:
            raise ModelError(f"Model {model} cannot produce IMAGE output")

        mime_type = hints.response_mime_type if hints is not None else None
        if mime_type and IMAGE in modalities:
            raise ModelError(
                "A response MIME type cannot be combined with IMAGE output"
            )

        config: dict[str, Any] = {}
        if modalities:
            config["responseModalities"] = list(modalities)
        if mime_type:
            config["responseMimeType"] = mime_type
        return config

    async def generate(
        self,
        model: str,
        api_key: str,
        history: Sequence[ConversationTurn],
        hints: ResponseFormatHints | None = None,
    ) -> list[ContentPart]:
        payload = self.build_request(model, history, hints)
        body = await self._client.generate_content(model, api_key, payload)
        parts = extract_parts(body)
        logger.debug("Model %s returned %d part(s)", model, len(parts))
        return parts

    async def stream(
        self,
        model: str,
        api_key: str,
        history: Sequence[ConversationTurn],
        hints: ResponseFormatHints | None = None,
    ) -> AsyncGenerator[list[ContentPart], None]:
        payload = self.build_request(model, history, hints)
        async for chunk in self._client.stream_generate_content(model, api_key, payload):
            batch = extract_parts(chunk, allow_empty=True)
            if batch:
                yield batch

    async def invoke(
        self,
        model: str,
        api_key: str,
        history: Sequence[ConversationTurn],
        *,
        streaming: bool,
        hints: ResponseFormatHints | None = None,
    ) -> AsyncGenerator[list[ContentPart], None] | list[ContentPart]:
        if streaming:
            return self.stream(model, api_key, history, hints)
        return await self.generate(model, api_key, history, hints)


__all__ = [
    "ModelInvoker",
    "ResponseFormatHints",
    "extract_parts",
]
