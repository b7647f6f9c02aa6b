"""Gemini REST client utilities."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, AsyncGenerator, Iterable, Optional

import httpx

from .config import Settings
from .errors import (
    AuthError,
    ChatProxyError,
    ModelError,
    ProviderUnavailableError,
    TransportError,
)

logger = logging.getLogger(__name__)

_INVALID_KEY_REASONS = {"API_KEY_INVALID", "API_KEY_EXPIRED", "API_KEY_SERVICE_BLOCKED"}


@dataclass
class ServerSentEvent:
    """Represents a parsed Server-Sent Event."""

    data: str
    event: str = "message"
    event_id: Optional[str] = None


def create_http_client(settings: Settings) -> httpx.AsyncClient:
    """Build the pooled HTTP client shared by provider calls and image fetches."""

    timeout = httpx.Timeout(settings.request_timeout, connect=10.0)
    limits = httpx.Limits(
        max_connections=50,
        max_keepalive_connections=20,
    )
    return httpx.AsyncClient(
        timeout=timeout,
        limits=limits,
        http2=True,
        follow_redirects=True,
    )


class GeminiClient:
    """Client for content generation and the Files API.

    The API key travels with every call because it is supplied per request by
    the browser client; it is sent as a header and never logged.
    """

    def __init__(
        self,
        settings: Settings,
        http_client: httpx.AsyncClient | None = None,
    ):
        self._settings = settings
        self._http_client = http_client
        self._owns_client = http_client is None

    def _get_http_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = create_http_client(self._settings)
            self._owns_client = True
        return self._http_client

    @staticmethod
    def _headers(api_key: str, *, accept: str = "application/json") -> dict[str, str]:
        return {
            "x-goog-api-key": api_key,
            "Content-Type": "application/json",
            "Accept": accept,
        }

    @staticmethod
    def _model_path(model: str) -> str:
        model = model.strip()
        if model.startswith(("models/", "tunedModels/")):
            return model
        return f"models/{model}"

    async def generate_content(
        self, model: str, api_key: str, payload: dict[str, Any]
    ) -> dict[str, Any]:
        """Issue a single-shot ``generateContent`` call and return the raw body."""

        url = f"{self._settings.gemini_api_root}/{self._model_path(model)}:generateContent"
        client = self._get_http_client()
        try:
            response = await client.post(url, headers=self._headers(api_key), json=payload)
        except httpx.HTTPError as exc:
            raise TransportError(f"Failed to reach Gemini: {exc}") from exc

        if response.status_code >= 400:
            raise self._error_from_response(response.status_code, response.content)
        return self._decode_json(response)

    async def stream_generate_content(
        self, model: str, api_key: str, payload: dict[str, Any]
    ) -> AsyncGenerator[dict[str, Any], None]:
        """Stream ``streamGenerateContent`` chunks as decoded JSON objects."""

        url = (
            f"{self._settings.gemini_api_root}/"
            f"{self._model_path(model)}:streamGenerateContent"
        )
        client = self._get_http_client()
        try:
            async with client.stream(
                "POST",
                url,
                params={"alt": "sse"},
                headers=self._headers(api_key, accept="text/event-stream"),
                json=payload,
            ) as response:
                if response.status_code >= 400:
                    body = await response.aread()
                    raise self._error_from_response(response.status_code, body)

                async for event in self._iter_events(response):
                    if not event.data or event.data == "[DONE]":
                        continue
                    try:
                        chunk = json.loads(event.data)
                    except json.JSONDecodeError as exc:
                        raise ModelError(
                            f"Gemini sent a malformed stream chunk: {exc.msg}"
                        ) from exc
                    if isinstance(chunk, dict) and "error" in chunk:
                        raise self._error_from_payload(500, chunk)
                    yield chunk
        except httpx.HTTPError as exc:
            raise TransportError(f"Gemini stream failed: {exc}") from exc

    async def upload_file(
        self,
        data: bytes,
        mime_type: str,
        display_name: str,
        api_key: str,
    ) -> dict[str, Any]:
        """Upload bytes with the resumable protocol and return the file resource."""

        client = self._get_http_client()
        start_headers = self._headers(api_key)
        start_headers.update(
            {
                "X-Goog-Upload-Protocol": "resumable",
                "X-Goog-Upload-Command": "start",
                "X-Goog-Upload-Header-Content-Length": str(len(data)),
                "X-Goog-Upload-Header-Content-Type": mime_type,
            }
        )
        try:
            start = await client.post(
                f"{self._settings.gemini_upload_root}/files",
                headers=start_headers,
                json={"file": {"displayName": display_name}},
            )
            if start.status_code >= 400:
                raise self._error_from_response(start.status_code, start.content)

            upload_url = start.headers.get("x-goog-upload-url")
            if not upload_url:
                raise ModelError("Gemini did not return an upload URL")

            response = await client.post(
                upload_url,
                headers={
                    "x-goog-api-key": api_key,
                    "X-Goog-Upload-Offset": "0",
                    "X-Goog-Upload-Command": "upload, finalize",
                },
                content=data,
            )
        except httpx.HTTPError as exc:
            raise TransportError(f"Failed to upload file to Gemini: {exc}") from exc

        if response.status_code >= 400:
            raise self._error_from_response(response.status_code, response.content)

        body = self._decode_json(response)
        file_info = body.get("file", body)
        if not isinstance(file_info, dict) or not file_info.get("name"):
            raise ModelError("Gemini upload response did not describe a file")
        logger.info(
            "Uploaded %s (%s, %d bytes) as %s",
            display_name,
            mime_type,
            len(data),
            file_info.get("name"),
        )
        return file_info

    async def get_file(self, name: str, api_key: str) -> dict[str, Any]:
        """Fetch current metadata for an uploaded file (``files/<id>``)."""

        url = f"{self._settings.gemini_api_root}/{name}"
        client = self._get_http_client()
        try:
            response = await client.get(url, headers=self._headers(api_key))
        except httpx.HTTPError as exc:
            raise TransportError(f"Failed to reach Gemini: {exc}") from exc

        if response.status_code >= 400:
            raise self._error_from_response(response.status_code, response.content)
        return self._decode_json(response)

    async def aclose(self) -> None:
        if self._http_client is not None and self._owns_client:
            await self._http_client.aclose()
            self._http_client = None

    async def _iter_events(
        self, response: httpx.Response
    ) -> AsyncGenerator[ServerSentEvent, None]:
        buffer: list[str] = []
        async for line in response.aiter_lines():
            if not line:
                if buffer:
                    yield self._parse_event(buffer)
                    buffer.clear()
                continue
            if line.startswith(":"):
                continue
            buffer.append(line)
        if buffer:
            yield self._parse_event(buffer)

    def _parse_event(self, lines: Iterable[str]) -> ServerSentEvent:
        event_name: Optional[str] = None
        event_id: Optional[str] = None
        data_lines: list[str] = []

        for line in lines:
            field, _, value = line.partition(":")
            value = value.lstrip(" ")
            if field == "event":
                event_name = value or None
            elif field == "data":
                data_lines.append(value)
            elif field == "id":
                event_id = value or None

        data = "\n".join(data_lines)
        return ServerSentEvent(
            data=data, event=event_name or "message", event_id=event_id
        )

    @staticmethod
    def _decode_json(response: httpx.Response) -> dict[str, Any]:
        try:
            body = response.json()
        except ValueError as exc:
            raise ModelError(f"Gemini returned a non-JSON body: {exc}") from exc
        if not isinstance(body, dict):
            raise ModelError("Gemini returned an unexpected response shape")
        return body

    @classmethod
    def _error_from_response(cls, status_code: int, raw: bytes) -> ChatProxyError:
        return cls._error_from_payload(status_code, cls._extract_error_detail(raw))

    @staticmethod
    def _error_from_payload(status_code: int, payload: Any) -> ChatProxyError:
        error = payload.get("error", payload) if isinstance(payload, dict) else payload
        message = describe_provider_error(error)
        reasons: set[str] = set()
        if isinstance(error, dict):
            status_code = int(error.get("code") or status_code)
            for item in error.get("details") or []:
                if isinstance(item, dict) and isinstance(item.get("reason"), str):
                    reasons.add(item["reason"])

        if status_code in (401, 403) or reasons & _INVALID_KEY_REASONS:
            return AuthError(f"Gemini rejected the API key: {message}", detail=error)
        if status_code == 429 or status_code >= 500:
            return ProviderUnavailableError(
                f"Gemini is unavailable (HTTP {status_code}): {message}",
                detail=error,
                provider_status=status_code,
            )
        return ModelError(
            f"Gemini rejected the request (HTTP {status_code}): {message}",
            detail=error,
            provider_status=status_code,
        )

    @staticmethod
    def _extract_error_detail(raw: bytes) -> Any:
        if not raw:
            return "Gemini returned an empty error response."
        try:
            text = raw.decode("utf-8")
        except UnicodeDecodeError:
            text = raw.decode("utf-8", errors="ignore")
        try:
            payload = json.loads(text)
        except json.JSONDecodeError:
            return text
        if isinstance(payload, list) and payload:
            # streamGenerateContent without alt=sse wraps errors in a list
            payload = payload[0]
        return payload


def describe_provider_error(error: Any) -> str:
    """Flatten a Google API error object into one readable line."""

    if not isinstance(error, dict):
        return str(error)

    fragments: list[str] = []
    message = error.get("message")
    if isinstance(message, str) and message:
        fragments.append(message)
    for item in error.get("details") or []:
        if not isinstance(item, dict):
            continue
        for violation in item.get("fieldViolations") or []:
            if not isinstance(violation, dict):
                continue
            field = violation.get("field")
            description = violation.get("description")
            if field and description:
                fragments.append(f"{field}: {description}")
            elif description:
                fragments.append(str(description))
    status_name = error.get("status")
    if isinstance(status_name, str) and status_name:
        fragments.append(f"[{status_name}]")
    return " ".join(fragments) or json.dumps(error)


__all__ = [
    "GeminiClient",
    "ServerSentEvent",
    "create_http_client",
    "describe_provider_error",
]
