"""Large-object uploads to the Gemini Files API."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable

from ..errors import (
    ChatProxyError,
    ProviderUnavailableError,
    TransportError,
    UploadError,
    UploadTimeout,
)
from ..gemini import GeminiClient, describe_provider_error
from ..retry import PollTimeout, poll_until

logger = logging.getLogger(__name__)


class FileState(str, Enum):
    PROCESSING = "PROCESSING"
    ACTIVE = "ACTIVE"
    FAILED = "FAILED"

    @classmethod
    def parse(cls, value: Any) -> "FileState":
        # STATE_UNSPECIFIED and unknown values mean the file is not usable yet
        try:
            return cls(str(value).upper())
        except ValueError:
            return cls.PROCESSING


@dataclass(frozen=True)
class UploadedFileHandle:
    api_name: str
    uri: str
    mime_type: str
    state: FileState
    error: str | None = None

    @classmethod
    def from_resource(cls, resource: dict[str, Any], fallback_mime: str) -> "UploadedFileHandle":
        error = resource.get("error")
        return cls(
            api_name=str(resource.get("name") or ""),
            uri=str(resource.get("uri") or ""),
            mime_type=str(resource.get("mimeType") or fallback_mime),
            state=FileState.parse(resource.get("state")),
            error=describe_provider_error(error) if error else None,
        )

    @property
    def is_terminal(self) -> bool:
        return self.state in (FileState.ACTIVE, FileState.FAILED)


class RemoteFileUploader:
    """Upload a blob once, then poll until the provider marks it ACTIVE."""

    def __init__(
        self,
        client: GeminiClient,
        *,
        poll_interval: float = 5.0,
        max_attempts: int = 10,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._client = client
        self._poll_interval = poll_interval
        self._max_attempts = max_attempts
        self._sleep = sleep

    async def upload(
        self,
        data: bytes,
        mime_type: str,
        display_name: str,
        api_key: str,
    ) -> UploadedFileHandle:
        try:
            resource = await self._client.upload_file(
                data, mime_type, display_name, api_key
            )
        except ChatProxyError as exc:
            raise UploadError(
                f"Upload of {display_name} failed: {exc.message}", detail=exc.detail
            ) from exc

        handle = UploadedFileHandle.from_resource(resource, mime_type)
        if not handle.is_terminal:
            handle = await self._wait_until_settled(handle, api_key)
        return self._require_active(handle, display_name)

    async def _wait_until_settled(
        self, handle: UploadedFileHandle, api_key: str
    ) -> UploadedFileHandle:
        logger.info(
            "File %s is %s, polling every %.1fs (max %d attempts)",
            handle.api_name,
            handle.state.value,
            self._poll_interval,
            self._max_attempts,
        )

        async def fetch() -> UploadedFileHandle:
            resource = await self._client.get_file(handle.api_name, api_key)
            return UploadedFileHandle.from_resource(resource, handle.mime_type)

        # The upload response was the first look, so even the first poll waits.
        try:
            return await poll_until(
                fetch,
                lambda current: current.is_terminal,
                interval=self._poll_interval,
                initial_delay=self._poll_interval,
                max_attempts=self._max_attempts,
                retry_on=(TransportError, ProviderUnavailableError),
                sleep=self._sleep,
            )
        except PollTimeout as exc:
            raise UploadTimeout(
                f"File {handle.api_name} was still processing after "
                f"{exc.attempts} poll(s)"
            ) from exc
        except ChatProxyError as exc:
            raise UploadError(
                f"Polling file {handle.api_name} failed: {exc.message}",
                detail=exc.detail,
            ) from exc

    @staticmethod
    def _require_active(
        handle: UploadedFileHandle, display_name: str
    ) -> UploadedFileHandle:
        if handle.state is FileState.FAILED:
            reason = handle.error or "no reason given"
            raise UploadError(f"Gemini could not process {display_name}: {reason}")
        if handle.state is not FileState.ACTIVE or not handle.uri:
            raise UploadError(f"Gemini did not return a usable URI for {display_name}")
        return handle


__all__ = ["FileState", "RemoteFileUploader", "UploadedFileHandle"]
