"""Error taxonomy shared by the ingestion, invocation, and storage layers."""

from __future__ import annotations

from typing import Any

from fastapi import status


class ChatProxyError(Exception):
    """Base error carrying the HTTP status it should surface as."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str, *, detail: Any = None):
        super().__init__(message)
        self.message = message
        self.detail = detail if detail is not None else message


class ClientInputError(ChatProxyError):
    """Missing credentials/model or an empty message."""

    status_code = status.HTTP_400_BAD_REQUEST


class AttachmentTooLarge(ClientInputError):
    """An uploaded file exceeded the configured size limit."""

    status_code = 413


class NotFoundError(ChatProxyError):
    """Unknown route or method."""

    status_code = status.HTTP_404_NOT_FOUND


class UploadError(ChatProxyError):
    """Large-object upload failed or never became usable."""


class UploadTimeout(UploadError):
    """The uploaded file did not reach a terminal state within the poll budget."""


class MediaFetchError(ChatProxyError):
    """An image URL embedded in the message could not be turned into an attachment."""


class AuthError(ChatProxyError):
    """The provider rejected the supplied API key."""


class ModelError(ChatProxyError):
    """The provider rejected, blocked, or returned malformed content."""

    def __init__(
        self, message: str, *, detail: Any = None, provider_status: int | None = None
    ):
        super().__init__(message, detail=detail)
        self.provider_status = provider_status


class ProviderUnavailableError(ModelError):
    """The provider answered with a retryable status (429 or 5xx)."""


class TransportError(ChatProxyError):
    """Network failure while talking to the provider."""


class StoreError(ChatProxyError):
    """The conversation store failed to read or write."""


__all__ = [
    "AttachmentTooLarge",
    "AuthError",
    "ChatProxyError",
    "ClientInputError",
    "MediaFetchError",
    "ModelError",
    "NotFoundError",
    "ProviderUnavailableError",
    "StoreError",
    "TransportError",
    "UploadError",
    "UploadTimeout",
]
