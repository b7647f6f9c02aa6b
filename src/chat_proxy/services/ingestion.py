"""Turn raw message text and uploaded blobs into model content parts."""

from __future__ import annotations

import logging
import mimetypes
import re
import uuid
from dataclasses import dataclass
from pathlib import PurePosixPath
from typing import Iterable, Sequence
from urllib.parse import unquote, urlparse, urlunparse

import httpx

from ..errors import ChatProxyError, MediaFetchError, UploadError
from ..schemas.chat import NamedBlob
from ..schemas.content import ContentPart, InlineBinaryPart, RemoteFileRefPart, TextPart
from .uploader import RemoteFileUploader

logger = logging.getLogger(__name__)

DEFAULT_MIME_TYPE = "application/octet-stream"

URL_TOKEN_PATTERN = re.compile(r"https?://[^\s<>\"']+", re.IGNORECASE)
IMAGE_PATH_PATTERN = re.compile(
    r"\.(?:png|jpe?g|gif|webp|bmp|svg|heic|heif|avif)$", re.IGNORECASE
)
_TRAILING_PUNCTUATION = ".,;:!?)]}"

MIME_EXTENSION_MAP = {
    "image/png": "png",
    "image/jpeg": "jpg",
    "image/jpg": "jpg",
    "image/webp": "webp",
    "image/avif": "avif",
    "image/gif": "gif",
    "image/bmp": "bmp",
    "image/heic": "heic",
    "image/heif": "heif",
    "image/svg+xml": "svg",
}

_EXTENSION_MIME_MAP = {
    "avif": "image/avif",
    "heic": "image/heic",
    "heif": "image/heif",
    "webp": "image/webp",
}


def _image_url(token: str) -> str | None:
    """Return the URL in ``token`` when its path names an image file."""

    candidate = token.rstrip(_TRAILING_PUNCTUATION)
    rest = candidate.split("://", 1)[1]
    slash = rest.find("/")
    if slash < 0:
        return None
    path = re.split(r"[?#]", rest[slash:], maxsplit=1)[0]
    if not IMAGE_PATH_PATTERN.search(path):
        return None
    return candidate


def extract_image_urls(text: str) -> list[str]:
    urls = []
    for match in URL_TOKEN_PATTERN.finditer(text or ""):
        url = _image_url(match.group(0))
        if url is not None:
            urls.append(url)
    return urls


def strip_image_urls(text: str) -> str:
    """Remove embedded image URLs and trim what is left."""

    def _replace(match: re.Match[str]) -> str:
        token = match.group(0)
        url = _image_url(token)
        if url is None:
            return token
        return token[len(url):]

    return URL_TOKEN_PATTERN.sub(_replace, text or "").strip()


def is_allowed_host(url: str, allowlist: Sequence[str] | None) -> bool:
    """Return True if URL hostname matches the allowlist. Empty allowlist allows all."""

    try:
        host = (urlparse(url).hostname or "").lower()
    except ValueError:
        return False
    if not allowlist:
        return True

    for allowed in allowlist:
        candidate = allowed.strip().lower()
        if not candidate:
            continue
        if host == candidate or host.endswith("." + candidate):
            return True
    return False


def redact_url(url: str) -> str:
    try:
        parsed = urlparse(url)
        return urlunparse(parsed._replace(query="", fragment=""))
    except ValueError:
        return url


def guess_mime_type(filename: str, declared: str | None = None) -> str:
    """Prefer the declared type; fall back to the filename extension."""

    declared = (declared or "").split(";")[0].strip().lower()
    if declared and declared != DEFAULT_MIME_TYPE:
        return declared

    guessed, _ = mimetypes.guess_type(filename)
    if guessed:
        return guessed
    extension = PurePosixPath(filename).suffix.lstrip(".").lower()
    return _EXTENSION_MIME_MAP.get(extension, DEFAULT_MIME_TYPE)


def filename_from_url(url: str, mime_type: str) -> str:
    name = PurePosixPath(unquote(urlparse(url).path)).name
    if name:
        return name
    extension = MIME_EXTENSION_MAP.get(mime_type.lower(), "bin")
    return f"image-{uuid.uuid4().hex[:12]}.{extension}"


async def download_image(
    client: httpx.AsyncClient,
    url: str,
    *,
    timeout_seconds: float,
    max_bytes: int,
) -> tuple[bytes, str]:
    """Fetch image bytes with size limit and content-type checks."""

    timeout = httpx.Timeout(timeout_seconds, connect=10.0)
    headers = {"Accept": "image/*"}
    async with client.stream("GET", url, timeout=timeout, headers=headers) as resp:
        if resp.status_code >= 400:
            raise MediaFetchError(f"server answered HTTP {resp.status_code}")

        content_type = resp.headers.get("Content-Type", "").split(";")[0].strip().lower()
        if not content_type:
            raise MediaFetchError("response has no content type")
        if not content_type.startswith("image/"):
            raise MediaFetchError(f"unexpected content type {content_type!r}")

        declared_length = resp.headers.get("Content-Length")
        if declared_length and declared_length.isdigit() and int(declared_length) > max_bytes:
            raise MediaFetchError(f"image exceeds the {max_bytes} byte limit")

        chunks: list[bytes] = []
        total = 0
        async for chunk in resp.aiter_bytes():
            if not chunk:
                continue
            total += len(chunk)
            if total > max_bytes:
                raise MediaFetchError(f"image exceeds the {max_bytes} byte limit")
            chunks.append(chunk)

    data = b"".join(chunks)
    if not data:
        raise MediaFetchError("server returned an empty body")
    return data, content_type


@dataclass(frozen=True)
class PartResult:
    """Outcome of ingesting one attachment: a part, or the error that replaced it."""

    source: str
    part: ContentPart | None = None
    error: ChatProxyError | None = None

    @classmethod
    def failure(cls, source: str, error: ChatProxyError) -> "PartResult":
        return cls(source=source, error=error)

    def to_part(self) -> ContentPart:
        if self.part is not None:
            return self.part
        message = self.error.message if self.error is not None else "unknown error"
        return TextPart(text=f"[{self.source} could not be attached: {message}]")


class ContentIngestor:
    """Classify a submission into text, inline binary and remote file parts."""

    def __init__(
        self,
        uploader: RemoteFileUploader,
        http_client: httpx.AsyncClient,
        *,
        inline_threshold: int = 5 * 1024 * 1024,
        image_timeout_seconds: float = 15.0,
        image_max_bytes: int = 20 * 1024 * 1024,
        allowed_hosts: Iterable[str] = (),
    ) -> None:
        self._uploader = uploader
        self._http_client = http_client
        self._inline_threshold = inline_threshold
        self._image_timeout = image_timeout_seconds
        self._image_max_bytes = image_max_bytes
        self._allowed_hosts = [host for host in allowed_hosts if host.strip()]

    async def ingest(
        self,
        raw_text: str,
        attachments: Sequence[NamedBlob],
        api_key: str,
    ) -> list[ContentPart]:
        """Return parts for uploads, then URL-derived media, then residual text."""

        urls = extract_image_urls(raw_text)
        residual = strip_image_urls(raw_text)

        results: list[PartResult] = []
        for blob in attachments:
            results.append(await self._ingest_blob(blob, api_key))

        for url in urls:
            try:
                blob = await self._fetch_image(url)
            except MediaFetchError as exc:
                logger.warning("Skipping image %s: %s", redact_url(url), exc.message)
                results.append(PartResult.failure(f"Image {redact_url(url)}", exc))
                continue
            results.append(await self._ingest_blob(blob, api_key))

        parts = [result.to_part() for result in results]
        if residual:
            parts.append(TextPart(text=residual))

        logger.debug(
            "Ingested %d attachment(s) and %d image URL(s) into %d part(s)",
            len(attachments),
            len(urls),
            len(parts),
        )
        return parts

    async def _ingest_blob(self, blob: NamedBlob, api_key: str) -> PartResult:
        source = f"Attachment {blob.filename}"
        if blob.size == 0:
            return PartResult.failure(source, UploadError("the file is empty"))

        mime_type = guess_mime_type(blob.filename, blob.mime_type)
        if self._needs_upload(mime_type, blob.size):
            try:
                handle = await self._uploader.upload(
                    blob.data, mime_type, blob.filename, api_key
                )
            except UploadError as exc:
                logger.warning("Upload of %s failed: %s", blob.filename, exc.message)
                return PartResult.failure(source, exc)
            return PartResult(
                source=source,
                part=RemoteFileRefPart.from_uri(handle.uri, handle.mime_type or mime_type),
            )

        return PartResult(source=source, part=InlineBinaryPart.from_bytes(blob.data, mime_type))

    def _needs_upload(self, mime_type: str, size: int) -> bool:
        if mime_type.startswith(("audio/", "video/")):
            return True
        return size >= self._inline_threshold

    async def _fetch_image(self, url: str) -> NamedBlob:
        try:
            urlparse(url)
        except ValueError as exc:
            raise MediaFetchError(f"invalid URL: {exc}") from exc
        if not is_allowed_host(url, self._allowed_hosts):
            raise MediaFetchError("host is not in the download allowlist")

        logger.info("Fetching embedded image %s", redact_url(url))
        try:
            data, mime_type = await download_image(
                self._http_client,
                url,
                timeout_seconds=self._image_timeout,
                max_bytes=self._image_max_bytes,
            )
        except (httpx.HTTPError, httpx.InvalidURL, ValueError) as exc:
            raise MediaFetchError(f"download failed: {exc}") from exc
        return NamedBlob(
            filename=filename_from_url(url, mime_type),
            mime_type=mime_type,
            data=data,
        )


__all__ = [
    "ContentIngestor",
    "IMAGE_PATH_PATTERN",
    "PartResult",
    "URL_TOKEN_PATTERN",
    "download_image",
    "extract_image_urls",
    "guess_mime_type",
    "is_allowed_host",
    "strip_image_urls",
]
