"""Application configuration using environment variables."""

from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import AliasChoices, AnyHttpUrl, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# Resolve the project root once so that `.env` is discovered regardless of CWD
PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent


class Settings(BaseSettings):
    """Load configuration from environment variables and `.env`."""

    model_config = SettingsConfigDict(
        env_file=str(PROJECT_ROOT / ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    gemini_base_url: AnyHttpUrl = Field(
        default_factory=lambda: AnyHttpUrl(
            "https://generativelanguage.googleapis.com"
        ),
        validation_alias=AliasChoices("GEMINI_BASE_URL", "gemini_base_url"),
    )
    gemini_api_version: str = Field(
        default="v1beta",
        validation_alias=AliasChoices("GEMINI_API_VERSION", "gemini_api_version"),
    )
    request_timeout: float = Field(
        default=120.0,
        validation_alias=AliasChoices("GEMINI_TIMEOUT", "timeout"),
        ge=1,
    )
    chat_database_path: Path = Field(
        default_factory=lambda: Path("data/chat.db"),
        validation_alias=AliasChoices("CHAT_DATABASE_PATH", "chat_db"),
    )

    # Attachments larger than this (or any audio/video) use the file upload path
    inline_threshold_bytes: int = Field(
        default=5 * 1024 * 1024,
        ge=1,
        validation_alias=AliasChoices(
            "INLINE_THRESHOLD_BYTES",
            "inline_threshold_bytes",
        ),
    )
    attachments_max_size_bytes: int = Field(
        default=200 * 1024 * 1024,
        ge=1,
        validation_alias=AliasChoices(
            "ATTACHMENTS_MAX_SIZE_BYTES",
            "attachments_max_size_bytes",
        ),
    )
    upload_poll_interval_seconds: float = Field(
        default=5.0,
        ge=0,
        validation_alias=AliasChoices(
            "UPLOAD_POLL_INTERVAL_SECONDS",
            "upload_poll_interval_seconds",
        ),
    )
    upload_poll_max_attempts: int = Field(
        default=10,
        ge=1,
        validation_alias=AliasChoices(
            "UPLOAD_POLL_MAX_ATTEMPTS",
            "upload_poll_max_attempts",
        ),
    )

    # Image download (for image URLs embedded in user text)
    image_download_allowed_hosts: list[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices(
            "IMAGE_DOWNLOAD_ALLOWED_HOSTS",
            "image_download_allowed_hosts",
        ),
        description=("List of hostnames allowed for server-side image downloads."),
    )
    image_download_timeout_seconds: int = Field(
        default=15,
        ge=1,
        validation_alias=AliasChoices(
            "IMAGE_DOWNLOAD_TIMEOUT_SECONDS",
            "image_download_timeout_seconds",
        ),
    )
    image_download_max_bytes: int = Field(
        default=20 * 1024 * 1024,
        ge=1,
        validation_alias=AliasChoices(
            "IMAGE_DOWNLOAD_MAX_BYTES",
            "image_download_max_bytes",
        ),
    )

    model_profiles_path: Optional[Path] = Field(
        default=None,
        validation_alias=AliasChoices("MODEL_PROFILES_PATH", "model_profiles_path"),
    )

    @property
    def gemini_api_root(self) -> str:
        """Return the versioned REST root without a trailing slash."""

        base = str(self.gemini_base_url).rstrip("/")
        return f"{base}/{self.gemini_api_version}"

    @property
    def gemini_upload_root(self) -> str:
        """Return the versioned media upload root without a trailing slash."""

        base = str(self.gemini_base_url).rstrip("/")
        return f"{base}/upload/{self.gemini_api_version}"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached `Settings` instance."""

    return Settings()  # pyright: ignore[reportCallIssue]


__all__ = ["Settings", "get_settings"]
