"""Application factory for the FastAPI service."""

from __future__ import annotations

import asyncio
import logging
import os
from contextlib import asynccontextmanager
from pathlib import Path

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.exception_handlers import http_exception_handler
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from starlette.exceptions import HTTPException as StarletteHTTPException

from . import __version__
from .chat import ChatOrchestrator, StreamRelay
from .config import PROJECT_ROOT, Settings, get_settings
from .errors import NotFoundError
from .gemini import GeminiClient, create_http_client
from .repository import ChatRepository
from .routers.chat import router as chat_router
from .services.ingestion import ContentIngestor
from .services.invocation import ModelInvoker
from .services.model_profiles import ModelProfileRegistry
from .services.uploader import RemoteFileUploader

logger = logging.getLogger(__name__)

_LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
_LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def _configure_logging() -> None:
    """Configure logging based on LOG_LEVEL and LOG_FILE environment variables."""
    # Load .env first so LOG_LEVEL/LOG_FILE set there are honoured
    load_dotenv()

    log_level_str = os.getenv("LOG_LEVEL", "INFO").upper()
    log_level = getattr(logging, log_level_str, logging.INFO)

    handlers: list[logging.Handler] = []
    log_file = os.getenv("LOG_FILE")
    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_path, encoding="utf-8")
        file_handler.setFormatter(logging.Formatter(_LOG_FORMAT, datefmt=_LOG_DATE_FORMAT))
        handlers.append(file_handler)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(logging.Formatter(_LOG_FORMAT, datefmt=_LOG_DATE_FORMAT))
    handlers.append(console_handler)

    logging.basicConfig(level=log_level, handlers=handlers, force=True)

    logging.getLogger("chat_proxy").setLevel(log_level)
    for name in ("uvicorn", "uvicorn.access", "uvicorn.error"):
        logging.getLogger(name).setLevel(log_level)

    # Request lines from httpx are only interesting while debugging
    noisy_level = log_level if log_level <= logging.DEBUG else logging.WARNING
    logging.getLogger("httpx").setLevel(noisy_level)
    logging.getLogger("httpcore").setLevel(noisy_level)


def _resolve_under(base: Path, path: Path) -> Path:
    if path.is_absolute():
        return path
    return (base / path).resolve()


def create_app(settings: Settings | None = None) -> FastAPI:
    _configure_logging()

    settings = settings or get_settings()

    database_path = _resolve_under(PROJECT_ROOT, settings.chat_database_path)
    profiles_path = (
        _resolve_under(PROJECT_ROOT, settings.model_profiles_path)
        if settings.model_profiles_path is not None
        else None
    )

    http_client = create_http_client(settings)
    repository = ChatRepository(database_path)
    gemini_client = GeminiClient(settings, http_client=http_client)
    uploader = RemoteFileUploader(
        gemini_client,
        poll_interval=settings.upload_poll_interval_seconds,
        max_attempts=settings.upload_poll_max_attempts,
    )
    ingestor = ContentIngestor(
        uploader,
        http_client,
        inline_threshold=settings.inline_threshold_bytes,
        image_timeout_seconds=float(settings.image_download_timeout_seconds),
        image_max_bytes=settings.image_download_max_bytes,
        allowed_hosts=settings.image_download_allowed_hosts,
    )
    invoker = ModelInvoker(gemini_client, ModelProfileRegistry.load(profiles_path))
    orchestrator = ChatOrchestrator(repository, ingestor, invoker, StreamRelay())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await repository.initialize()
        try:
            yield
        finally:
            try:
                await asyncio.wait_for(repository.close(), timeout=10.0)
            except asyncio.TimeoutError:
                logger.warning("Conversation store shutdown timed out after 10s")
            await http_client.aclose()

    app = FastAPI(
        title="Gemini Chat Proxy",
        version=__version__,
        description="Multimodal chat proxy relaying conversations to Gemini.",
        lifespan=lifespan,
    )

    app.state.settings = settings
    app.state.chat_repository = repository
    app.state.chat_orchestrator = orchestrator

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Chat-ID"],
    )

    @app.exception_handler(StarletteHTTPException)
    async def _http_error(request: Request, exc: StarletteHTTPException) -> Response:
        # Unknown routes and wrong methods both surface as 404
        if exc.status_code in (404, 405):
            error = NotFoundError("Not Found")
            return JSONResponse({"detail": error.message}, status_code=error.status_code)
        return await http_exception_handler(request, exc)

    app.include_router(chat_router)

    @app.get("/health", tags=["health"])
    async def healthcheck() -> dict[str, str]:
        return {"status": "ok"}

    return app


__all__ = ["create_app"]
