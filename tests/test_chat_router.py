from __future__ import annotations

import json
from collections.abc import Generator

import httpx
import pytest
from fastapi.testclient import TestClient

import chat_proxy.app as app_module
from chat_proxy.app import create_app
from chat_proxy.config import Settings

MODEL = "gemini-test"
PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 24


class FakeGemini:
    """Minimal stand-in for the generateContent endpoints."""

    def __init__(self) -> None:
        self.requests: list[dict] = []
        self.error_status: int | None = None
        self.stream_chunks = ["Hel", "lo"]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content) if request.content else {}
        self.requests.append(
            {
                "path": request.url.path,
                "body": body,
                "key": request.headers.get("x-goog-api-key"),
            }
        )
        if self.error_status is not None:
            return httpx.Response(
                self.error_status,
                json={
                    "error": {
                        "code": self.error_status,
                        "message": "API key not valid. Please pass a valid API key.",
                        "status": "UNAUTHENTICATED",
                    }
                },
            )
        if request.url.path.endswith(":streamGenerateContent"):
            events = "".join(
                "data: "
                + json.dumps({"candidates": [{"content": {"parts": [{"text": text}]}}]})
                + "\n\n"
                for text in self.stream_chunks
            )
            return httpx.Response(
                200,
                content=events.encode("utf-8"),
                headers={"Content-Type": "text/event-stream"},
            )
        turns = len(body.get("contents", []))
        return httpx.Response(
            200,
            json={
                "candidates": [
                    {
                        "content": {"role": "model", "parts": [{"text": f"reply to {turns} turn(s)"}]},
                        "finishReason": "STOP",
                    }
                ]
            },
        )

    @property
    def last_contents(self) -> list[dict]:
        return self.requests[-1]["body"]["contents"]


@pytest.fixture
def gemini() -> FakeGemini:
    return FakeGemini()


@pytest.fixture
def chat_client(monkeypatch, tmp_path, gemini) -> Generator[TestClient, None, None]:
    settings = Settings(
        chat_database_path=tmp_path / "chat.db",
        attachments_max_size_bytes=64,
    )
    monkeypatch.setattr(
        app_module,
        "create_http_client",
        lambda _settings: httpx.AsyncClient(transport=httpx.MockTransport(gemini)),
    )
    app = create_app(settings)

    with TestClient(app) as client:
        yield client


def _form(**overrides) -> dict[str, str]:
    data = {"model": MODEL, "apikey": "test-key", "input": "hello"}
    data.update(overrides)
    return {key: value for key, value in data.items() if value is not None}


def test_new_chat_returns_id_and_model_parts(chat_client: TestClient, gemini: FakeGemini) -> None:
    response = chat_client.post("/chat", data=_form())

    assert response.status_code == 200
    payload = response.json()
    assert isinstance(payload["chatId"], int) and payload["chatId"] > 0
    assert payload["response"] == [{"text": "reply to 1 turn(s)"}]
    assert gemini.requests[-1]["key"] == "test-key"
    assert gemini.requests[-1]["path"] == f"/v1beta/models/{MODEL}:generateContent"


def test_follow_up_sends_full_ordered_history(chat_client: TestClient, gemini: FakeGemini) -> None:
    chat_id = chat_client.post("/chat", data=_form(input="first")).json()["chatId"]

    response = chat_client.post("/chat", data=_form(input="second", chatId=str(chat_id)))

    assert response.json()["chatId"] == chat_id
    assert gemini.last_contents == [
        {"role": "user", "parts": [{"text": "first"}]},
        {"role": "model", "parts": [{"text": "reply to 1 turn(s)"}]},
        {"role": "user", "parts": [{"text": "second"}]},
    ]


@pytest.mark.parametrize(
    "chat_id", ["999999", "not-a-number", "-3", "99999999999999999999999"]
)
def test_unknown_chat_id_starts_a_new_chat(
    chat_client: TestClient, gemini: FakeGemini, chat_id: str
) -> None:
    existing = chat_client.post("/chat", data=_form(input="first")).json()["chatId"]

    response = chat_client.post("/chat", data=_form(input="fresh", chatId=chat_id))

    assert response.status_code == 200
    assert response.json()["chatId"] not in (existing, chat_id)
    assert gemini.last_contents == [{"role": "user", "parts": [{"text": "fresh"}]}]


@pytest.mark.parametrize("missing", ["model", "apikey"])
def test_missing_required_fields_are_rejected(
    chat_client: TestClient, gemini: FakeGemini, missing: str
) -> None:
    response = chat_client.post("/chat", data=_form(**{missing: None}))

    assert response.status_code == 400
    assert gemini.requests == []


def test_blank_message_without_attachments_is_rejected(chat_client: TestClient) -> None:
    response = chat_client.post("/chat", data=_form(input="   "))

    assert response.status_code == 400
    assert "text or at least one attachment" in response.json()["detail"]


def test_streaming_reply_is_ndjson_and_persisted(
    chat_client: TestClient, gemini: FakeGemini
) -> None:
    response = chat_client.post("/chat", data=_form(stream="true"))

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("application/x-ndjson")
    assert response.headers["cache-control"] == "no-cache"
    chat_id = int(response.headers["x-chat-id"])
    lines = [json.loads(line) for line in response.text.splitlines() if line]
    assert lines == [[{"text": "Hel"}], [{"text": "lo"}]]

    chat_client.post("/chat", data=_form(input="again", chatId=str(chat_id)))

    assert gemini.last_contents[1] == {
        "role": "model",
        "parts": [{"text": "Hel"}, {"text": "lo"}],
    }


def test_uploaded_image_is_sent_inline(chat_client: TestClient, gemini: FakeGemini) -> None:
    response = chat_client.post(
        "/chat",
        data=_form(input="what is this?"),
        files={"photo": ("pixel.png", PNG_BYTES, "image/png")},
    )

    assert response.status_code == 200
    parts = gemini.last_contents[0]["parts"]
    assert parts[0]["inlineData"]["mimeType"] == "image/png"
    assert parts[-1] == {"text": "what is this?"}


def test_attachment_without_text_is_accepted(chat_client: TestClient, gemini: FakeGemini) -> None:
    response = chat_client.post(
        "/chat",
        data=_form(input=None),
        files={"file": ("pixel.png", PNG_BYTES, "image/png")},
    )

    assert response.status_code == 200
    assert len(gemini.last_contents[0]["parts"]) == 1


def test_oversized_attachment_is_rejected(chat_client: TestClient, gemini: FakeGemini) -> None:
    response = chat_client.post(
        "/chat",
        data=_form(),
        files={"file": ("big.bin", b"x" * 65, "application/octet-stream")},
    )

    assert response.status_code == 413
    assert gemini.requests == []


@pytest.mark.parametrize("stream", ["false", "true"])
def test_provider_rejection_maps_to_server_error(
    chat_client: TestClient, gemini: FakeGemini, stream: str
) -> None:
    gemini.error_status = 401

    response = chat_client.post("/chat", data=_form(stream=stream))

    assert response.status_code == 500
    assert "API key not valid" in response.json()["detail"]


def test_unknown_routes_and_methods_return_404(chat_client: TestClient) -> None:
    for response in (chat_client.get("/chat"), chat_client.post("/nope")):
        assert response.status_code == 404
        assert response.json() == {"detail": "Not Found"}


def test_health(chat_client: TestClient) -> None:
    response = chat_client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}
