import json
import struct
import zlib

import httpx
import pytest
from starlette.requests import Request

from chatrelay.adapters.diagnostics import router as diagnostics_router
from chatrelay.adapters.openai import router as openai_router
from chatrelay.adapters.openai.normalizer import decode_data_uri
from chatrelay.adapters.openai.upstream import ProviderGateway
from chatrelay.config.settings import settings


def _build_request(
    path: str,
    *,
    method: str = "POST",
    body: bytes = b"",
    headers: dict[str, str] | None = None,
) -> Request:
    raw_headers = [(k.lower().encode("latin-1"), v.encode("latin-1")) for k, v in (headers or {}).items()]
    scope = {
        "type": "http",
        "asgi": {"version": "3.0"},
        "http_version": "1.1",
        "method": method,
        "scheme": "http",
        "path": path,
        "raw_path": path.encode("latin-1"),
        "query_string": b"",
        "headers": raw_headers,
        "client": ("127.0.0.1", 54321),
        "server": ("testserver", 80),
    }
    sent = False

    async def receive() -> dict:
        nonlocal sent
        if sent:
            return {"type": "http.request", "body": b"", "more_body": False}
        sent = True
        return {"type": "http.request", "body": body, "more_body": False}

    return Request(scope, receive)


def _json_request(path: str, payload: object) -> Request:
    return _build_request(path, body=json.dumps(payload).encode("utf-8"), headers={"content-type": "application/json"})


def _multipart_request(path: str, *, files: dict | None = None, data: dict | None = None) -> Request:
    outbound = httpx.Request("POST", f"http://testserver{path}", files=files or {}, data=data)
    return _build_request(path, body=outbound.read(), headers={"content-type": outbound.headers["content-type"]})


def _red_png(size: int = 10) -> bytes:
    def chunk(tag: bytes, data: bytes) -> bytes:
        return struct.pack(">I", len(data)) + tag + data + struct.pack(">I", zlib.crc32(tag + data) & 0xFFFFFFFF)

    rows = b"".join(b"\x00" + b"\xff\x00\x00" * size for _ in range(size))
    header = struct.pack(">IIBBBBB", size, size, 8, 2, 0, 0, 0)
    return b"\x89PNG\r\n\x1a\n" + chunk(b"IHDR", header) + chunk(b"IDAT", zlib.compress(rows)) + chunk(b"IEND", b"")


class StubProvider:
    """Records every outbound call made through a real gateway."""

    def __init__(self, handler) -> None:
        self.calls: list[httpx.Request] = []

        def recording(request: httpx.Request) -> httpx.Response:
            self.calls.append(request)
            return handler(request)

        self.gateway = ProviderGateway(
            httpx.AsyncClient(transport=httpx.MockTransport(recording)),
            base_url="https://api.example.com/v1",
        )


def _completion(content: str) -> httpx.Response:
    return httpx.Response(200, json={"choices": [{"message": {"role": "assistant", "content": content}}]})


def _chat_stream(*deltas: str) -> httpx.Response:
    events = [{"choices": [{"delta": {"content": delta}, "finish_reason": None}]} for delta in deltas]
    events.append({"choices": [{"delta": {}, "finish_reason": "stop"}]})
    body = "".join(f"data: {json.dumps(event)}\n\n" for event in events) + "data: [DONE]\n\n"
    return httpx.Response(200, content=body.encode("utf-8"), headers={"content-type": "text/event-stream"})


async def _read_stream(response) -> str:
    chunks = [chunk async for chunk in response.body_iterator]
    return b"".join(chunks).decode("utf-8")


@pytest.fixture
def api_key(monkeypatch):
    monkeypatch.setattr(settings, "openai_api_key", "sk-test")
    return "sk-test"


@pytest.fixture
def no_api_key(monkeypatch):
    monkeypatch.setattr(settings, "openai_api_key", "")


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "handler,request_factory",
    [
        (openai_router.chat, lambda: _json_request("/chat", {"messages": [{"role": "user", "content": "hi"}]})),
        (openai_router.image_chat, lambda: _multipart_request("/image-chat", files={"image": ("a.png", b"png", "image/png")})),
        (openai_router.transcribe, lambda: _multipart_request("/transcribe", files={"audio": ("a.webm", b"webm", "audio/webm")})),
        (diagnostics_router.provider_ping, lambda: _build_request("/diagnostics/openai", method="GET")),
    ],
)
async def test_missing_api_key_returns_500_without_upstream_call(no_api_key, handler, request_factory):
    stub = StubProvider(lambda _request: _completion("unused"))

    response = await handler(request_factory(), provider=stub.gateway)

    assert response.status_code == 500
    assert json.loads(response.body)["error"]
    assert stub.calls == []


@pytest.mark.asyncio
async def test_key_diagnostic_reports_invalid_when_key_unset(no_api_key):
    stub = StubProvider(lambda _request: _completion("unused"))

    response = await diagnostics_router.key_status(_build_request("/diagnostics/key", method="GET"), provider=stub.gateway)

    body = json.loads(response.body)
    assert response.status_code == 500
    assert body["success"] is False
    assert body["apiKeyStatus"] == "invalid"
    assert body["error"] == "OpenAI API key is not set in environment variables"
    assert stub.calls == []


@pytest.mark.asyncio
async def test_key_diagnostic_reports_valid_key(api_key):
    stub = StubProvider(lambda _request: _completion("API key is working"))

    response = await diagnostics_router.key_status(_build_request("/diagnostics/key", method="GET"), provider=stub.gateway)

    assert response.status_code == 200
    assert json.loads(response.body) == {"success": True, "message": "API key is working", "apiKeyStatus": "valid"}
    sent = json.loads(stub.calls[0].content)
    assert sent["model"] == settings.diagnostic_model
    assert sent["max_tokens"] == settings.diagnostic_max_tokens


@pytest.mark.asyncio
async def test_key_diagnostic_mirrors_upstream_rejection(api_key):
    error_body = {"error": {"message": "Incorrect API key provided", "type": "invalid_request_error"}}
    stub = StubProvider(lambda _request: httpx.Response(401, json=error_body))

    response = await diagnostics_router.key_status(_build_request("/diagnostics/key", method="GET"), provider=stub.gateway)

    body = json.loads(response.body)
    assert response.status_code == 401
    assert body["apiKeyStatus"] == "invalid"
    assert body["error"] == "Incorrect API key provided"
    assert body["details"] == error_body


@pytest.mark.asyncio
@pytest.mark.parametrize("raw", [b"{not json", b"", b"\xff\xfe"])
async def test_chat_rejects_unparseable_body_before_upstream(api_key, raw):
    stub = StubProvider(lambda _request: _chat_stream("unused"))
    request = _build_request("/chat", body=raw, headers={"content-type": "application/json"})

    response = await openai_router.chat(request, provider=stub.gateway)

    assert response.status_code == 400
    assert json.loads(response.body)["error"] == "Failed to parse request body"
    assert stub.calls == []


@pytest.mark.asyncio
async def test_chat_requires_message_list(api_key):
    stub = StubProvider(lambda _request: _chat_stream("unused"))

    response = await openai_router.chat(_json_request("/chat", {"prompt": "hi"}), provider=stub.gateway)

    assert response.status_code == 400
    assert json.loads(response.body) == {"error": "No messages provided"}
    assert stub.calls == []


@pytest.mark.asyncio
async def test_chat_streams_deltas_in_order(api_key):
    stub = StubProvider(lambda _request: _chat_stream("Your ", "order ", "shipped."))
    request = _json_request("/chat", {"messages": [{"id": "u1", "role": "user", "content": "status?"}]})

    response = await openai_router.chat(request, provider=stub.gateway)
    text = await _read_stream(response)

    assert response.status_code == 200
    assert response.headers["x-vercel-ai-data-stream"] == "v1"
    lines = text.splitlines()
    assert lines[0].startswith("f:")
    assert lines[1:4] == ['0:"Your "', '0:"order "', '0:"shipped."']
    assert lines[-1].startswith("d:")
    sent = json.loads(stub.calls[0].content)
    assert sent["messages"][0]["role"] == "system"
    assert sent["messages"][1] == {"role": "user", "content": "status?"}


@pytest.mark.asyncio
async def test_chat_upstream_rejection_maps_status(api_key):
    stub = StubProvider(
        lambda _request: httpx.Response(429, json={"error": {"message": "Rate limit reached", "type": "requests"}})
    )

    response = await openai_router.chat(_json_request("/chat", {"messages": []}), provider=stub.gateway)

    body = json.loads(response.body)
    assert response.status_code == 429
    assert body["details"] == "Rate limit reached"
    assert body["type"] == "requests"
    assert len(stub.calls) == 1


@pytest.mark.asyncio
async def test_identical_chat_requests_make_independent_upstream_calls(api_key):
    replies = iter(["first", "second"])
    stub = StubProvider(lambda _request: _chat_stream(next(replies)))
    payload = {"messages": [{"role": "user", "content": "hello"}]}

    first = await _read_stream(await openai_router.chat(_json_request("/chat", payload), provider=stub.gateway))
    second = await _read_stream(await openai_router.chat(_json_request("/chat", payload), provider=stub.gateway))

    assert len(stub.calls) == 2
    assert '0:"first"' in first and '0:"second"' not in first
    assert '0:"second"' in second
    assert first.splitlines()[0] != second.splitlines()[0]


@pytest.mark.asyncio
async def test_image_chat_describes_red_png(api_key):
    png = _red_png()
    stub = StubProvider(lambda _request: _completion("red"))
    request = _multipart_request(
        "/image-chat",
        files={"image": ("red.png", png, "image/png")},
        data={"prompt": "describe the color"},
    )

    response = await openai_router.image_chat(request, provider=stub.gateway)

    assert response.status_code == 200
    assert json.loads(response.body) == {"response": "red"}
    sent = json.loads(stub.calls[0].content)
    parts = sent["messages"][1]["content"]
    assert parts[0] == {"type": "text", "text": "describe the color"}
    assert decode_data_uri(parts[1]["image_url"]["url"]) == ("image/png", png)
    assert sent["max_tokens"] == settings.vision_max_tokens


@pytest.mark.asyncio
async def test_image_chat_missing_file_is_400(api_key):
    stub = StubProvider(lambda _request: _completion("unused"))
    request = _multipart_request("/image-chat", files={"other": ("x.txt", b"x", "text/plain")}, data={"prompt": "hi"})

    response = await openai_router.image_chat(request, provider=stub.gateway)

    assert response.status_code == 400
    assert json.loads(response.body) == {"error": "No image file provided"}
    assert stub.calls == []


@pytest.mark.asyncio
async def test_image_chat_malformed_multipart_is_400(api_key):
    stub = StubProvider(lambda _request: _completion("unused"))
    request = _build_request(
        "/image-chat",
        body=b"this is not multipart at all",
        headers={"content-type": "multipart/form-data"},
    )

    response = await openai_router.image_chat(request, provider=stub.gateway)

    assert response.status_code == 400
    assert json.loads(response.body)["error"] == "Failed to parse form data"
    assert stub.calls == []


@pytest.mark.asyncio
async def test_image_chat_upstream_error_envelope(api_key):
    stub = StubProvider(
        lambda _request: httpx.Response(
            400, json={"error": {"message": "Invalid image", "type": "invalid_request_error"}}
        )
    )
    request = _multipart_request("/image-chat", files={"image": ("a.png", b"\x00\x01", "image/png")})

    response = await openai_router.image_chat(request, provider=stub.gateway)

    assert response.status_code == 400
    assert json.loads(response.body) == {
        "error": "OpenAI API error",
        "details": "Invalid image",
        "type": "invalid_request_error",
        "status": 400,
    }


@pytest.mark.asyncio
async def test_image_chat_upload_cap_returns_413(api_key, monkeypatch):
    monkeypatch.setattr(settings, "max_upload_bytes", 8)
    stub = StubProvider(lambda _request: _completion("unused"))
    request = _multipart_request("/image-chat", files={"image": ("a.png", b"x" * 9, "image/png")})

    response = await openai_router.image_chat(request, provider=stub.gateway)

    assert response.status_code == 413
    assert stub.calls == []


@pytest.mark.asyncio
async def test_image_chat_rejects_oversized_content_length_before_reading(api_key, monkeypatch):
    monkeypatch.setattr(settings, "max_upload_bytes", 1024)
    stub = StubProvider(lambda _request: _completion("unused"))
    request = _build_request(
        "/image-chat",
        body=b"",
        headers={"content-type": "multipart/form-data; boundary=----big", "content-length": str(50 * 1024 * 1024)},
    )

    response = await openai_router.image_chat(request, provider=stub.gateway)

    assert response.status_code == 413
    assert json.loads(response.body)["error"] == "Uploaded file is too large"
    assert not hasattr(request, "_body")
    assert stub.calls == []


@pytest.mark.asyncio
async def test_transcribe_empty_body_is_400_without_upstream(api_key):
    stub = StubProvider(lambda _request: httpx.Response(200, json={"text": "unused"}))
    request = _build_request(
        "/transcribe",
        body=b"",
        headers={"content-type": "multipart/form-data; boundary=----empty"},
    )

    response = await openai_router.transcribe(request, provider=stub.gateway)

    assert response.status_code == 400
    assert json.loads(response.body) == {"error": "No audio file provided"}
    assert stub.calls == []


@pytest.mark.asyncio
async def test_transcribe_returns_text(api_key):
    stub = StubProvider(lambda _request: httpx.Response(200, json={"text": "I need help with my order"}))
    request = _multipart_request("/transcribe", files={"audio": ("voice.webm", b"\x1aE\xdf\xa3", "audio/webm")})

    response = await openai_router.transcribe(request, provider=stub.gateway)

    assert response.status_code == 200
    assert json.loads(response.body) == {"text": "I need help with my order"}
    assert b"\x1aE\xdf\xa3" in stub.calls[0].content


@pytest.mark.asyncio
async def test_transcribe_upstream_errors(api_key):
    stub = StubProvider(
        lambda _request: httpx.Response(400, json={"error": {"message": "Audio file is too short", "type": "invalid_request_error"}})
    )
    request = _multipart_request("/transcribe", files={"audio": ("voice.webm", b"x", "audio/webm")})
    response = await openai_router.transcribe(request, provider=stub.gateway)
    assert response.status_code == 400
    assert json.loads(response.body) == {"error": "Audio file is too short"}

    def unreachable(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectTimeout("timed out", request=request)

    stub = StubProvider(unreachable)
    request = _multipart_request("/transcribe", files={"audio": ("voice.webm", b"x", "audio/webm")})
    response = await openai_router.transcribe(request, provider=stub.gateway)
    body = json.loads(response.body)
    assert response.status_code == 500
    assert body["error"] == "Failed to transcribe audio"
    assert "timed out" in body["details"]
