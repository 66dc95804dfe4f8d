"""
Outbound calls to the OpenAI API: one shared connection pool, one call per request, no retries.
"""

from __future__ import annotations

import json
from typing import Any, AsyncGenerator

import httpx
from fastapi import Request

from chatrelay.adapters.openai.stream_utils import (
    SSE_DONE,
    _extract_sse_data_payload,
    extract_delta_text,
    extract_finish_reason,
    parse_stream_event,
)
from chatrelay.config.settings import settings
from chatrelay.core.errors import ConfigError, UpstreamError
from chatrelay.core.models import ChatCompletionRequest, TranscriptionRequest
from chatrelay.util.logger import logger

CHAT_COMPLETIONS_PATH = "/chat/completions"
TRANSCRIPTIONS_PATH = "/audio/transcriptions"


def upstream_http_limits() -> httpx.Limits:
    return httpx.Limits(
        max_connections=max(10, int(settings.upstream_max_connections)),
        max_keepalive_connections=max(5, int(settings.upstream_max_keepalive_connections)),
    )


def upstream_http_timeout() -> httpx.Timeout:
    timeout = float(settings.upstream_timeout_seconds)
    return httpx.Timeout(connect=timeout, read=timeout, write=timeout, pool=timeout)


def build_upstream_client() -> httpx.AsyncClient:
    return httpx.AsyncClient(
        http2=False,
        timeout=upstream_http_timeout(),
        limits=upstream_http_limits(),
    )


def _decode_json_or_text(body: bytes) -> Any:
    text = body.decode("utf-8", errors="replace")
    if not text:
        return ""
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return text


def _safe_error_detail(payload: Any) -> str:
    if isinstance(payload, str):
        return payload[:600]
    return json.dumps(payload, ensure_ascii=False)[:600]


def _provider_error(status: int, payload: Any) -> UpstreamError:
    message = ""
    provider_type = "api_error"
    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict):
            message = str(error.get("message") or "")
            provider_type = str(error.get("type") or error.get("code") or provider_type)
        elif isinstance(error, str):
            message = error
    if not message:
        message = _safe_error_detail(payload) or f"upstream returned HTTP {status}"
    return UpstreamError(message, status=status, provider_type=provider_type, details=message, body=payload)


def _connection_error(exc: httpx.HTTPError) -> UpstreamError:
    detail = (str(exc) or "").strip() or "connection_failed_or_timeout"
    return UpstreamError(
        f"upstream_unreachable: {detail}",
        status=None,
        provider_type="connection_error",
        details=detail,
    )


class UpstreamStream:
    """Live handle on one streaming completion.

    ``iter_deltas`` yields text fragments in arrival order. ``aclose`` releases
    the upstream connection and is safe to call more than once.
    """

    def __init__(self, response: httpx.Response) -> None:
        self._response = response
        self._closed = False
        self.status_code = response.status_code
        self.finish_reason: str | None = None
        self.usage: dict[str, Any] | None = None

    @property
    def closed(self) -> bool:
        return self._closed

    async def iter_deltas(self) -> AsyncGenerator[str, None]:
        done = False
        try:
            async for line in self._response.aiter_lines():
                data = _extract_sse_data_payload(line)
                if data is None:
                    continue
                if data == SSE_DONE:
                    done = True
                    break
                event = parse_stream_event(data)
                if event is None:
                    raise UpstreamError(
                        "Malformed stream event from upstream",
                        status=502,
                        provider_type="invalid_response",
                        details=data[:200],
                    )
                if event.get("error"):
                    raise _provider_error(self.status_code, event)
                if isinstance(event.get("usage"), dict):
                    self.usage = event["usage"]
                reason = extract_finish_reason(event)
                if reason:
                    self.finish_reason = reason
                text = extract_delta_text(event)
                if text:
                    yield text
        except httpx.HTTPError as exc:
            logger.warning("chat stream interrupted error=%s", exc)
            raise _connection_error(exc) from exc
        if not done and self.finish_reason is None:
            raise UpstreamError(
                "upstream stream ended unexpectedly",
                status=502,
                provider_type="stream_truncated",
            )

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._response.aclose()
        logger.debug("chat stream upstream connection closed")


class ProviderGateway:
    """Issues provider calls over a client built once at startup."""

    def __init__(self, client: httpx.AsyncClient, base_url: str | None = None) -> None:
        self._client = client
        self._base_url = (base_url or settings.upstream_base_url).rstrip("/")

    def _url(self, path: str) -> str:
        return f"{self._base_url}{path}"

    def _auth_headers(self) -> dict[str, str]:
        # read per call so key rotation applies without a restart
        api_key = (settings.openai_api_key or "").strip()
        if not api_key:
            raise ConfigError("OpenAI API key is missing")
        return {"Authorization": f"Bearer {api_key}"}

    async def complete(self, request: ChatCompletionRequest) -> dict[str, Any]:
        url = self._url(CHAT_COMPLETIONS_PATH)
        body = json.dumps(request.to_payload(), ensure_ascii=False).encode("utf-8")
        headers = {**self._auth_headers(), "Content-Type": "application/json"}
        logger.debug("complete start url=%s model=%s payload_bytes=%d", url, request.model, len(body))
        try:
            response = await self._client.post(url, content=body, headers=headers)
        except httpx.HTTPError as exc:
            logger.warning("complete http_error url=%s error=%s", url, exc)
            raise _connection_error(exc) from exc
        logger.debug("complete done url=%s status=%s", url, response.status_code)
        return self._json_body(response)

    async def open_chat_stream(self, request: ChatCompletionRequest) -> UpstreamStream:
        url = self._url(CHAT_COMPLETIONS_PATH)
        payload = request.to_payload()
        payload["stream"] = True
        headers = {**self._auth_headers(), "Accept": "text/event-stream"}
        outbound = self._client.build_request("POST", url, json=payload, headers=headers)
        logger.debug("chat stream start url=%s model=%s messages=%d", url, request.model, len(payload["messages"]))
        try:
            response = await self._client.send(outbound, stream=True)
        except httpx.HTTPError as exc:
            logger.warning("chat stream http_error url=%s error=%s", url, exc)
            raise _connection_error(exc) from exc
        logger.debug("chat stream connected url=%s status=%s", url, response.status_code)
        if response.status_code >= 400:
            try:
                detail = _decode_json_or_text(await response.aread())
            except httpx.HTTPError as exc:
                logger.warning("chat stream error body unreadable url=%s status=%s error=%s", url, response.status_code, exc)
                detail = ""
            finally:
                await response.aclose()
            raise _provider_error(response.status_code, detail)
        return UpstreamStream(response)

    async def transcribe(self, request: TranscriptionRequest) -> dict[str, Any]:
        url = self._url(TRANSCRIPTIONS_PATH)
        data, files = request.to_multipart()
        headers = self._auth_headers()
        logger.debug("transcribe start url=%s model=%s audio_bytes=%d", url, request.model, len(request.audio))
        try:
            response = await self._client.post(url, data=data, files=files, headers=headers)
        except httpx.HTTPError as exc:
            logger.warning("transcribe http_error url=%s error=%s", url, exc)
            raise _connection_error(exc) from exc
        logger.debug("transcribe done url=%s status=%s", url, response.status_code)
        return self._json_body(response)

    def _json_body(self, response: httpx.Response) -> dict[str, Any]:
        payload = _decode_json_or_text(response.content)
        if response.status_code >= 400:
            raise _provider_error(response.status_code, payload)
        if not isinstance(payload, dict):
            raise UpstreamError(
                "Invalid response from OpenAI",
                status=502,
                provider_type="invalid_response",
                details=_safe_error_detail(payload),
            )
        return payload

    async def aclose(self) -> None:
        await self._client.aclose()


def get_provider_gateway(request: Request) -> ProviderGateway:
    """FastAPI dependency: the gateway built at startup, created on first use if startup did not run."""
    provider = getattr(request.app.state, "provider_gateway", None)
    if provider is None:
        provider = ProviderGateway(build_upstream_client())
        request.app.state.provider_gateway = provider
        logger.info("provider gateway created lazily base_url=%s", settings.upstream_base_url)
    return provider
