"""Diagnostic strategies: key check, provider ping, upload probe and echo."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any

from fastapi import Request
from fastapi.responses import JSONResponse, Response
from starlette.datastructures import UploadFile

from chatrelay.adapters.openai.adapter import extract_completion_text
from chatrelay.adapters.openai.modalities import read_form, read_upload
from chatrelay.adapters.openai.upstream import ProviderGateway
from chatrelay.config.settings import settings
from chatrelay.core.context import RequestContext
from chatrelay.core.errors import ChatRelayError, MissingInput, ParseError, UpstreamError
from chatrelay.core.models import ChatCompletionRequest, ChatMessage, UploadedFile
from chatrelay.core.pipeline import Modality

KEY_PROBE_MESSAGE = "Hello, this is a test message. Please respond with 'API key is working'."
PING_MESSAGE = "Say hello"


def utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _user_turn(content: str) -> dict[str, Any]:
    return ChatMessage(role="user", content=content).model_dump(exclude={"id"})


class KeyDiagnosticModality(Modality):
    name = "diagnostics_key"
    label = "key diagnostic"
    missing_key_message = "OpenAI API key is not set in environment variables"

    async def parse(self, request: Request, ctx: RequestContext) -> None:
        return None

    def validate(self, parsed: None, ctx: RequestContext) -> ChatCompletionRequest:
        return ChatCompletionRequest(
            model=settings.diagnostic_model,
            messages=[_user_turn(KEY_PROBE_MESSAGE)],
            max_tokens=settings.diagnostic_max_tokens,
        )

    async def invoke(self, provider: ProviderGateway, normalized: ChatCompletionRequest, ctx: RequestContext) -> dict:
        body = await provider.complete(normalized)
        ctx.upstream_status = 200
        return body

    def adapt(self, result: dict, ctx: RequestContext) -> Response:
        return JSONResponse(
            content={
                "success": True,
                "message": extract_completion_text(result, fallback="No response"),
                "apiKeyStatus": "valid",
            }
        )

    def error_body(self, exc: ChatRelayError) -> dict[str, Any]:
        details: Any = exc.details
        if isinstance(exc, UpstreamError) and exc.body:
            details = exc.body
        return {
            "success": False,
            "error": exc.message,
            "apiKeyStatus": "invalid",
            "details": details or "No additional details",
        }

    def unexpected_error_body(self, exc: Exception) -> dict[str, Any]:
        return {"success": False, "error": str(exc) or "Unknown error", "apiKeyStatus": "invalid"}


class PingDiagnosticModality(Modality):
    name = "diagnostics_ping"
    label = "provider ping"

    async def parse(self, request: Request, ctx: RequestContext) -> None:
        return None

    def validate(self, parsed: None, ctx: RequestContext) -> ChatCompletionRequest:
        return ChatCompletionRequest(
            model=settings.diagnostic_model,
            messages=[_user_turn(PING_MESSAGE)],
            max_tokens=settings.ping_max_tokens,
        )

    async def invoke(self, provider: ProviderGateway, normalized: ChatCompletionRequest, ctx: RequestContext) -> dict:
        body = await provider.complete(normalized)
        ctx.upstream_status = 200
        return body

    def adapt(self, result: dict, ctx: RequestContext) -> Response:
        return JSONResponse(
            content={
                "success": True,
                "message": extract_completion_text(result, fallback="No response"),
                "model": settings.diagnostic_model,
            }
        )

    def error_body(self, exc: ChatRelayError) -> dict[str, Any]:
        return {"success": False, "error": exc.message}

    def unexpected_error_body(self, exc: Exception) -> dict[str, Any]:
        return {"success": False, "error": str(exc)}


class ImageUploadProbeModality(Modality):
    """Accepts an image the same way image-chat does but never calls the provider."""

    name = "diagnostics_image_upload"
    label = "image upload probe"
    requires_api_key = False

    async def parse(self, request: Request, ctx: RequestContext) -> UploadedFile | None:
        form = await read_form(request, ctx)
        return await read_upload(form, "image")

    def validate(self, parsed: UploadedFile | None, ctx: RequestContext) -> UploadedFile:
        if parsed is None:
            raise MissingInput("No image file provided")
        return parsed

    async def invoke(self, provider: Any, normalized: UploadedFile, ctx: RequestContext) -> UploadedFile:
        return normalized

    def adapt(self, result: UploadedFile, ctx: RequestContext) -> Response:
        return JSONResponse(
            content={
                "success": True,
                "imageInfo": {"name": result.filename, "type": result.content_type, "size": result.size},
                "message": "Image received successfully (no processing performed)",
            }
        )

    def unexpected_error_body(self, exc: Exception) -> dict[str, Any]:
        return {"error": "Failed to process image", "details": str(exc)}


class EchoModality(Modality):
    """Reflects whatever the client posted; used to check the HTTP path end to end."""

    name = "diagnostics_echo"
    label = "echo"
    requires_api_key = False

    async def parse(self, request: Request, ctx: RequestContext) -> tuple[str, Any]:
        content_type = request.headers.get("content-type", "")
        if "application/json" in content_type:
            raw = await request.body()
            ctx.input_bytes = len(raw)
            try:
                return content_type, json.loads(raw)
            except ValueError as exc:
                raise ParseError(f"Failed to parse JSON body: {exc}") from exc
        if "multipart/form-data" in content_type:
            form = await read_form(request, ctx)
            return content_type, {key: self._describe_field(value) for key, value in form.items()}
        raw = await request.body()
        ctx.input_bytes = len(raw)
        return content_type, raw.decode("utf-8", errors="replace") if raw else "No body"

    @staticmethod
    def _describe_field(value: Any) -> Any:
        if isinstance(value, UploadFile):
            return {"filename": value.filename, "contentType": value.content_type, "size": value.size}
        return value

    async def invoke(self, provider: Any, normalized: tuple[str, Any], ctx: RequestContext) -> tuple[str, Any]:
        return normalized

    def adapt(self, result: tuple[str, Any], ctx: RequestContext) -> Response:
        content_type, body = result
        return JSONResponse(
            content={
                "status": "ok",
                "message": "Test POST endpoint is working",
                "receivedContentType": content_type,
                "receivedBody": body,
                "timestamp": utc_timestamp(),
            }
        )

    def error_body(self, exc: ChatRelayError) -> dict[str, Any]:
        return {"status": "error", "message": exc.message, "timestamp": utc_timestamp()}

    def unexpected_error_body(self, exc: Exception) -> dict[str, Any]:
        return {"status": "error", "message": str(exc), "timestamp": utc_timestamp()}
