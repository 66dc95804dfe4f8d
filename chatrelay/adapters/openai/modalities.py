"""Chat, image-chat and transcription strategies for the request pipeline."""

from __future__ import annotations

import json
import uuid
from typing import Any

from fastapi import Request
from fastapi.responses import JSONResponse, Response
from starlette.background import BackgroundTask
from starlette.datastructures import FormData, UploadFile

from chatrelay.adapters.openai.adapter import adapt_chat_stream, extract_completion_text, extract_transcription_text
from chatrelay.adapters.openai.normalizer import enforce_content_length, normalize_audio, normalize_chat, normalize_image
from chatrelay.adapters.openai.stream_utils import _build_streaming_response
from chatrelay.adapters.openai.upstream import ProviderGateway, UpstreamStream
from chatrelay.core.context import RequestContext
from chatrelay.core.errors import ChatRelayError, ParseError, UpstreamError
from chatrelay.core.models import ChatCompletionRequest, TranscriptionRequest, UploadedFile
from chatrelay.core.pipeline import Modality
from chatrelay.util.debug_excerpt import debug_log_excerpt
from chatrelay.util.logger import logger


async def read_form(request: Request, ctx: RequestContext) -> FormData:
    enforce_content_length(request.headers.get("content-length"))
    body = await request.body()
    ctx.input_bytes = len(body)
    if not body:
        return FormData()
    try:
        return await request.form()
    except Exception as exc:
        logger.warning("form parse failed modality=%s bytes=%d error=%s", ctx.modality, len(body), exc)
        raise ParseError("Failed to parse form data", details=str(exc)) from exc


async def read_upload(form: FormData, field: str) -> UploadedFile | None:
    value = form.get(field)
    if not isinstance(value, UploadFile):
        return None
    data = await value.read()
    return UploadedFile(filename=value.filename or "", content_type=value.content_type or "", data=data)


class ChatModality(Modality):
    name = "chat"
    label = "chat"

    async def parse(self, request: Request, ctx: RequestContext) -> Any:
        raw = await request.body()
        ctx.input_bytes = len(raw)
        try:
            return json.loads(raw)
        except ValueError as exc:
            logger.warning("chat body parse failed bytes=%d error=%s", len(raw), exc)
            raise ParseError("Failed to parse request body", details=str(exc)) from exc

    def validate(self, parsed: Any, ctx: RequestContext) -> ChatCompletionRequest:
        normalized = normalize_chat(parsed)
        logger.info("chat request received request_id=%s messages=%d", ctx.request_id, len(normalized.messages))
        if normalized.messages and isinstance(normalized.messages[-1], dict):
            debug_log_excerpt("chat_last_message", normalized.messages[-1].get("content"), request_id=ctx.request_id)
        return normalized

    async def invoke(self, provider: ProviderGateway, normalized: ChatCompletionRequest, ctx: RequestContext) -> UpstreamStream:
        stream = await provider.open_chat_stream(normalized)
        ctx.upstream_status = stream.status_code
        return stream

    def adapt(self, result: UpstreamStream, ctx: RequestContext) -> Response:
        message_id = f"msg-{uuid.uuid4().hex[:24]}"
        return _build_streaming_response(
            adapt_chat_stream(result, message_id, ctx),
            background=BackgroundTask(result.aclose),
        )


class ImageChatModality(Modality):
    name = "image_chat"
    label = "image chat"

    async def parse(self, request: Request, ctx: RequestContext) -> tuple[UploadedFile | None, str | None]:
        form = await read_form(request, ctx)
        prompt = form.get("prompt")
        return await read_upload(form, "image"), prompt if isinstance(prompt, str) else None

    def validate(self, parsed: tuple[UploadedFile | None, str | None], ctx: RequestContext) -> ChatCompletionRequest:
        image, prompt = parsed
        normalized = normalize_image(image, prompt)
        logger.info(
            "image chat request received request_id=%s file_type=%s file_size=%d prompt_length=%d",
            ctx.request_id,
            image.content_type or "-",
            image.size,
            len(prompt or ""),
        )
        return normalized

    async def invoke(self, provider: ProviderGateway, normalized: ChatCompletionRequest, ctx: RequestContext) -> dict:
        body = await provider.complete(normalized)
        ctx.upstream_status = 200
        return body

    def adapt(self, result: dict, ctx: RequestContext) -> Response:
        text = extract_completion_text(result)
        logger.info("image chat response request_id=%s response_length=%d", ctx.request_id, len(text))
        return JSONResponse(content={"response": text})


class TranscriptionModality(Modality):
    name = "transcription"
    label = "transcription"

    async def parse(self, request: Request, ctx: RequestContext) -> UploadedFile | None:
        form = await read_form(request, ctx)
        return await read_upload(form, "audio")

    def validate(self, parsed: UploadedFile | None, ctx: RequestContext) -> TranscriptionRequest:
        normalized = normalize_audio(parsed)
        logger.info(
            "transcription request received request_id=%s file_type=%s audio_bytes=%d",
            ctx.request_id,
            normalized.content_type,
            len(normalized.audio),
        )
        return normalized

    async def invoke(self, provider: ProviderGateway, normalized: TranscriptionRequest, ctx: RequestContext) -> dict:
        body = await provider.transcribe(normalized)
        ctx.upstream_status = 200
        return body

    def adapt(self, result: dict, ctx: RequestContext) -> Response:
        text = extract_transcription_text(result)
        debug_log_excerpt("transcript", text, request_id=ctx.request_id)
        return JSONResponse(content={"text": text})

    def error_body(self, exc: ChatRelayError) -> dict[str, Any]:
        if isinstance(exc, UpstreamError):
            if exc.status is None:
                return {"error": "Failed to transcribe audio", "details": exc.details or exc.message}
            return {"error": exc.message}
        return super().error_body(exc)
