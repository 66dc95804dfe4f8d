"""OpenAI response shapes -> client envelopes."""

from __future__ import annotations

from typing import Any, AsyncGenerator

from chatrelay.adapters.openai.stream_utils import (
    error_frame,
    finish_message_frame,
    finish_step_frame,
    start_frame,
    text_frame,
)
from chatrelay.adapters.openai.upstream import UpstreamStream
from chatrelay.core.context import RequestContext
from chatrelay.core.errors import UpstreamError
from chatrelay.observability.logging import log_outcome
from chatrelay.util.logger import logger

NO_RESPONSE_FALLBACK = "No response from AI"


def extract_completion_text(body: dict[str, Any], fallback: str = NO_RESPONSE_FALLBACK) -> str:
    choices = body.get("choices")
    if isinstance(choices, list) and choices and isinstance(choices[0], dict):
        message = choices[0].get("message")
        if isinstance(message, dict):
            content = message.get("content")
            if isinstance(content, str) and content:
                return content
    return fallback


def extract_transcription_text(body: dict[str, Any]) -> str:
    text = body.get("text")
    return text if isinstance(text, str) else ""


async def adapt_chat_stream(
    stream: UpstreamStream,
    message_id: str,
    ctx: RequestContext | None = None,
) -> AsyncGenerator[bytes, None]:
    """Re-frame upstream deltas for the browser client.

    Ends with exactly one finish part on success or one error part on failure.
    The upstream connection is released when this generator finishes, fails or
    is closed early by a disconnecting client.
    """
    delta_count = 0
    try:
        yield start_frame(message_id)
        try:
            async for delta in stream.iter_deltas():
                delta_count += 1
                yield text_frame(delta)
        except UpstreamError as exc:
            logger.warning(
                "chat stream failed message_id=%s deltas=%d status=%s error=%s",
                message_id,
                delta_count,
                exc.status,
                exc.message,
            )
            if ctx is not None:
                ctx.outcome = "error"
                ctx.error_kind = exc.kind.value
            yield error_frame(exc.message)
            return
        finish_reason = stream.finish_reason or "stop"
        yield finish_step_frame(finish_reason, stream.usage)
        yield finish_message_frame(finish_reason, stream.usage)
        if ctx is not None:
            ctx.outcome = "success"
        logger.debug("chat stream complete message_id=%s deltas=%d finish=%s", message_id, delta_count, finish_reason)
    finally:
        await stream.aclose()
        if ctx is not None:
            if ctx.outcome == "pending":
                ctx.outcome = "cancelled"
            log_outcome(ctx, 200)
