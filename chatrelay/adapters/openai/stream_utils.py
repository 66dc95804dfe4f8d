"""
SSE parsing for upstream streams and line framing for the outward data stream.
"""

from __future__ import annotations

import json
from typing import Any, AsyncIterable, Iterable

from fastapi.responses import StreamingResponse

DATA_STREAM_HEADER = "x-vercel-ai-data-stream"
SSE_DONE = "[DONE]"


def _extract_sse_data_payload(line: str | bytes) -> str | None:
    if not line:
        return None
    if isinstance(line, bytes):
        line = line.decode("utf-8", errors="replace")
    stripped = line.strip()
    if not stripped.startswith("data:"):
        return None
    return stripped[5:].strip()


def _flatten_delta_content(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, list):
        return "".join(_flatten_delta_content(item) for item in value)
    if isinstance(value, dict) and isinstance(value.get("text"), str):
        return value["text"]
    return ""


def parse_stream_event(data_payload: str) -> dict[str, Any] | None:
    try:
        event = json.loads(data_payload)
    except json.JSONDecodeError:
        return None
    return event if isinstance(event, dict) else None


def extract_delta_text(event: dict[str, Any]) -> str:
    choices = event.get("choices")
    if not isinstance(choices, list) or not choices:
        return ""
    first = choices[0]
    if not isinstance(first, dict):
        return ""
    delta = first.get("delta")
    if not isinstance(delta, dict):
        return ""
    return _flatten_delta_content(delta.get("content"))


def extract_finish_reason(event: dict[str, Any]) -> str | None:
    choices = event.get("choices")
    if isinstance(choices, list) and choices and isinstance(choices[0], dict):
        reason = choices[0].get("finish_reason")
        if isinstance(reason, str) and reason:
            return reason
    return None


def _frame(code: str, value: Any) -> bytes:
    return f"{code}:{json.dumps(value, ensure_ascii=False, separators=(',', ':'))}\n".encode("utf-8")


def start_frame(message_id: str) -> bytes:
    return _frame("f", {"messageId": message_id})


def text_frame(delta: str) -> bytes:
    return _frame("0", delta)


def error_frame(message: str) -> bytes:
    return _frame("3", (message or "upstream_error").strip() or "upstream_error")


def _usage_part(usage: dict[str, Any] | None) -> dict[str, Any]:
    usage = usage or {}
    return {
        "promptTokens": usage.get("prompt_tokens"),
        "completionTokens": usage.get("completion_tokens"),
    }


def finish_step_frame(finish_reason: str, usage: dict[str, Any] | None) -> bytes:
    return _frame(
        "e",
        {"finishReason": finish_reason, "usage": _usage_part(usage), "isContinued": False},
    )


def finish_message_frame(finish_reason: str, usage: dict[str, Any] | None) -> bytes:
    return _frame("d", {"finishReason": finish_reason, "usage": _usage_part(usage)})


def _build_streaming_response(
    generator: Iterable[bytes] | AsyncIterable[bytes],
    background: Any = None,
) -> StreamingResponse:
    return StreamingResponse(
        generator,
        media_type="text/plain; charset=utf-8",
        headers={
            DATA_STREAM_HEADER: "v1",
            "Cache-Control": "no-cache",
            "X-Accel-Buffering": "no",
        },
        background=background,
    )
