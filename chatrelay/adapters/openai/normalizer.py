"""Client input -> OpenAI request shapes."""

from __future__ import annotations

import base64
import binascii
from typing import Any

from chatrelay.config.settings import settings
from chatrelay.core.errors import InputTooLarge, MissingInput, ParseError
from chatrelay.core.models import ChatCompletionRequest, TranscriptionRequest, UploadedFile


_DEFAULT_CONTENT_TYPE = "application/octet-stream"
# keys the browser client attaches to each message that the provider does not accept
_CLIENT_ONLY_MESSAGE_KEYS = frozenset({"id", "createdAt"})


def encode_data_uri(data: bytes, content_type: str | None) -> str:
    mime = (content_type or "").strip() or _DEFAULT_CONTENT_TYPE
    return f"data:{mime};base64,{base64.b64encode(data).decode('ascii')}"


def decode_data_uri(uri: str) -> tuple[str, bytes]:
    header, sep, encoded = uri.partition(",")
    if not sep or not header.startswith("data:") or not header.endswith(";base64"):
        raise ValueError("not a base64 data uri")
    mime = header[len("data:") : -len(";base64")]
    try:
        return mime, base64.b64decode(encoded, validate=True)
    except binascii.Error as exc:
        raise ValueError(f"invalid base64 payload: {exc}") from exc


def enforce_upload_limit(file: UploadedFile, limit: int | None = None) -> None:
    cap = settings.max_upload_bytes if limit is None else limit
    if cap > 0 and file.size > cap:
        raise InputTooLarge(
            "Uploaded file is too large",
            details=f"{file.size} bytes exceeds limit of {cap} bytes",
        )


def enforce_content_length(declared: str | None, limit: int | None = None) -> None:
    """Reject a request whose declared body size is over the cap before it is buffered."""
    cap = settings.max_upload_bytes if limit is None else limit
    if cap <= 0 or not declared:
        return
    try:
        size = int(declared)
    except ValueError:
        return
    if size > cap:
        raise InputTooLarge(
            "Uploaded file is too large",
            details=f"request body of {size} bytes exceeds limit of {cap} bytes",
        )


def _forwardable_message(entry: Any) -> Any:
    if not isinstance(entry, dict):
        return entry
    return {key: value for key, value in entry.items() if key not in _CLIENT_ONLY_MESSAGE_KEYS}


def normalize_chat(body: Any) -> ChatCompletionRequest:
    if not isinstance(body, dict):
        raise ParseError("Failed to parse request body", details="expected a JSON object")
    messages = body.get("messages")
    if not isinstance(messages, list):
        raise MissingInput("No messages provided")
    return ChatCompletionRequest(
        model=settings.chat_model,
        messages=[_forwardable_message(entry) for entry in messages],
        system=settings.chat_system_prompt,
        stream=True,
        include_usage=settings.stream_include_usage,
    )


def normalize_image(file: UploadedFile | None, prompt: str | None) -> ChatCompletionRequest:
    if file is None:
        raise MissingInput("No image file provided")
    enforce_upload_limit(file)
    text = prompt or settings.default_image_prompt
    return ChatCompletionRequest(
        model=settings.vision_model,
        system=settings.vision_system_prompt,
        max_tokens=settings.vision_max_tokens,
        messages=[
            {
                "role": "user",
                "content": [
                    {"type": "text", "text": text},
                    {"type": "image_url", "image_url": {"url": encode_data_uri(file.data, file.content_type)}},
                ],
            }
        ],
    )


def normalize_audio(file: UploadedFile | None) -> TranscriptionRequest:
    if file is None:
        raise MissingInput("No audio file provided")
    enforce_upload_limit(file)
    return TranscriptionRequest(
        model=settings.transcription_model,
        filename=settings.transcription_filename,
        content_type=file.content_type or _DEFAULT_CONTENT_TYPE,
        audio=file.data,
    )
