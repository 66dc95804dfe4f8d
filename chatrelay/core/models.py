"""Client and upstream transport models."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field


class ChatMessage(BaseModel):
    id: str | None = None
    role: Literal["user", "assistant", "system"]
    content: str


class UploadedFile(BaseModel):
    filename: str = ""
    content_type: str = ""
    data: bytes = b""

    @property
    def size(self) -> int:
        return len(self.data)


class ChatCompletionRequest(BaseModel):
    model: str
    messages: list[Any] = Field(default_factory=list)
    system: str | None = None
    stream: bool = False
    include_usage: bool = False
    max_tokens: int | None = None

    def to_payload(self) -> dict[str, Any]:
        messages = list(self.messages)
        if self.system:
            messages.insert(0, {"role": "system", "content": self.system})
        payload: dict[str, Any] = {"model": self.model, "messages": messages}
        if self.max_tokens is not None:
            payload["max_tokens"] = self.max_tokens
        if self.stream:
            payload["stream"] = True
            if self.include_usage:
                payload["stream_options"] = {"include_usage": True}
        return payload


class TranscriptionRequest(BaseModel):
    model: str
    filename: str
    content_type: str = "application/octet-stream"
    audio: bytes = b""

    def to_multipart(self) -> tuple[dict[str, str], dict[str, tuple[str, bytes, str]]]:
        data = {"model": self.model}
        files = {"file": (self.filename, self.audio, self.content_type)}
        return data, files
