"""Request handler state machine shared by every modality.

Each request walks the same five states:

1. precondition: the provider key is configured
2. parse: the body decodes for its content type
3. validate: required fields are present, upstream request is built
4. invoke: exactly one provider call
5. adapt: provider output becomes the client envelope

A modality plugs in as a ``Modality`` strategy. Any ``ChatRelayError`` raised
along the way ends the request with one JSON error envelope; nothing else
leaves this module as an unhandled fault.
"""

from __future__ import annotations

import uuid
from abc import ABC, abstractmethod
from typing import Any

from fastapi import Request
from fastapi.responses import JSONResponse, Response, StreamingResponse

from chatrelay.config.settings import settings
from chatrelay.core.context import RequestContext
from chatrelay.core.errors import ChatRelayError, ConfigError, UpstreamError
from chatrelay.observability.logging import log_outcome
from chatrelay.util.logger import logger


def api_key_configured() -> bool:
    return bool((settings.openai_api_key or "").strip())


class Modality(ABC):
    name = "base"
    label = "request"
    requires_api_key = True
    missing_key_message = "OpenAI API key is missing"

    @abstractmethod
    async def parse(self, request: Request, ctx: RequestContext) -> Any:
        raise NotImplementedError

    def validate(self, parsed: Any, ctx: RequestContext) -> Any:
        return parsed

    @abstractmethod
    async def invoke(self, provider: Any, normalized: Any, ctx: RequestContext) -> Any:
        raise NotImplementedError

    @abstractmethod
    def adapt(self, result: Any, ctx: RequestContext) -> Response:
        raise NotImplementedError

    def error_body(self, exc: ChatRelayError) -> dict[str, Any]:
        if isinstance(exc, UpstreamError):
            return {
                "error": "OpenAI API error",
                "details": exc.message,
                "type": exc.provider_type,
                "status": exc.status_code,
            }
        body: dict[str, Any] = {"error": exc.message}
        if exc.details:
            body["details"] = exc.details
        return body

    def unexpected_error_body(self, exc: Exception) -> dict[str, Any]:
        return {"error": f"Failed to process {self.label} request", "details": str(exc)}


class RequestPipeline:
    def __init__(self, modality: Modality, provider: Any = None) -> None:
        self.modality = modality
        self.provider = provider

    async def run(self, request: Request) -> Response:
        ctx = RequestContext(request_id=uuid.uuid4().hex, modality=self.modality.name)
        state = "precondition"
        try:
            if self.modality.requires_api_key and not api_key_configured():
                logger.error("provider api key is missing modality=%s", ctx.modality)
                raise ConfigError(self.modality.missing_key_message)
            state = "parse"
            parsed = await self.modality.parse(request, ctx)
            state = "validate"
            normalized = self.modality.validate(parsed, ctx)
            state = "invoke"
            result = await self.modality.invoke(self.provider, normalized, ctx)
            state = "adapt"
            response = self.modality.adapt(result, ctx)
        except ChatRelayError as exc:
            return self._error_response(exc, ctx, state)
        except Exception as exc:
            logger.exception("unhandled error modality=%s state=%s request_id=%s", ctx.modality, state, ctx.request_id)
            ctx.outcome = "error"
            ctx.error_kind = "internal"
            log_outcome(ctx, 500)
            return JSONResponse(status_code=500, content=self.modality.unexpected_error_body(exc))

        if not isinstance(response, StreamingResponse):
            # streaming outcomes are logged when the stream ends
            ctx.outcome = "success"
            log_outcome(ctx, response.status_code)
        return response

    def _error_response(self, exc: ChatRelayError, ctx: RequestContext, state: str) -> JSONResponse:
        status_code = exc.status_code
        ctx.outcome = "error"
        ctx.error_kind = exc.kind.value
        if isinstance(exc, UpstreamError):
            ctx.upstream_status = exc.status
            logger.warning(
                "upstream failure modality=%s request_id=%s upstream_status=%s type=%s error=%s",
                ctx.modality,
                ctx.request_id,
                exc.status,
                exc.provider_type,
                exc.message,
            )
        else:
            logger.info(
                "request rejected modality=%s request_id=%s state=%s kind=%s error=%s",
                ctx.modality,
                ctx.request_id,
                state,
                exc.kind.value,
                exc.message,
            )
        log_outcome(ctx, status_code)
        return JSONResponse(status_code=status_code, content=self.modality.error_body(exc))
