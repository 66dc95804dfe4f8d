"""Project error hierarchy.

Every failure a request can hit is one of four kinds. Handlers raise these and
the request pipeline maps each one to an HTTP status and a JSON envelope once,
at the boundary.
"""

from __future__ import annotations

from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    CONFIG = "config_error"
    PARSE = "parse_error"
    MISSING_INPUT = "missing_input"
    UPSTREAM = "upstream_error"


class ChatRelayError(Exception):
    """Base error."""

    kind: ErrorKind
    default_status_code: int = 500

    def __init__(self, message: str, details: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    @property
    def status_code(self) -> int:
        return self.default_status_code


class ConfigError(ChatRelayError):
    """Raised when the provider credential is not configured."""

    kind = ErrorKind.CONFIG
    default_status_code = 500


class ParseError(ChatRelayError):
    """Raised when the request body cannot be decoded for its content type."""

    kind = ErrorKind.PARSE
    default_status_code = 400


class InputTooLarge(ParseError):
    """Raised by the upload cap hook when a file exceeds the configured limit."""

    default_status_code = 413


class MissingInput(ChatRelayError):
    """Raised when a required field (file, message list) is absent."""

    kind = ErrorKind.MISSING_INPUT
    default_status_code = 400


class UpstreamError(ChatRelayError):
    """Raised when the provider call fails.

    ``status`` is the provider-reported HTTP status, or ``None`` when the call
    never produced a response (DNS, connect, timeout).
    """

    kind = ErrorKind.UPSTREAM

    def __init__(
        self,
        message: str,
        *,
        status: int | None = None,
        provider_type: str = "api_error",
        details: str | None = None,
        body: Any = None,
    ) -> None:
        super().__init__(message, details=details)
        self.status = status
        self.provider_type = provider_type
        self.body = body

    @property
    def status_code(self) -> int:
        if self.status is not None and 400 <= self.status <= 599:
            return self.status
        return 500
