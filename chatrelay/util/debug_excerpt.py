"""Truncated previews of user text for DEBUG logs.

Message bodies, prompts and transcripts never reach INFO logs; when DEBUG is on
the handlers log a short head of the text so an operator can correlate a
failing request with what the user sent.
"""

from __future__ import annotations

import logging

from chatrelay.util.logger import logger

DEFAULT_EXCERPT_MAX_LEN = 100


def excerpt_for_debug(text: object, max_len: int = DEFAULT_EXCERPT_MAX_LEN) -> str:
    if text is None:
        return ""
    value = " ".join(str(text).split())
    if len(value) <= max_len:
        return value
    return f"{value[:max_len]} ... [truncated, total {len(value)} chars]"


def debug_log_excerpt(label: str, text: object, *, request_id: str, max_len: int = DEFAULT_EXCERPT_MAX_LEN) -> None:
    if not logger.isEnabledFor(logging.DEBUG):
        return
    logger.debug("%s request_id=%s excerpt=%s", label, request_id, excerpt_for_debug(text, max_len=max_len))
