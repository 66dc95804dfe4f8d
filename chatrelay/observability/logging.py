"""Structured request outcome logging."""

from __future__ import annotations

from time import monotonic

from chatrelay.core.context import RequestContext
from chatrelay.util.logger import logger


def log_outcome(ctx: RequestContext, status_code: int) -> None:
    elapsed_ms = int((monotonic() - ctx.started_at) * 1000)
    logger.info(
        "event=request_outcome request_id=%s modality=%s status=%s outcome=%s error_kind=%s "
        "input_bytes=%s upstream_status=%s elapsed_ms=%s",
        ctx.request_id,
        ctx.modality,
        status_code,
        ctx.outcome,
        ctx.error_kind or "-",
        ctx.input_bytes,
        ctx.upstream_status if ctx.upstream_status is not None else "-",
        elapsed_ms,
    )
