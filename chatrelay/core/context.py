"""Per-request runtime context."""

from __future__ import annotations

from dataclasses import dataclass
from time import monotonic


@dataclass(slots=True)
class RequestContext:
    request_id: str
    modality: str
    started_at: float = 0.0
    input_bytes: int = 0
    upstream_status: int | None = None
    outcome: str = "pending"
    error_kind: str | None = None

    def __post_init__(self) -> None:
        if not self.started_at:
            self.started_at = monotonic()
