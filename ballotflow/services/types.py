"""Shared typed return types for backend services."""

from datetime import datetime
from typing import Any, TypedDict

from ballotflow.schemas.payloads import TokenUsage


class BatchGroup(TypedDict):
    key: str
    municipality: str
    state: str
    position: str
    rows: list[dict[str, Any]]
    estimated_analyze_tokens: int
    estimated_structure_tokens: int


class RateReservation(TypedDict):
    allowed: bool
    window_start: datetime
    retry_at: datetime | None
    reason: str | None  # rpm | tpm | rpd | batchTokens | conflict


class Generation(TypedDict):
    text: str
    usage: TokenUsage


class WorkbookBuild(TypedDict):
    filename: str
    content: bytes
    summary: dict[str, Any]
