"""Pydantic schemas for job handler results and dispatcher runs."""

import uuid
from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field

from ballotflow.schemas.payloads import InsertResultItem, TokenUsage


class AnalyzeResult(BaseModel):
    kind: Literal["analyze"] = "analyze"
    text: str
    usage: TokenUsage = Field(default_factory=TokenUsage)


class StructureResult(BaseModel):
    kind: Literal["structure"] = "structure"
    text: str
    usage: TokenUsage = Field(default_factory=TokenUsage)


class InsertResult(BaseModel):
    kind: Literal["insert"] = "insert"
    hidden: bool
    inserted: int
    results: list[InsertResultItem] = Field(default_factory=list)


class WorkbookResult(BaseModel):
    kind: Literal["workbook"] = "workbook"
    workbook_base64: str
    filename: str
    summary: dict[str, Any] = Field(default_factory=dict)


class NotificationResult(BaseModel):
    kind: Literal["notification"] = "notification"
    message_id: str
    recipients: list[str] = Field(default_factory=list)


JobResult = Annotated[
    AnalyzeResult | StructureResult | InsertResult | WorkbookResult | NotificationResult,
    Field(discriminator="kind"),
]


def result_usage(result: JobResult) -> TokenUsage:
    """Token counts reported by an AI stage; empty for local stages."""
    if isinstance(result, AnalyzeResult | StructureResult):
        return result.usage
    return TokenUsage()


class DispatchError(BaseModel):
    job_id: uuid.UUID
    message: str


class DispatcherRunStats(BaseModel):
    attempted: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    rate_limited: int = 0
    stale_resets: int = 0
    errors: list[DispatchError] = Field(default_factory=list)
