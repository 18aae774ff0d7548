"""Per-stage job handlers, keyed by job type.

A handler reads what its stage needs from the job's batch or upload, does the
work (a Gemini call, a database seed, a workbook build, an e-mail) and returns
a typed result. Persisting that result is the queue's job, not the handler's.
"""

import base64
import json
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.orm import Session

from ballotflow.config import Settings
from ballotflow.models.job import AttemptStatus, JobAttempt, JobType, PipelineJob
from ballotflow.models.upload import SpreadsheetUpload
from ballotflow.schemas.jobs import (
    AnalyzeResult,
    InsertResult,
    JobResult,
    NotificationResult,
    StructureResult,
    WorkbookResult,
)
from ballotflow.schemas.payloads import StructuredPayload, TokenUsage
from ballotflow.services.errors import OutputParseError, PipelineError
from ballotflow.services.gemini import GeminiGenerator
from ballotflow.services.notifications import UploadNotifier
from ballotflow.services.prompts import PromptBundle
from ballotflow.services.seeding import seed_structured_data
from ballotflow.services.workbook import build_upload_workbook

logger = logging.getLogger(__name__)


@dataclass
class JobContext:
    db: Session
    job: PipelineJob
    settings: Settings
    prompts: PromptBundle
    generator: GeminiGenerator
    notifier: UploadNotifier


Handler = Callable[[JobContext, str | None], JobResult]

_MOCK_USAGE = TokenUsage(request_tokens=0, response_tokens=0, total_tokens=0, status_code=200)


def limit_rows(rows: Any, max_rows: int) -> list[dict[str, Any]]:
    if not isinstance(rows, list):
        return []
    return rows[: max(max_rows, 1)]


def build_mock_outputs(rows: list[dict[str, Any]]) -> tuple[str, str]:
    """Deterministic (analysis, structured) texts used when Gemini is disabled."""
    first = rows[0] if rows else {}
    city = first.get("municipality") or "Sample City"
    state = first.get("state") or "Sample State"
    year = str(first.get("year") or "2025")[-4:]
    name = f"{first.get('firstName') or 'Jane'} {first.get('lastName') or 'Doe'}".strip()
    role = first.get("position") or "Candidate"

    analysis = [
        {
            "election": {
                "title": "Mock Election",
                "type": "LOCAL",
                "date": f"11/05/{year}",
                "city": city,
                "state": state,
                "number_of_seats": "N/A",
                "description": "Mock analysis generated locally.",
            },
            "candidates": [
                {
                    "name": name,
                    "currentRole": role,
                    "party": "N/A",
                    "linkedin_url": "N/A",
                    "campaign_website_url": "N/A",
                    "bio": "Mock candidate generated locally.",
                    "key_policies": ["Community engagement", "Transparency"],
                    "home_city": city,
                    "hometown_state": state,
                    "additional_notes": "N/A",
                    "sources": ["Local import test"],
                }
            ],
        }
    ]
    structured = {
        "elections": [
            {
                "election": {
                    "title": "Mock Election (Structured)",
                    "type": "LOCAL",
                    "date": f"11/05/{year}",
                    "city": city,
                    "state": state,
                    "number_of_seats": "N/A",
                    "description": "Structured mock output (Gemini disabled).",
                },
                "candidates": [
                    {
                        "name": name,
                        "currentRole": role,
                        "party": "",
                        "linkedin_url": "",
                        "campaign_website_url": "",
                        "bio": "Mock candidate for local testing.",
                        "key_policies": ["Transparency", "Community"],
                        "home_city": city,
                        "hometown_state": state,
                        "additional_notes": "",
                        "sources": ["Local mock"],
                        "email": first.get("email") or None,
                    }
                ],
            }
        ]
    }
    return json.dumps(analysis, indent=2), json.dumps(structured, indent=2)


def _require_model(model: str | None, job: PipelineJob) -> str:
    if not model:
        raise PipelineError(f"{job.type} job {job.id} needs a model", status=400)
    return model


def _batch_rows(ctx: JobContext) -> list[dict[str, Any]]:
    batch = ctx.job.batch
    if batch is None:
        raise PipelineError(f"{ctx.job.type} job {ctx.job.id} has no batch", status=400)
    return limit_rows(batch.raw_rows, ctx.settings.max_rows)


def _upload(ctx: JobContext) -> SpreadsheetUpload:
    upload = ctx.job.upload
    if upload is None:
        raise PipelineError(f"{ctx.job.type} job {ctx.job.id} has no upload", status=400)
    return upload


def handle_analyze(ctx: JobContext, model: str | None) -> JobResult:
    rows = _batch_rows(ctx)
    if not rows:
        raise PipelineError(f"batch {ctx.job.batch_id} has no rows to analyze", status=400)
    if not ctx.settings.gemini_enabled:
        analysis, _ = build_mock_outputs(rows)
        return AnalyzeResult(text=analysis, usage=_MOCK_USAGE)

    prompt = f"{ctx.prompts.analyze}\n\nElection details input (JSON rows):\n{json.dumps(rows, indent=2)}\n"
    generation = ctx.generator.generate(
        _require_model(model, ctx.job), [prompt], use_search=ctx.settings.use_search
    )
    return AnalyzeResult(text=generation["text"], usage=generation["usage"])


def handle_structure(ctx: JobContext, model: str | None) -> JobResult:
    rows = _batch_rows(ctx)
    analysis = ctx.job.batch.analysis_json if ctx.job.batch else None
    if not analysis:
        raise PipelineError(f"structure job {ctx.job.id} is missing analysis output", status=400)
    if not ctx.settings.gemini_enabled:
        _, structured = build_mock_outputs(rows)
        return StructureResult(text=structured, usage=_MOCK_USAGE)

    analysis_text = analysis if isinstance(analysis, str) else json.dumps(analysis, indent=2)
    parts = [
        ctx.prompts.structure,
        f"\n\nAttached data (from previous step):\n{analysis_text}",
        f"\n\nOriginal spreadsheet rows:\n{json.dumps(rows, indent=2)}",
    ]
    generation = ctx.generator.generate(
        _require_model(model, ctx.job), parts, response_schema=ctx.prompts.structure_schema
    )
    return StructureResult(text=generation["text"], usage=generation["usage"])


def handle_insert(ctx: JobContext, model: str | None) -> JobResult:
    structured = ctx.job.batch.structured_json if ctx.job.batch else None
    if not structured:
        raise PipelineError(f"insert job {ctx.job.id} is missing its structured payload", status=400)
    try:
        if isinstance(structured, str):
            payload = StructuredPayload.model_validate_json(structured)
        else:
            payload = StructuredPayload.model_validate(structured)
    except ValidationError as exc:
        raise OutputParseError(f"structured payload is invalid: {exc.error_count()} error(s)") from exc

    upload = _upload(ctx)
    hidden = upload.force_hidden
    results = seed_structured_data(
        ctx.db,
        payload,
        uploaded_by=upload.uploader_email or "unknown@ballotflow",
        force_hidden=hidden,
        base_url=ctx.settings.public_app_url,
    )
    logger.info("batch %s: inserted %d election(s)", ctx.job.batch_id, len(results))
    return InsertResult(hidden=hidden, inserted=len(results), results=results)


def handle_workbook(ctx: JobContext, model: str | None) -> JobResult:
    build = build_upload_workbook(ctx.db, _upload(ctx), ctx.settings.public_app_url)
    return WorkbookResult(
        workbook_base64=base64.b64encode(build["content"]).decode("ascii"),
        filename=build["filename"],
        summary=build["summary"],
    )


def _latest_workbook_payload(db: Session, upload_id: Any) -> dict[str, Any]:
    body = db.scalar(
        select(JobAttempt.response_body)
        .join(PipelineJob, PipelineJob.id == JobAttempt.job_id)
        .where(
            PipelineJob.upload_id == upload_id,
            PipelineJob.type == JobType.WORKBOOK,
            JobAttempt.status == AttemptStatus.SUCCEEDED,
        )
        .order_by(JobAttempt.completed_at.desc())
        .limit(1)
    )
    if not isinstance(body, dict) or not body.get("workbook_base64"):
        raise PipelineError(f"workbook attachment unavailable for upload {upload_id}", status=404)
    return body


def handle_notification(ctx: JobContext, model: str | None) -> JobResult:
    upload = _upload(ctx)
    payload = _latest_workbook_payload(ctx.db, upload.id)
    message_id, recipients = ctx.notifier.send_final(
        ctx.db,
        upload,
        filename=payload.get("filename") or f"ballotflow-upload-{upload.id}.xlsx",
        workbook_base64=payload["workbook_base64"],
    )
    return NotificationResult(message_id=message_id, recipients=recipients)


JOB_HANDLERS: dict[JobType, Handler] = {
    JobType.ANALYZE: handle_analyze,
    JobType.STRUCTURE: handle_structure,
    JobType.INSERT: handle_insert,
    JobType.WORKBOOK: handle_workbook,
    JobType.NOTIFICATION: handle_notification,
}
