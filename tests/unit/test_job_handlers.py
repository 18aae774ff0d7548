"""Unit tests for the per-stage job handlers."""

import base64
import json
from datetime import datetime
from unittest.mock import MagicMock

import pytest
from sqlalchemy import select
from sqlalchemy.orm import Session

from ballotflow.config import Settings
from ballotflow.models.election import Candidate, Election
from ballotflow.models.job import AttemptStatus, JobAttempt, JobType, PipelineJob
from ballotflow.schemas.jobs import (
    AnalyzeResult,
    InsertResult,
    NotificationResult,
    StructureResult,
    WorkbookResult,
)
from ballotflow.schemas.payloads import TokenUsage
from ballotflow.services.errors import OutputParseError, PipelineError
from ballotflow.services.job_handlers import (
    JOB_HANDLERS,
    JobContext,
    build_mock_outputs,
    handle_analyze,
    handle_insert,
    handle_notification,
    handle_structure,
    handle_workbook,
    limit_rows,
)
from ballotflow.services.json_repair import parse_model_output
from ballotflow.services.prompts import PromptBundle
from ballotflow.services.queue import create_spreadsheet_upload

ROWS = [
    {"municipality": "Austin", "state": "TX", "position": "Clerk", "firstName": "Bo",
     "lastName": "Diaz", "year": "2026", "email": "bo@example.org"},
]
PROMPTS = PromptBundle(analyze="ANALYZE PROMPT", structure="STRUCTURE PROMPT", structure_schema={"type": "OBJECT"})


def _ctx(settings: Settings, job, db=None, generator=None, notifier=None) -> JobContext:
    return JobContext(
        db=db or MagicMock(),
        job=job,
        settings=settings,
        prompts=PROMPTS,
        generator=generator or MagicMock(),
        notifier=notifier or MagicMock(),
    )


def _mock_job(rows=None, analysis=None, structured=None) -> MagicMock:
    job = MagicMock()
    job.type = JobType.ANALYZE
    job.batch.raw_rows = ROWS if rows is None else rows
    job.batch.analysis_json = analysis
    job.batch.structured_json = structured
    return job


def _generator(text: str) -> MagicMock:
    generator = MagicMock()
    generator.generate.return_value = {
        "text": text,
        "usage": TokenUsage(request_tokens=120, response_tokens=80, total_tokens=200),
    }
    return generator


def _real_job(db: Session, settings: Settings, job_type: JobType) -> PipelineJob:
    upload = create_spreadsheet_upload(
        db, settings, rows=ROWS, uploader_email="clerk@example.org", original_filename="b.xlsx"
    )
    return db.scalars(
        select(PipelineJob).where(PipelineJob.upload_id == upload.id, PipelineJob.type == job_type)
    ).one()


class TestHelpers:
    def test_limit_rows_caps_and_tolerates_bad_input(self) -> None:
        assert limit_rows([{"a": 1}, {"a": 2}, {"a": 3}], 2) == [{"a": 1}, {"a": 2}]
        assert limit_rows(None, 5) == []

    def test_mock_outputs_use_first_row(self) -> None:
        analysis, structured = build_mock_outputs(ROWS)

        assert json.loads(analysis)[0]["candidates"][0]["name"] == "Bo Diaz"
        election = json.loads(structured)["elections"][0]["election"]
        assert election["date"] == "11/05/2026"
        assert election["city"] == "Austin"

    def test_every_job_type_has_a_handler(self) -> None:
        assert set(JOB_HANDLERS) == set(JobType)


class TestHandleAnalyze:
    def test_mock_mode_skips_the_model(self, settings: Settings) -> None:
        generator = MagicMock()
        result = handle_analyze(_ctx(settings, _mock_job(), generator=generator), "m1")

        assert isinstance(result, AnalyzeResult)
        assert result.usage.status_code == 200
        generator.generate.assert_not_called()
        assert parse_model_output(result.text)[0]["election"]["city"] == "Austin"

    def test_sends_prompt_with_limited_rows(self, settings: Settings) -> None:
        settings.gemini_enabled = True
        settings.max_rows = 1
        generator = _generator('[{"election": {}}]')
        rows = ROWS + [dict(ROWS[0], firstName="Second")]

        result = handle_analyze(_ctx(settings, _mock_job(rows=rows), generator=generator), "m1")

        model, parts = generator.generate.call_args.args
        assert model == "m1"
        assert parts[0].startswith("ANALYZE PROMPT\n\nElection details input (JSON rows):\n")
        assert "Second" not in parts[0]
        assert result.usage.request_tokens == 120

    def test_requires_a_model_when_enabled(self, settings: Settings) -> None:
        settings.gemini_enabled = True
        with pytest.raises(PipelineError) as exc_info:
            handle_analyze(_ctx(settings, _mock_job()), None)
        assert exc_info.value.retryable is False

    def test_empty_batch_is_not_retryable(self, settings: Settings) -> None:
        with pytest.raises(PipelineError) as exc_info:
            handle_analyze(_ctx(settings, _mock_job(rows=[])), "m1")
        assert exc_info.value.retryable is False


class TestHandleStructure:
    def test_requires_analysis(self, settings: Settings) -> None:
        with pytest.raises(PipelineError):
            handle_structure(_ctx(settings, _mock_job(analysis=None)), "m1")

    def test_sends_analysis_rows_and_schema(self, settings: Settings) -> None:
        settings.gemini_enabled = True
        generator = _generator('{"elections": []}')
        job = _mock_job(analysis=[{"election": {"city": "Austin"}}])

        result = handle_structure(_ctx(settings, job, generator=generator), "m2")

        assert isinstance(result, StructureResult)
        _, parts = generator.generate.call_args.args
        assert parts[0] == "STRUCTURE PROMPT"
        assert parts[1].startswith("\n\nAttached data (from previous step):\n")
        assert '"city": "Austin"' in parts[1]
        assert parts[2].startswith("\n\nOriginal spreadsheet rows:\n")
        assert generator.generate.call_args.kwargs["response_schema"] == {"type": "OBJECT"}

    def test_opaque_analysis_text_is_passed_through(self, settings: Settings) -> None:
        settings.gemini_enabled = True
        generator = _generator("{}")
        handle_structure(_ctx(settings, _mock_job(analysis="free text"), generator=generator), "m2")
        assert generator.generate.call_args.args[1][1].endswith("free text")

    def test_mock_mode_returns_structured_payload(self, settings: Settings) -> None:
        result = handle_structure(_ctx(settings, _mock_job(analysis=[{}])), "m2")
        assert json.loads(result.text)["elections"][0]["candidates"][0]["email"] == "bo@example.org"


class TestHandleInsert:
    def test_invalid_payload_is_an_output_parse_error(self, settings: Settings) -> None:
        job = _mock_job(structured={"elections": [{"election": {"title": "x"}}]})
        with pytest.raises(OutputParseError):
            handle_insert(_ctx(settings, job), None)

    def test_unparsed_text_is_an_output_parse_error(self, settings: Settings) -> None:
        with pytest.raises(OutputParseError):
            handle_insert(_ctx(settings, _mock_job(structured="not json")), None)

    def test_seeds_hidden_elections_and_candidates(self, db: Session, settings: Settings) -> None:
        job = _real_job(db, settings, JobType.INSERT)
        _, structured = build_mock_outputs(ROWS)
        job.batch.structured_json = json.loads(structured)

        result = handle_insert(_ctx(settings, job, db=db), None)

        assert isinstance(result, InsertResult)
        assert result.hidden is True
        assert result.inserted == 1
        item = result.results[0]
        assert item.candidate_slugs == ["bo-diaz"]
        assert item.candidate_emails == ["bo@example.org"]
        assert item.election_results_url == f"https://app.example.org/results?electionID={item.election_id}"
        election = db.get(Election, item.election_id)
        assert election.hidden is True
        assert election.uploaded_by == "clerk@example.org"
        assert db.scalars(select(Candidate)).one().slug == "bo-diaz"


class TestHandleWorkbook:
    def test_builds_xlsx_for_the_upload(self, db: Session, settings: Settings) -> None:
        upload_job = _real_job(db, settings, JobType.INSERT)
        job = MagicMock()
        job.upload = upload_job.upload

        result = handle_workbook(_ctx(settings, job, db=db), None)

        assert isinstance(result, WorkbookResult)
        assert result.filename == f"ballotflow-upload-{upload_job.upload_id}.xlsx"
        assert base64.b64decode(result.workbook_base64).startswith(b"PK")
        assert result.summary["total_rows"] == 1


class TestHandleNotification:
    def test_missing_workbook_is_not_retryable(self, db: Session, settings: Settings) -> None:
        job = _real_job(db, settings, JobType.INSERT)
        with pytest.raises(PipelineError) as exc_info:
            handle_notification(_ctx(settings, job, db=db), None)
        assert exc_info.value.retryable is False

    def test_sends_latest_workbook_through_notifier(self, db: Session, settings: Settings) -> None:
        job = _real_job(db, settings, JobType.INSERT)
        workbook = PipelineJob(upload_id=job.upload_id, type=JobType.WORKBOOK)
        db.add(workbook)
        db.flush()
        db.add(
            JobAttempt(
                job_id=workbook.id,
                status=AttemptStatus.SUCCEEDED,
                completed_at=datetime(2026, 3, 2, 12, 0),
                response_body={"workbook_base64": "UEsD", "filename": "out.xlsx"},
            )
        )
        db.commit()
        notifier = MagicMock()
        notifier.send_final.return_value = ("msg-7", ["clerk@example.org"])

        result = handle_notification(_ctx(settings, job, db=db, notifier=notifier), None)

        assert result == NotificationResult(message_id="msg-7", recipients=["clerk@example.org"])
        kwargs = notifier.send_final.call_args.kwargs
        assert kwargs == {"filename": "out.xlsx", "workbook_base64": "UEsD"}
