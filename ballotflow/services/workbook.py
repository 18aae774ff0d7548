"""Build the results workbook attached to an upload's final notification."""

import io
import logging
from collections.abc import Iterable, Sequence
from typing import Any

from openpyxl import Workbook
from sqlalchemy.orm import Session

from ballotflow.models.upload import SpreadsheetUpload
from ballotflow.schemas.payloads import InsertResultItem, RawRow
from ballotflow.schemas.upload import UploadSummary
from ballotflow.services.types import WorkbookBuild

logger = logging.getLogger(__name__)

ROW_HEADERS: list[str] = [
    "",
    "Firstname",
    "",
    "Lastname",
    "",
    "Email",
    "Municipality",
    "state",
    "Position",
    "Year",
    "Candidate Link",
    "Election Link",
]


def _norm(value: str | None) -> str:
    return (value or "").strip().lower()


def _title(value: str) -> str:
    return " ".join(word.capitalize() for word in value.lower().split(" "))


def build_email_link_map(insert_results: Iterable[InsertResultItem], origin: str) -> dict[str, str]:
    """Map each inserted candidate's email to their public profile URL."""
    links: dict[str, str] = {}
    for result in insert_results:
        for slug, email in zip(result.candidate_slugs, result.candidate_emails, strict=False):
            if slug and _norm(email):
                links[_norm(email)] = f"{origin}/candidate/{slug}"
    return links


def build_election_link_map(insert_results: Iterable[InsertResultItem]) -> dict[tuple[str, str], str]:
    links: dict[tuple[str, str], str] = {}
    for result in insert_results:
        if result.election_results_url:
            links.setdefault((_norm(result.city), _norm(result.state)), result.election_results_url)
    return links


def build_row(
    row: dict[str, Any],
    email_links: dict[str, str],
    election_links: dict[tuple[str, str], str],
) -> list[str]:
    r = RawRow.model_validate(row)
    return [
        r.first_name.upper(),
        _title(r.first_name),
        r.last_name.upper(),
        _title(r.last_name),
        r.email.upper(),
        r.email,
        r.municipality.upper(),
        _title(r.state),
        r.position.upper(),
        r.year,
        email_links.get(_norm(r.email), "") if r.email else "",
        election_links.get((_norm(r.municipality), _norm(r.state)), ""),
    ]


def build_workbook_matrix(
    raw_rows: Iterable[dict[str, Any]],
    insert_results: Sequence[InsertResultItem],
    base_url: str,
) -> list[list[str]]:
    """Header row plus one normalised row per spreadsheet row, with profile links filled in."""
    origin = base_url.rstrip("/")
    email_links = build_email_link_map(insert_results, origin)
    election_links = build_election_link_map(insert_results)
    return [list(ROW_HEADERS)] + [build_row(row, email_links, election_links) for row in raw_rows]


def rows_to_workbook_bytes(sheets: Sequence[tuple[str, Sequence[Sequence[Any]]]]) -> bytes:
    """Write each ``(title, rows)`` pair as a worksheet and return the xlsx bytes."""
    wb = Workbook()
    wb.remove(wb.active)
    for title, rows in sheets:
        ws = wb.create_sheet(title=title)
        for row in rows:
            ws.append(list(row))
    buf = io.BytesIO()
    wb.save(buf)
    return buf.getvalue()


def _iso(value: Any) -> str:
    return value.isoformat() if value is not None else ""


def build_upload_workbook(db: Session, upload: SpreadsheetUpload, base_url: str) -> WorkbookBuild:
    """Summary, Results, Batches and Rows sheets for *upload*."""
    db.refresh(upload)
    summary = UploadSummary.model_validate(upload.summary_json or {})
    batches = list(upload.batches)

    summary_sheet: list[list[Any]] = [
        ["Upload ID", str(upload.id)],
        ["Status", upload.status.value],
        ["Queued At", _iso(upload.queued_at)],
        ["Started At", _iso(upload.started_at)],
        ["Completed At", _iso(upload.completed_at)],
        ["Original Filename", upload.original_filename],
        ["Uploader Email", upload.uploader_email],
        ["Force Hidden", "Yes" if upload.force_hidden else "No"],
        ["Batch Count", len(batches)],
        ["Total Rows", summary.total_rows],
    ]
    results_sheet: list[list[Any]] = [
        ["Election ID", "City", "State", "Position", "Hidden", "Candidate Slugs", "Candidate Emails"]
    ]
    for item in summary.insert_results:
        results_sheet.append(
            [
                item.election_id,
                item.city,
                item.state,
                item.position,
                "Yes" if item.hidden else "No",
                ", ".join(item.candidate_slugs),
                ", ".join(email or "" for email in item.candidate_emails),
            ]
        )
    batches_sheet: list[list[Any]] = [
        ["Batch ID", "Municipality", "State", "Position", "Status", "Error", "Rows"]
    ]
    for batch in batches:
        batches_sheet.append(
            [
                str(batch.id),
                batch.municipality,
                batch.state,
                batch.position,
                batch.status.value,
                batch.error_reason or "",
                len(batch.raw_rows or []),
            ]
        )
    raw_rows = [row for batch in batches for row in (batch.raw_rows or [])]
    matrix = build_workbook_matrix(raw_rows, summary.insert_results, base_url)

    content = rows_to_workbook_bytes(
        [
            ("Summary", summary_sheet),
            ("Results", results_sheet),
            ("Batches", batches_sheet),
            ("Rows", matrix),
        ]
    )
    filename = f"ballotflow-upload-{upload.id}.xlsx"
    logger.info("built workbook %s (%d bytes, %d rows)", filename, len(content), len(raw_rows))
    return WorkbookBuild(
        filename=filename, content=content, summary=summary.model_dump(mode="json")
    )
