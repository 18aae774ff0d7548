"""Spreadsheet upload API router."""

import logging
import uuid

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from ballotflow.api.deps import get_services
from ballotflow.db import get_session
from ballotflow.schemas.upload import (
    BatchActionRequest,
    UploadCreatedResponse,
    UploadCreateRequest,
    UploadProgress,
    UploadSummary,
)
from ballotflow.services.queue import (
    create_spreadsheet_upload,
    get_upload_progress,
    retry_batch,
    skip_batch,
)
from ballotflow.services.runtime import PipelineServices

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("", status_code=201)
def create_upload(
    body: UploadCreateRequest,
    db: Session = Depends(get_session),
    services: PipelineServices = Depends(get_services),
) -> UploadCreatedResponse:
    """Queue spreadsheet rows for analysis. Rows are grouped into batches by city, state and position."""
    upload = create_spreadsheet_upload(
        db,
        services.settings,
        rows=body.rows,
        uploader_email=body.uploader_email,
        original_filename=body.original_filename,
        force_hidden=body.force_hidden,
        notifier=services.notifier,
    )
    summary = UploadSummary.model_validate(upload.summary_json or {})
    return UploadCreatedResponse(
        upload_id=upload.id,
        status=upload.status.value,
        batch_count=summary.batch_count,
        summary=summary,
    )


@router.get("/{upload_id}")
def upload_progress(upload_id: uuid.UUID, db: Session = Depends(get_session)) -> UploadProgress:
    progress = get_upload_progress(db, upload_id)
    if progress is None:
        raise HTTPException(status_code=404, detail=f"Upload {upload_id} not found")
    return progress


@router.post("/{upload_id}/batches/{batch_id}")
def batch_action(
    upload_id: uuid.UUID,
    batch_id: uuid.UUID,
    body: BatchActionRequest,
    db: Session = Depends(get_session),
    services: PipelineServices = Depends(get_services),
) -> UploadProgress:
    """Retry or skip one batch, or just re-read its progress. Returns the upload's progress."""
    if body.action == "retry":
        retry_batch(db, upload_id, batch_id, notifier=services.notifier)
    elif body.action == "skip":
        skip_batch(db, upload_id, batch_id, body.reason, notifier=services.notifier)
    progress = get_upload_progress(db, upload_id)
    if progress is None:
        raise HTTPException(status_code=404, detail=f"Upload {upload_id} not found")
    return progress
