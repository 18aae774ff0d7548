"""Cron-triggered dispatcher endpoint."""

import hmac
import logging

from fastapi import APIRouter, Depends, Header, HTTPException

from ballotflow.api.deps import get_services
from ballotflow.db import get_session_factory
from ballotflow.schemas.jobs import DispatcherRunStats
from ballotflow.services.dispatcher import Dispatcher
from ballotflow.services.runtime import PipelineServices

logger = logging.getLogger(__name__)

router = APIRouter()


def _check_secret(services: PipelineServices, authorization: str | None) -> None:
    secret = services.settings.cron_secret
    if not secret:
        return
    if not authorization or not hmac.compare_digest(authorization, f"Bearer {secret}"):
        raise HTTPException(status_code=401, detail="Unauthorized")


@router.api_route("/dispatch", methods=["GET", "POST"])
def run_dispatch(
    max_jobs: int | None = None,
    authorization: str | None = Header(default=None),
    services: PipelineServices = Depends(get_services),
) -> DispatcherRunStats:
    """Run one dispatcher pass over the READY jobs."""
    _check_secret(services, authorization)
    stats = Dispatcher(get_session_factory(), services).run(max_jobs=max_jobs)
    if stats.errors:
        logger.warning("dispatch finished with %d error(s)", len(stats.errors))
    return stats
