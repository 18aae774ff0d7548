"""Shared FastAPI dependencies."""

from fastapi import Request

from ballotflow.services.runtime import PipelineServices


def get_services(request: Request) -> PipelineServices:
    """The PipelineServices built at startup."""
    return request.app.state.services
