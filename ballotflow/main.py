"""FastAPI application entry point."""

import logging

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s", datefmt="%H:%M:%S")

# Apply the same format to Uvicorn's loggers so they also show timestamps.
for _uvicorn_logger in ("uvicorn", "uvicorn.error", "uvicorn.access"):
    _log = logging.getLogger(_uvicorn_logger)
    _log.handlers.clear()
    _handler = logging.StreamHandler()
    _handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s", datefmt="%H:%M:%S"))
    _log.addHandler(_handler)
    _log.propagate = False

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from ballotflow.config import load_settings
from ballotflow.db import create_tables
from ballotflow.schemas.upload import ErrorResponse
from ballotflow.services.runtime import build_services

load_dotenv()

logger = logging.getLogger(__name__)

app = FastAPI(title="Ballotflow")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
def startup() -> None:
    settings = load_settings()
    create_tables()
    app.state.services = build_services(settings)
    logger.info("ballotflow started (env=%s, gemini=%s)", settings.app_env, settings.gemini_enabled)


@app.exception_handler(Exception)
async def _global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Import here to avoid circular imports at module level.
    from ballotflow.services.errors import (
        BatchActionError,
        ConfigurationError,
        InvalidUploadError,
        NotFoundError,
    )

    if isinstance(exc, NotFoundError):
        return JSONResponse(
            status_code=404,
            content=ErrorResponse(error="not_found", detail=str(exc)).model_dump(),
        )
    if isinstance(exc, BatchActionError):
        return JSONResponse(
            status_code=409,
            content=ErrorResponse(error="invalid_batch_action", detail=str(exc)).model_dump(),
        )
    if isinstance(exc, ConfigurationError):
        return JSONResponse(
            status_code=503,
            content=ErrorResponse(error="not_configured", detail=str(exc)).model_dump(),
        )
    if isinstance(exc, InvalidUploadError):
        return JSONResponse(
            status_code=422,
            content=ErrorResponse(error="invalid_request", detail=str(exc)).model_dump(),
        )
    logger.exception("unhandled error on %s", request.url.path)
    return JSONResponse(
        status_code=500,
        content=ErrorResponse(error="internal_error", detail=str(exc)).model_dump(),
    )


# Import and register routers after app is defined to avoid circular imports.
from ballotflow.api import dispatch, uploads  # noqa: E402

app.include_router(uploads.router, prefix="/uploads", tags=["uploads"])
app.include_router(dispatch.router, prefix="/cron", tags=["cron"])
