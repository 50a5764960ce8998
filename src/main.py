import logging
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from src.core.config import settings
from src.core.database import SessionLocal, init_db
from src.core.events import EventBus
from src.core.exceptions import (
    InvalidTransitionError,
    JobNotFoundError,
    StoreError,
    UrlResultNotFoundError,
)
from src.repositories.job_store import JobStore
from src.routers import batches
from src.services.batch_scrape_service import BatchScrapeService

logger = logging.getLogger(__name__)


def configure_logging() -> None:
    logging.basicConfig(
        level=settings.LOG_LEVEL.upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    init_db()
    service = BatchScrapeService(JobStore(SessionLocal, EventBus()))
    await service.aggregator.backfill_missing_statistics()
    await service.recover_interrupted_jobs()
    app.state.batch_service = service
    logger.info("%s %s started", settings.PROJECT_NAME, settings.VERSION)
    try:
        yield
    finally:
        await service.shutdown()


app = FastAPI(title=settings.PROJECT_NAME, version=settings.VERSION, lifespan=lifespan)
app.include_router(batches.router)

# ---------------------------------------------------------------------------
# Middleware: request-id injection
# ---------------------------------------------------------------------------


@app.middleware("http")
async def add_request_id(request: Request, call_next):
    request_id = str(uuid.uuid4())
    request.state.request_id = request_id
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


# ---------------------------------------------------------------------------
# Global exception handlers
# ---------------------------------------------------------------------------


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", "unknown")


def _error(request: Request, status_code: int, error: str, message: str, detail=None):
    return JSONResponse(
        status_code=status_code,
        content={
            "error": error,
            "message": message,
            "detail": detail,
            "request_id": _request_id(request),
        },
    )


@app.exception_handler(RequestValidationError)
@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc):
    return _error(
        request,
        422,
        "validation_error",
        "Request validation failed",
        jsonable_encoder(exc.errors()),
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    return _error(request, exc.status_code, "http_error", str(exc.detail))


@app.exception_handler(JobNotFoundError)
@app.exception_handler(UrlResultNotFoundError)
async def not_found_handler(request: Request, exc: Exception):
    return _error(request, 404, "not_found", str(exc))


@app.exception_handler(InvalidTransitionError)
async def invalid_transition_handler(request: Request, exc: InvalidTransitionError):
    return _error(request, 409, "invalid_transition", str(exc))


@app.exception_handler(StoreError)
async def store_error_handler(request: Request, exc: StoreError):
    logger.error("Store failure", extra={"request_id": _request_id(request)})
    return _error(
        request,
        503,
        "store_error",
        "Storage is unavailable, the change was not applied",
        str(exc) if settings.DEBUG else None,
    )


@app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError):
    return _error(request, 400, "bad_request", str(exc))


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled exception", extra={"request_id": _request_id(request)})
    return _error(
        request,
        500,
        "internal_error",
        "An unexpected error occurred",
        str(exc) if settings.DEBUG else None,
    )


# ---------------------------------------------------------------------------
# Public endpoints (no auth)
# ---------------------------------------------------------------------------


@app.get("/health")
async def health():
    return {"status": "healthy", "service": settings.PROJECT_NAME, "version": settings.VERSION}
