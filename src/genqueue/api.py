"""HTTP API: job submission, status polling and balance lookup."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from genqueue import __version__
from genqueue.errors import (
    AdmissionLimitError,
    EnqueueFailure,
    InsufficientBalanceError,
    LedgerInfrastructureFailure,
    NotFoundError,
    ValidationError,
)
from genqueue.scheduler.models import StatusDocument
from genqueue.scheduler.payload import (
    MAX_MINUTES,
    MAX_PROMPT_CHARS,
    MIN_MINUTES,
    POINTS_OF_VIEW,
    SUPPORTED_GENRES,
    SUPPORTED_LANGUAGES,
    VIOLENCE_LEVELS,
)
from genqueue.services import Services
from genqueue.storage.common import utc_now

logger = logging.getLogger(__name__)

OWNER_HEADER = "X-Owner-Id"


class SubmitJobBody(BaseModel):
    payload: dict[str, Any]
    job_id: str | None = Field(default=None, max_length=128)


def create_app(services: Services) -> FastAPI:
    """Build the FastAPI application around already wired services."""

    app = FastAPI(title="genqueue", version=__version__)
    _register_error_handlers(app)

    def owner_id(x_owner_id: str | None = Header(default=None, alias=OWNER_HEADER)) -> str:
        if x_owner_id is None or not x_owner_id.strip():
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail=f"Missing {OWNER_HEADER} header",
            )
        return x_owner_id.strip()

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok", "timestamp": utc_now().isoformat()}

    @app.get("/catalog")
    def catalog() -> dict[str, Any]:
        return {
            "languages": list(SUPPORTED_LANGUAGES),
            "genres": list(SUPPORTED_GENRES),
            "pov": list(POINTS_OF_VIEW),
            "violence_levels": list(VIOLENCE_LEVELS),
            "minutes": {"min": MIN_MINUTES, "max": MAX_MINUTES},
            "max_prompt_chars": MAX_PROMPT_CHARS,
            "credits_per_minute": services.settings.ledger.credits_per_minute,
        }

    @app.post("/jobs")
    def submit_job(body: SubmitJobBody, owner: str = Depends(owner_id)) -> dict[str, Any]:
        receipt = services.admission.submit(
            owner_id=owner,
            payload=body.payload,
            job_id=body.job_id,
        )
        return {
            "job_id": receipt.job_id,
            "status": receipt.status.value,
            "cost": receipt.cost,
            "balance": receipt.balance,
        }

    @app.get("/jobs")
    def list_jobs(
        owner: str = Depends(owner_id),
        limit: int = Query(default=50, ge=1, le=200),
    ) -> dict[str, Any]:
        documents = services.status.list_jobs(owner_id=owner, limit=limit)
        return {"jobs": [_status_json(document) for document in documents]}

    @app.get("/jobs/{job_id}")
    def get_job(job_id: str, owner: str = Depends(owner_id)) -> dict[str, Any]:
        return _status_json(services.status.get_status(job_id=job_id, owner_id=owner))

    @app.get("/balance")
    def balance(
        owner: str = Depends(owner_id),
        limit: int = Query(default=20, ge=1, le=200),
    ) -> dict[str, Any]:
        entries = services.ledger.list_entries(owner_id=owner, limit=limit)
        return {
            "owner_id": owner,
            "balance": services.ledger.get_balance(owner_id=owner),
            "entries": [
                {
                    "entry_id": entry.entry_id,
                    "kind": entry.kind.value,
                    "delta": entry.delta,
                    "balance_after": entry.balance_after,
                    "reason": entry.reason,
                    "job_id": entry.job_id,
                    "created_at": entry.created_at.isoformat(),
                }
                for entry in entries
            ],
        }

    return app


def _register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(RequestValidationError)
    async def _request_invalid(_: Request, error: RequestValidationError) -> JSONResponse:
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"error": "Invalid request body", "details": _jsonable_errors(error)},
        )

    @app.exception_handler(ValidationError)
    async def _invalid(_: Request, error: ValidationError) -> JSONResponse:
        content: dict[str, Any] = {"error": str(error)}
        if error.allowed is not None:
            content["allowed"] = error.allowed
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content=content)

    @app.exception_handler(InsufficientBalanceError)
    async def _insufficient(_: Request, error: InsufficientBalanceError) -> JSONResponse:
        return JSONResponse(
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            content={
                "error": "Insufficient balance",
                "required": error.required,
                "current": error.current,
            },
        )

    @app.exception_handler(AdmissionLimitError)
    async def _limited(_: Request, error: AdmissionLimitError) -> JSONResponse:
        return JSONResponse(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            content={
                "error": str(error),
                "active": error.active,
                "max_allowed": error.max_allowed,
            },
        )

    @app.exception_handler(NotFoundError)
    async def _not_found(_: Request, error: NotFoundError) -> JSONResponse:
        return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content={"error": str(error)})

    @app.exception_handler(EnqueueFailure)
    async def _enqueue_failed(_: Request, error: EnqueueFailure) -> JSONResponse:
        logger.error("Job submission failed: %s", error)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": "Failed to queue job, credits were refunded"},
        )

    @app.exception_handler(LedgerInfrastructureFailure)
    async def _ledger_failed(_: Request, error: LedgerInfrastructureFailure) -> JSONResponse:
        logger.error("Ledger failure during request: %s", error)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": "Ledger unavailable, please retry later"},
        )


def _status_json(document: StatusDocument) -> dict[str, Any]:
    body: dict[str, Any] = {
        "job_id": document.job_id,
        "status": document.status.value,
        "created_at": document.created_at.isoformat(),
        "started_at": document.started_at.isoformat() if document.started_at else None,
        "completed_at": document.completed_at.isoformat() if document.completed_at else None,
    }
    if document.result_ref is not None:
        body["result_ref"] = document.result_ref
    if document.metrics is not None:
        body["metrics"] = document.metrics
    if document.error is not None:
        body["error"] = document.error
    if document.progress is not None:
        body["progress"] = document.progress
    if document.wait_estimate is not None:
        estimate = document.wait_estimate
        body["wait_estimate"] = {
            "position": estimate.position,
            "queue_length": estimate.queue_length,
            "active_jobs": estimate.active_jobs,
            "estimated_seconds": estimate.estimated_seconds,
            "estimated_minutes": estimate.estimated_minutes,
        }
    return body


def _jsonable_errors(error: RequestValidationError) -> list[dict[str, Any]]:
    return [
        {"loc": [str(part) for part in item.get("loc", ())], "msg": str(item.get("msg", ""))}
        for item in error.errors()
    ]
