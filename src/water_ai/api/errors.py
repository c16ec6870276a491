from __future__ import annotations

from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from ..jobs import QueueFullError

QUEUE_FULL_RETRY_AFTER_SECONDS = 30


class JobNotFoundError(LookupError):
    def __init__(self, job_id: str) -> None:
        super().__init__(f"unknown job_id: {job_id}")
        self.job_id = job_id


def value_error_handler(_: Request, exc: ValueError) -> JSONResponse:
    return JSONResponse(
        status_code=422,
        content={"error": {"code": "VALUE_ERROR", "message": str(exc)}},
    )


def validation_error_handler(_: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=422,
        content={
            "error": {"code": "VALIDATION_ERROR", "message": "Invalid request"},
            "details": exc.errors(),
        },
    )


def queue_full_handler(_: Request, exc: QueueFullError) -> JSONResponse:
    return JSONResponse(
        status_code=503,
        content={"error": {"code": "QUEUE_FULL", "message": str(exc)}},
        headers={"Retry-After": str(QUEUE_FULL_RETRY_AFTER_SECONDS)},
    )


def job_not_found_handler(_: Request, exc: JobNotFoundError) -> JSONResponse:
    return JSONResponse(
        status_code=404,
        content={"error": {"code": "JOB_NOT_FOUND", "message": str(exc)}},
    )
