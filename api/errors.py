"""Error taxonomy for similarity queries and dismissals, and its HTTP mapping."""
from __future__ import annotations

from typing import Any, Optional

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse


class SimilarityServiceError(Exception):
    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    error: str = "Internal server error"
    retryable: bool = False

    def __init__(self, message: Optional[str] = None, *, details: Any = None) -> None:
        super().__init__(message or self.error)
        self.message = message or self.error
        self.details = details


class ValidationError(SimilarityServiceError):
    """Malformed or missing request fields."""

    status_code = status.HTTP_400_BAD_REQUEST
    error = "Invalid request"


class Unauthorized(SimilarityServiceError):
    status_code = status.HTTP_401_UNAUTHORIZED
    error = "Unauthorized"


class NotFound(SimilarityServiceError):
    """A target or suggested bug report is absent or not visible to the caller."""

    status_code = status.HTTP_404_NOT_FOUND
    error = "Bug report not found"

    def __init__(self, which: str = "target", message: Optional[str] = None) -> None:
        if message is None:
            message = "Suggested bug not found" if which == "suggested" else "Bug report not found"
        super().__init__(message)
        self.which = which


class IndexUnavailable(SimilarityServiceError):
    error = "Failed to find similar bugs"
    retryable = True


class StoreUnavailable(SimilarityServiceError):
    error = "Bug store unavailable"
    retryable = True


class Cancelled(SimilarityServiceError):
    """The caller's deadline expired before the query finished."""

    status_code = status.HTTP_504_GATEWAY_TIMEOUT
    error = "Similarity query cancelled"


def error_body(exc: SimilarityServiceError) -> dict[str, Any]:
    body: dict[str, Any] = {"error": exc.message}
    if exc.details is not None:
        body["details"] = exc.details
    return body


async def _service_error_handler(request: Request, exc: SimilarityServiceError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=error_body(exc))


async def _request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    fields = sorted({str(err["loc"][-1]) for err in exc.errors() if err.get("loc")})
    message = "Invalid or missing fields"
    if fields:
        message = f"{message}: {', '.join(fields)}"
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"error": message})


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(SimilarityServiceError, _service_error_handler)
    app.add_exception_handler(RequestValidationError, _request_validation_handler)
