"""
Application exceptions and error handling.

Grading-engine errors carry an HTTP status so routes can let them propagate;
failures local to one question never use these, they end up on the answer
record instead.
"""

from typing import Any, Dict, Optional

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from grader.config import logger


class GraderError(Exception):
    """Base exception for grading-engine errors"""

    def __init__(
        self,
        message: str,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        super().__init__(self.message)


class ActivityNotFound(GraderError):
    def __init__(self, activity_id: str):
        super().__init__(
            message=f"Activity '{activity_id}' not found",
            status_code=status.HTTP_404_NOT_FOUND,
            details={"activity_id": activity_id}
        )


class SubmissionNotFound(GraderError):
    def __init__(self, submission_id: str):
        super().__init__(
            message=f"Submission '{submission_id}' not found",
            status_code=status.HTTP_404_NOT_FOUND,
            details={"submission_id": submission_id}
        )


class QuestionNotFound(GraderError):
    def __init__(self, question_id: str):
        super().__init__(
            message=f"Question '{question_id}' is not part of this activity",
            status_code=status.HTTP_404_NOT_FOUND,
            details={"question_id": question_id}
        )


class SubmissionRejected(GraderError):
    """Raised when a lifecycle transition is refused before anything is written"""

    def __init__(self, message: str, status_code: int = status.HTTP_409_CONFLICT, **details):
        super().__init__(message=message, status_code=status_code, details=details)


class InvalidActivity(GraderError):
    """Raised when an activity breaks a structural invariant"""

    def __init__(self, errors: list, warnings: Optional[list] = None):
        super().__init__(
            message="Activity failed validation: " + "; ".join(errors),
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            details={"errors": errors, "warnings": warnings or []}
        )


class JudgeFailure(Exception):
    """The AI judge could not produce a usable score. Never fatal for a submit."""


async def grader_error_handler(request: Request, exc: GraderError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    else:
        logger.info(f"{request.method} {request.url.path} rejected: {exc.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, **({"details": exc.details} if exc.details else {})}
    )


def register_error_handlers(app: FastAPI):
    app.add_exception_handler(GraderError, grader_error_handler)
