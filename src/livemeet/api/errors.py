"""Maps meeting domain errors onto HTTP responses.

Registered once on the app so endpoints can let MeetingError propagate.
"""

from __future__ import annotations

from fastapi import Request, status
from fastapi.responses import JSONResponse

from src.livemeet.meetings.errors import (
    ExternalServiceError,
    ForbiddenError,
    InvalidInputError,
    InvalidStateError,
    MeetingError,
    NotFoundError,
)

ERROR_STATUS_CODES: dict[type[MeetingError], int] = {
    NotFoundError: status.HTTP_404_NOT_FOUND,
    ForbiddenError: status.HTTP_403_FORBIDDEN,
    InvalidStateError: status.HTTP_409_CONFLICT,
    InvalidInputError: status.HTTP_422_UNPROCESSABLE_ENTITY,
    ExternalServiceError: status.HTTP_502_BAD_GATEWAY,
}


def status_code_for(exc: MeetingError) -> int:
    for error_type in type(exc).__mro__:
        if error_type in ERROR_STATUS_CODES:
            return ERROR_STATUS_CODES[error_type]
    return status.HTTP_400_BAD_REQUEST


async def meeting_error_handler(request: Request, exc: MeetingError) -> JSONResponse:
    return JSONResponse(
        status_code=status_code_for(exc),
        content={"detail": str(exc), "error": type(exc).__name__},
    )
