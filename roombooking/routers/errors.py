from datetime import datetime
from typing import Any

from fastapi import HTTPException, status

from ..domain.errors import (
    AuthorizationError,
    BookingError,
    ConflictError,
    NotFoundError,
    TransientStoreError,
    ValidationError,
)
from ..utils.time import to_utc_naive

_STATUS_BY_ERROR: list[tuple[type[BookingError], int]] = [
    (ValidationError, status.HTTP_400_BAD_REQUEST),
    (ConflictError, status.HTTP_409_CONFLICT),
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (AuthorizationError, status.HTTP_403_FORBIDDEN),
    (TransientStoreError, status.HTTP_503_SERVICE_UNAVAILABLE),
]


def to_http_exception(exc: BookingError) -> HTTPException:
    detail: dict[str, Any] = {"reason": exc.reason, "message": exc.message}
    if isinstance(exc, ConflictError) and exc.participant is not None:
        detail["participant"] = exc.participant
    headers = {"Retry-After": "1"} if isinstance(exc, TransientStoreError) else None
    status_code = next(
        (code for error_cls, code in _STATUS_BY_ERROR if isinstance(exc, error_cls)),
        status.HTTP_400_BAD_REQUEST,
    )
    return HTTPException(status_code=status_code, detail=detail, headers=headers)


def to_utc_interval(start: datetime, end: datetime) -> tuple[datetime, datetime]:
    if start.tzinfo is None or end.tzinfo is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="start_time/end_time must have timezone",
        )
    return to_utc_naive(start), to_utc_naive(end)


def audit_failed() -> HTTPException:
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="failed to write audit log")
