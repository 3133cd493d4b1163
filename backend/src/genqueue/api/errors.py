"""Translation of service errors into HTTP responses."""

from fastapi import HTTPException, status

from genqueue.services.exceptions import (
    InsufficientTickets,
    InvalidParameters,
    InvalidTransition,
    LimitAlreadyExists,
    NotFound,
    QueueError,
)

STATUS_BY_ERROR: list[tuple[type[QueueError], int]] = [
    (NotFound, status.HTTP_404_NOT_FOUND),
    (InsufficientTickets, status.HTTP_402_PAYMENT_REQUIRED),
    (InvalidTransition, status.HTTP_409_CONFLICT),
    (LimitAlreadyExists, status.HTTP_409_CONFLICT),
    (InvalidParameters, status.HTTP_400_BAD_REQUEST),
]


def http_error(error: QueueError) -> HTTPException:
    """Map a QueueError to the HTTPException a route should raise."""
    for error_type, status_code in STATUS_BY_ERROR:
        if isinstance(error, error_type):
            return HTTPException(status_code=status_code, detail=str(error))
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(error))
