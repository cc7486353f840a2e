from fastapi import HTTPException

from app.services.exceptions import (
    ConflictError,
    IncompleteUsageError,
    InvalidTransitionError,
    MissingBillingIdentityError,
    NotFoundError,
    ServiceError,
    ValidationFailure,
)

_STATUS_BY_ERROR = (
    (NotFoundError, 404),
    (ConflictError, 409),
    (ValidationFailure, 400),
    (InvalidTransitionError, 400),
    (MissingBillingIdentityError, 400),
    (IncompleteUsageError, 400),
)


def http_error(exc: ServiceError) -> HTTPException:
    """Translate a service failure into the HTTP error returned to the admin UI."""

    for error_type, status_code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return HTTPException(status_code=status_code, detail=str(exc))
    return HTTPException(status_code=502, detail=str(exc))
