class ServiceError(Exception):
    """Base exception for service layer failures."""

    def __init__(self, message: str, *, cause: Exception | None = None):
        super().__init__(message)
        self.cause = cause


class DownstreamServiceError(ServiceError):
    """Raised when an external service returns an error response."""

    def __init__(self, message: str, status_code: int | None = None, *, cause: Exception | None = None):
        super().__init__(message, cause=cause)
        self.status_code = status_code

    @property
    def retryable(self) -> bool:
        # Transport failures carry no status code.
        if self.status_code is None:
            return True
        return self.status_code == 429 or self.status_code >= 500


class ValidationFailure(ServiceError):
    """Raised when caller supplied input is rejected before any side effect."""


class NotFoundError(ServiceError):
    """Raised when a requested record does not exist."""


class ConflictError(ServiceError):
    """Raised when an operation would break a referential constraint."""


class InvalidTransitionError(ServiceError):
    """Raised on an illegal wizard step or invoice status change."""


class MissingBillingIdentityError(ServiceError):
    """Raised when a customer has no invoicing provider id and auto-create is off."""


class IncompleteUsageError(ServiceError):
    """Raised when usage for a customer could not be fully metered."""


class UpstreamAuthenticationError(ServiceError):
    """Raised when an external provider rejects our credentials."""
