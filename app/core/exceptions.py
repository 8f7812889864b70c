"""Custom application exceptions."""


class AppException(Exception):
    """Base application exception."""

    def __init__(self, message: str, status_code: int = 500):
        """Initialize exception with message and status code."""
        self.message = message
        self.status_code = status_code
        super().__init__(self.message)


class NotFoundException(AppException):
    """Resource not found exception."""

    def __init__(self, message: str = "Resource not found"):
        """Initialize with 404 status code."""
        super().__init__(message, status_code=404)


class UnauthorizedException(AppException):
    """Unauthorized access exception."""

    def __init__(self, message: str = "Unauthorized"):
        """Initialize with 401 status code."""
        super().__init__(message, status_code=401)


class BadRequestException(AppException):
    """Bad request exception."""

    def __init__(self, message: str = "Bad request"):
        """Initialize with 400 status code."""
        super().__init__(message, status_code=400)


class ServiceUnavailableException(AppException):
    """Upstream dependency unavailable."""

    def __init__(self, message: str = "Service unavailable"):
        """Initialize with 503 status code."""
        super().__init__(message, status_code=503)


class GuardRedirectException(AppException):
    """Raised by the route guard when the caller must be sent elsewhere."""

    def __init__(self, location: str, message: str = "Redirect required"):
        """Initialize with 307 status code and target location."""
        self.location = location
        super().__init__(message, status_code=307)


# Identity provider errors


class IdentityProviderError(Exception):
    """Base error raised by identity provider clients."""

    def __init__(self, message: str, code: str | None = None):
        """Initialize with provider message and optional provider error code."""
        self.message = message
        self.code = code
        super().__init__(message)


class InvalidCredentialsError(IdentityProviderError):
    """Email/password pair rejected by the provider."""


class InvalidCodeError(IdentityProviderError):
    """Second-factor code rejected or expired."""


class ChallengeExpiredError(IdentityProviderError):
    """The pending sign-in attempt no longer exists at the provider."""


class IdentityUnavailableError(IdentityProviderError):
    """Provider could not be reached or answered with a server error."""


# User sync errors


class SyncError(Exception):
    """Base error for user sync failures."""


class SyncUnavailableError(SyncError):
    """Transient sync failure; the call may be retried."""


class SyncRejectedError(SyncError):
    """Permanent sync failure, e.g. unknown identity or missing role."""

    def __init__(self, message: str, status_code: int = 400):
        """Initialize with the status code reported by the sync action."""
        self.status_code = status_code
        super().__init__(message)


# Retry errors


class RetryExhaustedError(Exception):
    """All retry attempts failed."""

    def __init__(self, attempts: int, last_error: BaseException):
        """Keep the attempt count and the final underlying error."""
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"Gave up after {attempts} attempts: {last_error!s}")


class RetryCancelledError(Exception):
    """The retry loop was cancelled through its cancellation token."""
