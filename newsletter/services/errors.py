"""
Service layer exceptions.
"""


class ServiceError(Exception):
    """Base exception for service layer errors."""

    def __init__(
        self,
        message: str,
        service_id: str | None = None,
        status_code: int | None = None,
    ):
        self.service_id = service_id
        self.status_code = status_code
        super().__init__(message)


class TransientServiceError(ServiceError):
    """Failure that may succeed if the request is repeated."""

    pass


class RequestTimeoutError(TransientServiceError):
    """Request timed out."""

    def __init__(self, service_id: str, timeout: float):
        self.timeout = timeout
        super().__init__(
            f"Request to service '{service_id}' timed out after {timeout}s",
            service_id=service_id,
        )


class RateLimitError(TransientServiceError):
    """Remote rate limit exceeded (HTTP 429)."""

    def __init__(self, service_id: str, retry_after: float | None = None):
        self.retry_after = retry_after
        msg = f"Rate limit exceeded for service '{service_id}'"
        if retry_after:
            msg += f", retry after {retry_after}s"
        super().__init__(msg, service_id=service_id, status_code=429)


class ServiceUnavailableError(TransientServiceError):
    """Service is temporarily unavailable."""

    pass


class RetryExhaustedError(ServiceError):
    """All retry attempts failed."""

    def __init__(self, attempts: int, last_error: BaseException | None):
        self.attempts = attempts
        self.last_error = last_error
        last_message = str(last_error) if last_error is not None else "unknown"
        super().__init__(
            f"Operation failed after {attempts} attempts. Last error: {last_message}",
            service_id=getattr(last_error, "service_id", None),
        )
