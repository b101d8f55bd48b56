"""
HTTP-facing errors and the handler for failed outbound calls
"""

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.responses import JSONResponse
from loguru import logger

from newsletter.services.errors import ServiceError


class APIError(HTTPException):
    """Error returned to API clients with a fixed status code"""

    code = status.HTTP_400_BAD_REQUEST
    default_detail = "Bad request"

    def __init__(self, detail: str | None = None):
        super().__init__(status_code=self.code, detail=detail or self.default_detail)


class ValidationError(APIError):
    """Query or body values the route cannot use"""

    code = 422
    default_detail = "Invalid request parameters"


class NotFoundError(APIError):
    code = status.HTTP_404_NOT_FOUND
    default_detail = "Resource not found"


class ConflictError(APIError):
    """Write that would duplicate existing records"""

    code = status.HTTP_409_CONFLICT
    default_detail = "Resource already exists"


class ServiceNotConfiguredError(APIError):
    """An optional integration has no credentials"""

    code = status.HTTP_503_SERVICE_UNAVAILABLE
    default_detail = "Service not configured"


async def service_error_handler(request: Request, exc: ServiceError) -> JSONResponse:
    """Map failed outbound calls (including exhausted retries) to 502."""
    logger.error(f"{request.method} {request.url.path} failed: {exc}")
    return JSONResponse(
        status_code=status.HTTP_502_BAD_GATEWAY,
        content={"status": "error", "message": str(exc)},
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(ServiceError, service_error_handler)
