"""
Helpers shared by the endpoint decorators.
"""

from typing import Any, Awaitable, Callable

from fastapi import Request, Response
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

Handler = Callable[..., Awaitable[Any]]


def get_user_id(request: Request) -> str:
    """Authenticated user id for the request, or ``anonymous``."""
    user_id = getattr(request.state, "user_id", None)
    return str(user_id) if user_id else "anonymous"


def find_request(handler: Handler, args: tuple, kwargs: dict) -> Request:
    request = kwargs.get("request")
    if isinstance(request, Request):
        return request
    for arg in args:
        if isinstance(arg, Request):
            return arg
    raise TypeError(
        f"{handler.__qualname__} must accept a 'request: Request' parameter "
        "to be used with this decorator"
    )


def as_response(result: Any) -> Response:
    """Endpoint return value as a Response, JSON-encoding plain values."""
    if isinstance(result, Response):
        return result
    return JSONResponse(content=jsonable_encoder(result))
