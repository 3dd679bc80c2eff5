from __future__ import annotations

import logging
from typing import Dict, Optional

from fastapi import Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)

INTERNAL_ERROR_MESSAGE = "An internal error occurred."


class APIError(Exception):
    """
    Error raised by handlers. `internal` is logged, `external` is what the client sees.
    """

    def __init__(
        self,
        err: Optional[BaseException],
        status_code: int,
        external: Optional[str] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> None:
        self.err = err
        self.status_code = int(status_code)
        self.internal = str(err) if err is not None else "unknown error"
        self.external = external if external is not None else self.internal
        self.headers = headers
        super().__init__(self.internal)


class ErrPassThroughToClient(APIError):
    def __init__(self, err: Optional[BaseException], status_code: int = status.HTTP_400_BAD_REQUEST) -> None:
        super().__init__(err, status_code)


class ErrInternal(APIError):
    def __init__(self, err: Optional[BaseException]) -> None:
        super().__init__(err, status.HTTP_500_INTERNAL_SERVER_ERROR, external=INTERNAL_ERROR_MESSAGE)


class ErrForbidden(APIError):
    def __init__(self, err: Optional[BaseException]) -> None:
        super().__init__(err, status.HTTP_403_FORBIDDEN)


class ErrUnauthorized(APIError):
    def __init__(self, err: Optional[BaseException]) -> None:
        super().__init__(err, status.HTTP_401_UNAUTHORIZED, headers={"WWW-Authenticate": "Bearer"})


async def handle_api_error(request: Request, exc: APIError) -> JSONResponse:
    extra = {"path": request.url.path, "method": request.method, "status": exc.status_code}
    if exc.status_code >= 500:
        logger.error("api error: %s", exc.internal, extra=extra)
    else:
        logger.info("api error: %s", exc.internal, extra=extra)
    return JSONResponse(status_code=exc.status_code, content={"error": exc.external}, headers=exc.headers)


async def handle_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    parts = []
    for e in exc.errors():
        loc = ".".join(str(p) for p in e.get("loc", ()) if p not in ("body", "query", "path"))
        parts.append(f"{loc}: {e.get('msg')}" if loc else str(e.get("msg")))
    message = "invalid request: " + "; ".join(parts)
    logger.info(message, extra={"path": request.url.path, "method": request.method, "status": 400})
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"error": message})


def install_error_handlers(app) -> None:
    app.add_exception_handler(APIError, handle_api_error)
    app.add_exception_handler(RequestValidationError, handle_validation_error)


__all__ = [
    "APIError",
    "ErrPassThroughToClient",
    "ErrInternal",
    "ErrForbidden",
    "ErrUnauthorized",
    "INTERNAL_ERROR_MESSAGE",
    "install_error_handlers",
]
