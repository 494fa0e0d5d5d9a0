"""
Error responses. Every failure leaves the API as

    {"error": {"code": "...", "message": "...", "details": {...}}}

Engine errors (MarketError) already carry a status and a code and are
rendered by the same handler. APIError is for what the HTTP layer finds
on its own: auth, rate limits, path/body mismatches.
"""

import logging

from fastapi import Request
from fastapi.responses import JSONResponse

from marketcore.errors import MarketError


logger = logging.getLogger(__name__)

_SCALARS = (str, int, float, bool, type(None))


class APIError(Exception):

    def __init__(self, status: int, code: str, message: str,
                 details: dict | None = None):
        super().__init__(message)
        self.status = status
        self.code = code
        self.message = message
        self.details = details or {}

    def response(self) -> JSONResponse:
        body = {"code": self.code, "message": self.message,
                "details": self.details}
        return JSONResponse(status_code=self.status, content={"error": body})


def translate_engine_error(exc: MarketError) -> APIError:
    """Server-side failures keep their details in the log only."""
    if exc.status >= 500:
        return APIError(exc.status, exc.code, exc.message)
    public = {k: v for k, v in exc.details.items() if isinstance(v, _SCALARS)}
    return APIError(exc.status, exc.code, exc.message, public)


async def api_error_handler(request: Request, exc: Exception) -> JSONResponse:
    error = translate_engine_error(exc) if isinstance(exc, MarketError) else exc
    if error.status >= 500:
        logger.error("%s %s failed: %s (%s)", request.method, request.url.path,
                     error.code, error.message)
    return error.response()
