"""
Request ID middleware for request correlation.

Propagates the caller's X-Request-ID or mints one, and binds it into the
structlog context so every log line of the request carries it.
"""
import uuid

import structlog
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

REQUEST_ID_HEADER = "X-Request-ID"
MAX_REQUEST_ID_LENGTH = 64


class RequestIdMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER)
        # Reject oversized or odd ids to keep log injection out
        if not request_id or len(request_id) > MAX_REQUEST_ID_LENGTH or not self._is_valid_request_id(request_id):
            request_id = str(uuid.uuid4())

        request.state.request_id = request_id
        structlog.contextvars.bind_contextvars(request_id=request_id)
        try:
            response = await call_next(request)
        finally:
            structlog.contextvars.unbind_contextvars("request_id")

        response.headers[REQUEST_ID_HEADER] = request_id
        return response

    @staticmethod
    def _is_valid_request_id(request_id: str) -> bool:
        # Allow alphanumeric, hyphens, and underscores
        return all(c.isalnum() or c in "-_" for c in request_id)


def get_request_id(request: Request) -> str:
    return getattr(request.state, "request_id", "unknown")
