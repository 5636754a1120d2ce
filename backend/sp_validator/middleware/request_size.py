"""
Request size enforcement middleware.

Rejects oversized request bodies early (HTTP 413) to protect memory/CPU.
"""
import structlog
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse

logger = structlog.get_logger()


class RequestSizeMiddleware(BaseHTTPMiddleware):
    """
    Rejects requests whose body exceeds ``max_size`` bytes.

    Content-Length is checked before the body is read; mutating requests
    without one are measured after reading.
    """

    def __init__(self, app, max_size: int = 10 * 1024 * 1024):
        super().__init__(app)
        self.max_size = max_size

    def _too_large(self, request: Request, size: int) -> JSONResponse:
        limit_mb = self.max_size / (1024 * 1024)
        logger.warning(
            "Request size exceeded",
            path=request.url.path,
            size_bytes=size,
            limit_bytes=self.max_size,
            client=request.client.host if request.client else "unknown",
        )
        return JSONResponse(
            status_code=413,
            content={
                "error": f"Request body too large. Maximum size is {limit_mb:.1f}MB",
                "type": "payload_too_large",
            },
        )

    async def dispatch(self, request: Request, call_next):
        content_length = request.headers.get("Content-Length")
        if content_length:
            try:
                size = int(content_length)
            except ValueError:
                size = None
            if size is not None and size > self.max_size:
                return self._too_large(request, size)
        elif request.method in ("POST", "PUT", "PATCH"):
            body = await request.body()
            if len(body) > self.max_size:
                return self._too_large(request, len(body))

        return await call_next(request)
