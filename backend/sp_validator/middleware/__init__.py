from .request_id import RequestIdMiddleware
from .request_logging import RequestLoggingMiddleware
from .request_size import RequestSizeMiddleware

__all__ = ["RequestIdMiddleware", "RequestLoggingMiddleware", "RequestSizeMiddleware"]
