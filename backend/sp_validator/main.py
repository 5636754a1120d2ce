import logging
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI

from sp_validator import __version__
from sp_validator.api.v1.api import api_router
from sp_validator.api.v1.endpoints import health
from sp_validator.core.config import settings
from sp_validator.core.database import db_factory
from sp_validator.core.errors import register_exception_handlers
from sp_validator.core.job_manager_provider import (
    initialize_job_manager,
    shutdown_job_manager,
)
from sp_validator.middleware import (
    RequestIdMiddleware,
    RequestLoggingMiddleware,
    RequestSizeMiddleware,
)

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(message)s",
)
sql_log_level = getattr(logging, settings.SQL_LOG_LEVEL.upper(), logging.WARNING)
logging.getLogger("sqlalchemy.engine").setLevel(sql_log_level)
# The Azure SDK logs every HTTP request at INFO
logging.getLogger("azure").setLevel(logging.WARNING)

# Configure structlog: JSON in production, console in dev
if settings.is_dev:
    renderer = structlog.dev.ConsoleRenderer()
else:
    renderer = structlog.processors.JSONRenderer()

structlog.configure(
    processors=[
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.format_exc_info,
        renderer,
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
)

logger = structlog.get_logger()


def _enforce_encryption_key() -> None:
    key = settings.ENCRYPTION_MASTER_KEY.strip() if settings.ENCRYPTION_MASTER_KEY else ""
    if key:
        if len(key) < 32:
            logger.warning("ENCRYPTION_MASTER_KEY is shorter than 32 characters", length=len(key))
        return
    if settings.is_dev:
        logger.warning("ENCRYPTION_MASTER_KEY is empty; credentials will be stored unencrypted")
        return
    message = "ENCRYPTION_MASTER_KEY environment variable must be set before starting the API"
    logger.critical(message)
    raise RuntimeError(message)


_enforce_encryption_key()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create tables in dev, start the job workers, and stop them on shutdown."""
    if settings.is_dev:
        await db_factory.create_all()
        logger.info("Database tables ensured")
    await initialize_job_manager()
    logger.info("Job workers started", environment=settings.APP_ENV)
    try:
        yield
    finally:
        logger.info("Shutting down job workers")
        await shutdown_job_manager()
        await db_factory.dispose()
        logger.info("Application shutdown completed")


app = FastAPI(
    title=settings.APP_NAME,
    version=__version__,
    lifespan=lifespan,
    docs_url=f"{settings.API_PREFIX}/docs",
    openapi_url=f"{settings.API_PREFIX}/openapi.json",
)

app.add_middleware(RequestSizeMiddleware, max_size=settings.MAX_REQUEST_SIZE)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(RequestIdMiddleware)

register_exception_handlers(app)

app.include_router(api_router)
app.include_router(health.router, tags=["health"])
