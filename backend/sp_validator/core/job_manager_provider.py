import asyncio
from functools import partial
from pathlib import Path
from typing import Optional

from sp_validator.core.config import settings
from sp_validator.core.database import db_factory
from sp_validator.services.job_handlers import ValidationJobHandler, WebhookJobHandler
from sp_validator.services.job_handlers.validation import VALIDATION_QUEUE
from sp_validator.services.job_handlers.webhook import WEBHOOK_QUEUE
from sp_validator.services.job_manager import JobManager
from sp_validator.services.probes.azure_provider import azure_provider_factory
from sp_validator.services.probes.executor import ProbeExecutor, generate_storage_account_name
from sp_validator.services.probes.provider import ProviderFactory
from sp_validator.services.webhook_sender import WebhookDeliveryEngine

job_manager: Optional[JobManager] = None
_handlers_registered = False
_initialization_lock = asyncio.Lock()


def build_probe_executor(provider_factory: ProviderFactory = azure_provider_factory) -> ProbeExecutor:
    return ProbeExecutor(
        provider_factory,
        cleanup_enabled=settings.CLEANUP_ENABLED,
        test_files_dir=Path(settings.TEST_FILES_DIR),
        default_resource_group=settings.DEFAULT_RESOURCE_GROUP,
        default_location=settings.DEFAULT_LOCATION,
        default_test_files=settings.DEFAULT_TEST_FILES,
        name_generator=partial(generate_storage_account_name, settings.STORAGE_ACCOUNT_PREFIX),
    )


def build_webhook_engine(session_factory) -> WebhookDeliveryEngine:
    return WebhookDeliveryEngine(
        session_factory,
        max_retries=settings.WEBHOOK_RETRY_COUNT,
        timeout_seconds=settings.WEBHOOK_TIMEOUT_SECONDS,
        backoff_base=settings.WEBHOOK_BACKOFF_BASE_SECONDS,
        backoff_cap=settings.WEBHOOK_BACKOFF_CAP_SECONDS,
        response_body_limit=settings.WEBHOOK_RESPONSE_BODY_LIMIT,
    )


async def configure_job_manager(
    manager: JobManager,
    *,
    executor: ProbeExecutor,
    engine: WebhookDeliveryEngine,
) -> JobManager:
    """Declare both queues and register their handlers on ``manager``."""
    manager.configure_queue(
        VALIDATION_QUEUE,
        workers=settings.VALIDATION_WORKERS,
        backoff_base=settings.VALIDATION_BACKOFF_BASE_SECONDS,
        backoff_cap=settings.VALIDATION_BACKOFF_CAP_SECONDS,
    )
    manager.configure_queue(
        WEBHOOK_QUEUE,
        workers=settings.WEBHOOK_WORKERS,
        backoff_base=settings.WEBHOOK_BACKOFF_BASE_SECONDS,
        backoff_cap=settings.WEBHOOK_BACKOFF_CAP_SECONDS,
    )
    await manager.register_handler(
        ValidationJobHandler(
            executor,
            webhook_max_attempts=settings.WEBHOOK_JOB_MAX_ATTEMPTS,
            webhook_timeout_seconds=settings.WEBHOOK_JOB_TIMEOUT_SECONDS,
        )
    )
    await manager.register_handler(WebhookJobHandler(engine))
    return manager


async def initialize_job_manager(start_workers: bool = True) -> JobManager:
    """Initialize (and optionally start) the job manager singleton."""
    async with _initialization_lock:
        return await _ensure_job_manager(start_workers)


async def shutdown_job_manager() -> None:
    """Shutdown the job manager if it has been started."""
    if job_manager:
        await job_manager.shutdown()


async def get_job_manager() -> JobManager:
    async with _initialization_lock:
        return await _ensure_job_manager(start_workers=True)


async def _ensure_job_manager(start_workers: bool) -> JobManager:
    global job_manager, _handlers_registered
    if job_manager is None:
        job_manager = JobManager(db_factory.session_factory, poll_interval=settings.JOB_POLL_INTERVAL_SECONDS)
    if not _handlers_registered:
        await configure_job_manager(
            job_manager,
            executor=build_probe_executor(),
            engine=build_webhook_engine(db_factory.session_factory),
        )
        _handlers_registered = True
    if start_workers:
        await job_manager.start()
    return job_manager
