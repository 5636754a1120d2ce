import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Tuple

import sqlalchemy as sa
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import sessionmaker

from sp_validator.core.redaction import redact_sensitive_data, redact_string
from sp_validator.models.job import Job, JobAttempt, JobStatus
from sp_validator.services.backoff import backoff_delay

logger = logging.getLogger(__name__)


class HandlerRegistrationError(Exception):
    """Raised when attempting to register or enqueue for an invalid handler."""


class JobTimeoutError(Exception):
    """Raised when a job exceeds its wall-clock timeout."""


@dataclass
class QueueConfig:
    name: str
    workers: int = 1
    backoff_base: float = 2.0
    backoff_cap: float = 60.0


class BaseJobHandler:
    """Abstract base class for background job handlers."""

    job_type: str = "base"
    queue: str = "default"
    display_name: str = "Base Job"
    description: str = ""

    async def validate_payload(self, payload: Dict[str, Any]) -> None:
        """Validate the payload before job creation."""
        return None

    async def execute(
        self,
        context: "JobExecutionContext",
    ) -> Dict[str, Any]:
        """Execute the job and return the result payload."""
        raise NotImplementedError("Handlers must implement execute()")

    async def cleanup(self, context: "JobExecutionContext") -> None:
        """Cleanup resources after an attempt completes or fails."""
        return None

    async def on_exhausted(self, context: "JobExecutionContext", error_message: str) -> None:
        """Called once when the job has failed its last allowed attempt."""
        return None


class JobExecutionContext:
    """Execution context provided to job handlers."""

    def __init__(
        self,
        manager: "JobManager",
        job_id: str,
        payload: Dict[str, Any],
        attempt_number: int,
        max_attempts: int,
    ):
        self._manager = manager
        self.job_id = job_id
        self.payload = payload
        self.attempt_number = attempt_number
        self.max_attempts = max_attempts

    @property
    def is_final_attempt(self) -> bool:
        return self.attempt_number >= self.max_attempts

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        """Provide a managed database session for handler use."""
        async with self._manager.session() as session:
            yield session

    async def enqueue_job(self, **kwargs: Any) -> Tuple[Job, bool]:
        """Enqueue a follow-up job on the same manager."""
        return await self._manager.enqueue_job(**kwargs)


class JobManager:
    """Database-backed job queue drained by in-process worker pools."""

    def __init__(
        self,
        session_factory: sessionmaker,
        *,
        poll_interval: float = 1.0,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._session_factory = session_factory
        self._poll_interval = poll_interval
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._handlers: Dict[str, BaseJobHandler] = {}
        self._queues: Dict[str, QueueConfig] = {}
        self._worker_tasks: List[asyncio.Task] = []
        self._stop_event = asyncio.Event()
        self._lock = asyncio.Lock()

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        """Yield a managed async session."""
        session: AsyncSession = self._session_factory()
        try:
            yield session
        finally:
            await session.close()

    def configure_queue(
        self,
        name: str,
        *,
        workers: int = 1,
        backoff_base: float = 2.0,
        backoff_cap: float = 60.0,
    ) -> QueueConfig:
        """Declare a named queue with its worker pool size and retry backoff."""
        config = QueueConfig(name=name, workers=max(workers, 1), backoff_base=backoff_base, backoff_cap=backoff_cap)
        self._queues[name] = config
        return config

    def _queue_config(self, name: str) -> QueueConfig:
        return self._queues.get(name) or self.configure_queue(name)

    async def register_handler(self, handler: BaseJobHandler) -> None:
        """Register a job handler for a job type."""
        if not handler.job_type or handler.job_type in ("", "base"):
            raise HandlerRegistrationError("Handlers must define a non-empty job_type")
        self._handlers[handler.job_type] = handler
        self._queue_config(handler.queue)
        logger.info("Registered job handler %s on queue %s", handler.job_type, handler.queue)

    def get_handler(self, job_type: str) -> Optional[BaseJobHandler]:
        return self._handlers.get(job_type)

    @property
    def is_running(self) -> bool:
        return any(not task.done() for task in self._worker_tasks)

    async def start(self) -> None:
        """Recover interrupted jobs and start one worker pool per queue."""
        async with self._lock:
            if self.is_running:
                return
            await self._recover_stale_jobs()
            self._stop_event.clear()
            for config in self._queues.values():
                for index in range(config.workers):
                    self._worker_tasks.append(
                        asyncio.create_task(
                            self._worker_loop(config.name, f"{config.name}-{index}"),
                            name=f"job-worker-{config.name}-{index}",
                        )
                    )
            logger.info("Started %d job workers across %d queues", len(self._worker_tasks), len(self._queues))

    async def shutdown(self) -> None:
        """Stop all worker loops."""
        async with self._lock:
            if not self._worker_tasks:
                return
            logger.info("Stopping job manager workers")
            self._stop_event.set()
            for task in self._worker_tasks:
                task.cancel()
            for task in self._worker_tasks:
                try:
                    await task
                except asyncio.CancelledError:
                    pass
            self._worker_tasks = []

    async def _recover_stale_jobs(self) -> None:
        """Return jobs left running by a dead process to the queue."""
        now = self._clock()
        exhausted: List[Tuple[str, str, Dict[str, Any], int, int]] = []
        async with self.session() as session:
            result = await session.execute(
                sa.select(Job).where(Job.status == JobStatus.RUNNING.value)
            )
            stale_jobs: List[Job] = list(result.scalars().all())
            if not stale_jobs:
                return

            logger.warning("Recovering %d stale running jobs", len(stale_jobs))
            for job in stale_jobs:
                message = "Worker interrupted before completion"
                if job.attempts >= job.max_attempts:
                    job.mark_failed(message, now=now)
                    exhausted.append((job.id, job.job_type, dict(job.payload or {}), job.attempts, job.max_attempts))
                else:
                    job.requeue(message, run_at=now, now=now)

            await session.execute(
                sa.update(JobAttempt)
                .where(
                    JobAttempt.job_id.in_([job.id for job in stale_jobs]),
                    JobAttempt.status == JobStatus.RUNNING.value,
                )
                .values(status=JobStatus.FAILED.value, completed_at=now, updated_at=now, error_message="Worker interrupted")
            )
            await session.commit()

        for job_id, job_type, payload, attempts, max_attempts in exhausted:
            handler = self._handlers.get(job_type)
            if handler:
                context = JobExecutionContext(self, job_id, payload, attempts, max_attempts)
                await self._run_exhausted_hook(handler, context, "Worker interrupted before completion")

    async def enqueue_job(
        self,
        *,
        job_type: str,
        payload: Dict[str, Any],
        max_attempts: int = 3,
        timeout_seconds: Optional[float] = None,
        idempotency_key: Optional[str] = None,
        scheduled_for: Optional[datetime] = None,
    ) -> Tuple[Job, bool]:
        """
        Persist a job and return ``(job, created)``.

        An existing job with the same idempotency key is returned unchanged,
        whatever its status, so each key produces at most one job.
        """
        handler = self._handlers.get(job_type)
        if handler is None:
            raise HandlerRegistrationError(f"No handler registered for job_type={job_type}")
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")

        await handler.validate_payload(payload)

        if idempotency_key:
            existing = await self._find_by_idempotency_key(idempotency_key)
            if existing:
                logger.info("Returning existing job %s for idempotency key %s", existing.id, idempotency_key)
                return existing, False

        now = self._clock()
        async with self.session() as session:
            job = Job(
                queue=handler.queue,
                job_type=job_type,
                status=JobStatus.QUEUED.value,
                payload=payload,
                attempts=0,
                max_attempts=max_attempts,
                timeout_seconds=timeout_seconds,
                scheduled_for=scheduled_for or now,
                idempotency_key=idempotency_key,
                created_at=now,
                updated_at=now,
            )
            session.add(job)
            try:
                await session.commit()
            except IntegrityError:
                # Lost a race with a concurrent enqueue for the same key
                await session.rollback()
                existing = await self._find_by_idempotency_key(idempotency_key)
                if existing is None:
                    raise
                return existing, False
            await session.refresh(job)
            session.expunge(job)

        logger.info("Enqueued job %s of type %s on queue %s", job.id, job_type, handler.queue)
        logger.debug("Job %s payload: %s", job.id, redact_sensitive_data(payload))
        return job, True

    async def _find_by_idempotency_key(self, idempotency_key: str) -> Optional[Job]:
        async with self.session() as session:
            result = await session.execute(sa.select(Job).where(Job.idempotency_key == idempotency_key))
            job = result.scalars().first()
            if job:
                session.expunge(job)
            return job

    async def get_job(self, job_id: str) -> Optional[Job]:
        async with self.session() as session:
            job = await session.get(Job, job_id)
            if job:
                await session.refresh(job)
                session.expunge(job)
            return job

    async def list_jobs(self, *, queue: Optional[str] = None, status: Optional[str] = None) -> List[Job]:
        async with self.session() as session:
            query = sa.select(Job)
            if queue:
                query = query.where(Job.queue == queue)
            if status:
                query = query.where(Job.status == status)
            result = await session.execute(query.order_by(Job.created_at.asc()))
            jobs = list(result.scalars().all())
            for job in jobs:
                session.expunge(job)
            return jobs

    async def run_next(self, queue: str, worker_id: str = "inline") -> Optional[Job]:
        """Claim and execute one ready job from ``queue``; return it or None."""
        job = await self._claim_next_job(queue)
        if not job:
            return None
        await self._execute_job(job, worker_id)
        return job

    async def run_until_idle(self, queue: Optional[str] = None, max_jobs: int = 100) -> int:
        """Execute ready jobs inline until none remain; returns the count executed."""
        queues = [queue] if queue else list(self._queues)
        executed = 0
        progressed = True
        while progressed and executed < max_jobs:
            progressed = False
            for name in queues:
                if await self.run_next(name):
                    executed += 1
                    progressed = True
        return executed

    async def _worker_loop(self, queue: str, worker_id: str) -> None:
        """Continuously fetch and execute jobs from one queue."""
        try:
            while not self._stop_event.is_set():
                job = await self._claim_next_job(queue)
                if not job:
                    await asyncio.sleep(self._poll_interval)
                    continue
                await self._execute_job(job, worker_id)
        except asyncio.CancelledError:
            logger.info("Job worker %s cancelled", worker_id)
            raise
        except Exception as exc:  # pragma: no cover
            logger.exception("Job worker %s crashed: %s", worker_id, exc)
            raise

    async def _claim_next_job(self, queue: str) -> Optional[Job]:
        """Claim the next ready job on ``queue`` for execution."""
        now = self._clock()
        async with self.session() as session:
            result = await session.execute(
                sa.select(Job)
                .where(
                    Job.queue == queue,
                    Job.status == JobStatus.QUEUED.value,
                    Job.scheduled_for <= now,
                )
                .order_by(Job.scheduled_for.asc(), Job.created_at.asc())
                .limit(1)
            )
            job = result.scalars().first()
            if not job:
                return None

            update_result = await session.execute(
                sa.update(Job)
                .where(Job.id == job.id, Job.status == JobStatus.QUEUED.value)
                .values(
                    status=JobStatus.RUNNING.value,
                    started_at=now,
                    updated_at=now,
                    attempts=Job.attempts + 1,
                )
            )
            if update_result.rowcount == 0:
                await session.rollback()
                return None

            await session.commit()
            await session.refresh(job)
            session.expunge(job)
            return job

    async def _execute_job(self, job: Job, worker_id: str) -> None:
        """Execute the claimed job using the registered handler."""
        handler = self._handlers.get(job.job_type)
        if not handler:
            logger.error("No handler registered for job type %s", job.job_type)
            await self._mark_job_failed(job.id, "Handler not registered")
            return

        attempt_number = job.attempts
        await self._create_attempt(job.id, attempt_number, worker_id)
        context = JobExecutionContext(
            manager=self,
            job_id=job.id,
            payload=dict(job.payload or {}),
            attempt_number=attempt_number,
            max_attempts=job.max_attempts,
        )

        try:
            result_payload = await self._run_with_timeout(handler, context, job.timeout_seconds)
        except Exception as exc:
            message = redact_string(str(exc) or exc.__class__.__name__)
            logger.warning(
                "Job %s (%s) attempt %d/%d failed: %s",
                job.id,
                job.job_type,
                attempt_number,
                job.max_attempts,
                message,
            )
            await self._complete_attempt(
                job_id=job.id,
                attempt_number=attempt_number,
                status=JobStatus.FAILED.value,
                error_message=message,
            )
            await self._handle_failure(job.id, handler, context, message)
        else:
            await self._complete_attempt(
                job_id=job.id,
                attempt_number=attempt_number,
                status=JobStatus.COMPLETED.value,
            )
            await self._mark_job_completed(job.id, result_payload)
        finally:
            try:
                await handler.cleanup(context)
            except Exception:
                logger.exception("Cleanup failed for job %s", job.id)

    async def _run_with_timeout(
        self,
        handler: BaseJobHandler,
        context: JobExecutionContext,
        timeout_seconds: Optional[float],
    ) -> Optional[Dict[str, Any]]:
        if not timeout_seconds:
            return await handler.execute(context)
        try:
            return await asyncio.wait_for(handler.execute(context), timeout=timeout_seconds)
        except asyncio.TimeoutError as exc:
            raise JobTimeoutError(f"Job exceeded timeout of {timeout_seconds:g}s") from exc

    async def _handle_failure(
        self,
        job_id: str,
        handler: BaseJobHandler,
        context: JobExecutionContext,
        message: str,
    ) -> None:
        """Requeue with backoff while attempts remain, else fail and fire the exhaustion hook."""
        now = self._clock()
        async with self.session() as session:
            job = await session.get(Job, job_id)
            if not job:
                return
            if job.attempts < job.max_attempts:
                config = self._queue_config(job.queue)
                delay = backoff_delay(job.attempts, config.backoff_base, config.backoff_cap)
                job.requeue(message, run_at=now + timedelta(seconds=delay), now=now)
                await session.commit()
                logger.info("Requeued job %s in %.1fs (attempt %d/%d)", job_id, delay, job.attempts, job.max_attempts)
                return
            job.mark_failed(message, now=now)
            await session.commit()

        logger.error("Job %s exhausted %d attempts: %s", job_id, context.max_attempts, message)
        await self._run_exhausted_hook(handler, context, message)

    async def _run_exhausted_hook(self, handler: BaseJobHandler, context: JobExecutionContext, message: str) -> None:
        try:
            await handler.on_exhausted(context, message)
        except Exception:
            logger.exception("Exhaustion hook failed for job %s", context.job_id)

    async def _create_attempt(self, job_id: str, attempt_number: int, worker_id: str) -> None:
        now = self._clock()
        async with self.session() as session:
            session.add(
                JobAttempt(
                    job_id=job_id,
                    attempt_number=attempt_number,
                    status=JobStatus.RUNNING.value,
                    started_at=now,
                    worker_id=worker_id,
                )
            )
            await session.commit()

    async def _complete_attempt(
        self,
        *,
        job_id: str,
        attempt_number: int,
        status: str,
        error_message: Optional[str] = None,
    ) -> None:
        now = self._clock()
        async with self.session() as session:
            result = await session.execute(
                sa.select(JobAttempt).where(
                    JobAttempt.job_id == job_id,
                    JobAttempt.attempt_number == attempt_number,
                )
            )
            attempt = result.scalars().first()
            if not attempt:
                return
            attempt.status = status
            attempt.completed_at = now
            attempt.updated_at = now
            attempt.error_message = error_message
            await session.commit()

    async def _mark_job_completed(self, job_id: str, result_payload: Optional[Dict[str, Any]]) -> None:
        async with self.session() as session:
            job = await session.get(Job, job_id)
            if not job:
                return
            job.mark_completed(result_payload, now=self._clock())
            await session.commit()
        logger.info("Job %s completed", job_id)

    async def _mark_job_failed(self, job_id: str, message: str) -> None:
        async with self.session() as session:
            job = await session.get(Job, job_id)
            if not job:
                return
            job.mark_failed(message, now=self._clock())
            await session.commit()
