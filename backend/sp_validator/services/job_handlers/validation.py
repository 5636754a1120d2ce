import logging
from typing import Any, Dict, Optional

from sp_validator.models.validation import ValidationRequest, ValidationStatus
from sp_validator.services.job_manager import BaseJobHandler, JobExecutionContext
from sp_validator.services.job_handlers.webhook import WEBHOOK_JOB_TYPE
from sp_validator.services.probes.executor import ProbeExecutor, ProbeReport
from sp_validator.services.validation_store import ValidationStore
from sp_validator.services.webhook_sender import build_webhook_payload

logger = logging.getLogger(__name__)

VALIDATION_JOB_TYPE = "validation.run"
VALIDATION_QUEUE = "validation"


def webhook_idempotency_key(validation_id: str) -> str:
    return f"webhook:{validation_id}"


class ValidationJobHandler(BaseJobHandler):
    """
    Drives one validation request through its lifecycle.

    The record moves to ``in_progress`` before any probe runs, then to
    ``valid`` or ``invalid`` from the probe report. Exceptions escaping the
    probe run are left to the job queue, which reruns the whole sequence and,
    once the attempt budget is spent, calls ``on_exhausted`` to record
    ``failed``. Every terminal transition enqueues at most one webhook job.
    """

    job_type = VALIDATION_JOB_TYPE
    queue = VALIDATION_QUEUE
    display_name = "Credential Validation"
    description = "Probe a service principal's permissions in a subscription."

    def __init__(
        self,
        executor: ProbeExecutor,
        *,
        webhook_max_attempts: int = 3,
        webhook_timeout_seconds: Optional[float] = None,
    ):
        self.executor = executor
        self.webhook_max_attempts = webhook_max_attempts
        self.webhook_timeout_seconds = webhook_timeout_seconds

    async def validate_payload(self, payload: Dict[str, Any]) -> None:
        if not payload.get("validation_id"):
            raise ValueError("validation_id is required")

    async def execute(self, context: JobExecutionContext) -> Dict[str, Any]:
        validation_id: str = context.payload["validation_id"]

        async with context.session() as session:
            record = await ValidationStore(session).mark_in_progress(validation_id)
            if record.is_terminal:
                # Redelivered after completion; only make sure the webhook exists
                logger.info("Validation %s already %s; skipping probe run", validation_id, record.status)
                await self._enqueue_webhook(context, record)
                return {"status": record.status, "skipped": True}
            credentials = dict(record.credentials)
            subscription_id = record.subscription_id
            test_config = dict(record.test_config or {})

        logger.info(
            "Running probes for validation %s (attempt %d/%d)",
            validation_id,
            context.attempt_number,
            context.max_attempts,
        )
        report = await self.executor.run(credentials, subscription_id, test_config)
        status = ValidationStatus.VALID if report.is_valid else ValidationStatus.INVALID

        record = await self._complete(context, validation_id, status, report.to_dict())
        return {"status": record.status, "is_valid": report.is_valid}

    async def on_exhausted(self, context: JobExecutionContext, error_message: str) -> None:
        validation_id = context.payload.get("validation_id")
        if not validation_id:
            return
        report = ProbeReport.aborted(error_message).to_dict()
        async with context.session() as session:
            # A fault before the in_progress write still has to pass through it
            await ValidationStore(session).mark_in_progress(validation_id)
        await self._complete(context, validation_id, ValidationStatus.FAILED, report)

    async def _complete(
        self,
        context: JobExecutionContext,
        validation_id: str,
        status: ValidationStatus,
        report: Dict[str, Any],
    ) -> ValidationRequest:
        async with context.session() as session:
            record, applied = await ValidationStore(session).complete(validation_id, status, report)
            if applied:
                logger.info("Validation %s completed as %s", validation_id, record.status)
            await self._enqueue_webhook(context, record)
            return record

    async def _enqueue_webhook(self, context: JobExecutionContext, record: ValidationRequest) -> None:
        if not record.webhook_url or not record.is_terminal:
            return
        credentials = dict(record.credentials)
        payload = build_webhook_payload(
            validation_id=record.id,
            status=record.status,
            credentials=credentials,
            subscription_id=record.subscription_id,
            report=record.report or {},
            test_config=record.test_config or {},
        )
        job, created = await context.enqueue_job(
            job_type=WEBHOOK_JOB_TYPE,
            payload={
                "validation_id": record.id,
                "webhook_url": record.webhook_url,
                "payload": payload,
            },
            max_attempts=self.webhook_max_attempts,
            timeout_seconds=self.webhook_timeout_seconds,
            idempotency_key=webhook_idempotency_key(record.id),
        )
        if created:
            logger.info("Queued webhook job %s for validation %s", job.id, record.id)
