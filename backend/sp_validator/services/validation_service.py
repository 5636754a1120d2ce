"""
Client-facing operations: submit a validation, poll its status, fetch its
report. Nothing here waits on probes or webhooks; submission only persists the
record and enqueues the validation job.
"""
import logging
from typing import Any, Dict, List, Tuple

from sqlalchemy.ext.asyncio import AsyncSession

from sp_validator.core.config import settings
from sp_validator.core.errors import ValidationInProgress
from sp_validator.core.redaction import mask_identifier
from sp_validator.models.validation import ValidationRequest
from sp_validator.models.webhook_delivery import WebhookDelivery
from sp_validator.schemas.validation import ValidateRequest
from sp_validator.services.job_handlers.validation import VALIDATION_JOB_TYPE
from sp_validator.services.job_manager import JobManager
from sp_validator.services.validation_store import ValidationStore

logger = logging.getLogger(__name__)


def validation_idempotency_key(validation_id: str) -> str:
    return f"validation:{validation_id}"


def status_url(validation_id: str) -> str:
    return f"{settings.API_PREFIX}/validation/{validation_id}/status"


class ValidationService:
    def __init__(self, db: AsyncSession, job_manager: JobManager):
        self.db = db
        self.store = ValidationStore(db)
        self.job_manager = job_manager

    async def submit(self, request: ValidateRequest) -> Tuple[ValidationRequest, bool]:
        credentials = request.credentials.model_dump()
        test_config: Dict[str, Any] = {
            "resource_group": request.test_config.resource_group or settings.DEFAULT_RESOURCE_GROUP,
            "location": request.test_config.location or settings.DEFAULT_LOCATION,
        }
        if request.test_config.test_files:
            test_config["test_files"] = list(request.test_config.test_files)

        record, created = await self.store.create(
            credentials=credentials,
            subscription_id=request.subscription_id,
            test_config=test_config,
            webhook_url=request.webhook_url,
            validation_id=request.validation_id,
        )

        # Idempotent on the record id, so a resubmission re-queues a lost job but never duplicates one
        job, job_created = await self.job_manager.enqueue_job(
            job_type=VALIDATION_JOB_TYPE,
            payload={"validation_id": record.id},
            max_attempts=settings.VALIDATION_MAX_ATTEMPTS,
            timeout_seconds=settings.VALIDATION_TIMEOUT_SECONDS,
            idempotency_key=validation_idempotency_key(record.id),
        )
        logger.info(
            "Validation %s submitted (tenant %s, client %s) as job %s; new record: %s, new job: %s",
            record.id,
            mask_identifier(record.tenant_id),
            mask_identifier(record.client_id),
            job.id,
            created,
            job_created,
        )
        return record, created

    async def status(self, validation_id: str) -> ValidationRequest:
        return await self.store.get_or_404(validation_id)

    async def report(self, validation_id: str) -> ValidationRequest:
        """Return a terminal record; non-terminal records raise ValidationInProgress."""
        record = await self.store.get_or_404(validation_id)
        if not record.is_terminal:
            raise ValidationInProgress(validation_id, record.status)
        return record

    async def deliveries(self, validation_id: str) -> List[WebhookDelivery]:
        return await self.store.list_deliveries(validation_id)
