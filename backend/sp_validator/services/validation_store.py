"""
Persistence and lifecycle guard for validation requests.

All status writes go through this store so the record only ever moves
forward along ``pending -> in_progress -> {valid, invalid, failed}``.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

import sqlalchemy as sa
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from sp_validator.core.errors import ValidationNotFound
from sp_validator.models.validation import ValidationRequest, ValidationStatus
from sp_validator.models.webhook_delivery import WebhookDelivery

logger = logging.getLogger(__name__)


class InvalidStatusTransition(Exception):
    """Raised when a status write would skip or regress a lifecycle step."""

    def __init__(self, validation_id: str, current: str, target: str):
        super().__init__(f"Validation {validation_id} cannot move from {current} to {target}")
        self.validation_id = validation_id
        self.current = current
        self.target = target


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ValidationStore:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def create(
        self,
        *,
        credentials: Dict[str, Any],
        subscription_id: str,
        test_config: Dict[str, Any],
        webhook_url: Optional[str] = None,
        validation_id: Optional[str] = None,
    ) -> Tuple[ValidationRequest, bool]:
        """
        Persist a new ``pending`` record.

        When the caller supplies its own ``validation_id`` and a record with
        that id already exists, the existing record is returned instead.
        """
        if validation_id:
            existing = await self.get(validation_id)
            if existing:
                return existing, False

        record = ValidationRequest(
            tenant_id=credentials["tenant_id"],
            client_id=credentials["client_id"],
            subscription_id=subscription_id,
            credentials=credentials,
            test_config=test_config,
            webhook_url=webhook_url,
            status=ValidationStatus.PENDING.value,
        )
        if validation_id:
            record.id = validation_id
        self.db.add(record)
        try:
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            existing = await self.get(validation_id) if validation_id else None
            if existing is None:
                raise
            return existing, False
        await self.db.refresh(record)
        logger.info("Created validation %s", record.id)
        return record, True

    async def get(self, validation_id: str) -> Optional[ValidationRequest]:
        return await self.db.get(ValidationRequest, validation_id)

    async def get_or_404(self, validation_id: str) -> ValidationRequest:
        record = await self.get(validation_id)
        if record is None:
            raise ValidationNotFound(validation_id)
        return record

    async def mark_in_progress(self, validation_id: str) -> ValidationRequest:
        """
        Move a pending record to ``in_progress`` before probes start.

        A record already in progress (queue redelivery) or terminal is
        returned unchanged; callers check ``is_terminal`` themselves.
        """
        record = await self.get_or_404(validation_id)
        if record.status_enum is ValidationStatus.PENDING:
            now = _utcnow()
            record.status = ValidationStatus.IN_PROGRESS.value
            record.started_at = now
            record.updated_at = now
            await self.db.commit()
            await self.db.refresh(record)
            logger.info("Validation %s is in progress", validation_id)
        return record

    async def complete(
        self,
        validation_id: str,
        status: ValidationStatus,
        report: Dict[str, Any],
    ) -> Tuple[ValidationRequest, bool]:
        """
        Write the terminal status and report exactly once.

        Returns ``(record, applied)``. A second terminal write is refused
        and logged, never applied.
        """
        if not status.is_terminal:
            raise ValueError(f"{status.value} is not a terminal status")

        record = await self.get_or_404(validation_id)
        if record.is_terminal:
            logger.warning(
                "Refused %s write for validation %s: already %s",
                status.value,
                validation_id,
                record.status,
            )
            return record, False
        if not record.can_transition_to(status):
            raise InvalidStatusTransition(validation_id, record.status, status.value)

        # Guard the write on the status we read so concurrent completions cannot both apply
        now = _utcnow()
        result = await self.db.execute(
            sa.update(ValidationRequest)
            .where(
                ValidationRequest.id == validation_id,
                ValidationRequest.status == ValidationStatus.IN_PROGRESS.value,
            )
            .values(status=status.value, report=report, completed_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        await self.db.refresh(record)
        if result.rowcount == 0:
            logger.warning("Validation %s was completed concurrently; keeping %s", validation_id, record.status)
            return record, False

        logger.info("Validation %s finished as %s", validation_id, status.value)
        return record, True

    async def list_deliveries(self, validation_id: str) -> List[WebhookDelivery]:
        await self.get_or_404(validation_id)
        result = await self.db.execute(
            sa.select(WebhookDelivery)
            .where(WebhookDelivery.validation_id == validation_id)
            .order_by(WebhookDelivery.created_at.asc())
        )
        return list(result.scalars().all())
