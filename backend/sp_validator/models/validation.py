import enum
import uuid

from sqlalchemy import JSON, Column, DateTime, Index, String, Text
from sqlalchemy.orm import relationship

from sp_validator.core.encrypted_column import EncryptedJSON
from sp_validator.models.base import Base
from sp_validator.models.mixins import TimestampMixin


class ValidationStatus(str, enum.Enum):
    """Lifecycle of a validation request. Monotonic: never regresses."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    VALID = "valid"
    INVALID = "invalid"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_VALIDATION_STATES


TERMINAL_VALIDATION_STATES = frozenset(
    {ValidationStatus.VALID, ValidationStatus.INVALID, ValidationStatus.FAILED}
)

ALLOWED_TRANSITIONS = {
    ValidationStatus.PENDING: frozenset({ValidationStatus.IN_PROGRESS}),
    ValidationStatus.IN_PROGRESS: frozenset(
        {ValidationStatus.VALID, ValidationStatus.INVALID, ValidationStatus.FAILED}
    ),
    ValidationStatus.VALID: frozenset(),
    ValidationStatus.INVALID: frozenset(),
    ValidationStatus.FAILED: frozenset(),
}


def _uuid() -> str:
    return str(uuid.uuid4())


class ValidationRequest(Base, TimestampMixin):
    """Persisted lifecycle record of one credential validation."""

    __tablename__ = "validations"

    id = Column(String(36), primary_key=True, default=_uuid)

    # Identifiers kept in clear for indexing; the full credential triple is encrypted.
    tenant_id = Column(String(255), nullable=False)
    client_id = Column(String(255), nullable=False)
    subscription_id = Column(String(255), nullable=False)
    credentials = Column(EncryptedJSON("validations", "credentials"), nullable=False)

    test_config = Column(JSON, nullable=False, default=dict)
    webhook_url = Column(Text)

    status = Column(String(20), nullable=False, default=ValidationStatus.PENDING.value)
    started_at = Column(DateTime(timezone=True))
    completed_at = Column(DateTime(timezone=True))
    report = Column(JSON)

    webhook_deliveries = relationship(
        "WebhookDelivery",
        back_populates="validation",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="WebhookDelivery.created_at",
    )

    __table_args__ = (
        Index("idx_validations_status", "status"),
        Index("idx_validations_tenant", "tenant_id"),
    )

    @property
    def status_enum(self) -> ValidationStatus:
        return ValidationStatus(self.status)

    @property
    def is_terminal(self) -> bool:
        return self.status_enum.is_terminal

    def can_transition_to(self, target: ValidationStatus) -> bool:
        return target in ALLOWED_TRANSITIONS[self.status_enum]

    def __repr__(self) -> str:
        return f"<ValidationRequest(id={self.id}, status={self.status})>"
