"""
Webhook Delivery Model

Audit trail of one outbound notification: one row per delivery-attempt group.
"""
import enum
import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import relationship

from sp_validator.core.encrypted_column import EncryptedJSON
from sp_validator.models.base import Base
from sp_validator.models.mixins import TimestampMixin


class DeliveryStatus(str, enum.Enum):
    PENDING = "pending"
    RETRYING = "retrying"
    DELIVERED = "delivered"
    FAILED = "failed"


def _uuid() -> str:
    return str(uuid.uuid4())


class WebhookDelivery(Base, TimestampMixin):
    __tablename__ = "webhook_deliveries"

    id = Column(String(36), primary_key=True, default=_uuid)
    validation_id = Column(String(36), ForeignKey("validations.id", ondelete="CASCADE"), nullable=False)
    webhook_url = Column(Text, nullable=False)

    # Immutable snapshot replayed verbatim on every attempt; contains the tested secret.
    payload = Column(EncryptedJSON("webhook_deliveries", "payload"), nullable=False)

    status = Column(String(20), nullable=False, default=DeliveryStatus.PENDING.value)
    attempts = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=3)
    last_attempt_at = Column(DateTime(timezone=True))
    response_status = Column(Integer)
    response_body = Column(Text)

    validation = relationship("ValidationRequest", back_populates="webhook_deliveries", lazy="selectin")

    __table_args__ = (
        Index("idx_webhook_deliveries_validation", "validation_id"),
        Index("idx_webhook_deliveries_status", "status"),
    )

    def __repr__(self) -> str:
        return (
            f"<WebhookDelivery(id={self.id}, validation_id={self.validation_id}, "
            f"status={self.status}, attempts={self.attempts})>"
        )
