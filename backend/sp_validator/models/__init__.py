# Import base classes
from sp_validator.models.base import Base
from sp_validator.models.mixins import TimestampMixin

# Import all models so metadata is complete
from sp_validator.models.validation import (
    ValidationRequest,
    ValidationStatus,
    TERMINAL_VALIDATION_STATES,
)
from sp_validator.models.webhook_delivery import DeliveryStatus, WebhookDelivery
from sp_validator.models.job import Job, JobAttempt, JobStatus

__all__ = [
    "Base",
    "TimestampMixin",
    "ValidationRequest",
    "ValidationStatus",
    "TERMINAL_VALIDATION_STATES",
    "WebhookDelivery",
    "DeliveryStatus",
    "Job",
    "JobAttempt",
    "JobStatus",
]
