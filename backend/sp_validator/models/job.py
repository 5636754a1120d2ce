import enum
import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from sp_validator.core.encrypted_column import EncryptedJSON
from sp_validator.models.base import Base
from sp_validator.models.mixins import TimestampMixin, utcnow


class JobStatus(str, enum.Enum):
    """Enumeration of job lifecycle states."""

    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


def _uuid() -> str:
    return str(uuid.uuid4())


class Job(Base, TimestampMixin):
    """Durable queue entry. Delivered at-least-once to a worker of its queue."""

    __tablename__ = "jobs"

    id = Column(String(36), primary_key=True, default=_uuid)
    queue = Column(String(50), nullable=False)
    job_type = Column(String(50), nullable=False)
    status = Column(String(20), nullable=False, default=JobStatus.QUEUED.value)

    # Webhook jobs carry the tested secret, so the payload is encrypted at rest.
    payload = Column(EncryptedJSON("jobs", "payload"), nullable=False)
    result = Column(JSON)

    attempts = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=3)
    timeout_seconds = Column(Float)

    scheduled_for = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    started_at = Column(DateTime(timezone=True))
    completed_at = Column(DateTime(timezone=True))

    idempotency_key = Column(String(100))
    last_error = Column(Text)

    job_attempts = relationship(
        "JobAttempt",
        back_populates="job",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="JobAttempt.attempt_number",
    )

    __table_args__ = (
        UniqueConstraint("idempotency_key", name="uq_jobs_idempotency_key"),
        Index("idx_jobs_queue_status_scheduled", "queue", "status", "scheduled_for"),
    )

    @property
    def attempts_remaining(self) -> int:
        return max((self.max_attempts or 0) - (self.attempts or 0), 0)

    def mark_completed(self, result: Optional[dict] = None, now: Optional[datetime] = None) -> None:
        """Mark job as completed with optional result payload."""
        now = now or utcnow()
        self.status = JobStatus.COMPLETED.value
        self.completed_at = now
        self.updated_at = now
        self.last_error = None
        if result is not None:
            self.result = result

    def mark_failed(self, message: str, now: Optional[datetime] = None) -> None:
        """Mark job as permanently failed; the attempt budget is spent."""
        now = now or utcnow()
        self.status = JobStatus.FAILED.value
        self.last_error = message
        self.completed_at = now
        self.updated_at = now

    def requeue(self, message: str, run_at: datetime, now: Optional[datetime] = None) -> None:
        """Return the job to the queue for another attempt at ``run_at``."""
        now = now or utcnow()
        self.status = JobStatus.QUEUED.value
        self.last_error = message
        self.scheduled_for = run_at
        self.started_at = None
        self.updated_at = now


class JobAttempt(Base, TimestampMixin):
    """Execution attempt record for a job."""

    __tablename__ = "job_attempts"

    id = Column(String(36), primary_key=True, default=_uuid)
    job_id = Column(String(36), ForeignKey("jobs.id", ondelete="CASCADE"), nullable=False)
    attempt_number = Column(Integer, nullable=False)
    status = Column(String(20), nullable=False)
    started_at = Column(DateTime(timezone=True), nullable=False)
    completed_at = Column(DateTime(timezone=True))
    worker_id = Column(String(100))
    error_message = Column(Text)

    job = relationship("Job", back_populates="job_attempts", lazy="selectin")

    __table_args__ = (
        UniqueConstraint("job_id", "attempt_number", name="uq_job_attempt_number"),
        Index("idx_job_attempt_job", "job_id"),
    )
