"""
DeliveryJob model - one unit of outbound-message work.
Supports delayed/scheduled sends, priority classes, bounded retries and
dead-lettering. Jobs are shared by every worker process through the database.
"""
import enum
import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import JSON, DateTime, Index, Integer, String, Text, Uuid
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from leadrelay.database import Base


class JobState(str, enum.Enum):
    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    RETRYING = "retrying"
    DEAD = "dead"


class Priority(str, enum.Enum):
    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"

    @property
    def rank(self) -> int:
        """Numeric ordering key - lower is served first."""
        return PRIORITY_RANKS[self]


PRIORITY_RANKS = {
    Priority.HIGH: 1,
    Priority.NORMAL: 2,
    Priority.LOW: 3,
}

# States a worker may claim from once delay_until has passed
CLAIMABLE_STATES = (JobState.WAITING.value, JobState.RETRYING.value)
TERMINAL_STATES = (JobState.COMPLETED.value, JobState.DEAD.value)

_json = JSON().with_variant(JSONB(), "postgresql")


class DeliveryJob(Base):
    __tablename__ = "delivery_jobs"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4
    )

    queue_name: Mapped[str] = mapped_column(
        String(50), nullable=False
    )  # direct-message, transactional-email, bulk-campaign

    payload: Mapped[Optional[dict]] = mapped_column(_json)

    state: Mapped[str] = mapped_column(
        String(20), default=JobState.WAITING.value, nullable=False
    )  # waiting, active, completed, failed, retrying, dead

    priority: Mapped[int] = mapped_column(
        Integer, default=PRIORITY_RANKS[Priority.NORMAL], nullable=False
    )  # 1=high, 2=normal, 3=low

    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    max_attempts: Mapped[int] = mapped_column(Integer, default=3, nullable=False)
    stalled_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # Earliest eligible execution time (scheduled sends and retry backoff)
    delay_until: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False
    )

    worker_id: Mapped[Optional[str]] = mapped_column(String(100))
    progress: Mapped[Optional[dict]] = mapped_column(_json)
    result: Mapped[Optional[dict]] = mapped_column(_json)
    last_error: Mapped[Optional[str]] = mapped_column(Text)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False
    )
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    __table_args__ = (
        Index("ix_delivery_jobs_claim", "queue_name", "state", "priority", "delay_until"),
        Index("ix_delivery_jobs_retention", "queue_name", "state", "completed_at"),
    )

    def __repr__(self) -> str:
        return f"<DeliveryJob {self.queue_name} {str(self.id)[:8]} ({self.state})>"
