import enum
from datetime import datetime

from sqlalchemy import Integer, String, DateTime, Text, Enum, ForeignKey
from sqlalchemy.orm import Mapped, mapped_column
from ..core.database import Base, utcnow


class JobKind(str, enum.Enum):
    ACCESS_EMAIL = "ACCESS_EMAIL"
    REJECTION_EMAIL = "REJECTION_EMAIL"


class JobStatus(str, enum.Enum):
    PENDING = "PENDING"
    SENT = "SENT"
    FAILED = "FAILED"


class FulfillmentJob(Base):
    """Outbox row for the email that follows an admin decision on an order."""
    __tablename__ = "fulfillment_jobs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_id: Mapped[str] = mapped_column(String(32), ForeignKey("orders.id"), nullable=False, index=True)
    kind: Mapped[JobKind] = mapped_column(Enum(JobKind, native_enum=False, length=32), nullable=False)
    status: Mapped[JobStatus] = mapped_column(
        Enum(JobStatus, native_enum=False, length=16), default=JobStatus.PENDING, nullable=False, index=True
    )
    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_attempt_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
