import enum
from datetime import datetime

from sqlalchemy import Integer, String, DateTime, Boolean, Enum, ForeignKey, Index
from sqlalchemy.orm import Mapped, mapped_column
from ..core.database import Base, utcnow


class OTPType(str, enum.Enum):
    LOGIN = "LOGIN"
    SIGNUP = "SIGNUP"
    CHECKOUT = "CHECKOUT"


class OTPVerification(Base):
    __tablename__ = "otp_verifications"
    __table_args__ = (Index("ix_otp_verifications_email_type", "email", "type"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    email: Mapped[str] = mapped_column(String(255), nullable=False)
    otp: Mapped[str] = mapped_column(String(6), nullable=False)
    type: Mapped[OTPType] = mapped_column(Enum(OTPType, native_enum=False, length=16), nullable=False)
    # Set for CHECKOUT codes, which are only valid for the order they were sent for
    order_id: Mapped[str | None] = mapped_column(String(32), ForeignKey("orders.id"), nullable=True, index=True)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    is_used: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    used_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
