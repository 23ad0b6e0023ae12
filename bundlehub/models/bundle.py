from datetime import datetime
from decimal import Decimal

from sqlalchemy import Integer, String, DateTime, Boolean, Numeric
from sqlalchemy.orm import Mapped, mapped_column
from ..core.database import Base, new_id, utcnow


class Bundle(Base):
    """Catalog entry. Owned by the catalog subsystem; the order core only reads it."""
    __tablename__ = "bundles"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=new_id)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    slug: Mapped[str] = mapped_column(String(255), unique=True, index=True, nullable=False)
    price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False, default=0)
    # "s3://<key>" for object-store files, otherwise a direct URL
    download_url: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    download_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
