from datetime import datetime, timezone

from sqlalchemy import DateTime, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base


class UsageRecord(Base):
    """Monthly AI request counter. One row per (identity, period); never deleted."""

    __tablename__ = "usage_records"
    __table_args__ = (UniqueConstraint("identity", "period_key", name="uq_usage_identity_period"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    identity: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    period_key: Mapped[str] = mapped_column(String(7), nullable=False)  # "YYYY-MM"
    count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc)
    )


class Subscription(Base):
    """Plan assignment for an identity. Missing or inactive → default plan."""

    __tablename__ = "subscriptions"

    identity: Mapped[str] = mapped_column(String(255), primary_key=True)
    plan_tier: Mapped[str] = mapped_column(String(20), nullable=False, default="free")
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="active")  # active / cancelled / expired
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
