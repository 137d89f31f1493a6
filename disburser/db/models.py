from datetime import datetime, date
from typing import Optional, Any

from sqlalchemy import String, Integer, Boolean, DateTime, Date, Text, Index, text, JSON
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.dialects.postgresql import JSONB

from disburser.db.session import Base
from disburser.domain.states import JobStatus

class ClientRow(Base):
    """Subscriber list. Owned by the billing database, read-only here."""
    __tablename__ = "clients"

    msisdn: Mapped[str] = mapped_column(String(20), primary_key=True)
    offer_code: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    # 'A' = active, 'I' = inactive
    subscription_status: Mapped[str] = mapped_column(String(1), default="A", index=True)
    last_payment_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)

class ProcessingJob(Base):
    __tablename__ = "processing_jobs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_id: Mapped[str] = mapped_column(String(36), unique=True, nullable=False)

    status: Mapped[JobStatus] = mapped_column(String, default=JobStatus.PENDING, index=True)

    # Counters
    total_clients: Mapped[int] = mapped_column(Integer, default=0)
    processed_clients: Mapped[int] = mapped_column(Integer, default=0)
    successful_requests: Mapped[int] = mapped_column(Integer, default=0)
    failed_requests: Mapped[int] = mapped_column(Integer, default=0)

    # Job parameters
    batch_size: Mapped[int] = mapped_column(Integer, default=75)
    include_inactive: Mapped[bool] = mapped_column(Boolean, default=False)

    # Tracking
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=text("now()"))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=text("now()"), onupdate=text("now()"))

    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    server_stats: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON().with_variant(JSONB, "postgresql"), nullable=True)

    __table_args__ = (
        # History listing is always newest first
        Index("ix_processing_jobs_created", "created_at"),
    )

class SchedulerStateRow(Base):
    """Singleton row (id=1) holding the persisted scheduler settings."""
    __tablename__ = "scheduler_state"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, default=1)
    enabled: Mapped[bool] = mapped_column(Boolean, default=False)
    interval_hours: Mapped[int] = mapped_column(Integer, default=4)
    batch_size: Mapped[int] = mapped_column(Integer, default=75)
    include_inactive: Mapped[bool] = mapped_column(Boolean, default=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=text("now()"))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=text("now()"), onupdate=text("now()"))
