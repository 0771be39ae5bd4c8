from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    JSON,
    String,
    Text,
)
from sqlalchemy.orm import relationship

from .db import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(dt: datetime | None) -> datetime | None:
    # SQLite hands timestamps back naive; everything is stored in UTC
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


class Provider(Base):
    __tablename__ = "providers"
    __table_args__ = (
        CheckConstraint("pending_requests >= 0", name="ck_providers_pending_requests"),
        CheckConstraint("booking_count >= 0", name="ck_providers_booking_count"),
        CheckConstraint("completed_bookings >= 0", name="ck_providers_completed_bookings"),
    )

    id = Column(String, primary_key=True)
    hourly_rate = Column(Float, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)

    # counters below are only written by the lifecycle side-effect path
    pending_requests = Column(Integer, nullable=False, default=0)
    booking_count = Column(Integer, nullable=False, default=0)
    completed_bookings = Column(Integer, nullable=False, default=0)
    is_busy = Column(Boolean, nullable=False, default=False)
    next_available_date = Column(DateTime(timezone=True), nullable=True)


class Reservation(Base):
    __tablename__ = "reservations"
    __table_args__ = (
        CheckConstraint("end_at > start_at", name="ck_reservations_window"),
        Index("ix_reservations_provider_status", "provider_id", "status"),
        Index("ix_reservations_requester_status", "requester_id", "status"),
    )

    id = Column(String, primary_key=True)

    requester_id = Column(String, nullable=False, index=True)
    provider_id = Column(String, ForeignKey("providers.id"), nullable=False, index=True)

    start_at = Column(DateTime(timezone=True), nullable=False)
    end_at = Column(DateTime(timezone=True), nullable=False)

    status = Column(String, nullable=False, index=True)
    version = Column(Integer, nullable=False, default=1)

    # provider|start|end while the reservation holds its slot, NULL otherwise
    slot_key = Column(String, nullable=True, unique=True)

    urgency = Column(String, nullable=False, default="Normal")
    hourly_rate = Column(Float, nullable=False)
    total_hours = Column(Integer, nullable=False)
    total_amount = Column(Float, nullable=False)

    details = Column(JSON, nullable=False, default=dict)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    history = relationship(
        "StatusHistoryEntry",
        order_by="StatusHistoryEntry.id",
        lazy="selectin",
    )


class StatusHistoryEntry(Base):
    __tablename__ = "reservation_status_history"

    id = Column(Integer, primary_key=True, autoincrement=True)
    reservation_id = Column(String, ForeignKey("reservations.id"), nullable=False, index=True)

    status = Column(String, nullable=False)
    actor_id = Column(String, nullable=False)
    actor_role = Column(String, nullable=False)
    reason = Column(Text, nullable=True)
    timestamp = Column(DateTime(timezone=True), nullable=False, default=utcnow)
