import enum
import uuid
from datetime import datetime, date as date_type, timezone
from typing import Optional

from sqlalchemy import (
    String,
    DateTime,
    Date,
    Boolean,
    ForeignKey,
    Integer,
    Float,
    BigInteger,
    Text,
    Index,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import relationship, Mapped, mapped_column

from ..db import Base


def uuid_pk() -> Mapped[uuid.UUID]:
    return mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AttendanceStatus(str, enum.Enum):
    NOT_STARTED = "not_started"  # derived, never persisted
    ACTIVE = "active"
    COMPLETED = "completed"


class LedgerStatus(str, enum.Enum):
    PENDING = "pending"
    UPLOADED = "uploaded"
    CONFIRMED = "confirmed"


class User(Base):
    """Identity provider's user, referenced by the core (never managed by it)."""
    __tablename__ = "users"

    id: Mapped[uuid.UUID] = uuid_pk()
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    role: Mapped[str] = mapped_column(String(20), nullable=False, index=True)  # admin|manager|sales|office|client
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class AttendanceRecord(Base):
    """One check-in/check-out session per user per local calendar day"""
    __tablename__ = "attendance_records"

    id: Mapped[uuid.UUID] = uuid_pk()
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    date: Mapped[date_type] = mapped_column(Date, nullable=False)  # Local date (TZ_DEFAULT)
    start_time: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))  # UTC
    end_time: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))  # UTC
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=AttendanceStatus.ACTIVE.value)  # active|completed
    total_minutes: Mapped[Optional[int]] = mapped_column(Integer)
    notes: Mapped[Optional[str]] = mapped_column(Text)
    # Reported location at check-in / check-out
    start_lat: Mapped[Optional[float]] = mapped_column(Float)
    start_lng: Mapped[Optional[float]] = mapped_column(Float)
    start_distance_m: Mapped[Optional[float]] = mapped_column(Float)
    end_lat: Mapped[Optional[float]] = mapped_column(Float)
    end_lng: Mapped[Optional[float]] = mapped_column(Float)
    end_distance_m: Mapped[Optional[float]] = mapped_column(Float)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    user = relationship("User")

    __table_args__ = (
        UniqueConstraint("user_id", "date", name="uq_attendance_user_date"),
        Index("idx_attendance_date_created", "date", "created_at"),
    )


class LedgerRequest(Base):
    """Client ledger request: pending -> uploaded -> confirmed"""
    __tablename__ = "ledger_requests"

    id: Mapped[uuid.UUID] = uuid_pk()
    request_id: Mapped[str] = mapped_column(String(20), unique=True, nullable=False, index=True)  # LED-XXXXXX
    client_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    requested_by: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=LedgerStatus.PENDING.value)
    request_details: Mapped[str] = mapped_column(Text, nullable=False)
    additional_notes: Mapped[Optional[str]] = mapped_column(Text)
    request_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    uploaded_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    uploaded_by: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"))
    confirmed_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    file_path: Mapped[Optional[str]] = mapped_column(String(1024))  # Custody store key
    file_name: Mapped[Optional[str]] = mapped_column(String(255))  # Original client file name
    file_size: Mapped[Optional[int]] = mapped_column(BigInteger)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    client = relationship("User", foreign_keys=[client_id])
    requester = relationship("User", foreign_keys=[requested_by])
    uploader = relationship("User", foreign_keys=[uploaded_by])

    __table_args__ = (
        Index("idx_ledger_status_request_date", "status", "request_date"),
    )
