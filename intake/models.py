"""Core SQLAlchemy models (2.x style) for the intake schema.

One table per form. Only document submissions carry a status lifecycle and an
audit trail; both are defined here but not mutated by any endpoint.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy import Enum as SAEnum
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every column below stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Base(DeclarativeBase):
    """Base class for all models."""
    pass


class SubmissionStatus(str, Enum):
    """Lifecycle status of a document submission."""
    PENDING = "pending"
    VERIFIED = "verified"
    REJECTED = "rejected"


class Submission(Base):
    """Document verification submissions."""
    __tablename__ = "submissions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    sail_p_no: Mapped[str | None] = mapped_column(String(100))
    # Paths are relative to the public root (e.g. "uploads/document-upload/...")
    aadhar_card_path: Mapped[str] = mapped_column(String(500), nullable=False)
    pan_card_path: Mapped[str] = mapped_column(String(500), nullable=False)
    bank_passbook_path: Mapped[str] = mapped_column(String(500), nullable=False)
    passport_photo_path: Mapped[str] = mapped_column(String(500), nullable=False)
    submission_date: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    email: Mapped[str | None] = mapped_column(String(255))
    ip_address: Mapped[str | None] = mapped_column(String(45))
    status: Mapped[SubmissionStatus] = mapped_column(
        SAEnum(
            SubmissionStatus,
            name="submission_status",
            values_callable=lambda enum: [member.value for member in enum],
        ),
        default=SubmissionStatus.PENDING,
        nullable=False,
    )
    notes: Mapped[str | None] = mapped_column(Text)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime,
        default=utcnow,
        onupdate=utcnow,
        nullable=False,
    )

    # Relationships
    audit_entries: Mapped[list[AuditLogEntry]] = relationship(
        "AuditLogEntry",
        back_populates="submission",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    __table_args__ = (
        Index("idx_name", "name"),
        Index("idx_sail_p_no", "sail_p_no"),
        Index("idx_submission_date", "submission_date"),
        Index("idx_status", "status"),
    )


class AuditLogEntry(Base):
    """Status changes of a document submission."""
    __tablename__ = "audit_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    submission_id: Mapped[int] = mapped_column(
        ForeignKey("submissions.id", ondelete="CASCADE"),
        nullable=False,
    )
    action: Mapped[str] = mapped_column(String(50), nullable=False)
    old_value: Mapped[str | None] = mapped_column(Text)
    new_value: Mapped[str | None] = mapped_column(Text)
    changed_by: Mapped[str | None] = mapped_column(String(255))
    changed_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    # Relationship
    submission: Mapped[Submission] = relationship("Submission", back_populates="audit_entries")

    __table_args__ = (
        Index("idx_audit_submission_id", "submission_id"),
        Index("idx_audit_changed_at", "changed_at"),
    )


class Feedback(Base):
    """Feedback form submissions."""
    __tablename__ = "feedback"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str] = mapped_column(String(255), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    attachment_path: Mapped[str | None] = mapped_column(String(500))
    submission_date: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index("idx_feedback_email", "email"),
        Index("idx_feedback_submission_date", "submission_date"),
    )


class ContactMessage(Base):
    """Contact form submissions."""
    __tablename__ = "contact_form"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str] = mapped_column(String(255), nullable=False)
    subject: Mapped[str | None] = mapped_column(String(255))
    message: Mapped[str] = mapped_column(Text, nullable=False)
    submission_date: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index("idx_contact_email", "email"),
        Index("idx_contact_submission_date", "submission_date"),
    )


class Registration(Base):
    """Event registration submissions."""
    __tablename__ = "registration_form"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str] = mapped_column(String(255), nullable=False)
    phone: Mapped[str | None] = mapped_column(String(20))
    event_name: Mapped[str | None] = mapped_column(String(255))
    submission_date: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index("idx_registration_email", "email"),
        Index("idx_registration_submission_date", "submission_date"),
    )
