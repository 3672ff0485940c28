"""
shared/models/models.py
All SQLAlchemy ORM models for the Mentorship Marketplace.
String UUID primary keys and portable column types throughout, so the same
metadata runs on PostgreSQL and SQLite.
"""

import uuid
from datetime import datetime
from enum import Enum as PyEnum
from typing import List, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    SmallInteger,
    String,
    Text,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from config.database import Base, UTCDateTime, utcnow


def _uuid() -> str:
    return str(uuid.uuid4())


# ── Enumerations ──────────────────────────────────────────────

class UserRole(str, PyEnum):
    USER = "USER"
    ADMIN = "ADMIN"


class MentorCategory(str, PyEnum):
    GAMING_ESPORTS = "GAMING_ESPORTS"
    TRADING_INVESTING = "TRADING_INVESTING"
    STREAMING_CONTENT = "STREAMING_CONTENT"
    YOUTUBE_PRODUCTION = "YOUTUBE_PRODUCTION"


class OfferType(str, PyEnum):
    ACCESS = "ACCESS"
    TIME = "TIME"
    BOTH = "BOTH"


class ApplicationStatus(str, PyEnum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class BookingType(str, PyEnum):
    ACCESS = "ACCESS"
    SESSION = "SESSION"


class BookingStatus(str, PyEnum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    REFUNDED = "REFUNDED"


class PayoutStatus(str, PyEnum):
    HELD = "HELD"
    RELEASED = "RELEASED"
    PAID_OUT = "PAID_OUT"
    REFUNDED = "REFUNDED"


class DisputeDecision(str, PyEnum):
    REFUND_STUDENT_FULL = "REFUND_STUDENT_FULL"
    REFUND_STUDENT_PARTIAL = "REFUND_STUDENT_PARTIAL"
    PAYOUT_MENTOR_FULL = "PAYOUT_MENTOR_FULL"
    SPLIT_50_50 = "SPLIT_50_50"
    UNDER_REVIEW = "UNDER_REVIEW"
    NO_ACTION = "NO_ACTION"


class NotificationType(str, PyEnum):
    BOOKING_CREATED = "BOOKING_CREATED"
    BOOKING_CONFIRMED = "BOOKING_CONFIRMED"
    BOOKING_CANCELLED = "BOOKING_CANCELLED"
    BOOKING_RESCHEDULED = "BOOKING_RESCHEDULED"
    BOOKING_COMPLETED = "BOOKING_COMPLETED"
    SESSION_COMPLETION_REMINDER = "SESSION_COMPLETION_REMINDER"
    SESSION_CONFIRMED = "SESSION_CONFIRMED"
    FRAUD_REPORTED = "FRAUD_REPORTED"
    PAYOUT_SENT = "PAYOUT_SENT"
    MENTOR_TRUSTED = "MENTOR_TRUSTED"
    DISPUTE_RESOLVED = "DISPUTE_RESOLVED"
    REVIEW_RECEIVED = "REVIEW_RECEIVED"


# ── Mixins ────────────────────────────────────────────────────

class TimestampMixin:
    """Adds created_at and updated_at to any model."""
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), default=utcnow, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        server_default=func.now(),
        default=utcnow,
        onupdate=utcnow,
        nullable=False,
    )


# ── Models ────────────────────────────────────────────────────

class User(TimestampMixin, Base):
    """Account for learners, mentors and admins alike. Role gates the admin surface."""
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    image: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    password_hash: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    role: Mapped[UserRole] = mapped_column(
        Enum(UserRole), nullable=False, default=UserRole.USER
    )
    timezone: Mapped[str] = mapped_column(String(64), nullable=False, default="America/New_York")
    two_factor_secret: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    two_factor_enabled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    # Relationships
    mentor_profile: Mapped[Optional["Mentor"]] = relationship(
        back_populates="user", uselist=False, cascade="all, delete-orphan"
    )
    bookings: Mapped[List["Booking"]] = relationship(
        back_populates="user", cascade="all, delete-orphan"
    )
    notifications: Mapped[List["Notification"]] = relationship(
        back_populates="user", cascade="all, delete-orphan"
    )

    __table_args__ = (Index("ix_users_role", "role"),)

    def __repr__(self) -> str:
        return f"<User {self.email} ({self.role})>"


class Application(TimestampMixin, Base):
    """Mentor application. Approval unlocks the mentor-setup flow."""
    __tablename__ = "applications"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id: Mapped[Optional[str]] = mapped_column(
        String(36), ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    full_name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str] = mapped_column(String(255), nullable=False)
    topic: Mapped[str] = mapped_column(String(255), nullable=False)
    offer_type: Mapped[OfferType] = mapped_column(Enum(OfferType), nullable=False)
    access_price: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    hourly_rate: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    proof_links: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    status: Mapped[ApplicationStatus] = mapped_column(
        Enum(ApplicationStatus), nullable=False, default=ApplicationStatus.PENDING
    )
    review_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    reviewed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)

    __table_args__ = (
        Index("ix_applications_email", "email"),
        Index("ix_applications_status", "status"),
    )


class Mentor(TimestampMixin, Base):
    """
    Mentor's public profile and trust/escrow state.
    Links back to the User account (one-to-one).
    """
    __tablename__ = "mentors"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("users.id", ondelete="CASCADE"),
        unique=True,
        nullable=False,
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    category: Mapped[MentorCategory] = mapped_column(Enum(MentorCategory), nullable=False)
    tagline: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    bio: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    profile_image: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    social_links: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    # e.g. {"twitter": "...", "linkedin": "...", "website": "..."}

    # Pricing (cents)
    offer_type: Mapped[OfferType] = mapped_column(Enum(OfferType), nullable=False)
    access_price: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    hourly_rate: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    # Rating (denormalized for query performance)
    rating: Mapped[float] = mapped_column(Float, default=5.0, nullable=False)
    review_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # Trust
    is_trusted: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    verified_bookings_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # Moderation
    flagged: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    flag_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    # Stripe Connect
    stripe_connect_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    stripe_onboarded: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    timezone: Mapped[str] = mapped_column(String(64), nullable=False, default="America/New_York")

    # Relationships
    user: Mapped["User"] = relationship(back_populates="mentor_profile")
    bookings: Mapped[List["Booking"]] = relationship(
        back_populates="mentor", cascade="all, delete-orphan"
    )
    availability_rules: Mapped[List["AvailabilityRule"]] = relationship(
        back_populates="mentor", cascade="all, delete-orphan"
    )
    available_slots: Mapped[List["AvailableSlot"]] = relationship(
        back_populates="mentor", cascade="all, delete-orphan"
    )
    blocked_slots: Mapped[List["BlockedSlot"]] = relationship(
        back_populates="mentor", cascade="all, delete-orphan"
    )

    __table_args__ = (
        Index("ix_mentors_category", "category"),
        Index("ix_mentors_active", "is_active"),
    )


class AvailabilityRule(Base):
    """Recurring weekly window. day_of_week: 0 = Sunday ... 6 = Saturday."""
    __tablename__ = "availability_rules"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    mentor_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("mentors.id", ondelete="CASCADE"), nullable=False
    )
    day_of_week: Mapped[int] = mapped_column(SmallInteger, nullable=False)
    start_time: Mapped[str] = mapped_column(String(5), nullable=False)  # "09:00"
    end_time: Mapped[str] = mapped_column(String(5), nullable=False)    # "17:00"
    is_free_session: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    mentor: Mapped["Mentor"] = relationship(back_populates="availability_rules")

    __table_args__ = (
        CheckConstraint("day_of_week >= 0 AND day_of_week <= 6", name="ck_rule_day_range"),
        Index("ix_availability_rules_mentor", "mentor_id"),
    )


class AvailableSlot(Base):
    """Concrete bookable interval, stored in UTC."""
    __tablename__ = "available_slots"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    mentor_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("mentors.id", ondelete="CASCADE"), nullable=False
    )
    start_time: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    end_time: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    is_free_session: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    mentor: Mapped["Mentor"] = relationship(back_populates="available_slots")

    __table_args__ = (Index("ix_available_slots_mentor_start", "mentor_id", "start_time"),)


class BlockedSlot(Base):
    """One-off interval during which the mentor cannot be booked."""
    __tablename__ = "blocked_slots"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    mentor_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("mentors.id", ondelete="CASCADE"), nullable=False
    )
    start_time: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    end_time: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    reason: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    mentor: Mapped["Mentor"] = relationship(back_populates="blocked_slots")

    __table_args__ = (Index("ix_blocked_slots_mentor_start", "mentor_id", "start_time"),)


class Booking(TimestampMixin, Base):
    """
    Core booking entity.
    Status transitions: PENDING → CONFIRMED → COMPLETED, with CANCELLED (or
    REFUNDED when money went back) as the side exit from PENDING/CONFIRMED.
    Payout escrow: HELD → RELEASED → PAID_OUT, or REFUNDED.
    """
    __tablename__ = "bookings"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    mentor_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("mentors.id", ondelete="CASCADE"), nullable=False
    )
    type: Mapped[BookingType] = mapped_column(Enum(BookingType), nullable=False)
    status: Mapped[BookingStatus] = mapped_column(
        Enum(BookingStatus), nullable=False, default=BookingStatus.PENDING
    )

    # Schedule
    scheduled_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    duration_minutes: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    meeting_link: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    cancellation_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Pricing (cents)
    total_price: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    platform_fee: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    mentor_payout: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    # Payment
    stripe_checkout_session_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    stripe_payment_intent_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    stripe_paid_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)

    # Completion & verification
    mentor_completed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    student_confirmed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    completion_survey: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    is_verified: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    verified_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    auto_confirm_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    completion_reminder_sent_at: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime(), nullable=True
    )

    # Payout escrow
    payout_status: Mapped[PayoutStatus] = mapped_column(
        Enum(PayoutStatus), nullable=False, default=PayoutStatus.HELD
    )
    payout_hold_until: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    payout_released_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    payout_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    # Fraud & dispute
    is_fraud_reported: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    fraud_reported_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    fraud_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    admin_reviewed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    admin_reviewed_by: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    admin_decision: Mapped[Optional[DisputeDecision]] = mapped_column(
        Enum(DisputeDecision), nullable=True
    )
    admin_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    refund_amount: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    stripe_refund_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    # Relationships
    user: Mapped["User"] = relationship(back_populates="bookings")
    mentor: Mapped["Mentor"] = relationship(back_populates="bookings")
    review: Mapped[Optional["Review"]] = relationship(
        back_populates="booking", uselist=False, cascade="all, delete-orphan"
    )
    audit_logs: Mapped[List["BookingAuditLog"]] = relationship(
        back_populates="booking", cascade="all, delete-orphan"
    )

    __table_args__ = (
        Index("ix_bookings_user_id", "user_id"),
        Index("ix_bookings_mentor_id", "mentor_id"),
        Index("ix_bookings_status", "status"),
        Index("ix_bookings_scheduled_at", "scheduled_at"),
        Index("ix_bookings_payout_status", "payout_status"),
    )


class BookingAuditLog(Base):
    """Immutable log of all booking status transitions."""
    __tablename__ = "booking_audit_logs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    booking_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("bookings.id", ondelete="CASCADE"), nullable=False
    )
    from_status: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    to_status: Mapped[str] = mapped_column(String(30), nullable=False)
    changed_by_id: Mapped[Optional[str]] = mapped_column(
        String(36), ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )  # NULL for system sweeps
    reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow, server_default=func.now())

    booking: Mapped["Booking"] = relationship(back_populates="audit_logs")


class Review(TimestampMixin, Base):
    """Post-booking review. One per booking (enforced by unique constraint)."""
    __tablename__ = "reviews"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    booking_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("bookings.id", ondelete="CASCADE"), unique=True, nullable=False
    )
    user_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    mentor_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("mentors.id", ondelete="CASCADE"), nullable=False
    )
    rating: Mapped[int] = mapped_column(SmallInteger, nullable=False)
    comment: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    is_visible: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    booking: Mapped["Booking"] = relationship(back_populates="review")

    __table_args__ = (
        CheckConstraint("rating >= 1 AND rating <= 5", name="ck_review_rating_range"),
        Index("ix_reviews_mentor_id", "mentor_id"),
    )


class Notification(Base):
    """In-app notification. E-mail copies are sent separately."""
    __tablename__ = "notifications"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    booking_id: Mapped[Optional[str]] = mapped_column(
        String(36), ForeignKey("bookings.id", ondelete="CASCADE"), nullable=True
    )
    type: Mapped[NotificationType] = mapped_column(Enum(NotificationType), nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    link: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    is_read: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    read_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), default=utcnow, server_default=func.now(), nullable=False
    )

    user: Mapped["User"] = relationship(back_populates="notifications")

    __table_args__ = (Index("ix_notifications_user_id_read", "user_id", "is_read"),)


class AdminAuditLog(Base):
    """Immutable log of all admin actions."""
    __tablename__ = "admin_audit_logs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    admin_id: Mapped[str] = mapped_column(String(36), nullable=False)
    action: Mapped[str] = mapped_column(String(100), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False)
    entity_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    payload: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    ip_address: Mapped[Optional[str]] = mapped_column(String(45), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow, server_default=func.now())

    __table_args__ = (
        Index("ix_admin_audit_admin_id", "admin_id"),
        Index("ix_admin_audit_created_at", "created_at"),
    )
