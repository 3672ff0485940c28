"""
shared/schemas/schemas.py
All Pydantic v2 request/response schemas for the platform.
"""

import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator, model_validator

from shared.models.models import (
    BookingType,
    DisputeDecision,
    MentorCategory,
    OfferType,
)

_HHMM = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")


def _validate_timezone(value: str) -> str:
    try:
        ZoneInfo(value)
    except (ZoneInfoNotFoundError, ValueError):
        raise ValueError(f"Unknown timezone: {value}")
    return value


# ── Base ──────────────────────────────────────────────────────

class BaseSchema(BaseModel):
    model_config = ConfigDict(from_attributes=True, use_enum_values=True)


def ok(data: Any = None, message: Optional[str] = None) -> Dict[str, Any]:
    """Success envelope shared by every route: {"ok": true, "data": ..., "message"?: ...}."""
    body: Dict[str, Any] = {"ok": True}
    if data is not None:
        body["data"] = data
    if message:
        body["message"] = message
    return body


def dump(schema: type[BaseSchema], obj: Any) -> Dict[str, Any]:
    return schema.model_validate(obj).model_dump(mode="json")


# ── Auth ──────────────────────────────────────────────────────

class SignupRequest(BaseSchema):
    email: EmailStr
    password: str = Field(..., min_length=8, max_length=128)
    name: Optional[str] = Field(None, min_length=2, max_length=255)


class LoginRequest(BaseSchema):
    email: EmailStr
    password: str


class TokenResponse(BaseSchema):
    access_token: str
    token_type: str = "bearer"
    expires_in: int  # seconds


# ── User ──────────────────────────────────────────────────────

class UserResponse(BaseSchema):
    id: str
    email: EmailStr
    name: Optional[str]
    image: Optional[str]
    role: str
    timezone: str
    created_at: datetime


class TimezoneUpdateRequest(BaseSchema):
    timezone: str

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, v: str) -> str:
        return _validate_timezone(v)


# ── Application ───────────────────────────────────────────────

class ApplicationCreateRequest(BaseSchema):
    full_name: str = Field(..., min_length=2, max_length=255)
    email: EmailStr
    topic: str = Field(..., min_length=3, max_length=120)
    proof_links: str = Field(..., min_length=10)
    offer_type: OfferType
    access_price: Optional[int] = Field(None, gt=0, description="cents")
    hourly_rate: Optional[int] = Field(None, gt=0, description="cents")

    @model_validator(mode="after")
    def check_prices(self) -> "ApplicationCreateRequest":
        if self.offer_type in (OfferType.ACCESS, OfferType.BOTH) and not self.access_price:
            raise ValueError("Access price is required for this offer type")
        if self.offer_type in (OfferType.TIME, OfferType.BOTH) and not self.hourly_rate:
            raise ValueError("Hourly rate is required for this offer type")
        return self


class ApplicationResponse(BaseSchema):
    id: str
    user_id: Optional[str]
    full_name: str
    email: str
    topic: str
    proof_links: Optional[str]
    offer_type: str
    access_price: Optional[int]
    hourly_rate: Optional[int]
    status: str
    review_notes: Optional[str]
    reviewed_at: Optional[datetime]
    created_at: datetime


class ApplicationReviewRequest(BaseSchema):
    status: Literal["APPROVED", "REJECTED"]
    notes: Optional[str] = Field(None, max_length=2000)


# ── Mentor ────────────────────────────────────────────────────

class MentorSetupRequest(BaseSchema):
    bio: str = Field(..., min_length=50, max_length=2000)
    profile_image: Optional[str] = None
    twitter_url: Optional[str] = None
    linkedin_url: Optional[str] = None
    website_url: Optional[str] = None


class MentorResponse(BaseSchema):
    id: str
    user_id: str
    name: str
    category: str
    tagline: Optional[str]
    bio: Optional[str]
    profile_image: Optional[str]
    social_links: Optional[Dict[str, Any]]
    offer_type: str
    access_price: Optional[int]
    hourly_rate: Optional[int]
    rating: float
    review_count: int
    is_trusted: bool
    verified_bookings_count: int
    is_active: bool
    timezone: str


class MentorAdminResponse(MentorResponse):
    flagged: bool
    flag_reason: Optional[str]
    stripe_connect_id: Optional[str]
    stripe_onboarded: bool
    created_at: datetime


class MentorProfileUpdate(BaseSchema):
    name: Optional[str] = Field(None, min_length=2, max_length=255)
    tagline: Optional[str] = Field(None, max_length=255)
    bio: Optional[str] = Field(None, max_length=2000)
    profile_image: Optional[str] = None
    social_links: Optional[Dict[str, str]] = None
    category: Optional[MentorCategory] = None
    offer_type: Optional[OfferType] = None
    access_price: Optional[int] = Field(None, gt=0)
    hourly_rate: Optional[int] = Field(None, gt=0)
    timezone: Optional[str] = None

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, v: Optional[str]) -> Optional[str]:
        return _validate_timezone(v) if v is not None else v


class AvailabilityRuleCreate(BaseSchema):
    day_of_week: int = Field(..., ge=0, le=6, description="0 = Sunday")
    start_time: str = Field(..., description="HH:MM")
    end_time: str = Field(..., description="HH:MM")
    is_free_session: bool = False

    @model_validator(mode="after")
    def check_window(self) -> "AvailabilityRuleCreate":
        if not _HHMM.match(self.start_time) or not _HHMM.match(self.end_time):
            raise ValueError("Times must be HH:MM")
        if self.end_time <= self.start_time:
            raise ValueError("End time must be after start time")
        return self


class AvailabilityRuleResponse(BaseSchema):
    id: str
    day_of_week: int
    start_time: str
    end_time: str
    is_free_session: bool
    is_active: bool


class IntervalCreate(BaseSchema):
    start_time: datetime
    end_time: datetime

    @model_validator(mode="after")
    def check_interval(self) -> "IntervalCreate":
        if self.start_time.tzinfo is None or self.end_time.tzinfo is None:
            raise ValueError("Timestamps must include a UTC offset")
        if self.end_time <= self.start_time:
            raise ValueError("End time must be after start time")
        return self


class AvailableSlotCreate(IntervalCreate):
    is_free_session: bool = False


class AvailableSlotResponse(BaseSchema):
    id: str
    start_time: datetime
    end_time: datetime
    is_free_session: bool


class BlockedSlotCreate(IntervalCreate):
    reason: Optional[str] = Field(None, max_length=255)


class BlockedSlotResponse(BaseSchema):
    id: str
    start_time: datetime
    end_time: datetime
    reason: Optional[str]


class AvailabilityCalendarResponse(BaseSchema):
    month: str
    timezone: str
    available_dates: List[str]
    free_dates: List[str]


# ── Booking ───────────────────────────────────────────────────

class BookingCreateRequest(BaseSchema):
    mentor_id: str
    type: BookingType
    scheduled_at: Optional[datetime] = None
    duration_minutes: Optional[int] = Field(None, ge=30, le=180)
    notes: Optional[str] = Field(None, max_length=500)
    is_free_session: bool = False

    @model_validator(mode="after")
    def check_session_fields(self) -> "BookingCreateRequest":
        if self.type == BookingType.SESSION:
            if not self.scheduled_at or not self.duration_minutes:
                raise ValueError("Session bookings require a scheduled time and duration")
            if self.scheduled_at.tzinfo is None:
                raise ValueError("Scheduled time must include a UTC offset")
            if self.scheduled_at <= datetime.now(timezone.utc):
                raise ValueError("Scheduled time must be in the future")
        return self


class BookingMentorSummary(BaseSchema):
    id: str
    name: str
    category: str
    tagline: Optional[str]
    profile_image: Optional[str]


class BookingResponse(BaseSchema):
    id: str
    user_id: str
    mentor_id: str
    type: str
    status: str
    scheduled_at: Optional[datetime]
    duration_minutes: Optional[int]
    notes: Optional[str]
    meeting_link: Optional[str]
    total_price: int
    platform_fee: Optional[int]
    mentor_payout: Optional[int]
    stripe_paid_at: Optional[datetime]
    mentor_completed_at: Optional[datetime]
    student_confirmed_at: Optional[datetime]
    is_verified: bool
    verified_at: Optional[datetime]
    auto_confirm_at: Optional[datetime]
    payout_status: str
    payout_hold_until: Optional[datetime]
    payout_released_at: Optional[datetime]
    is_fraud_reported: bool
    fraud_reported_at: Optional[datetime]
    cancellation_reason: Optional[str]
    created_at: datetime


class DisputeResponse(BookingResponse):
    fraud_notes: Optional[str]
    payout_id: Optional[str]
    stripe_payment_intent_id: Optional[str]
    admin_reviewed_at: Optional[datetime]
    admin_reviewed_by: Optional[str]
    admin_decision: Optional[str]
    admin_notes: Optional[str]
    refund_amount: Optional[int]


class BookingStatusUpdate(BaseSchema):
    status: Literal["CONFIRMED", "COMPLETED", "CANCELLED"]
    cancellation_reason: Optional[str] = Field(None, max_length=500)
    meeting_link: Optional[str] = Field(None, max_length=500)


class BookingCancelRequest(BaseSchema):
    reason: str = Field(..., min_length=10, max_length=500)


class BookingRescheduleRequest(BaseSchema):
    new_scheduled_at: datetime
    reason: Optional[str] = Field(None, max_length=500)

    @field_validator("new_scheduled_at")
    @classmethod
    def validate_future(cls, v: datetime) -> datetime:
        if v.tzinfo is None:
            raise ValueError("Scheduled time must include a UTC offset")
        if v <= datetime.now(timezone.utc):
            raise ValueError("New time must be in the future")
        return v


class FraudReportRequest(BaseSchema):
    reason: str = Field(..., min_length=10, max_length=2000)

    @field_validator("reason")
    @classmethod
    def strip_reason(cls, v: str) -> str:
        v = v.strip()
        if len(v) < 10:
            raise ValueError("Please describe what went wrong (at least 10 characters)")
        return v


class StudentConfirmRequest(BaseSchema):
    action: Literal["confirm", "report_fraud"]
    fraud_notes: Optional[str] = Field(None, max_length=2000)


class CompletionSurveyRequest(BaseSchema):
    worth_it: bool
    would_recommend: bool
    issues_reported: Optional[str] = Field(None, max_length=2000)
    feedback: Optional[str] = Field(None, max_length=2000)


# ── Payment ───────────────────────────────────────────────────

class CheckoutRequest(BaseSchema):
    booking_id: str


class CheckoutResponse(BaseSchema):
    booking_id: str
    session_id: Optional[str] = None
    url: Optional[str] = None
    free: bool = False


# ── Review ────────────────────────────────────────────────────

class ReviewCreateRequest(BaseSchema):
    booking_id: str
    rating: int = Field(..., ge=1, le=5)
    comment: Optional[str] = Field(None, max_length=1000)


class ReviewResponse(BaseSchema):
    id: str
    booking_id: str
    user_id: str
    mentor_id: str
    rating: int
    comment: Optional[str]
    is_visible: bool
    created_at: datetime


# ── Notification ──────────────────────────────────────────────

class NotificationResponse(BaseSchema):
    id: str
    type: str
    title: str
    message: str
    link: Optional[str]
    is_read: bool
    read_at: Optional[datetime]
    created_at: datetime
    booking_id: Optional[str]


# ── Admin ─────────────────────────────────────────────────────

class AdminMentorRequest(BaseSchema):
    mentor_id: str


class AdminFlagRequest(AdminMentorRequest):
    reason: str = Field(..., min_length=5, max_length=500)


class DisputeResolveRequest(BaseSchema):
    decision: DisputeDecision
    admin_notes: Optional[str] = Field(None, max_length=2000)
    custom_refund_amount: Optional[int] = Field(None, gt=0, description="cents")
