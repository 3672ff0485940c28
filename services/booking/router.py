"""
services/booking/router.py
Learner-facing booking endpoints: create, list, cancel, reschedule, and the
post-session verdict (verify, survey, confirm, report fraud).
States: PENDING → CONFIRMED → COMPLETED, CANCELLED/REFUNDED as the side exit.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from config.database import get_db
from config.settings import settings
from services.booking.lifecycle import (
    cancel_with_refund,
    enqueue_payout,
    log_status_change,
    record_verification,
    report_fraud,
    transition,
    verification_message,
)
from services.notification.dispatch import notify
from services.payment.stripe_connect import calculate_payout_amounts
from shared.middleware.auth import get_current_user
from shared.models.models import (
    AvailabilityRule,
    AvailableSlot,
    BlockedSlot,
    Booking,
    BookingStatus,
    BookingType,
    Mentor,
    NotificationType,
    OfferType,
    PayoutStatus,
    User,
)
from shared.schemas.schemas import (
    BookingCancelRequest,
    BookingCreateRequest,
    BookingMentorSummary,
    BookingRescheduleRequest,
    BookingResponse,
    CompletionSurveyRequest,
    FraudReportRequest,
    StudentConfirmRequest,
    dump,
    ok,
)
from shared.utils.calendar import format_local, overlaps, rule_covers
from shared.utils.security import generate_meeting_link

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/bookings", tags=["Bookings"])

MAX_SESSION_MINUTES = 180


# ── Helpers ───────────────────────────────────────────────────

def booking_payload(booking: Booking, mentor: Optional[Mentor] = None) -> dict:
    data = dump(BookingResponse, booking)
    mentor = mentor or booking.__dict__.get("mentor")
    if mentor is not None:
        data["mentor"] = dump(BookingMentorSummary, mentor)
    return data


async def _load_booking(db: AsyncSession, booking_id: str) -> Booking:
    result = await db.execute(
        select(Booking)
        .options(selectinload(Booking.mentor))
        .where(Booking.id == booking_id)
    )
    booking = result.scalar_one_or_none()
    if not booking:
        raise HTTPException(status_code=404, detail="Booking not found")
    return booking


def _is_mentor_of(booking: Booking, user: User) -> bool:
    return booking.mentor is not None and booking.mentor.user_id == user.id


def _session_end(start: datetime, duration_minutes: Optional[int]) -> datetime:
    return start + timedelta(minutes=duration_minutes or settings.DEFAULT_SESSION_MINUTES)


async def _ensure_slot_open(
    db: AsyncSession,
    mentor_id: str,
    start: datetime,
    end: datetime,
    exclude_booking_id: Optional[str] = None,
) -> None:
    """Reject times the mentor blocked or already sold to someone else."""
    blocked = await db.scalar(
        select(BlockedSlot.id).where(
            BlockedSlot.mentor_id == mentor_id,
            BlockedSlot.start_time < end,
            BlockedSlot.end_time > start,
        ).limit(1)
    )
    if blocked:
        raise HTTPException(status_code=400, detail="Mentor is unavailable at this time")

    query = select(Booking).where(
        Booking.mentor_id == mentor_id,
        Booking.type == BookingType.SESSION,
        Booking.status.in_([BookingStatus.PENDING, BookingStatus.CONFIRMED]),
        Booking.scheduled_at < end,
        Booking.scheduled_at > start - timedelta(minutes=MAX_SESSION_MINUTES),
    )
    if exclude_booking_id:
        query = query.where(Booking.id != exclude_booking_id)
    for other in (await db.scalars(query)):
        if overlaps(start, end, other.scheduled_at, _session_end(other.scheduled_at, other.duration_minutes)):
            raise HTTPException(status_code=409, detail="This time slot is already booked")


async def _free_session_offered(db: AsyncSession, mentor: Mentor, start: datetime, end: datetime) -> bool:
    slot = await db.scalar(
        select(AvailableSlot.id).where(
            AvailableSlot.mentor_id == mentor.id,
            AvailableSlot.is_free_session == True,
            AvailableSlot.start_time <= start,
            AvailableSlot.end_time >= end,
        ).limit(1)
    )
    if slot:
        return True

    rules = await db.scalars(
        select(AvailabilityRule).where(
            AvailabilityRule.mentor_id == mentor.id,
            AvailabilityRule.is_active == True,
            AvailabilityRule.is_free_session == True,
        )
    )
    return any(
        rule_covers(r.day_of_week, r.start_time, r.end_time, start, end, mentor.timezone)
        for r in rules
    )


def _price_for(mentor: Mentor, data: BookingCreateRequest) -> int:
    if data.type == BookingType.ACCESS:
        if mentor.offer_type == OfferType.TIME:
            raise HTTPException(status_code=400, detail="This mentor only offers sessions, not access")
        if not mentor.access_price:
            raise HTTPException(status_code=400, detail="Access price not set for this mentor")
        return mentor.access_price

    if mentor.offer_type == OfferType.ACCESS:
        raise HTTPException(status_code=400, detail="This mentor only offers access, not sessions")
    if not mentor.hourly_rate:
        raise HTTPException(status_code=400, detail="Missing session pricing information")
    return round(mentor.hourly_rate * data.duration_minutes / 60)


# ── Create ────────────────────────────────────────────────────

@router.post("", status_code=status.HTTP_201_CREATED)
async def create_booking(
    data: BookingCreateRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """
    Create a booking. Paid bookings start PENDING and wait for checkout; a
    free session is CONFIRMED straight away.
    """
    mentor = await db.get(Mentor, data.mentor_id)
    if not mentor or not mentor.is_active:
        raise HTTPException(status_code=404, detail="Mentor not found or inactive")
    if mentor.user_id == current_user.id:
        raise HTTPException(status_code=400, detail="You cannot book yourself")

    total_price = _price_for(mentor, data)

    if data.type == BookingType.SESSION:
        end = _session_end(data.scheduled_at, data.duration_minutes)
        await _ensure_slot_open(db, mentor.id, data.scheduled_at, end)
        if data.is_free_session:
            if not await _free_session_offered(db, mentor, data.scheduled_at, end):
                raise HTTPException(status_code=400, detail="No free session is offered at this time")
            total_price = 0
    elif data.is_free_session:
        raise HTTPException(status_code=400, detail="Free sessions are only available for session bookings")

    platform_fee, mentor_payout = calculate_payout_amounts(total_price)
    booking = Booking(
        user_id=current_user.id,
        mentor_id=mentor.id,
        type=data.type,
        status=BookingStatus.PENDING,
        scheduled_at=data.scheduled_at if data.type == BookingType.SESSION else None,
        duration_minutes=data.duration_minutes if data.type == BookingType.SESSION else None,
        notes=data.notes,
        total_price=total_price,
        platform_fee=platform_fee,
        mentor_payout=mentor_payout,
        payout_status=PayoutStatus.HELD,
    )
    db.add(booking)
    await db.flush()
    log_status_change(db, booking, None, BookingStatus.PENDING, current_user.id)

    # Paid bookings notify the mentor from the payment webhook
    if total_price == 0:
        transition(db, booking, BookingStatus.CONFIRMED, current_user.id, "Free session")
        if booking.type == BookingType.SESSION:
            booking.meeting_link = generate_meeting_link()
        await notify(
            db, current_user, NotificationType.BOOKING_CONFIRMED,
            booking_id=booking.id, link=f"/bookings/{booking.id}",
            mentor_name=mentor.name,
        )
        mentor_user = await db.get(User, mentor.user_id)
        await notify(
            db, mentor_user, NotificationType.BOOKING_CREATED,
            booking_id=booking.id, link="/mentor-dashboard/bookings",
            student_name=current_user.name or "A student",
            booking_type="session" if booking.type == BookingType.SESSION else "access pass",
        )
    await db.commit()

    logger.info(f"[bookings] created {booking.id} ({BookingType(booking.type).value}, {total_price}c) for mentor {mentor.id}")
    return ok(booking_payload(booking, mentor))


# ── Read Endpoints ────────────────────────────────────────────

@router.get("")
async def list_my_bookings(
    status_filter: Optional[str] = Query(None, alias="status"),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Bookings the current user made, newest first."""
    query = (
        select(Booking)
        .options(selectinload(Booking.mentor))
        .where(Booking.user_id == current_user.id)
    )
    if status_filter:
        try:
            query = query.where(Booking.status == BookingStatus(status_filter))
        except ValueError:
            raise HTTPException(status_code=400, detail=f"Invalid status: {status_filter}")

    query = query.order_by(Booking.created_at.desc()).offset((page - 1) * page_size).limit(page_size)
    result = await db.execute(query)
    return ok([booking_payload(b) for b in result.scalars()])


@router.get("/{booking_id}")
async def get_booking(
    booking_id: str,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Visible to the learner who booked and to the mentor."""
    booking = await _load_booking(db, booking_id)
    if booking.user_id != current_user.id and not _is_mentor_of(booking, current_user):
        raise HTTPException(status_code=403, detail="Not authorized")
    return ok(booking_payload(booking))


# ── Cancel & Reschedule ───────────────────────────────────────

@router.post("/{booking_id}/cancel")
async def cancel_booking(
    booking_id: str,
    data: BookingCancelRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Learner or mentor cancels a PENDING or CONFIRMED booking; paid bookings are refunded."""
    booking = await _load_booking(db, booking_id)
    if booking.user_id != current_user.id and not _is_mentor_of(booking, current_user):
        raise HTTPException(status_code=403, detail="Unauthorized to cancel this booking")
    if booking.status not in (BookingStatus.PENDING, BookingStatus.CONFIRMED):
        raise HTTPException(
            status_code=400,
            detail=f"Cannot cancel {BookingStatus(booking.status).value.lower()} booking",
        )

    refund = await cancel_with_refund(db, booking, current_user.id, data.reason)

    student = await db.get(User, booking.user_id)
    mentor_user = await db.get(User, booking.mentor.user_id)
    for recipient, link in ((student, f"/bookings/{booking.id}"), (mentor_user, "/mentor-dashboard/bookings")):
        await notify(
            db, recipient, NotificationType.BOOKING_CANCELLED,
            booking_id=booking.id, link=link, email=True,
            ref=booking.id[:8], reason=data.reason,
        )
    await db.commit()

    return ok(
        {"booking": booking_payload(booking), **refund},
        message="Booking cancelled successfully",
    )


@router.post("/{booking_id}/reschedule")
async def reschedule_booking(
    booking_id: str,
    data: BookingRescheduleRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    booking = await _load_booking(db, booking_id)
    if booking.user_id != current_user.id and not _is_mentor_of(booking, current_user):
        raise HTTPException(status_code=403, detail="Unauthorized to reschedule this booking")
    if booking.type != BookingType.SESSION:
        raise HTTPException(status_code=400, detail="Only session bookings can be rescheduled")
    if booking.status != BookingStatus.CONFIRMED:
        raise HTTPException(status_code=400, detail="Only confirmed bookings can be rescheduled")

    new_start = data.new_scheduled_at.astimezone(timezone.utc)
    await _ensure_slot_open(
        db, booking.mentor_id, new_start, _session_end(new_start, booking.duration_minutes),
        exclude_booking_id=booking.id,
    )

    old_start = booking.scheduled_at
    booking.scheduled_at = new_start
    booking.completion_reminder_sent_at = None
    if data.reason:
        booking.notes = f"{booking.notes or ''}\n\nRescheduled: {data.reason}".strip()

    student = await db.get(User, booking.user_id)
    mentor_user = await db.get(User, booking.mentor.user_id)
    for recipient, link in ((student, f"/bookings/{booking.id}"), (mentor_user, "/mentor-dashboard/bookings")):
        await notify(
            db, recipient, NotificationType.BOOKING_RESCHEDULED,
            booking_id=booking.id, link=link, email=True,
            scheduled_at=format_local(new_start, recipient.timezone, settings.DEFAULT_TIMEZONE),
        )
    await db.commit()

    logger.info(f"[bookings] rescheduled {booking.id}: {old_start.isoformat() if old_start else None} -> {new_start.isoformat()}")
    return ok({"booking": booking_payload(booking)}, message="Booking rescheduled successfully")


# ── Verification & Fraud ──────────────────────────────────────

@router.post("/{booking_id}/verify")
async def verify_booking(
    booking_id: str,
    background_tasks: BackgroundTasks,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Learner vouches for a completed booking. Counts toward the mentor's trusted status."""
    booking = await _load_booking(db, booking_id)
    if booking.user_id != current_user.id:
        raise HTTPException(status_code=403, detail="You can only verify your own bookings")

    result = await record_verification(db, booking)
    await db.commit()
    background_tasks.add_task(enqueue_payout, booking.id)
    return ok(result, message=verification_message(result))


@router.post("/{booking_id}/report-fraud")
async def report_fraud_booking(
    booking_id: str,
    data: FraudReportRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    booking = await _load_booking(db, booking_id)
    if booking.user_id != current_user.id:
        raise HTTPException(status_code=403, detail="You can only report your own bookings")

    result = await report_fraud(db, booking, data.reason)
    await db.commit()
    message = (
        "Fraud reported. Refund will be processed automatically."
        if result["auto_refunded"]
        else "Fraud reported. Admin will review this case."
    )
    return ok(result, message=message)


@router.post("/{booking_id}/student-confirm")
async def student_confirm(
    booking_id: str,
    data: StudentConfirmRequest,
    background_tasks: BackgroundTasks,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """The learner's answer once the mentor has marked the session complete."""
    booking = await _load_booking(db, booking_id)
    if booking.user_id != current_user.id:
        raise HTTPException(status_code=403, detail="Not authorized to confirm this booking")
    if booking.status != BookingStatus.COMPLETED:
        raise HTTPException(status_code=400, detail="Booking must be marked as completed by mentor first")
    if booking.student_confirmed_at or booking.is_verified:
        raise HTTPException(status_code=400, detail="Already confirmed")
    if booking.is_fraud_reported:
        raise HTTPException(status_code=400, detail="Already reported as fraud")

    if data.action == "report_fraud":
        if not data.fraud_notes or len(data.fraud_notes.strip()) < 10:
            raise HTTPException(status_code=400, detail="Please describe what went wrong (at least 10 characters)")
        result = await report_fraud(db, booking, data.fraud_notes.strip())
        await db.commit()
        return ok(result, message="Fraud report submitted. Our team will review this case.")

    result = await record_verification(db, booking)
    await db.commit()
    background_tasks.add_task(enqueue_payout, booking.id)
    return ok(result, message="Session confirmed successfully!")


@router.post("/{booking_id}/complete")
async def complete_booking(
    booking_id: str,
    data: CompletionSurveyRequest,
    background_tasks: BackgroundTasks,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """
    Learner closes a CONFIRMED booking with the completion survey.
    The booking counts as verified only if it was worth it, the learner
    would recommend the mentor, and no issues were reported.
    """
    booking = await _load_booking(db, booking_id)
    if booking.user_id != current_user.id:
        raise HTTPException(status_code=403, detail="Unauthorized")
    if booking.status == BookingStatus.COMPLETED:
        raise HTTPException(status_code=400, detail="Booking already completed")
    if booking.status != BookingStatus.CONFIRMED:
        raise HTTPException(status_code=400, detail="Booking must be confirmed before completion")

    now = datetime.now(timezone.utc)
    issues = (data.issues_reported or "").strip()
    is_verified = data.worth_it and data.would_recommend and not issues

    transition(db, booking, BookingStatus.COMPLETED, current_user.id, "Completed by learner")
    booking.student_confirmed_at = now
    booking.completion_survey = data.model_dump()

    result = None
    if is_verified:
        result = await record_verification(db, booking, now)
    await db.commit()

    if is_verified:
        background_tasks.add_task(enqueue_payout, booking.id)
    return ok(
        {"verified": is_verified, "trust": result},
        message="Session verified successfully" if is_verified else "Session marked as complete",
    )
