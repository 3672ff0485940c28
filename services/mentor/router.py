"""
services/mentor/router.py
Mentor-facing endpoints (setup, profile, availability, Stripe Connect,
bookings) and the public mentor catalogue.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

import stripe
from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, status
from sqlalchemy import delete, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload
from starlette.concurrency import run_in_threadpool

from config.database import get_db
from config.redis_client import RedisCache, get_redis, mentor_key
from config.settings import settings
from services.booking.lifecycle import cancel_with_refund, enqueue_payout, get_booking_or_404, transition
from services.notification.dispatch import notify
from services.payment.stripe_connect import (
    check_account_onboarding,
    create_account_link,
    create_connect_account,
    update_payout_schedule,
)
from shared.middleware.auth import get_current_mentor, get_current_user
from shared.models.models import (
    Application,
    ApplicationStatus,
    AvailabilityRule,
    AvailableSlot,
    BlockedSlot,
    Booking,
    BookingStatus,
    BookingType,
    Mentor,
    MentorCategory,
    NotificationType,
    OfferType,
    Review,
    User,
)
from shared.schemas.schemas import (
    AvailabilityCalendarResponse,
    AvailabilityRuleCreate,
    AvailabilityRuleResponse,
    AvailableSlotCreate,
    AvailableSlotResponse,
    BlockedSlotCreate,
    BlockedSlotResponse,
    BookingResponse,
    BookingStatusUpdate,
    MentorProfileUpdate,
    MentorResponse,
    MentorSetupRequest,
    ReviewResponse,
    dump,
    ok,
)
from shared.utils.calendar import SlotWindow, WeeklyRule, month_bounds_utc, parse_month, project_available_dates
from shared.utils.mentors import (
    calculate_profile_completeness,
    current_onboarding_step,
    infer_category,
    onboarding_steps,
)
from shared.utils.security import generate_meeting_link

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Mentors"])


# ── Helpers ───────────────────────────────────────────────────

async def _get_active_mentor_or_404(mentor_id: str, db: AsyncSession) -> Mentor:
    mentor = await db.get(Mentor, mentor_id)
    if not mentor or not mentor.is_active:
        raise HTTPException(status_code=404, detail="Mentor not found")
    return mentor


async def _has_availability(mentor_id: str, db: AsyncSession) -> bool:
    rules = await db.scalar(
        select(func.count(AvailabilityRule.id)).where(
            AvailabilityRule.mentor_id == mentor_id,
            AvailabilityRule.is_active == True,
        )
    )
    if rules:
        return True
    slots = await db.scalar(
        select(func.count(AvailableSlot.id)).where(AvailableSlot.mentor_id == mentor_id)
    )
    return bool(slots)


async def _profile_payload(mentor: Mentor, db: AsyncSession) -> dict:
    has_availability = await _has_availability(mentor.id, db)
    completeness = calculate_profile_completeness(mentor)
    return {
        "mentor": dump(MentorResponse, mentor),
        "stripe_onboarded": mentor.stripe_onboarded,
        "completeness": completeness.as_dict(),
        "onboarding": {
            "current_step": current_onboarding_step(mentor, has_availability),
            "steps": onboarding_steps(mentor, has_availability),
        },
    }


# ── Setup & Profile ───────────────────────────────────────────

@router.post("/mentor-setup", status_code=status.HTTP_201_CREATED)
async def mentor_setup(
    data: MentorSetupRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """
    Create the caller's mentor profile from their most recent approved
    application. Category is inferred from the application topic.
    """
    existing = await db.scalar(select(Mentor.id).where(Mentor.user_id == current_user.id))
    if existing:
        raise HTTPException(status_code=400, detail="You already have a mentor profile")

    application = await db.scalar(
        select(Application)
        .where(
            Application.email == current_user.email,
            Application.status == ApplicationStatus.APPROVED,
        )
        .order_by(Application.created_at.desc())
        .limit(1)
    )
    if not application:
        raise HTTPException(status_code=403, detail="No approved application found")

    social_links = {
        key: value.strip()
        for key, value in (
            ("twitter", data.twitter_url),
            ("linkedin", data.linkedin_url),
            ("website", data.website_url),
        )
        if value and value.strip()
    }
    mentor = Mentor(
        user_id=current_user.id,
        name=application.full_name,
        category=infer_category(application.topic),
        tagline=application.topic,
        bio=data.bio,
        profile_image=(data.profile_image or "").strip() or None,
        social_links=social_links or None,
        offer_type=application.offer_type,
        access_price=application.access_price,
        hourly_rate=application.hourly_rate,
        timezone=current_user.timezone or settings.DEFAULT_TIMEZONE,
    )
    db.add(mentor)
    await db.commit()

    logger.info(f"[mentors] profile {mentor.id} created for user {current_user.id} ({mentor.category})")
    return ok(dump(MentorResponse, mentor), message="Mentor profile created")


@router.get("/mentor/profile")
async def get_my_profile(
    mentor: Mentor = Depends(get_current_mentor),
    db: AsyncSession = Depends(get_db),
):
    return ok(await _profile_payload(mentor, db))


@router.patch("/mentor/profile")
async def update_my_profile(
    data: MentorProfileUpdate,
    mentor: Mentor = Depends(get_current_mentor),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    """Partial update. Only fields present in the request body change."""
    for field, value in data.model_dump(exclude_unset=True).items():
        setattr(mentor, field, value)

    offer = OfferType(mentor.offer_type)
    if offer in (OfferType.ACCESS, OfferType.BOTH) and not mentor.access_price:
        raise HTTPException(status_code=400, detail="Access price is required for this offer type")
    if offer in (OfferType.TIME, OfferType.BOTH) and not mentor.hourly_rate:
        raise HTTPException(status_code=400, detail="Hourly rate is required for this offer type")

    await db.commit()
    await RedisCache(redis).invalidate_mentor(mentor.id)
    return ok(await _profile_payload(mentor, db), message="Profile updated")


# ── Availability ──────────────────────────────────────────────

@router.get("/mentor/availability")
async def list_availability_rules(
    mentor: Mentor = Depends(get_current_mentor),
    db: AsyncSession = Depends(get_db),
):
    result = await db.scalars(
        select(AvailabilityRule)
        .where(AvailabilityRule.mentor_id == mentor.id)
        .order_by(AvailabilityRule.day_of_week, AvailabilityRule.start_time)
    )
    return ok([dump(AvailabilityRuleResponse, r) for r in result])


@router.post("/mentor/availability", status_code=status.HTTP_201_CREATED)
async def create_availability_rule(
    data: AvailabilityRuleCreate,
    mentor: Mentor = Depends(get_current_mentor),
    db: AsyncSession = Depends(get_db),
):
    rule = AvailabilityRule(mentor_id=mentor.id, **data.model_dump())
    db.add(rule)
    await db.commit()
    return ok(dump(AvailabilityRuleResponse, rule))


@router.delete("/mentor/availability/{rule_id}")
async def delete_availability_rule(
    rule_id: str,
    mentor: Mentor = Depends(get_current_mentor),
    db: AsyncSession = Depends(get_db),
):
    result = await db.execute(
        delete(AvailabilityRule).where(
            AvailabilityRule.id == rule_id,
            AvailabilityRule.mentor_id == mentor.id,
        )
    )
    if result.rowcount == 0:
        raise HTTPException(status_code=404, detail="Availability rule not found")
    return ok(message="Availability rule deleted")


@router.get("/mentor/available-slots")
async def list_available_slots(
    mentor: Mentor = Depends(get_current_mentor),
    db: AsyncSession = Depends(get_db),
):
    result = await db.scalars(
        select(AvailableSlot)
        .where(
            AvailableSlot.mentor_id == mentor.id,
            AvailableSlot.end_time > datetime.now(timezone.utc),
        )
        .order_by(AvailableSlot.start_time)
    )
    return ok([dump(AvailableSlotResponse, s) for s in result])


@router.post("/mentor/available-slots", status_code=status.HTTP_201_CREATED)
async def create_available_slot(
    data: AvailableSlotCreate,
    mentor: Mentor = Depends(get_current_mentor),
    db: AsyncSession = Depends(get_db),
):
    slot = AvailableSlot(mentor_id=mentor.id, **data.model_dump())
    db.add(slot)
    await db.commit()
    return ok(dump(AvailableSlotResponse, slot))


@router.delete("/mentor/available-slots/{slot_id}")
async def delete_available_slot(
    slot_id: str,
    mentor: Mentor = Depends(get_current_mentor),
    db: AsyncSession = Depends(get_db),
):
    result = await db.execute(
        delete(AvailableSlot).where(AvailableSlot.id == slot_id, AvailableSlot.mentor_id == mentor.id)
    )
    if result.rowcount == 0:
        raise HTTPException(status_code=404, detail="Slot not found")
    return ok(message="Slot deleted")


@router.get("/mentor/blocked-slots")
async def list_blocked_slots(
    mentor: Mentor = Depends(get_current_mentor),
    db: AsyncSession = Depends(get_db),
):
    result = await db.scalars(
        select(BlockedSlot)
        .where(BlockedSlot.mentor_id == mentor.id)
        .order_by(BlockedSlot.start_time)
    )
    return ok([dump(BlockedSlotResponse, s) for s in result])


@router.post("/mentor/blocked-slots", status_code=status.HTTP_201_CREATED)
async def create_blocked_slot(
    data: BlockedSlotCreate,
    mentor: Mentor = Depends(get_current_mentor),
    db: AsyncSession = Depends(get_db),
):
    blocked = BlockedSlot(mentor_id=mentor.id, **data.model_dump())
    db.add(blocked)
    await db.commit()
    return ok(dump(BlockedSlotResponse, blocked))


@router.delete("/mentor/blocked-slots/{slot_id}")
async def delete_blocked_slot(
    slot_id: str,
    mentor: Mentor = Depends(get_current_mentor),
    db: AsyncSession = Depends(get_db),
):
    result = await db.execute(
        delete(BlockedSlot).where(BlockedSlot.id == slot_id, BlockedSlot.mentor_id == mentor.id)
    )
    if result.rowcount == 0:
        raise HTTPException(status_code=404, detail="Blocked slot not found")
    return ok(message="Blocked slot deleted")


# ── Stripe Connect ────────────────────────────────────────────

@router.post("/mentor/stripe-connect")
async def start_stripe_connect(
    current_user: User = Depends(get_current_user),
    mentor: Mentor = Depends(get_current_mentor),
    db: AsyncSession = Depends(get_db),
):
    """Create the Express account on first use and return a fresh onboarding link."""
    try:
        if not mentor.stripe_connect_id:
            account = await run_in_threadpool(create_connect_account, current_user.email, mentor.name)
            mentor.stripe_connect_id = account.id
            await db.commit()
            logger.info(f"[stripe-connect] account {account.id} created for mentor {mentor.id}")
        url = await run_in_threadpool(create_account_link, mentor.stripe_connect_id)
    except stripe.StripeError as e:
        logger.error(f"[stripe-connect] onboarding failed for mentor {mentor.id}: {e}")
        raise HTTPException(status_code=502, detail="Payment provider error")

    return ok({"account_id": mentor.stripe_connect_id, "url": url})


@router.get("/mentor/stripe-connect")
async def stripe_connect_status(
    mentor: Mentor = Depends(get_current_mentor),
    db: AsyncSession = Depends(get_db),
):
    if not mentor.stripe_connect_id:
        return ok({"connected": False, "onboarded": False})

    try:
        onboarded = await run_in_threadpool(check_account_onboarding, mentor.stripe_connect_id)
    except stripe.StripeError as e:
        logger.error(f"[stripe-connect] status check failed for mentor {mentor.id}: {e}")
        raise HTTPException(status_code=502, detail="Payment provider error")

    if onboarded and not mentor.stripe_onboarded:
        mentor.stripe_onboarded = True
        try:
            await run_in_threadpool(update_payout_schedule, mentor.stripe_connect_id, mentor.is_trusted)
        except Exception as e:
            logger.error(f"[stripe-connect] payout schedule update failed for mentor {mentor.id}: {e}")
        await db.commit()

    return ok({"connected": True, "onboarded": onboarded, "account_id": mentor.stripe_connect_id})


# ── Mentor Bookings ───────────────────────────────────────────

@router.get("/mentor/bookings")
async def list_mentor_bookings(
    status_filter: Optional[str] = Query(None, alias="status"),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    mentor: Mentor = Depends(get_current_mentor),
    db: AsyncSession = Depends(get_db),
):
    query = (
        select(Booking)
        .options(selectinload(Booking.user))
        .where(Booking.mentor_id == mentor.id)
    )
    if status_filter:
        try:
            query = query.where(Booking.status == BookingStatus(status_filter))
        except ValueError:
            raise HTTPException(status_code=400, detail=f"Invalid status: {status_filter}")

    query = query.order_by(Booking.created_at.desc()).offset((page - 1) * page_size).limit(page_size)
    bookings = []
    for b in (await db.scalars(query)):
        data = dump(BookingResponse, b)
        data["student"] = {"id": b.user.id, "name": b.user.name, "email": b.user.email}
        bookings.append(data)
    return ok(bookings)


@router.patch("/mentor/bookings/{booking_id}")
async def update_mentor_booking(
    booking_id: str,
    data: BookingStatusUpdate,
    background_tasks: BackgroundTasks,
    current_user: User = Depends(get_current_user),
    mentor: Mentor = Depends(get_current_mentor),
    db: AsyncSession = Depends(get_db),
):
    """
    Mentor moves a booking along the state machine.
    COMPLETED starts the learner's confirmation window (AUTO_CONFIRM_HOURS)
    and hands the booking to the payout worker.
    """
    booking = await get_booking_or_404(db, booking_id)
    if booking.mentor_id != mentor.id:
        raise HTTPException(status_code=403, detail="Not authorized to update this booking")

    target = BookingStatus(data.status)
    student = await db.get(User, booking.user_id)
    now = datetime.now(timezone.utc)
    refund = None

    if target == BookingStatus.CANCELLED:
        reason = data.cancellation_reason or "Cancelled by mentor"
        refund = await cancel_with_refund(db, booking, current_user.id, reason)
        await notify(
            db, student, NotificationType.BOOKING_CANCELLED,
            booking_id=booking.id, link=f"/bookings/{booking.id}", email=True,
            ref=booking.id[:8], reason=reason,
        )
    elif target == BookingStatus.CONFIRMED:
        transition(db, booking, target, current_user.id)
        if data.meeting_link:
            booking.meeting_link = data.meeting_link
        elif booking.type == BookingType.SESSION and not booking.meeting_link:
            booking.meeting_link = generate_meeting_link()
        await notify(
            db, student, NotificationType.BOOKING_CONFIRMED,
            booking_id=booking.id, link=f"/bookings/{booking.id}",
            mentor_name=mentor.name,
        )
    else:
        transition(db, booking, target, current_user.id)
        booking.mentor_completed_at = now
        booking.auto_confirm_at = now + timedelta(hours=settings.AUTO_CONFIRM_HOURS)
        await notify(
            db, student, NotificationType.BOOKING_COMPLETED,
            booking_id=booking.id, link=f"/bookings/{booking.id}", email=True,
            mentor_name=mentor.name,
        )

    if data.meeting_link and target != BookingStatus.CONFIRMED:
        booking.meeting_link = data.meeting_link
    await db.commit()

    if target == BookingStatus.COMPLETED:
        background_tasks.add_task(enqueue_payout, booking.id)

    logger.info(f"[mentor-bookings] {booking.id} -> {target.value} by mentor {mentor.id}")
    payload = {"booking": dump(BookingResponse, booking)}
    if refund is not None:
        payload.update(refund)
    return ok(payload, message=f"Booking {target.value.lower()}")


# ── Public Catalogue ──────────────────────────────────────────

@router.get("/mentors")
async def list_mentors(
    category: Optional[MentorCategory] = Query(None),
    q: Optional[str] = Query(None, max_length=100),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=50),
    db: AsyncSession = Depends(get_db),
):
    """Active mentors, trusted and best-rated first."""
    filters = [Mentor.is_active == True]
    if category:
        filters.append(Mentor.category == category)
    if q:
        pattern = f"%{q.strip()}%"
        filters.append(or_(Mentor.name.ilike(pattern), Mentor.tagline.ilike(pattern)))

    total = await db.scalar(select(func.count(Mentor.id)).where(*filters)) or 0
    result = await db.scalars(
        select(Mentor)
        .where(*filters)
        .order_by(Mentor.is_trusted.desc(), Mentor.rating.desc(), Mentor.created_at.desc())
        .offset((page - 1) * page_size)
        .limit(page_size)
    )
    return ok({
        "items": [dump(MentorResponse, m) for m in result],
        "total": total,
        "page": page,
        "page_size": page_size,
        "pages": (total + page_size - 1) // page_size,
    })


@router.get("/mentors/{mentor_id}")
async def get_mentor(mentor_id: str, db: AsyncSession = Depends(get_db), redis=Depends(get_redis)):
    """Public mentor profile. Cached for REDIS_CACHE_TTL seconds."""
    cache = RedisCache(redis)
    cached = await cache.get(mentor_key(mentor_id))
    if cached:
        return ok(cached)

    mentor = await _get_active_mentor_or_404(mentor_id, db)
    profile = dump(MentorResponse, mentor)
    await cache.set(mentor_key(mentor_id), profile)
    return ok(profile)


@router.get("/mentors/{mentor_id}/availability-calendar")
async def get_availability_calendar(
    mentor_id: str,
    month: str = Query(..., description="YYYY-MM"),
    db: AsyncSession = Depends(get_db),
):
    """Dates in `month` (mentor's local calendar) that have bookable time, and which of them are free."""
    try:
        parse_month(month)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    mentor = await _get_active_mentor_or_404(mentor_id, db)
    tz_name = mentor.timezone or settings.DEFAULT_TIMEZONE
    start, end = month_bounds_utc(month, tz_name)

    slots = await db.scalars(
        select(AvailableSlot).where(
            AvailableSlot.mentor_id == mentor.id,
            AvailableSlot.start_time >= start,
            AvailableSlot.start_time < end,
        )
    )
    blocked = await db.scalars(
        select(BlockedSlot).where(
            BlockedSlot.mentor_id == mentor.id,
            BlockedSlot.start_time < end,
            BlockedSlot.end_time > start,
        )
    )
    rules = await db.scalars(
        select(AvailabilityRule).where(AvailabilityRule.mentor_id == mentor.id)
    )

    projection = project_available_dates(
        month,
        tz_name,
        slots=[SlotWindow(s.start_time, s.end_time, s.is_free_session) for s in slots],
        blocked=[SlotWindow(b.start_time, b.end_time) for b in blocked],
        rules=[WeeklyRule(r.day_of_week, r.is_free_session, r.is_active) for r in rules],
    )
    return ok(AvailabilityCalendarResponse.model_validate(projection).model_dump())


@router.get("/mentors/{mentor_id}/reviews")
async def get_mentor_reviews(
    mentor_id: str,
    page: int = Query(1, ge=1),
    page_size: int = Query(10, ge=1, le=50),
    db: AsyncSession = Depends(get_db),
):
    mentor = await _get_active_mentor_or_404(mentor_id, db)
    result = await db.execute(
        select(Review, User.name)
        .join(User, User.id == Review.user_id)
        .where(Review.mentor_id == mentor.id, Review.is_visible == True)
        .order_by(Review.created_at.desc())
        .offset((page - 1) * page_size)
        .limit(page_size)
    )
    reviews = []
    for review, reviewer_name in result.all():
        data = dump(ReviewResponse, review)
        data["reviewer_name"] = reviewer_name
        reviews.append(data)
    return ok({"rating": mentor.rating, "review_count": mentor.review_count, "reviews": reviews})
