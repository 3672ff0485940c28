"""
services/payment/router.py
Stripe Checkout for bookings and the Stripe webhook that confirms them.
"""

import logging
from datetime import datetime, timezone

import stripe
from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload
from starlette.concurrency import run_in_threadpool

from config.database import get_db
from services.booking.lifecycle import transition
from services.notification.dispatch import notify
from services.payment.stripe_connect import (
    calculate_payout_amounts,
    construct_webhook_event,
    create_checkout_session,
)
from shared.middleware.auth import get_current_user
from shared.models.models import (
    Booking,
    BookingStatus,
    BookingType,
    NotificationType,
    User,
)
from shared.schemas.schemas import CheckoutRequest, CheckoutResponse, ok
from shared.utils.security import generate_meeting_link

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payments", tags=["Payments"])

STRIPE_MINIMUM_CHARGE = 50  # cents


# ── Checkout ──────────────────────────────────────────────────

@router.post("/checkout")
async def create_checkout(
    data: CheckoutRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """
    Create a Stripe Checkout Session for the caller's PENDING booking.
    The client redirects to the returned URL; the webhook confirms the booking.
    """
    result = await db.execute(
        select(Booking)
        .options(selectinload(Booking.mentor))
        .where(Booking.id == data.booking_id)
    )
    booking = result.scalar_one_or_none()
    if not booking:
        raise HTTPException(status_code=404, detail="Booking not found")
    if booking.user_id != current_user.id:
        raise HTTPException(status_code=403, detail="Unauthorized access to booking")
    if booking.stripe_payment_intent_id:
        raise HTTPException(status_code=400, detail="Booking already has a payment associated")
    if booking.status != BookingStatus.PENDING:
        raise HTTPException(status_code=400, detail="Booking is not in pending status")
    if booking.total_price < STRIPE_MINIMUM_CHARGE:
        raise HTTPException(status_code=400, detail="Booking amount must be at least $0.50")

    mentor = booking.mentor
    product_name = (
        f"Access Pass - {mentor.name}"
        if booking.type == BookingType.ACCESS
        else f"{booking.duration_minutes}min 1-on-1 Session with {mentor.name}"
    )
    try:
        session = await run_in_threadpool(
            create_checkout_session, booking.id, booking.total_price, product_name, current_user.email
        )
    except stripe.StripeError as e:
        logger.error(f"[payments] checkout session failed for booking {booking.id}: {e}")
        raise HTTPException(status_code=502, detail="Payment gateway error")

    booking.stripe_checkout_session_id = session.id
    await db.commit()

    logger.info(f"[payments] checkout session {session.id} for booking {booking.id}")
    return ok(CheckoutResponse(booking_id=booking.id, session_id=session.id, url=session.url).model_dump())


# ── Webhook ───────────────────────────────────────────────────

async def _mark_paid(db: AsyncSession, session_obj: dict) -> str:
    """Apply checkout.session.completed. Returns a short outcome tag."""
    booking_id = (session_obj.get("metadata") or {}).get("booking_id")
    payment_intent = session_obj.get("payment_intent")
    if not booking_id:
        return "ignored"

    result = await db.execute(
        select(Booking)
        .options(selectinload(Booking.mentor))
        .where(Booking.id == booking_id)
    )
    booking = result.scalar_one_or_none()
    if booking is None:
        logger.warning(f"[payments] webhook for unknown booking {booking_id}")
        return "not_found"

    # Stripe retries deliveries; a recorded payment intent means we already applied this one
    if booking.stripe_paid_at and booking.stripe_payment_intent_id == payment_intent:
        return "duplicate"
    if booking.status != BookingStatus.PENDING:
        logger.warning(f"[payments] paid webhook for booking {booking_id} in {BookingStatus(booking.status).value}")
        booking.stripe_payment_intent_id = payment_intent
        booking.stripe_paid_at = datetime.now(timezone.utc)
        return "late_payment"

    booking.stripe_payment_intent_id = payment_intent
    booking.stripe_checkout_session_id = session_obj.get("id")
    booking.stripe_paid_at = datetime.now(timezone.utc)
    if booking.platform_fee is None or booking.mentor_payout is None:
        booking.platform_fee, booking.mentor_payout = calculate_payout_amounts(booking.total_price)
    transition(db, booking, BookingStatus.CONFIRMED, None, "Payment received")
    if booking.type == BookingType.SESSION and not booking.meeting_link:
        booking.meeting_link = generate_meeting_link()

    student = await db.get(User, booking.user_id)
    mentor_user = await db.get(User, booking.mentor.user_id)
    await notify(
        db, student, NotificationType.BOOKING_CONFIRMED,
        booking_id=booking.id, link=f"/bookings/{booking.id}", email=True,
        mentor_name=booking.mentor.name,
    )
    await notify(
        db, mentor_user, NotificationType.BOOKING_CREATED,
        booking_id=booking.id, link="/mentor-dashboard/bookings", email=True,
        student_name=student.name or "A student",
        booking_type="session" if booking.type == BookingType.SESSION else "access pass",
    )
    logger.info(f"[payments] booking {booking.id} paid ({payment_intent}) and confirmed")
    return "confirmed"


@router.post("/webhook", include_in_schema=False)
async def stripe_webhook(request: Request, db: AsyncSession = Depends(get_db)):
    """
    Stripe webhook handler. Validates the Stripe-Signature header.
    Handles: checkout.session.completed. Other events are acknowledged.
    """
    payload = await request.body()
    signature = request.headers.get("Stripe-Signature")
    try:
        event = construct_webhook_event(payload, signature)
    except (ValueError, stripe.SignatureVerificationError):
        raise HTTPException(status_code=400, detail="Invalid webhook signature")

    outcome = "ignored"
    if event["type"] == "checkout.session.completed":
        outcome = await _mark_paid(db, event["data"]["object"])
    await db.commit()

    return ok({"received": True, "outcome": outcome})
