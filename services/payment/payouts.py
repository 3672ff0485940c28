"""
services/payment/payouts.py
Escrow gate between a completed booking and the mentor's Stripe account.

Trusted mentors are paid as soon as the learner confirms (or the auto-confirm
deadline passes). New mentors' payouts stay HELD for PAYOUT_HOLD_DAYS, then
process_held_payouts releases and transfers them. Fraud-reported bookings
are never paid out here.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload
from starlette.concurrency import run_in_threadpool

from config.settings import settings
from services.notification.dispatch import notify
from services.payment.stripe_connect import calculate_payout_amounts, create_payout
from shared.models.models import Booking, BookingStatus, Mentor, NotificationType, PayoutStatus, User

logger = logging.getLogger(__name__)


def _result(booking_id: str, status: str, reason: Optional[str] = None, **extra) -> dict:
    return {"booking_id": booking_id, "status": status, "reason": reason, **extra}


async def process_booking_payout(
    db: AsyncSession,
    booking_id: str,
    now: Optional[datetime] = None,
) -> dict:
    """
    Decide and execute the payout for one booking.

    Returns a dict whose "status" is one of SKIPPED, HELD_FOR_REVIEW,
    AWAITING_CONFIRMATION, HELD or PAID_OUT. Stripe errors propagate so the
    caller (worker retry or sweep) can count them.
    """
    now = now or datetime.now(timezone.utc)
    result = await db.execute(
        select(Booking)
        .options(selectinload(Booking.mentor))
        .where(Booking.id == booking_id)
    )
    booking = result.scalar_one_or_none()
    if booking is None:
        return _result(booking_id, "SKIPPED", "not_found")

    mentor: Mentor = booking.mentor
    if not mentor.stripe_connect_id or not mentor.stripe_onboarded:
        return _result(booking_id, "SKIPPED", "mentor_not_onboarded")
    if booking.stripe_paid_at is None or booking.total_price <= 0:
        return _result(booking_id, "SKIPPED", "not_paid")
    if booking.status != BookingStatus.COMPLETED:
        return _result(booking_id, "SKIPPED", "not_completed")
    if booking.payout_status in (PayoutStatus.PAID_OUT, PayoutStatus.REFUNDED):
        return _result(booking_id, "SKIPPED", "already_settled")

    if booking.is_fraud_reported:
        booking.payout_status = PayoutStatus.HELD
        return _result(booking_id, "HELD_FOR_REVIEW", "fraud_reported")

    confirmed = (
        booking.is_verified
        or booking.student_confirmed_at is not None
        or (booking.auto_confirm_at is not None and booking.auto_confirm_at <= now)
    )
    if not confirmed:
        return _result(booking_id, "AWAITING_CONFIRMATION")

    if booking.platform_fee is None or booking.mentor_payout is None:
        booking.platform_fee, booking.mentor_payout = calculate_payout_amounts(booking.total_price)

    if mentor.is_trusted or booking.payout_status == PayoutStatus.RELEASED:
        transfer = await run_in_threadpool(
            create_payout,
            mentor.stripe_connect_id,
            booking.mentor_payout,
            booking.id,
            f"Payout for booking {booking.id}",
        )
        booking.payout_status = PayoutStatus.PAID_OUT
        booking.payout_id = transfer.id
        if booking.payout_released_at is None:
            booking.payout_released_at = now
        logger.info(f"[payout] PAID_OUT booking {booking.id}: {booking.mentor_payout}c -> {mentor.stripe_connect_id}")

        mentor_user = await db.get(User, mentor.user_id)
        if mentor_user:
            await notify(
                db, mentor_user, NotificationType.PAYOUT_SENT,
                booking_id=booking.id, link="/mentor-dashboard/earnings",
                amount=f"{booking.mentor_payout / 100:.2f}", ref=booking.id[:8],
            )
        return _result(booking_id, "PAID_OUT", payout_id=transfer.id, amount=booking.mentor_payout)

    booking.payout_status = PayoutStatus.HELD
    if booking.payout_hold_until is None:
        booking.payout_hold_until = now + timedelta(days=settings.PAYOUT_HOLD_DAYS)
    return _result(
        booking_id, "HELD", "new_mentor_hold",
        hold_until=booking.payout_hold_until.isoformat(),
    )


async def process_held_payouts(db: AsyncSession, now: Optional[datetime] = None) -> dict:
    """
    Release verified HELD payouts whose hold has expired, then transfer every
    RELEASED payout that has no transfer yet. One booking's failure is logged
    and counted; the rest of the batch continues.
    """
    now = now or datetime.now(timezone.utc)

    released = await db.execute(
        update(Booking)
        .where(
            Booking.status == BookingStatus.COMPLETED,
            Booking.payout_status == PayoutStatus.HELD,
            Booking.payout_hold_until.is_not(None),
            Booking.payout_hold_until <= now,
            Booking.is_verified == True,
            Booking.is_fraud_reported == False,
        )
        .values(payout_status=PayoutStatus.RELEASED, payout_released_at=now)
        .execution_options(synchronize_session="fetch")
    )
    released_count = released.rowcount or 0
    await db.commit()

    pending = await db.scalars(
        select(Booking.id).where(
            Booking.payout_status == PayoutStatus.RELEASED,
            Booking.payout_id.is_(None),
            Booking.stripe_paid_at.is_not(None),
        )
    )
    paid, failed, skipped = 0, 0, 0
    for booking_id in list(pending):
        try:
            outcome = await process_booking_payout(db, booking_id, now)
            await db.commit()
        except Exception as e:
            await db.rollback()
            failed += 1
            logger.error(f"[payout] transfer failed for booking {booking_id}: {e}")
            continue
        if outcome["status"] == "PAID_OUT":
            paid += 1
        else:
            skipped += 1

    logger.info(f"[payout] held sweep: released={released_count} paid={paid} skipped={skipped} failed={failed}")
    return {"released": released_count, "paid_out": paid, "skipped": skipped, "failed": failed}
