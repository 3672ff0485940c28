"""
services/booking/lifecycle.py
Booking state machine and the verification / trust / fraud workflow.

States: PENDING → CONFIRMED → COMPLETED, with CANCELLED as the side exit
from PENDING and CONFIRMED. REFUNDED is the cancelled side exit when the
money went back to the learner.

After COMPLETED the status never changes again; the learner's verdict lives
in the verification fields (is_verified / is_fraud_reported) and in the
payout escrow status.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import HTTPException
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.concurrency import run_in_threadpool

from config.settings import settings
from services.notification.dispatch import notify
from services.payment.stripe_connect import issue_refund, update_payout_schedule
from shared.models.models import (
    Booking,
    BookingAuditLog,
    BookingStatus,
    Mentor,
    NotificationType,
    PayoutStatus,
    User,
)

logger = logging.getLogger(__name__)


# ── State Machine ─────────────────────────────────────────────

ALLOWED_TRANSITIONS: dict[BookingStatus, frozenset[BookingStatus]] = {
    BookingStatus.PENDING: frozenset({BookingStatus.CONFIRMED, BookingStatus.CANCELLED}),
    BookingStatus.CONFIRMED: frozenset({BookingStatus.COMPLETED, BookingStatus.CANCELLED}),
    BookingStatus.COMPLETED: frozenset(),
    BookingStatus.CANCELLED: frozenset(),
    BookingStatus.REFUNDED: frozenset(),
}


def can_transition(current: BookingStatus, target: BookingStatus) -> bool:
    # REFUNDED is validated as the CANCELLED side exit
    check = BookingStatus.CANCELLED if target == BookingStatus.REFUNDED else target
    return check in ALLOWED_TRANSITIONS[BookingStatus(current)]


def assert_transition(current: BookingStatus, target: BookingStatus) -> None:
    if not can_transition(current, target):
        raise HTTPException(
            status_code=400,
            detail=f"Cannot transition from {BookingStatus(current).value} to {BookingStatus(target).value}",
        )


def log_status_change(
    db: AsyncSession,
    booking: Booking,
    from_status: Optional[BookingStatus],
    to_status: BookingStatus,
    changed_by_id: Optional[str],
    reason: Optional[str] = None,
):
    """Append an immutable audit log entry for every status change."""
    db.add(BookingAuditLog(
        booking_id=booking.id,
        from_status=BookingStatus(from_status).value if from_status else None,
        to_status=BookingStatus(to_status).value,
        changed_by_id=changed_by_id,
        reason=reason,
    ))


def transition(
    db: AsyncSession,
    booking: Booking,
    target: BookingStatus,
    changed_by_id: Optional[str],
    reason: Optional[str] = None,
) -> None:
    """Validate against ALLOWED_TRANSITIONS, apply, and audit. The row is untouched on rejection."""
    previous = booking.status
    assert_transition(previous, target)
    booking.status = target
    log_status_change(db, booking, previous, target, changed_by_id, reason)


async def get_booking_or_404(db: AsyncSession, booking_id: str) -> Booking:
    result = await db.execute(select(Booking).where(Booking.id == booking_id))
    booking = result.scalar_one_or_none()
    if not booking:
        raise HTTPException(status_code=404, detail="Booking not found")
    return booking


# ── Verification & Trust ──────────────────────────────────────

async def _promote_to_trusted(db: AsyncSession, mentor_id: str, count: int, now: datetime) -> bool:
    """
    Flip is_trusted exactly once. The conditional UPDATE means only one of
    several concurrent verifications observes a returned row and performs the
    bulk release and payout-schedule change.
    """
    result = await db.execute(
        update(Mentor)
        .where(Mentor.id == mentor_id, Mentor.is_trusted == False)
        .values(is_trusted=True)
        .returning(Mentor.id, Mentor.user_id, Mentor.stripe_connect_id)
        .execution_options(synchronize_session="fetch")
    )
    row = result.first()
    if row is None:
        return False

    released = await db.execute(
        update(Booking)
        .where(
            Booking.mentor_id == mentor_id,
            Booking.payout_status == PayoutStatus.HELD,
            # disputed payouts stay held for admin review
            Booking.is_fraud_reported == False,
        )
        .values(payout_status=PayoutStatus.RELEASED, payout_released_at=now)
        .execution_options(synchronize_session="fetch")
    )
    logger.info(
        f"[trust] Mentor {mentor_id} is now TRUSTED ({count} verified bookings); "
        f"released {released.rowcount} held payout(s)"
    )

    if row.stripe_connect_id:
        try:
            await run_in_threadpool(update_payout_schedule, row.stripe_connect_id, True)
        except Exception as e:
            logger.error(f"[trust] payout schedule update failed for mentor {mentor_id}: {e}")

    mentor_user = await db.get(User, row.user_id)
    if mentor_user:
        await notify(
            db, mentor_user, NotificationType.MENTOR_TRUSTED,
            link="/mentor-dashboard", count=count,
        )
    return True


async def _notify_session_confirmed(db: AsyncSession, booking: Booking) -> None:
    mentor = await db.get(Mentor, booking.mentor_id)
    mentor_user = await db.get(User, mentor.user_id)
    learner = await db.get(User, booking.user_id)
    await notify(
        db, mentor_user, NotificationType.SESSION_CONFIRMED,
        booking_id=booking.id, link="/mentor-dashboard/bookings",
        student_name=(learner.name if learner else None) or "A student",
    )


async def record_verification(db: AsyncSession, booking: Booking, now: Optional[datetime] = None) -> dict:
    """
    Mark a COMPLETED booking verified and apply the trusted-promotion rule.

    The counter is incremented atomically in SQL and the new value read back
    with RETURNING, so concurrent verifications for one mentor cannot lose an
    update; the row lock taken by the UPDATE serialises them until commit.
    """
    now = now or datetime.now(timezone.utc)
    if booking.status != BookingStatus.COMPLETED:
        raise HTTPException(status_code=400, detail="Only completed bookings can be verified")
    if booking.is_verified:
        raise HTTPException(status_code=400, detail="Booking already verified")
    if booking.is_fraud_reported:
        raise HTTPException(status_code=400, detail="Cannot verify booking marked as fraud")

    booking.is_verified = True
    booking.verified_at = now
    if booking.student_confirmed_at is None:
        booking.student_confirmed_at = now
    await db.flush()

    result = await db.execute(
        update(Mentor)
        .where(Mentor.id == booking.mentor_id)
        .values(verified_bookings_count=Mentor.verified_bookings_count + 1)
        .returning(Mentor.verified_bookings_count)
        .execution_options(synchronize_session="fetch")
    )
    new_count = result.scalar_one()

    promoted = False
    if new_count >= settings.TRUST_THRESHOLD:
        promoted = await _promote_to_trusted(db, booking.mentor_id, new_count, now)

    await _notify_session_confirmed(db, booking)
    return {
        "verified": True,
        "mentor_verified_count": new_count,
        "mentor_promoted": promoted,
        "remaining_for_trust": max(0, settings.TRUST_THRESHOLD - new_count),
    }


def verification_message(result: dict) -> str:
    if result["mentor_promoted"]:
        return "Booking verified! Mentor is now trusted."
    remaining = result["remaining_for_trust"]
    if remaining == 0:
        return "Booking verified!"
    return f"Booking verified! {remaining} more verification{'s' if remaining != 1 else ''} needed for trusted status."


# ── Fraud ─────────────────────────────────────────────────────

async def report_fraud(
    db: AsyncSession,
    booking: Booking,
    notes: str,
    now: Optional[datetime] = None,
) -> dict:
    """
    Record a learner's fraud report and hold or refund the payout.

    A booking whose mentor is not yet trusted and whose payout was still held
    is refunded straight away; anything else waits for admin review. Reaching
    FRAUD_DEACTIVATION_THRESHOLD reports deactivates the mentor.
    """
    now = now or datetime.now(timezone.utc)
    if booking.status != BookingStatus.COMPLETED:
        raise HTTPException(status_code=400, detail="Only completed bookings can be reported")
    if booking.is_fraud_reported:
        raise HTTPException(status_code=400, detail="Fraud already reported for this booking")
    if booking.is_verified:
        raise HTTPException(status_code=400, detail="Cannot report fraud on verified booking")

    mentor = await db.get(Mentor, booking.mentor_id)
    auto_refund = not mentor.is_trusted and booking.payout_status == PayoutStatus.HELD

    booking.is_fraud_reported = True
    booking.fraud_reported_at = now
    booking.fraud_notes = notes
    booking.payout_status = PayoutStatus.HELD

    refunded = False
    if auto_refund:
        if booking.stripe_payment_intent_id and booking.total_price > 0:
            try:
                refund = await run_in_threadpool(
                    issue_refund, booking.stripe_payment_intent_id, None, "fraudulent"
                )
                booking.stripe_refund_id = refund.id
                booking.refund_amount = booking.total_price
                refunded = True
            except Exception as e:
                logger.error(f"[fraud] auto-refund failed for booking {booking.id}; left for review: {e}")
        else:
            refunded = True
        if refunded:
            booking.payout_status = PayoutStatus.REFUNDED
            logger.info(f"[fraud] AUTO-REFUND for booking {booking.id}. Mentor was not trusted.")
    else:
        logger.info(f"[fraud] Fraud reported for booking {booking.id}. Requires admin review.")

    await db.flush()
    fraud_count = await db.scalar(
        select(func.count(Booking.id)).where(
            Booking.mentor_id == booking.mentor_id,
            Booking.is_fraud_reported == True,
        )
    )
    deactivated = False
    if fraud_count >= settings.FRAUD_DEACTIVATION_THRESHOLD and mentor.is_active:
        mentor.is_active = False
        deactivated = True
        logger.warning(f"[fraud] Mentor {mentor.id} DEACTIVATED due to {fraud_count} fraud reports.")

    mentor_user = await db.get(User, mentor.user_id)
    if mentor_user:
        await notify(
            db, mentor_user, NotificationType.FRAUD_REPORTED,
            booking_id=booking.id, link="/mentor-dashboard", ref=booking.id[:8],
        )

    return {"auto_refunded": refunded, "mentor_deactivated": deactivated, "fraud_count": fraud_count}


# ── Payout Hand-off ───────────────────────────────────────────

def enqueue_payout(booking_id: str) -> None:
    """
    Hand a booking to the payout worker. Runs as a BackgroundTask so the
    request transaction has committed first. Failure is logged only; the
    payouts sweep picks the booking up later.
    """
    from tasks.payment_tasks import process_single_payout

    try:
        process_single_payout.delay(booking_id)
    except Exception as e:
        logger.error(f"[payout] failed to enqueue payout for booking {booking_id}: {e}")


# ── Cancellation ──────────────────────────────────────────────

async def cancel_with_refund(
    db: AsyncSession,
    booking: Booking,
    changed_by_id: Optional[str],
    reason: str,
) -> dict:
    """
    Cancel a PENDING or CONFIRMED booking, refunding a paid one in full.
    If Stripe refuses the refund the booking is still cancelled and the
    payout stays HELD for an admin to settle.
    """
    assert_transition(booking.status, BookingStatus.CANCELLED)

    refunded, refund_amount = False, 0
    if booking.stripe_payment_intent_id and booking.stripe_paid_at:
        try:
            refund = await run_in_threadpool(issue_refund, booking.stripe_payment_intent_id)
            refunded = refund.status in ("succeeded", "pending")
            refund_amount = refund.amount or 0
            booking.stripe_refund_id = refund.id
            booking.refund_amount = refund_amount
            logger.info(f"[cancel] refund {refund.id} for booking {booking.id}: {refund.status}")
        except Exception as e:
            logger.error(f"[cancel] refund failed for booking {booking.id}; cancelling anyway: {e}")

    settled = refunded or booking.total_price == 0
    transition(
        db, booking,
        BookingStatus.REFUNDED if settled else BookingStatus.CANCELLED,
        changed_by_id, reason,
    )
    booking.cancellation_reason = reason
    booking.payout_status = PayoutStatus.REFUNDED if settled else PayoutStatus.HELD
    return {"refund_processed": refunded, "refund_amount": refund_amount}
