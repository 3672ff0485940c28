"""
services/cron/sweeps.py
Scheduled sweeps over stale bookings. Shared by the HTTP cron routes and
the Celery beat tasks.

Every sweep:
- takes the clock as an argument (`now`) so runs are reproducible,
- re-checks each row's state before acting, so a repeated run is a no-op,
- commits per booking and isolates failures: one bad row is logged and
  counted and the batch carries on.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import settings
from services.booking.lifecycle import record_verification, transition
from services.notification.dispatch import notify
from services.payment.payouts import process_booking_payout, process_held_payouts
from shared.models.models import (
    Booking,
    BookingStatus,
    BookingType,
    Mentor,
    NotificationType,
    User,
)
from shared.utils.calendar import format_local

logger = logging.getLogger(__name__)

REMINDER_WINDOW_START = timedelta(hours=2)
REMINDER_WINDOW_END = timedelta(minutes=30)
MAX_SESSION_MINUTES = 180


def _utcnow(now: Optional[datetime]) -> datetime:
    return now or datetime.now(timezone.utc)


# ── Cancel Unpaid ─────────────────────────────────────────────

async def cancel_unpaid_bookings(db: AsyncSession, now: Optional[datetime] = None) -> dict:
    """PENDING bookings still unpaid after UNPAID_BOOKING_TIMEOUT_MINUTES become CANCELLED."""
    now = _utcnow(now)
    cutoff = now - timedelta(minutes=settings.UNPAID_BOOKING_TIMEOUT_MINUTES)
    reason = f"Payment not completed within {settings.UNPAID_BOOKING_TIMEOUT_MINUTES} minutes"

    ids = list(await db.scalars(
        select(Booking.id).where(
            Booking.status == BookingStatus.PENDING,
            Booking.stripe_paid_at.is_(None),
            Booking.created_at <= cutoff,
        )
    ))

    cancelled, failed = 0, 0
    for booking_id in ids:
        try:
            booking = await db.get(Booking, booking_id)
            if booking is None or booking.status != BookingStatus.PENDING or booking.stripe_paid_at:
                continue
            transition(db, booking, BookingStatus.CANCELLED, None, reason)
            booking.cancellation_reason = reason
            student = await db.get(User, booking.user_id)
            await notify(
                db, student, NotificationType.BOOKING_CANCELLED,
                booking_id=booking.id, link=f"/bookings/{booking.id}",
                ref=booking.id[:8], reason=reason,
            )
            await db.commit()
            cancelled += 1
        except Exception as e:
            await db.rollback()
            failed += 1
            logger.error(f"[cron:cancel-unpaid] booking {booking_id} failed: {e}", exc_info=True)

    logger.info(f"[cron:cancel-unpaid] found={len(ids)} cancelled={cancelled} failed={failed}")
    return {"found": len(ids), "cancelled": cancelled, "failed": failed}


# ── Completion Reminders ──────────────────────────────────────

async def send_completion_reminders(db: AsyncSession, now: Optional[datetime] = None) -> dict:
    """
    One reminder per CONFIRMED session whose scheduled end fell between two
    hours and thirty minutes ago. completion_reminder_sent_at prevents repeats.
    """
    now = _utcnow(now)
    window_start = now - REMINDER_WINDOW_START
    window_end = now - REMINDER_WINDOW_END

    # Narrow by start time in SQL; the end time depends on each row's duration.
    ids = list(await db.scalars(
        select(Booking.id).where(
            Booking.type == BookingType.SESSION,
            Booking.status == BookingStatus.CONFIRMED,
            Booking.completion_reminder_sent_at.is_(None),
            Booking.scheduled_at.is_not(None),
            Booking.scheduled_at >= window_start - timedelta(minutes=MAX_SESSION_MINUTES),
            Booking.scheduled_at <= window_end,
        )
    ))

    sent, skipped, failed = 0, 0, 0
    for booking_id in ids:
        try:
            booking = await db.get(Booking, booking_id)
            if booking is None or booking.completion_reminder_sent_at is not None:
                continue
            ends_at = booking.scheduled_at + timedelta(
                minutes=booking.duration_minutes or settings.DEFAULT_SESSION_MINUTES
            )
            if not (window_start <= ends_at <= window_end):
                skipped += 1
                continue

            student = await db.get(User, booking.user_id)
            mentor = await db.get(Mentor, booking.mentor_id)
            await notify(
                db, student, NotificationType.SESSION_COMPLETION_REMINDER,
                booking_id=booking.id, link=f"/bookings/{booking.id}/complete",
                email=True,
                mentor_name=mentor.name,
                scheduled_at=format_local(booking.scheduled_at, student.timezone, settings.DEFAULT_TIMEZONE),
            )
            booking.completion_reminder_sent_at = now
            await db.commit()
            sent += 1
        except Exception as e:
            await db.rollback()
            failed += 1
            logger.error(f"[cron:completion-reminders] booking {booking_id} failed: {e}", exc_info=True)

    logger.info(f"[cron:completion-reminders] sent={sent} skipped={skipped} failed={failed}")
    return {"sent": sent, "skipped": skipped, "failed": failed}


# ── Auto-confirm & Payouts ────────────────────────────────────

async def auto_confirm_and_process_payouts(db: AsyncSession, now: Optional[datetime] = None) -> dict:
    """
    COMPLETED bookings the learner never answered are confirmed once
    auto_confirm_at passes, exactly as a manual confirm would (including the
    trusted promotion). A payout is attempted for each, then the held-payout
    pass runs.
    """
    now = _utcnow(now)
    ids = list(await db.scalars(
        select(Booking.id).where(
            Booking.status == BookingStatus.COMPLETED,
            Booking.student_confirmed_at.is_(None),
            Booking.is_fraud_reported == False,
            Booking.is_verified == False,
            Booking.auto_confirm_at.is_not(None),
            Booking.auto_confirm_at <= now,
        )
    ))

    confirmed, failed, paid_out, payout_failed = 0, 0, 0, 0
    for booking_id in ids:
        try:
            booking = await db.get(Booking, booking_id)
            if booking is None or booking.is_fraud_reported or booking.is_verified:
                continue
            await record_verification(db, booking, now)
            await db.commit()
            confirmed += 1
            logger.info(f"[cron:payouts] auto-confirmed booking {booking_id}")
        except Exception as e:
            await db.rollback()
            failed += 1
            logger.error(f"[cron:payouts] auto-confirm failed for booking {booking_id}: {e}", exc_info=True)
            continue

        try:
            outcome = await process_booking_payout(db, booking_id, now)
            await db.commit()
            if outcome["status"] == "PAID_OUT":
                paid_out += 1
        except Exception as e:
            await db.rollback()
            payout_failed += 1
            logger.error(f"[cron:payouts] payout failed for booking {booking_id}: {e}")

    held = await process_held_payouts(db, now)

    summary = {
        "auto_confirmed": confirmed,
        "failed": failed,
        "paid_out": paid_out,
        "payout_failed": payout_failed,
        "held_payouts": held,
    }
    logger.info(f"[cron:payouts] {summary}")
    return summary
