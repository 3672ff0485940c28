"""
tests/test_cron.py
Scheduled sweeps over HTTP: auth, idempotency, and per-booking isolation.
"""

from datetime import datetime, timedelta, timezone

import pytest
import stripe
from httpx import AsyncClient
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import settings
from services.cron.sweeps import auto_confirm_and_process_payouts, send_completion_reminders
from shared.models.models import BookingStatus, Mentor, Notification, NotificationType, PayoutStatus, User
from tests.conftest import CRON_HEADERS


@pytest.mark.asyncio
@pytest.mark.parametrize("path", ["/cron/cancel-unpaid-bookings", "/cron/process-payouts", "/cron/completion-reminders"])
async def test_cron_requires_secret(client: AsyncClient, path):
    missing = await client.get(path)
    assert missing.status_code == 401
    wrong = await client.get(path, headers={"Authorization": "Bearer nope"})
    assert wrong.status_code == 401


@pytest.mark.asyncio
async def test_reminders_open_without_configured_secret(client: AsyncClient, monkeypatch):
    monkeypatch.setattr(settings, "CRON_SECRET", "")
    response = await client.get("/cron/completion-reminders")
    assert response.status_code == 200

    guarded = await client.get("/cron/cancel-unpaid-bookings")
    assert guarded.status_code == 401


# ── Cancel Unpaid ──────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_cancel_unpaid_bookings(
    client: AsyncClient, user: User, mentor: Mentor, make_booking, db: AsyncSession,
):
    now = datetime.now(timezone.utc)
    stale = await make_booking(user, mentor, status=BookingStatus.PENDING, paid=False, created_at=now - timedelta(hours=1))
    fresh = await make_booking(user, mentor, status=BookingStatus.PENDING, paid=False)

    response = await client.get("/cron/cancel-unpaid-bookings", headers=CRON_HEADERS)
    assert response.status_code == 200
    assert response.json()["data"] == {"found": 1, "cancelled": 1, "failed": 0}

    await db.refresh(stale)
    await db.refresh(fresh)
    assert stale.status == BookingStatus.CANCELLED
    assert stale.cancellation_reason == "Payment not completed within 30 minutes"
    assert fresh.status == BookingStatus.PENDING

    repeat = await client.get("/cron/cancel-unpaid-bookings", headers=CRON_HEADERS)
    assert repeat.json()["data"]["cancelled"] == 0


@pytest.mark.asyncio
async def test_cancel_unpaid_leaves_paid_pending_booking(
    client: AsyncClient, user: User, mentor: Mentor, make_booking, db: AsyncSession,
):
    now = datetime.now(timezone.utc)
    paid = await make_booking(user, mentor, status=BookingStatus.PENDING, paid=True, created_at=now - timedelta(hours=2))

    response = await client.get("/cron/cancel-unpaid-bookings", headers=CRON_HEADERS)
    assert response.json()["data"] == {"found": 0, "cancelled": 0, "failed": 0}

    await db.refresh(paid)
    assert paid.status == BookingStatus.PENDING
    assert paid.cancellation_reason is None


# ── Completion Reminders ───────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_completion_reminder_sent_once(
    client: AsyncClient, user: User, mentor: Mentor, make_booking, db: AsyncSession,
):
    now = datetime.now(timezone.utc)
    due = await make_booking(user, mentor, scheduled_at=now - timedelta(hours=2))          # ended 1h ago
    await make_booking(user, mentor, scheduled_at=now - timedelta(minutes=70))            # ended 10m ago
    await make_booking(user, mentor, scheduled_at=now - timedelta(hours=5))               # too old

    response = await client.get("/cron/completion-reminders", headers=CRON_HEADERS)
    assert response.json()["data"]["sent"] == 1

    await db.refresh(due)
    assert due.completion_reminder_sent_at is not None

    repeat = await client.get("/cron/completion-reminders", headers=CRON_HEADERS)
    assert repeat.json()["data"]["sent"] == 0


@pytest.mark.asyncio
async def test_completion_reminders_use_fixed_clock(
    db: AsyncSession, user: User, mentor: Mentor, make_booking,
):
    scheduled = datetime(2024, 6, 10, 13, 0, tzinfo=timezone.utc)
    await make_booking(user, mentor, scheduled_at=scheduled, duration_minutes=90)

    too_early = await send_completion_reminders(db, now=scheduled + timedelta(minutes=100))
    assert too_early["sent"] == 0
    on_time = await send_completion_reminders(db, now=scheduled + timedelta(minutes=150))
    assert on_time["sent"] == 1


# ── Auto-confirm & Payouts ─────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_process_payouts_auto_confirms_overdue(
    client: AsyncClient, user: User, mentor: Mentor, make_booking, db: AsyncSession,
):
    now = datetime.now(timezone.utc)
    overdue = await make_booking(
        user, mentor, status=BookingStatus.COMPLETED,
        scheduled_at=now - timedelta(days=4), auto_confirm_at=now - timedelta(hours=1),
    )
    waiting = await make_booking(
        user, mentor, status=BookingStatus.COMPLETED,
        scheduled_at=now - timedelta(days=1), auto_confirm_at=now + timedelta(hours=40),
    )

    response = await client.get("/cron/process-payouts", headers=CRON_HEADERS)
    data = response.json()["data"]
    assert data["auto_confirmed"] == 1
    assert data["held_payouts"]["failed"] == 0

    await db.refresh(overdue)
    await db.refresh(waiting)
    assert overdue.is_verified is True
    assert overdue.payout_status == PayoutStatus.HELD
    assert overdue.payout_hold_until is not None
    assert waiting.is_verified is False

    repeat = await client.get("/cron/process-payouts", headers=CRON_HEADERS)
    assert repeat.json()["data"]["auto_confirmed"] == 0


@pytest.mark.asyncio
async def test_process_payouts_isolates_transfer_failures(
    client: AsyncClient, user: User, mentor: Mentor, make_booking, stripe_stub, db: AsyncSession,
):
    mentor.is_trusted = True
    await db.commit()
    now = datetime.now(timezone.utc)
    for _ in range(2):
        await make_booking(
            user, mentor, status=BookingStatus.COMPLETED,
            scheduled_at=now - timedelta(days=4), auto_confirm_at=now - timedelta(hours=1),
        )
    stripe_stub.create_payout.side_effect = [stripe.APIError("boom"), stripe_stub.create_payout.return_value]

    response = await client.get("/cron/process-payouts", headers=CRON_HEADERS)
    data = response.json()["data"]
    assert data["auto_confirmed"] == 2
    assert data["paid_out"] == 1
    assert data["payout_failed"] == 1


@pytest.mark.asyncio
async def test_auto_confirm_skips_fraud_reported(
    db: AsyncSession, user: User, mentor: Mentor, make_booking,
):
    now = datetime.now(timezone.utc)
    disputed = await make_booking(
        user, mentor, status=BookingStatus.COMPLETED, is_fraud_reported=True,
        scheduled_at=now - timedelta(days=4), auto_confirm_at=now - timedelta(hours=1),
    )

    summary = await auto_confirm_and_process_payouts(db, now=now)
    assert summary["auto_confirmed"] == 0

    await db.refresh(disputed)
    assert disputed.is_verified is False
    assert disputed.payout_status == PayoutStatus.HELD


@pytest.mark.asyncio
async def test_auto_confirm_notifies_mentor(
    db: AsyncSession, user: User, mentor: Mentor, make_booking,
):
    now = datetime.now(timezone.utc)
    overdue = await make_booking(
        user, mentor, status=BookingStatus.COMPLETED,
        scheduled_at=now - timedelta(days=4), auto_confirm_at=now - timedelta(hours=1),
    )

    await auto_confirm_and_process_payouts(db, now=now)

    notice = await db.scalar(select(Notification).where(
        Notification.booking_id == overdue.id,
        Notification.type == NotificationType.SESSION_CONFIRMED,
    ))
    assert notice.user_id == mentor.user_id
