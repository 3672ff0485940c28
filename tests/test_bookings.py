"""
tests/test_bookings.py
Tests for the booking lifecycle over HTTP:
create → (checkout) → confirm → complete/verify, with cancel and reschedule side paths.
"""

from datetime import datetime, timedelta, timezone

import pytest
from httpx import AsyncClient
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from shared.models.models import (
    AvailableSlot,
    BlockedSlot,
    Booking,
    BookingAuditLog,
    BookingStatus,
    Mentor,
    Notification,
    NotificationType,
    OfferType,
    PayoutStatus,
    User,
)
from tests.conftest import auth_headers


def _in_days(days: int, hour: int = 15) -> datetime:
    return (datetime.now(timezone.utc) + timedelta(days=days)).replace(hour=hour, minute=0, second=0, microsecond=0)


# ── Booking Creation ───────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_create_session_booking_is_pending(
    client: AsyncClient, user: User, mentor: Mentor, db: AsyncSession,
):
    """Paid session starts PENDING, priced from the hourly rate."""
    payload = {
        "mentor_id": mentor.id,
        "type": "SESSION",
        "scheduled_at": _in_days(3).isoformat(),
        "duration_minutes": 90,
    }
    response = await client.post("/bookings", headers=auth_headers(user), json=payload)
    assert response.status_code == 201
    data = response.json()["data"]
    assert data["status"] == "PENDING"
    assert data["total_price"] == 9000  # 6000c/h * 1.5h
    assert data["platform_fee"] == 1350
    assert data["mentor_payout"] == 7650
    assert data["mentor"]["name"] == mentor.name

    logs = (await db.scalars(select(BookingAuditLog).where(BookingAuditLog.booking_id == data["id"]))).all()
    assert [(log.from_status, log.to_status) for log in logs] == [(None, "PENDING")]


@pytest.mark.asyncio
async def test_create_access_booking(client: AsyncClient, user: User, mentor: Mentor):
    response = await client.post(
        "/bookings", headers=auth_headers(user), json={"mentor_id": mentor.id, "type": "ACCESS"},
    )
    assert response.status_code == 201
    data = response.json()["data"]
    assert data["total_price"] == mentor.access_price
    assert data["scheduled_at"] is None


@pytest.mark.asyncio
async def test_session_booking_rejected_for_access_only_mentor(
    client: AsyncClient, user: User, make_mentor,
):
    access_only = await make_mentor(offer_type=OfferType.ACCESS, hourly_rate=None)
    response = await client.post("/bookings", headers=auth_headers(user), json={
        "mentor_id": access_only.id,
        "type": "SESSION",
        "scheduled_at": _in_days(2).isoformat(),
        "duration_minutes": 60,
    })
    assert response.status_code == 400
    assert response.json()["error"] == "This mentor only offers access, not sessions"


@pytest.mark.asyncio
async def test_create_booking_past_date_rejected(client: AsyncClient, user: User, mentor: Mentor):
    """Booking in the past is invalid data."""
    response = await client.post("/bookings", headers=auth_headers(user), json={
        "mentor_id": mentor.id,
        "type": "SESSION",
        "scheduled_at": (datetime.now(timezone.utc) - timedelta(days=1)).isoformat(),
        "duration_minutes": 60,
    })
    assert response.status_code == 400
    assert response.json()["error"] == "Invalid data"


@pytest.mark.asyncio
async def test_mentor_cannot_book_themselves(client: AsyncClient, mentor_user: User, mentor: Mentor):
    response = await client.post(
        "/bookings", headers=auth_headers(mentor_user), json={"mentor_id": mentor.id, "type": "ACCESS"},
    )
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_inactive_mentor_cannot_be_booked(
    client: AsyncClient, user: User, mentor: Mentor, db: AsyncSession,
):
    mentor.is_active = False
    await db.commit()
    response = await client.post(
        "/bookings", headers=auth_headers(user), json={"mentor_id": mentor.id, "type": "ACCESS"},
    )
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_overlapping_session_rejected(
    client: AsyncClient, user: User, mentor: Mentor, make_booking, make_user,
):
    start = _in_days(4)
    other = await make_user()
    await make_booking(other, mentor, scheduled_at=start, duration_minutes=60)

    response = await client.post("/bookings", headers=auth_headers(user), json={
        "mentor_id": mentor.id,
        "type": "SESSION",
        "scheduled_at": (start + timedelta(minutes=30)).isoformat(),
        "duration_minutes": 60,
    })
    assert response.status_code == 409


@pytest.mark.asyncio
async def test_blocked_time_rejected(client: AsyncClient, user: User, mentor: Mentor, db: AsyncSession):
    start = _in_days(5)
    db.add(BlockedSlot(mentor_id=mentor.id, start_time=start - timedelta(hours=1), end_time=start + timedelta(hours=3)))
    await db.commit()

    response = await client.post("/bookings", headers=auth_headers(user), json={
        "mentor_id": mentor.id,
        "type": "SESSION",
        "scheduled_at": start.isoformat(),
        "duration_minutes": 60,
    })
    assert response.status_code == 400
    assert response.json()["error"] == "Mentor is unavailable at this time"


@pytest.mark.asyncio
async def test_free_session_confirmed_immediately(
    client: AsyncClient, user: User, mentor: Mentor, db: AsyncSession,
):
    start = _in_days(6)
    db.add(AvailableSlot(
        mentor_id=mentor.id, start_time=start, end_time=start + timedelta(hours=2), is_free_session=True,
    ))
    await db.commit()

    response = await client.post("/bookings", headers=auth_headers(user), json={
        "mentor_id": mentor.id,
        "type": "SESSION",
        "scheduled_at": start.isoformat(),
        "duration_minutes": 60,
        "is_free_session": True,
    })
    assert response.status_code == 201
    data = response.json()["data"]
    assert data["status"] == "CONFIRMED"
    assert data["total_price"] == 0
    assert data["meeting_link"].startswith("https://meet.jit.si/")

    types = (await db.scalars(select(Notification.type).where(Notification.booking_id == data["id"]))).all()
    assert set(types) == {NotificationType.BOOKING_CONFIRMED, NotificationType.BOOKING_CREATED}


@pytest.mark.asyncio
async def test_free_session_requires_free_slot(client: AsyncClient, user: User, mentor: Mentor):
    response = await client.post("/bookings", headers=auth_headers(user), json={
        "mentor_id": mentor.id,
        "type": "SESSION",
        "scheduled_at": _in_days(6).isoformat(),
        "duration_minutes": 60,
        "is_free_session": True,
    })
    assert response.status_code == 400
    assert response.json()["error"] == "No free session is offered at this time"


# ── Read Access ────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_booking_visible_to_owner_and_mentor_only(
    client: AsyncClient, user: User, mentor_user: User, mentor: Mentor, make_booking, make_user,
):
    booking = await make_booking(user, mentor)
    stranger = await make_user()

    assert (await client.get(f"/bookings/{booking.id}", headers=auth_headers(user))).status_code == 200
    assert (await client.get(f"/bookings/{booking.id}", headers=auth_headers(mentor_user))).status_code == 200
    assert (await client.get(f"/bookings/{booking.id}", headers=auth_headers(stranger))).status_code == 403


@pytest.mark.asyncio
async def test_list_my_bookings_filters_by_status(
    client: AsyncClient, user: User, mentor: Mentor, make_booking,
):
    await make_booking(user, mentor, status=BookingStatus.CONFIRMED)
    await make_booking(user, mentor, status=BookingStatus.CANCELLED, scheduled_at=_in_days(9))

    response = await client.get("/bookings?status=CANCELLED", headers=auth_headers(user))
    assert response.status_code == 200
    items = response.json()["data"]
    assert [b["status"] for b in items] == ["CANCELLED"]


# ── Cancellation ───────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_cancel_paid_booking_refunds(
    client: AsyncClient, user: User, mentor: Mentor, make_booking, stripe_stub, db: AsyncSession,
):
    booking = await make_booking(user, mentor)
    response = await client.post(
        f"/bookings/{booking.id}/cancel", headers=auth_headers(user),
        json={"reason": "Schedule conflict came up"},
    )
    assert response.status_code == 200
    body = response.json()
    assert body["message"] == "Booking cancelled successfully"
    assert body["data"]["refund_processed"] is True
    assert body["data"]["booking"]["status"] == "REFUNDED"
    assert body["data"]["booking"]["payout_status"] == "REFUNDED"
    stripe_stub.issue_refund.assert_called_once_with("pi_test")


@pytest.mark.asyncio
async def test_cancel_when_refund_fails_keeps_payout_held(
    client: AsyncClient, user: User, mentor: Mentor, make_booking, stripe_stub,
):
    stripe_stub.issue_refund.side_effect = RuntimeError("card_declined")
    booking = await make_booking(user, mentor)
    response = await client.post(
        f"/bookings/{booking.id}/cancel", headers=auth_headers(user),
        json={"reason": "Schedule conflict came up"},
    )
    assert response.status_code == 200
    data = response.json()["data"]
    assert data["refund_processed"] is False
    assert data["booking"]["status"] == "CANCELLED"
    assert data["booking"]["payout_status"] == "HELD"


@pytest.mark.asyncio
async def test_cancel_by_stranger_forbidden(
    client: AsyncClient, user: User, mentor: Mentor, make_booking, make_user,
):
    booking = await make_booking(user, mentor)
    stranger = await make_user()
    response = await client.post(
        f"/bookings/{booking.id}/cancel", headers=auth_headers(stranger),
        json={"reason": "I just want to cancel it"},
    )
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_cannot_cancel_completed_booking(
    client: AsyncClient, user: User, completed_booking: Booking,
):
    response = await client.post(
        f"/bookings/{completed_booking.id}/cancel", headers=auth_headers(user),
        json={"reason": "Changed my mind afterwards"},
    )
    assert response.status_code == 400
    assert response.json()["error"] == "Cannot cancel completed booking"


# ── Reschedule ─────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_reschedule_confirmed_session(
    client: AsyncClient, user: User, mentor: Mentor, make_booking, db: AsyncSession,
):
    booking = await make_booking(user, mentor, notes="Focus on aim training")
    new_time = _in_days(10, hour=18)
    response = await client.post(
        f"/bookings/{booking.id}/reschedule", headers=auth_headers(user),
        json={"new_scheduled_at": new_time.isoformat(), "reason": "Exam week"},
    )
    assert response.status_code == 200
    data = response.json()["data"]["booking"]
    assert datetime.fromisoformat(data["scheduled_at"]) == new_time
    assert data["notes"].endswith("Rescheduled: Exam week")

    notified = (await db.scalars(
        select(Notification.user_id).where(
            Notification.booking_id == booking.id,
            Notification.type == NotificationType.BOOKING_RESCHEDULED,
        )
    )).all()
    assert set(notified) == {user.id, mentor.user_id}


@pytest.mark.asyncio
async def test_reschedule_pending_rejected(client: AsyncClient, user: User, mentor: Mentor, make_booking):
    booking = await make_booking(user, mentor, status=BookingStatus.PENDING)
    response = await client.post(
        f"/bookings/{booking.id}/reschedule", headers=auth_headers(user),
        json={"new_scheduled_at": _in_days(10).isoformat()},
    )
    assert response.status_code == 400
    assert response.json()["error"] == "Only confirmed bookings can be rescheduled"


# ── Completion Survey ──────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_survey_positive_verifies_and_queues_payout(
    client: AsyncClient, user: User, mentor: Mentor, make_booking, stripe_stub, db: AsyncSession,
):
    booking = await make_booking(user, mentor)
    response = await client.post(
        f"/bookings/{booking.id}/complete", headers=auth_headers(user),
        json={"worth_it": True, "would_recommend": True},
    )
    assert response.status_code == 200
    body = response.json()
    assert body["message"] == "Session verified successfully"
    assert body["data"]["verified"] is True
    assert body["data"]["trust"]["mentor_verified_count"] == 1
    stripe_stub.enqueue_payout.assert_called_once_with(booking.id)

    await db.refresh(booking)
    assert booking.status == BookingStatus.COMPLETED
    assert booking.is_verified is True
    assert booking.completion_survey["worth_it"] is True


@pytest.mark.asyncio
async def test_survey_with_issues_completes_without_verifying(
    client: AsyncClient, user: User, mentor: Mentor, make_booking, stripe_stub, db: AsyncSession,
):
    booking = await make_booking(user, mentor)
    response = await client.post(
        f"/bookings/{booking.id}/complete", headers=auth_headers(user),
        json={"worth_it": True, "would_recommend": True, "issues_reported": "Mentor joined late"},
    )
    assert response.status_code == 200
    assert response.json()["data"]["verified"] is False
    stripe_stub.enqueue_payout.assert_not_called()

    await db.refresh(booking)
    assert booking.status == BookingStatus.COMPLETED
    assert booking.is_verified is False


@pytest.mark.asyncio
async def test_survey_twice_rejected(client: AsyncClient, user: User, completed_booking: Booking):
    response = await client.post(
        f"/bookings/{completed_booking.id}/complete", headers=auth_headers(user),
        json={"worth_it": True, "would_recommend": True},
    )
    assert response.status_code == 400
    assert response.json()["error"] == "Booking already completed"


# ── Student Confirm / Verify / Fraud ───────────────────────────────────────────

@pytest.mark.asyncio
async def test_student_confirm_notifies_mentor(
    client: AsyncClient, user: User, mentor: Mentor, completed_booking: Booking, db: AsyncSession,
):
    response = await client.post(
        f"/bookings/{completed_booking.id}/student-confirm", headers=auth_headers(user),
        json={"action": "confirm"},
    )
    assert response.status_code == 200
    assert response.json()["message"] == "Session confirmed successfully!"

    notices = (await db.scalars(select(Notification).where(
        Notification.user_id == mentor.user_id,
        Notification.type == NotificationType.SESSION_CONFIRMED,
    ))).all()
    assert len(notices) == 1


@pytest.mark.asyncio
async def test_student_confirm_fraud_needs_description(
    client: AsyncClient, user: User, completed_booking: Booking,
):
    response = await client.post(
        f"/bookings/{completed_booking.id}/student-confirm", headers=auth_headers(user),
        json={"action": "report_fraud", "fraud_notes": "bad"},
    )
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_student_confirm_requires_mentor_completion(
    client: AsyncClient, user: User, mentor: Mentor, make_booking,
):
    booking = await make_booking(user, mentor)
    response = await client.post(
        f"/bookings/{booking.id}/student-confirm", headers=auth_headers(user), json={"action": "confirm"},
    )
    assert response.status_code == 400
    assert response.json()["error"] == "Booking must be marked as completed by mentor first"


@pytest.mark.asyncio
async def test_verify_only_by_booker(
    client: AsyncClient, mentor_user: User, completed_booking: Booking,
):
    response = await client.post(f"/bookings/{completed_booking.id}/verify", headers=auth_headers(mentor_user))
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_verify_message_counts_down_to_trust(
    client: AsyncClient, user: User, completed_booking: Booking,
):
    response = await client.post(f"/bookings/{completed_booking.id}/verify", headers=auth_headers(user))
    assert response.status_code == 200
    assert response.json()["message"] == "Booking verified! 4 more verifications needed for trusted status."

    again = await client.post(f"/bookings/{completed_booking.id}/verify", headers=auth_headers(user))
    assert again.status_code == 400
    assert again.json()["error"] == "Booking already verified"


@pytest.mark.asyncio
async def test_report_fraud_auto_refunds_untrusted_mentor(
    client: AsyncClient, user: User, completed_booking: Booking, stripe_stub, db: AsyncSession,
):
    response = await client.post(
        f"/bookings/{completed_booking.id}/report-fraud", headers=auth_headers(user),
        json={"reason": "Mentor never showed up to the call"},
    )
    assert response.status_code == 200
    body = response.json()
    assert body["data"]["auto_refunded"] is True
    assert body["message"] == "Fraud reported. Refund will be processed automatically."
    stripe_stub.issue_refund.assert_called_once_with("pi_test", None, "fraudulent")

    await db.refresh(completed_booking)
    assert completed_booking.status == BookingStatus.COMPLETED
    assert completed_booking.is_fraud_reported is True
    assert completed_booking.payout_status == PayoutStatus.REFUNDED


@pytest.mark.asyncio
async def test_report_fraud_on_pending_booking_rejected(
    client: AsyncClient, user: User, mentor: Mentor, make_booking,
):
    booking = await make_booking(user, mentor, status=BookingStatus.PENDING)
    response = await client.post(
        f"/bookings/{booking.id}/report-fraud", headers=auth_headers(user),
        json={"reason": "Mentor never showed up to the call"},
    )
    assert response.status_code == 400
    assert response.json()["error"] == "Only completed bookings can be reported"


@pytest.mark.asyncio
async def test_report_fraud_rejects_blank_padded_reason(
    client: AsyncClient, user: User, completed_booking: Booking, db: AsyncSession,
):
    response = await client.post(
        f"/bookings/{completed_booking.id}/report-fraud", headers=auth_headers(user),
        json={"reason": "            "},
    )
    assert response.status_code == 400
    assert response.json()["error"] == "Invalid data"

    await db.refresh(completed_booking)
    assert completed_booking.is_fraud_reported is False


@pytest.mark.asyncio
async def test_report_fraud_stores_stripped_reason(
    client: AsyncClient, user: User, completed_booking: Booking, db: AsyncSession,
):
    response = await client.post(
        f"/bookings/{completed_booking.id}/report-fraud", headers=auth_headers(user),
        json={"reason": "   Mentor never showed up   "},
    )
    assert response.status_code == 200
    await db.refresh(completed_booking)
    assert completed_booking.fraud_notes == "Mentor never showed up"


@pytest.mark.asyncio
async def test_verify_notifies_mentor(
    client: AsyncClient, user: User, mentor: Mentor, completed_booking: Booking, db: AsyncSession,
):
    response = await client.post(f"/bookings/{completed_booking.id}/verify", headers=auth_headers(user))
    assert response.status_code == 200

    notices = (await db.scalars(select(Notification).where(
        Notification.booking_id == completed_booking.id,
        Notification.type == NotificationType.SESSION_CONFIRMED,
    ))).all()
    assert [n.user_id for n in notices] == [mentor.user_id]
