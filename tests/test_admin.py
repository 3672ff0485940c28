"""
tests/test_admin.py
Admin: application queue, mentor moderation, dispute resolution, audit log.
"""

from datetime import datetime, timezone

import pytest
import pytest_asyncio
import stripe
from httpx import AsyncClient
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from shared.models.models import (
    AdminAuditLog,
    Booking,
    BookingStatus,
    Mentor,
    Notification,
    NotificationType,
    PayoutStatus,
    User,
)
from tests.conftest import auth_headers

APPLICATION = {
    "full_name": "Riley Coach",
    "email": "Riley@Example.com",
    "topic": "Valorant coaching",
    "proof_links": "https://twitch.tv/riley https://liquipedia.net/riley",
    "offer_type": "BOTH",
    "access_price": 2000,
    "hourly_rate": 5000,
}


@pytest_asyncio.fixture
async def disputed_booking(completed_booking: Booking, db: AsyncSession) -> Booking:
    completed_booking.is_fraud_reported = True
    completed_booking.fraud_reported_at = datetime.now(timezone.utc)
    completed_booking.fraud_notes = "Mentor never joined the call"
    await db.commit()
    return completed_booking


async def _resolve(client: AsyncClient, admin: User, booking: Booking, **body):
    return await client.post(
        f"/admin/disputes/{booking.id}/resolve", headers=auth_headers(admin), json=body,
    )


# ── Access Control ─────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_admin_routes_require_admin(client: AsyncClient, user: User):
    for path in ("/admin/applications", "/admin/mentors", "/admin/disputes", "/admin/audit-logs"):
        response = await client.get(path, headers=auth_headers(user))
        assert response.status_code == 403, path


# ── Applications ───────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_submit_application_links_existing_account(client: AsyncClient, make_user):
    applicant = await make_user(email="riley@example.com")
    response = await client.post("/applications", json=APPLICATION)
    assert response.status_code == 201
    data = response.json()["data"]
    assert data["status"] == "PENDING"
    assert data["email"] == "riley@example.com"
    assert data["user_id"] == applicant.id


@pytest.mark.asyncio
async def test_submit_application_requires_prices_for_offer(client: AsyncClient):
    response = await client.post("/applications", json={**APPLICATION, "hourly_rate": None})
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_review_application(client: AsyncClient, admin_user: User, db: AsyncSession):
    created = await client.post("/applications", json=APPLICATION)
    application_id = created.json()["data"]["id"]

    queue = await client.get("/admin/applications", headers=auth_headers(admin_user), params={"status": "PENDING"})
    assert queue.json()["data"]["total"] == 1

    response = await client.patch(
        f"/admin/applications/{application_id}",
        headers=auth_headers(admin_user),
        json={"status": "APPROVED", "notes": "Strong proof of results"},
    )
    assert response.status_code == 200
    data = response.json()["data"]
    assert data["status"] == "APPROVED"
    assert data["reviewed_at"] is not None

    log = await db.scalar(select(AdminAuditLog).where(AdminAuditLog.entity_id == application_id))
    assert log.action == "APPROVED_APPLICATION"
    assert log.admin_id == admin_user.id


@pytest.mark.asyncio
async def test_review_application_rejects_pending_status(client: AsyncClient, admin_user: User):
    created = await client.post("/applications", json=APPLICATION)
    response = await client.patch(
        f"/admin/applications/{created.json()['data']['id']}",
        headers=auth_headers(admin_user),
        json={"status": "PENDING"},
    )
    assert response.status_code == 400


# ── Mentor Moderation ──────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_flag_and_unflag_mentor(client: AsyncClient, admin_user: User, mentor: Mentor, db: AsyncSession):
    headers = auth_headers(admin_user)
    flagged = await client.post("/admin/mentors/flag", headers=headers, json={
        "mentor_id": mentor.id, "reason": "Suspicious reviews",
    })
    assert flagged.status_code == 200

    listing = await client.get("/admin/mentors", headers=headers, params={"flagged": True})
    items = listing.json()["data"]["items"]
    assert [m["id"] for m in items] == [mentor.id]
    assert items[0]["flag_reason"] == "Suspicious reviews"

    await client.post("/admin/mentors/unflag", headers=headers, json={"mentor_id": mentor.id})
    await db.refresh(mentor)
    assert mentor.flagged is False
    assert mentor.flag_reason is None


@pytest.mark.asyncio
async def test_toggle_mentor_active(client: AsyncClient, admin_user: User, mentor: Mentor):
    headers = auth_headers(admin_user)
    off = await client.post("/admin/mentors/toggle-active", headers=headers, json={"mentor_id": mentor.id})
    assert off.json()["data"] == {"is_active": False}

    public = await client.get(f"/mentors/{mentor.id}")
    assert public.status_code == 404

    on = await client.post("/admin/mentors/toggle-active", headers=headers, json={"mentor_id": mentor.id})
    assert on.json()["data"] == {"is_active": True}


@pytest.mark.asyncio
async def test_delete_mentor(client: AsyncClient, admin_user: User, mentor: Mentor, db: AsyncSession):
    response = await client.delete(f"/admin/mentors/{mentor.id}", headers=auth_headers(admin_user))
    assert response.status_code == 200
    assert await db.scalar(select(Mentor.id).where(Mentor.id == mentor.id)) is None

    missing = await client.delete(f"/admin/mentors/{mentor.id}", headers=auth_headers(admin_user))
    assert missing.status_code == 404


# ── Disputes ───────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_list_disputes(client: AsyncClient, admin_user: User, disputed_booking: Booking):
    response = await client.get("/admin/disputes", headers=auth_headers(admin_user), params={"unresolved": True})
    items = response.json()["data"]["items"]
    assert len(items) == 1
    assert items[0]["fraud_notes"] == "Mentor never joined the call"


@pytest.mark.asyncio
async def test_resolve_requires_fraud_report(client: AsyncClient, admin_user: User, completed_booking: Booking):
    response = await _resolve(client, admin_user, completed_booking, decision="NO_ACTION")
    assert response.status_code == 400
    assert response.json()["error"] == "This booking has no fraud report"


@pytest.mark.asyncio
async def test_resolve_full_refund(
    client: AsyncClient, admin_user: User, disputed_booking: Booking, stripe_stub, db: AsyncSession,
):
    response = await _resolve(client, admin_user, disputed_booking, decision="REFUND_STUDENT_FULL")
    assert response.status_code == 200
    data = response.json()["data"]
    assert data["refund_amount"] == 6000
    assert data["stripe_refund_id"] == "re_test"
    stripe_stub.issue_refund.assert_called_once_with("pi_test", 6000, "fraudulent")

    await db.refresh(disputed_booking)
    assert disputed_booking.status == BookingStatus.COMPLETED
    assert disputed_booking.payout_status == PayoutStatus.REFUNDED
    assert disputed_booking.admin_reviewed_by == admin_user.email

    notes = (await db.scalars(
        select(Notification).where(Notification.type == NotificationType.DISPUTE_RESOLVED)
    )).all()
    assert len(notes) == 2


@pytest.mark.asyncio
async def test_resolve_partial_refund_pays_remainder(
    client: AsyncClient, admin_user: User, disputed_booking: Booking, stripe_stub, db: AsyncSession,
):
    response = await _resolve(
        client, admin_user, disputed_booking,
        decision="REFUND_STUDENT_PARTIAL", custom_refund_amount=2000,
    )
    data = response.json()["data"]
    assert data["refund_amount"] == 2000
    assert data["payout_amount"] == 4000
    assert data["stripe_payout_id"] == "tr_test"
    stripe_stub.issue_refund.assert_called_once_with("pi_test", 2000, "requested_by_customer")

    await db.refresh(disputed_booking)
    assert disputed_booking.payout_status == PayoutStatus.PAID_OUT


@pytest.mark.asyncio
async def test_resolve_partial_refund_over_total(
    client: AsyncClient, admin_user: User, disputed_booking: Booking, stripe_stub,
):
    response = await _resolve(
        client, admin_user, disputed_booking,
        decision="REFUND_STUDENT_PARTIAL", custom_refund_amount=9000,
    )
    assert response.status_code == 400
    stripe_stub.issue_refund.assert_not_called()


@pytest.mark.asyncio
async def test_resolve_split_keeps_held_when_transfer_fails(
    client: AsyncClient, admin_user: User, disputed_booking: Booking, stripe_stub, db: AsyncSession,
):
    stripe_stub.create_payout.side_effect = stripe.APIError("connect down")
    response = await _resolve(client, admin_user, disputed_booking, decision="SPLIT_50_50")
    assert response.status_code == 200
    data = response.json()["data"]
    assert data["refund_amount"] == 3000
    assert data["stripe_payout_id"] is None

    await db.refresh(disputed_booking)
    assert disputed_booking.payout_status == PayoutStatus.HELD


@pytest.mark.asyncio
async def test_resolve_payout_mentor_full(
    client: AsyncClient, admin_user: User, disputed_booking: Booking, stripe_stub, db: AsyncSession,
):
    response = await _resolve(client, admin_user, disputed_booking, decision="PAYOUT_MENTOR_FULL")
    data = response.json()["data"]
    assert data["payout_amount"] == 5100
    assert data["refund_amount"] == 0
    stripe_stub.issue_refund.assert_not_called()

    await db.refresh(disputed_booking)
    assert disputed_booking.payout_status == PayoutStatus.PAID_OUT
    assert disputed_booking.payout_id == "tr_test"


@pytest.mark.asyncio
async def test_resolve_refund_failure_aborts(
    client: AsyncClient, admin_user: User, disputed_booking: Booking, stripe_stub, db: AsyncSession,
):
    stripe_stub.issue_refund.side_effect = stripe.APIError("card network down")
    response = await _resolve(client, admin_user, disputed_booking, decision="REFUND_STUDENT_FULL")
    assert response.status_code == 502

    await db.refresh(disputed_booking)
    assert disputed_booking.admin_decision is None


@pytest.mark.asyncio
@pytest.mark.parametrize("decision", ["UNDER_REVIEW", "NO_ACTION"])
async def test_resolve_without_money_movement(
    client: AsyncClient, admin_user: User, disputed_booking: Booking, stripe_stub, db: AsyncSession, decision,
):
    response = await _resolve(client, admin_user, disputed_booking, decision=decision, admin_notes="Waiting on logs")
    assert response.status_code == 200
    stripe_stub.issue_refund.assert_not_called()
    stripe_stub.create_payout.assert_not_called()

    await db.refresh(disputed_booking)
    assert disputed_booking.payout_status == PayoutStatus.HELD
    assert disputed_booking.admin_notes == "Waiting on logs"


# ── Audit Log ──────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_audit_log_records_actions(client: AsyncClient, admin_user: User, mentor: Mentor):
    headers = auth_headers(admin_user)
    await client.post("/admin/mentors/flag", headers=headers, json={"mentor_id": mentor.id, "reason": "Spam links"})
    await client.post("/admin/mentors/unflag", headers=headers, json={"mentor_id": mentor.id})

    response = await client.get("/admin/audit-logs", headers=headers, params={"action": "flag_mentor"})
    data = response.json()["data"]
    assert data["total"] == 1
    entry = data["items"][0]
    assert entry["admin_email"] == admin_user.email
    assert entry["entity_id"] == mentor.id
    assert entry["payload"] == {"reason": "Spam links"}
