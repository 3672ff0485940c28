"""
services/admin/router.py
Admin-only endpoints: mentor applications, mentor moderation,
fraud dispute resolution, and immutable audit log.

ALL mutations are logged to AdminAuditLog before returning.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

import stripe
from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload
from starlette.concurrency import run_in_threadpool

from config.database import get_db
from config.redis_client import RedisCache, get_redis
from services.notification.dispatch import notify
from services.payment.stripe_connect import create_payout, issue_refund, reverse_transfer
from shared.middleware.auth import require_admin
from shared.models.models import (
    AdminAuditLog,
    Application,
    ApplicationStatus,
    Booking,
    DisputeDecision,
    Mentor,
    NotificationType,
    PayoutStatus,
    User,
)
from shared.schemas.schemas import (
    AdminFlagRequest,
    AdminMentorRequest,
    ApplicationCreateRequest,
    ApplicationResponse,
    ApplicationReviewRequest,
    DisputeResolveRequest,
    DisputeResponse,
    MentorAdminResponse,
    dump,
    ok,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["Admin"])
applications_router = APIRouter(prefix="/applications", tags=["Applications"])


# ── Helpers ────────────────────────────────────────────────────────────────────

async def _log(
    db: AsyncSession,
    admin: User,
    action: str,
    entity_type: str,
    entity_id: str,
    payload: dict | None = None,
    request: Request | None = None,
):
    """Append an immutable record to AdminAuditLog."""
    log = AdminAuditLog(
        admin_id=admin.id,
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        payload=payload or {},
        ip_address=request.client.host if request and request.client else None,
    )
    db.add(log)


def _page(items: list, total: int, page: int, page_size: int) -> dict:
    return {
        "items": items,
        "total": total,
        "page": page,
        "page_size": page_size,
        "pages": -(-total // page_size),  # ceiling division
    }


async def _mentor_or_404(db: AsyncSession, mentor_id: str) -> Mentor:
    mentor = await db.get(Mentor, mentor_id)
    if not mentor:
        raise HTTPException(status_code=404, detail="Mentor not found")
    return mentor


# ── Applications (public submit) ───────────────────────────────────────────────

@applications_router.post("", status_code=status.HTTP_201_CREATED)
async def submit_application(
    data: ApplicationCreateRequest,
    db: AsyncSession = Depends(get_db),
):
    """Apply to become a mentor. Links to an existing account with the same email."""
    email = data.email.lower()
    user_id = await db.scalar(select(User.id).where(User.email == email))
    application = Application(
        user_id=user_id,
        full_name=data.full_name,
        email=email,
        topic=data.topic,
        proof_links=data.proof_links,
        offer_type=data.offer_type,
        access_price=data.access_price,
        hourly_rate=data.hourly_rate,
    )
    db.add(application)
    await db.commit()

    logger.info(f"[application:create] {application.id} topic={data.topic!r}")
    return ok(dump(ApplicationResponse, application), message="Application submitted")


# ── Application Review Queue ───────────────────────────────────────────────────

@router.get("/applications")
async def list_applications(
    status_filter: Optional[ApplicationStatus] = Query(None, alias="status"),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=50),
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Applications ordered oldest first (FIFO queue)."""
    query = select(Application).order_by(Application.created_at.asc())
    if status_filter:
        query = query.where(Application.status == status_filter)

    total = await db.scalar(select(func.count()).select_from(query.subquery()))
    result = await db.execute(query.offset((page - 1) * page_size).limit(page_size))
    items = [dump(ApplicationResponse, a) for a in result.scalars().all()]
    return ok(_page(items, total, page, page_size))


@router.patch("/applications/{application_id}")
async def review_application(
    application_id: str,
    data: ApplicationReviewRequest,
    request: Request,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """
    Approve or reject an application. Approval does not create the mentor
    profile; the applicant completes /mentor-setup afterwards.
    """
    application = await db.get(Application, application_id)
    if not application:
        raise HTTPException(status_code=404, detail="Application not found")

    application.status = ApplicationStatus(data.status)
    application.review_notes = data.notes
    application.reviewed_at = datetime.now(timezone.utc)

    await _log(db, current_user, f"{application.status.value}_APPLICATION", "Application",
               application_id, {"notes": data.notes}, request)
    await db.commit()
    return ok(dump(ApplicationResponse, application))


# ── Mentor Moderation ──────────────────────────────────────────────────────────

@router.get("/mentors")
async def list_mentors(
    flagged: Optional[bool] = Query(None),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """All mentors, active or not, newest first."""
    query = select(Mentor).order_by(Mentor.created_at.desc())
    if flagged is not None:
        query = query.where(Mentor.flagged == flagged)

    total = await db.scalar(select(func.count()).select_from(query.subquery()))
    result = await db.execute(query.offset((page - 1) * page_size).limit(page_size))
    items = [dump(MentorAdminResponse, m) for m in result.scalars().all()]
    return ok(_page(items, total, page, page_size))


@router.post("/mentors/flag")
async def flag_mentor(
    data: AdminFlagRequest,
    request: Request,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    mentor = await _mentor_or_404(db, data.mentor_id)
    mentor.flagged = True
    mentor.flag_reason = data.reason

    await _log(db, current_user, "FLAG_MENTOR", "Mentor", mentor.id, {"reason": data.reason}, request)
    await db.commit()
    await RedisCache(redis).invalidate_mentor(mentor.id)
    return ok(message="Mentor flagged")


@router.post("/mentors/unflag")
async def unflag_mentor(
    data: AdminMentorRequest,
    request: Request,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    mentor = await _mentor_or_404(db, data.mentor_id)
    mentor.flagged = False
    mentor.flag_reason = None

    await _log(db, current_user, "UNFLAG_MENTOR", "Mentor", mentor.id, {}, request)
    await db.commit()
    await RedisCache(redis).invalidate_mentor(mentor.id)
    return ok(message="Mentor unflagged")


@router.post("/mentors/toggle-active")
async def toggle_mentor_active(
    data: AdminMentorRequest,
    request: Request,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    """Hide a mentor from the catalogue or bring them back."""
    mentor = await _mentor_or_404(db, data.mentor_id)
    mentor.is_active = not mentor.is_active

    await _log(db, current_user, "ACTIVATE_MENTOR" if mentor.is_active else "DEACTIVATE_MENTOR",
               "Mentor", mentor.id, {}, request)
    await db.commit()
    await RedisCache(redis).invalidate_mentor(mentor.id)
    return ok({"is_active": mentor.is_active})


@router.delete("/mentors/{mentor_id}")
async def delete_mentor(
    mentor_id: str,
    request: Request,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    """Delete a mentor profile together with its availability and bookings."""
    mentor = await _mentor_or_404(db, mentor_id)
    await _log(db, current_user, "DELETE_MENTOR", "Mentor", mentor_id, {"name": mentor.name}, request)
    await db.delete(mentor)
    await db.commit()
    await RedisCache(redis).invalidate_mentor(mentor.id)
    return ok(message="Mentor deleted")


# ── Disputes ───────────────────────────────────────────────────────────────────

@router.get("/disputes")
async def list_disputes(
    unresolved: bool = Query(False, description="Only bookings without an admin decision"),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Fraud-reported bookings, most recent report first."""
    query = (
        select(Booking)
        .where(Booking.is_fraud_reported == True)
        .order_by(Booking.fraud_reported_at.desc())
    )
    if unresolved:
        query = query.where(Booking.admin_decision.is_(None))

    total = await db.scalar(select(func.count()).select_from(query.subquery()))
    result = await db.execute(query.offset((page - 1) * page_size).limit(page_size))
    items = [dump(DisputeResponse, b) for b in result.scalars().all()]
    return ok(_page(items, total, page, page_size))


async def _refund(booking: Booking, amount: int, reason: str) -> str:
    try:
        refund = await run_in_threadpool(issue_refund, booking.stripe_payment_intent_id, amount, reason)
    except stripe.StripeError as e:
        logger.error(f"[admin:resolve] refund failed for booking {booking.id}: {e}")
        raise HTTPException(status_code=502, detail="Failed to process refund")
    return refund.id


async def _pay_mentor(booking: Booking, amount: int, description: str, required: bool) -> Optional[str]:
    connect_id = booking.mentor.stripe_connect_id
    if not connect_id or amount <= 0:
        return None
    try:
        transfer = await run_in_threadpool(create_payout, connect_id, amount, booking.id, description)
    except stripe.StripeError as e:
        logger.error(f"[admin:resolve] payout failed for booking {booking.id}: {e}")
        if required:
            raise HTTPException(status_code=502, detail="Failed to process payout")
        return None
    return transfer.id


@router.post("/disputes/{booking_id}/resolve")
async def resolve_dispute(
    booking_id: str,
    data: DisputeResolveRequest,
    request: Request,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """
    Settle a fraud-reported booking.

    Refund failures abort the resolution. A failed mentor transfer after a
    successful partial refund is logged and the payout stays HELD.
    """
    result = await db.execute(
        select(Booking).options(selectinload(Booking.mentor)).where(Booking.id == booking_id)
    )
    booking = result.scalar_one_or_none()
    if not booking:
        raise HTTPException(status_code=404, detail="Booking not found")
    if not booking.is_fraud_reported:
        raise HTTPException(status_code=400, detail="This booking has no fraud report")
    if not booking.stripe_payment_intent_id:
        raise HTTPException(status_code=400, detail="No payment to refund")

    decision = DisputeDecision(data.decision)
    total = booking.total_price
    refund_amount, payout_amount = 0, 0
    refund_id: Optional[str] = None
    transfer_id: Optional[str] = None
    payout_status = PayoutStatus(booking.payout_status)

    if decision == DisputeDecision.REFUND_STUDENT_FULL:
        refund_amount = total
        if booking.payout_id and payout_status == PayoutStatus.PAID_OUT:
            try:
                await run_in_threadpool(reverse_transfer, booking.payout_id)
                logger.info(f"[admin:resolve] reversed transfer {booking.payout_id}")
            except stripe.StripeError as e:
                logger.error(f"[admin:resolve] failed to reverse transfer {booking.payout_id}: {e}")
        refund_id = await _refund(booking, refund_amount, "fraudulent")
        payout_status = PayoutStatus.REFUNDED

    elif decision in (DisputeDecision.REFUND_STUDENT_PARTIAL, DisputeDecision.SPLIT_50_50):
        if decision == DisputeDecision.REFUND_STUDENT_PARTIAL and data.custom_refund_amount:
            refund_amount = data.custom_refund_amount
        else:
            refund_amount = round(total * 0.5)
        if refund_amount > total:
            raise HTTPException(status_code=400, detail="Refund amount exceeds booking total")
        payout_amount = total - refund_amount
        refund_id = await _refund(booking, refund_amount, "requested_by_customer")
        label = "Partial payout" if decision == DisputeDecision.REFUND_STUDENT_PARTIAL else "50/50 split"
        transfer_id = await _pay_mentor(
            booking, payout_amount, f"{label} after dispute resolution", required=False,
        )
        payout_status = PayoutStatus.PAID_OUT if transfer_id else PayoutStatus.HELD

    elif decision == DisputeDecision.PAYOUT_MENTOR_FULL:
        payout_amount = booking.mentor_payout or total
        transfer_id = await _pay_mentor(
            booking, payout_amount, "Full payout - dispute resolved in mentor's favor", required=True,
        )
        payout_status = PayoutStatus.PAID_OUT if transfer_id else PayoutStatus.HELD

    else:
        # UNDER_REVIEW / NO_ACTION: no money moves
        payout_status = PayoutStatus.HELD

    now = datetime.now(timezone.utc)
    booking.admin_reviewed_at = now
    booking.admin_reviewed_by = current_user.email
    booking.admin_decision = decision
    booking.admin_notes = data.admin_notes
    booking.payout_status = payout_status
    if refund_amount > 0:
        booking.refund_amount = refund_amount
        booking.stripe_refund_id = refund_id
    if transfer_id:
        booking.payout_id = transfer_id
        booking.payout_released_at = now

    ref = booking.id[:8]
    student = await db.get(User, booking.user_id)
    mentor_user = await db.get(User, booking.mentor.user_id)
    await notify(
        db, student, NotificationType.DISPUTE_RESOLVED,
        booking_id=booking.id, link=f"/bookings/{booking.id}", ref=ref,
        detail=f"Refund of ${refund_amount / 100:.2f} has been processed." if refund_amount else "",
    )
    await notify(
        db, mentor_user, NotificationType.DISPUTE_RESOLVED,
        booking_id=booking.id, link="/mentor-dashboard", ref=ref,
        detail=f"Payment of ${payout_amount / 100:.2f} has been processed." if transfer_id else "",
    )

    await _log(db, current_user, "RESOLVE_DISPUTE", "Booking", booking.id, {
        "decision": decision.value,
        "refund_amount": refund_amount,
        "payout_amount": payout_amount,
    }, request)
    await db.commit()

    logger.info(
        f"[admin:resolve] booking {booking.id} decision={decision.value} "
        f"refund={refund_amount}c payout={payout_amount}c"
    )
    return ok({
        "booking": dump(DisputeResponse, booking),
        "refund_amount": refund_amount,
        "payout_amount": payout_amount,
        "stripe_refund_id": refund_id,
        "stripe_payout_id": transfer_id,
    })


# ── Audit Log ─────────────────────────────────────────────────────────────────

@router.get("/audit-logs")
async def get_audit_logs(
    action: str = Query(None, description="Filter by action type e.g. FLAG_MENTOR"),
    entity_type: str = Query(None),
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=100),
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Immutable admin audit log. Append-only, never editable."""
    query = (
        select(AdminAuditLog, User)
        .join(User, User.id == AdminAuditLog.admin_id)
        .order_by(AdminAuditLog.created_at.desc())
    )
    if action:
        query = query.where(AdminAuditLog.action == action.upper())
    if entity_type:
        query = query.where(AdminAuditLog.entity_type == entity_type)

    total = await db.scalar(select(func.count()).select_from(query.subquery()))
    result = await db.execute(query.offset((page - 1) * page_size).limit(page_size))
    rows = result.all()

    items = [
        {
            "id": row[0].id,
            "admin_name": row[1].name,
            "admin_email": row[1].email,
            "action": row[0].action,
            "entity_type": row[0].entity_type,
            "entity_id": row[0].entity_id,
            "payload": row[0].payload,
            "ip_address": row[0].ip_address,
            "created_at": row[0].created_at.isoformat(),
        }
        for row in rows
    ]
    return ok(_page(items, total, page, page_size))
