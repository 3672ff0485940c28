"""
services/notification/dispatch.py
Notification delivery: in-app rows plus transactional email via Resend.
Email is best-effort; a failed send never fails the caller.
"""

import logging
from typing import Optional

import resend
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.concurrency import run_in_threadpool

from config.settings import settings
from shared.models.models import Notification, NotificationType, User
from shared.utils.resilience import circuit_breaker_manager

logger = logging.getLogger(__name__)

email_breaker = circuit_breaker_manager.get_breaker("resend")


# ── Templates ─────────────────────────────────────────────────

TEMPLATES = {
    NotificationType.BOOKING_CREATED: {
        "title": "New booking request",
        "message": "{student_name} booked a {booking_type} with you.",
    },
    NotificationType.BOOKING_CONFIRMED: {
        "title": "Booking confirmed",
        "message": "Your booking with {mentor_name} is confirmed.",
    },
    NotificationType.BOOKING_CANCELLED: {
        "title": "Booking cancelled",
        "message": "Booking {ref} was cancelled. Reason: {reason}",
    },
    NotificationType.BOOKING_RESCHEDULED: {
        "title": "Session rescheduled",
        "message": "Your session has been moved to {scheduled_at}.",
    },
    NotificationType.BOOKING_COMPLETED: {
        "title": "Session completed",
        "message": "{mentor_name} marked your session as completed. Please confirm it went well.",
    },
    NotificationType.SESSION_COMPLETION_REMINDER: {
        "title": "Complete your session",
        "message": "Please mark your session with {mentor_name} at {scheduled_at} as complete.",
    },
    NotificationType.SESSION_CONFIRMED: {
        "title": "Student confirmed session",
        "message": "{student_name} confirmed your completed session. Payment processing will begin.",
    },
    NotificationType.FRAUD_REPORTED: {
        "title": "Booking under review",
        "message": "A problem was reported for booking {ref}. Payout is on hold while we review it.",
    },
    NotificationType.PAYOUT_SENT: {
        "title": "Payout sent",
        "message": "${amount} for booking {ref} is on its way to your account.",
    },
    NotificationType.MENTOR_TRUSTED: {
        "title": "You're a trusted mentor!",
        "message": "You reached {count} verified sessions. Payouts are now released immediately.",
    },
    NotificationType.DISPUTE_RESOLVED: {
        "title": "Dispute resolved",
        "message": "The dispute for booking {ref} has been resolved. {detail}",
    },
    NotificationType.REVIEW_RECEIVED: {
        "title": "New review",
        "message": "You received a {rating}-star review.",
    },
}


def render(notification_type: NotificationType, **template_vars) -> tuple[str, str]:
    template = TEMPLATES[notification_type]
    return (
        template["title"].format(**template_vars),
        template["message"].format(**template_vars).strip(),
    )


# ── Senders ───────────────────────────────────────────────────

@email_breaker
def _send_via_resend(to_email: str, to_name: Optional[str], subject: str, html_body: str):
    resend.api_key = settings.RESEND_API_KEY
    recipient = f"{to_name} <{to_email}>" if to_name else to_email
    return resend.Emails.send({
        "from": f"{settings.EMAIL_FROM_NAME} <{settings.EMAIL_FROM}>",
        "to": [recipient],
        "subject": subject,
        "html": html_body,
    })


def _html(title: str, body: str, link: Optional[str]) -> str:
    button = (
        f'<p><a href="{settings.APP_BASE_URL}{link}" '
        f'style="background:#111;color:#fff;padding:10px 16px;border-radius:6px;'
        f'text-decoration:none;">Open</a></p>'
        if link else ""
    )
    return f"""
    <div style="font-family: sans-serif; max-width: 600px; margin: 0 auto; padding: 20px;">
        <h2 style="color: #333;">{title}</h2>
        <p style="color: #666; line-height: 1.6;">{body}</p>
        {button}
        <p style="color: #999; font-size: 12px; margin-top: 24px;">
            You received this email because you have an account on {settings.APP_NAME}.
        </p>
    </div>
    """


async def send_email(
    to_email: str,
    to_name: Optional[str],
    subject: str,
    body: str,
    link: Optional[str] = None,
) -> bool:
    """Send a transactional email. Returns True on success."""
    if not settings.RESEND_API_KEY:
        logger.debug(f"[email] RESEND_API_KEY not set; skipping '{subject}' to {to_email}")
        return False
    try:
        await run_in_threadpool(_send_via_resend, to_email, to_name, subject, _html(subject, body, link))
        return True
    except Exception as e:
        logger.warning(f"[email] send to {to_email} failed: {e}")
        return False


# ── Dispatcher ────────────────────────────────────────────────

async def notify(
    db: AsyncSession,
    user: User,
    notification_type: NotificationType,
    booking_id: Optional[str] = None,
    link: Optional[str] = None,
    email: bool = False,
    **template_vars,
) -> Notification:
    """
    Central notification dispatcher.
    1. Save to DB (in-app)
    2. Optionally send the same text by email
    """
    title, message = render(notification_type, **template_vars)
    notif = Notification(
        user_id=user.id,
        booking_id=booking_id,
        type=notification_type,
        title=title,
        message=message,
        link=link,
    )
    db.add(notif)
    await db.flush()

    if email:
        await send_email(user.email, user.name, title, message, link)
    return notif
