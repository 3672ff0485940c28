"""
services/payment/stripe_connect.py
Thin Stripe wrapper: checkout sessions, Connect transfers, refunds,
payout schedules and Express onboarding.

Every call goes through the "stripe" circuit breaker and retries transient
connection errors. The functions are synchronous (the Stripe SDK is);
async callers run them with starlette's run_in_threadpool.
"""

import logging
from typing import Optional, Tuple

import stripe
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from config.settings import settings
from shared.utils.resilience import circuit_breaker_manager

logger = logging.getLogger(__name__)

stripe.api_key = settings.STRIPE_SECRET_KEY

stripe_breaker = circuit_breaker_manager.get_breaker(
    "stripe",
    exclude=[stripe.InvalidRequestError, stripe.CardError, stripe.SignatureVerificationError],
)

_transient = retry(
    retry=retry_if_exception_type((stripe.APIConnectionError, stripe.RateLimitError)),
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=0.5, max=4),
    reraise=True,
)


# ── Fee Split ─────────────────────────────────────────────────

def calculate_payout_amounts(total_price: int) -> Tuple[int, int]:
    """Split a charge in cents into (platform_fee, mentor_payout)."""
    platform_fee = round(total_price * settings.PLATFORM_FEE_PERCENT / 100)
    return platform_fee, total_price - platform_fee


# ── Checkout ──────────────────────────────────────────────────

@_transient
@stripe_breaker
def create_checkout_session(
    booking_id: str,
    amount: int,
    product_name: str,
    customer_email: Optional[str],
):
    return stripe.checkout.Session.create(
        mode="payment",
        line_items=[
            {
                "price_data": {
                    "currency": settings.STRIPE_CURRENCY,
                    "unit_amount": amount,
                    "product_data": {"name": product_name},
                },
                "quantity": 1,
            }
        ],
        customer_email=customer_email,
        success_url=f"{settings.APP_BASE_URL}/bookings/{booking_id}?paid=1",
        cancel_url=f"{settings.APP_BASE_URL}/bookings/{booking_id}?cancelled=1",
        metadata={"booking_id": booking_id},
        payment_intent_data={"metadata": {"booking_id": booking_id}},
        idempotency_key=f"checkout-{booking_id}",
    )


def construct_webhook_event(payload: bytes, signature: Optional[str]):
    """Verify the Stripe-Signature header. Raises stripe.SignatureVerificationError."""
    return stripe.Webhook.construct_event(
        payload, signature or "", settings.STRIPE_WEBHOOK_SECRET
    )


# ── Transfers & Refunds ───────────────────────────────────────

@_transient
@stripe_breaker
def create_payout(connect_id: str, amount: int, booking_id: str, description: str):
    """Transfer the mentor's share to their Connect account."""
    transfer = stripe.Transfer.create(
        amount=amount,
        currency=settings.STRIPE_CURRENCY,
        destination=connect_id,
        description=description,
        metadata={"booking_id": booking_id},
        idempotency_key=f"payout-{booking_id}-{amount}",
    )
    logger.info(f"[stripe] transfer {transfer.id} for booking {booking_id}: {amount}c")
    return transfer


@_transient
@stripe_breaker
def reverse_transfer(transfer_id: str):
    return stripe.Transfer.create_reversal(transfer_id)


@_transient
@stripe_breaker
def issue_refund(
    payment_intent_id: str,
    amount: Optional[int] = None,
    reason: str = "requested_by_customer",
):
    """Refund a payment intent; `amount=None` refunds in full."""
    params = {"payment_intent": payment_intent_id, "reason": reason}
    if amount is not None:
        params["amount"] = amount
    refund = stripe.Refund.create(**params)
    logger.info(f"[stripe] refund {refund.id} on {payment_intent_id} ({reason})")
    return refund


# ── Connect Accounts ──────────────────────────────────────────

@_transient
@stripe_breaker
def update_payout_schedule(connect_id: str, to_daily: bool):
    """Trusted mentors get daily payouts; everyone else weekly on Fridays."""
    schedule = (
        {"interval": "daily"}
        if to_daily
        else {"interval": "weekly", "weekly_anchor": "friday"}
    )
    return stripe.Account.modify(connect_id, settings={"payouts": {"schedule": schedule}})


@_transient
@stripe_breaker
def create_connect_account(email: str, mentor_name: str):
    parts = mentor_name.strip().split()
    first_name = parts[0] if parts else mentor_name
    last_name = " ".join(parts[1:]) or mentor_name
    return stripe.Account.create(
        type="express",
        email=email,
        country="US",
        capabilities={
            "card_payments": {"requested": True},
            "transfers": {"requested": True},
        },
        business_type="individual",
        business_profile={
            "mcc": "8299",
            "product_description": "Online mentorship and coaching services",
        },
        individual={"email": email, "first_name": first_name, "last_name": last_name},
        metadata={"mentor_name": mentor_name},
    )


@_transient
@stripe_breaker
def create_account_link(connect_id: str) -> str:
    link = stripe.AccountLink.create(
        account=connect_id,
        refresh_url=f"{settings.APP_BASE_URL}/mentor-dashboard/payments?refresh=1",
        return_url=f"{settings.APP_BASE_URL}/mentor-dashboard/payments?onboarded=1",
        type="account_onboarding",
    )
    return link.url


@_transient
@stripe_breaker
def check_account_onboarding(connect_id: str) -> bool:
    account = stripe.Account.retrieve(connect_id)
    return bool(account.charges_enabled and account.payouts_enabled)
