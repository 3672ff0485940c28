"""
tasks/payment_tasks.py
Celery tasks for payout operations:
- Per-booking payout hand-off after verification or mentor completion

All tasks are idempotent: process_booking_payout skips settled bookings,
and Stripe transfers carry an idempotency key.
"""

import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config.database import build_engine, get_db_context
from tasks.celery_app import celery_app

logger = logging.getLogger(__name__)

T = TypeVar("T")


# ── Helpers ────────────────────────────────────────────────────────────────────

def run_with_session(work: Callable[[AsyncSession], Awaitable[T]]) -> T:
    """
    Run an async unit of work on a fresh event loop with its own engine.
    Celery workers are sync, and a pooled engine cannot cross event loops.
    """
    async def _main() -> T:
        engine = build_engine(pooled=False)
        session_factory = async_sessionmaker(engine, expire_on_commit=False, autoflush=False)
        try:
            async with get_db_context(session_factory) as db:
                return await work(db)
        finally:
            await engine.dispose()

    return asyncio.run(_main())


# ── Payout Tasks ───────────────────────────────────────────────────────────────

@celery_app.task(bind=True, max_retries=5, default_retry_delay=300)
def process_single_payout(self, booking_id: str):
    """
    Decide and execute the payout for one booking.

    Called when:
    - A learner verifies a session (survey, confirm, or /verify)
    - A mentor marks a booking COMPLETED

    Stripe failures are retried; the daily payouts sweep is the backstop.
    """
    from services.payment.payouts import process_booking_payout

    async def _work(db: AsyncSession) -> dict:
        outcome = await process_booking_payout(db, booking_id)
        await db.commit()
        return outcome

    try:
        outcome = run_with_session(_work)
    except Exception as exc:
        logger.error(f"process_single_payout failed for booking {booking_id}: {exc}")
        raise self.retry(exc=exc)

    logger.info(f"process_single_payout: booking {booking_id} -> {outcome['status']}")
    return outcome
