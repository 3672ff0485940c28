"""
tasks/booking_tasks.py
Beat-driven wrappers around the scheduled sweeps in services/cron/sweeps.py.

Each run holds a Redis run lock named after the sweep, so a slow run is
never overlapped by the next beat tick. The HTTP cron endpoints call the
same sweeps without the lock.
"""

import logging
import uuid
from typing import Awaitable, Callable

import redis.asyncio as aioredis
from sqlalchemy.ext.asyncio import AsyncSession

from config.redis_client import RedisCache
from config.settings import settings
from services.cron import sweeps
from tasks.celery_app import celery_app
from tasks.payment_tasks import run_with_session

logger = logging.getLogger(__name__)

Sweep = Callable[[AsyncSession], Awaitable[dict]]


def _locked_sweep(name: str, sweep: Sweep) -> dict:
    async def _work(db: AsyncSession) -> dict:
        client = aioredis.from_url(settings.REDIS_URL, decode_responses=True)
        cache = RedisCache(client)
        owner = str(uuid.uuid4())
        try:
            if not await cache.acquire_run_lock(name, owner):
                logger.info(f"[cron:{name}] previous run still holds the lock, skipping")
                return {"skipped": True}
            try:
                return await sweep(db)
            finally:
                await cache.release_run_lock(name, owner)
        finally:
            await client.aclose()

    summary = run_with_session(_work)
    logger.info(f"[cron:{name}] {summary}")
    return summary


@celery_app.task
def cancel_unpaid_bookings():
    """Beat task: every 10 minutes."""
    return _locked_sweep("cancel-unpaid-bookings", sweeps.cancel_unpaid_bookings)


@celery_app.task
def send_completion_reminders():
    """Beat task: every 30 minutes."""
    return _locked_sweep("completion-reminders", sweeps.send_completion_reminders)


@celery_app.task
def auto_confirm_and_process_payouts():
    """Beat task: daily at 02:00 UTC."""
    return _locked_sweep("process-payouts", sweeps.auto_confirm_and_process_payouts)
