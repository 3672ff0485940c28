"""
services/cron/router.py
HTTP triggers for the scheduled sweeps, for hosts that drive cron over HTTP.
Guarded by `Authorization: Bearer <CRON_SECRET>`.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from config.settings import settings
from services.cron.sweeps import (
    auto_confirm_and_process_payouts,
    cancel_unpaid_bookings,
    send_completion_reminders,
)
from shared.schemas.schemas import ok
from shared.utils.security import verify_cron_secret

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/cron", tags=["Cron"], include_in_schema=False)


def require_cron_secret(authorization: Optional[str] = Header(None)) -> None:
    if not verify_cron_secret(authorization, settings.CRON_SECRET):
        logger.warning("[cron] rejected request with missing or invalid secret")
        raise HTTPException(status_code=401, detail="Unauthorized")


def optional_cron_secret(authorization: Optional[str] = Header(None)) -> None:
    """Reminders are harmless to repeat; only enforce the secret once one is configured."""
    if settings.CRON_SECRET:
        require_cron_secret(authorization)


@router.get("/cancel-unpaid-bookings", dependencies=[Depends(require_cron_secret)])
async def cron_cancel_unpaid_bookings(db: AsyncSession = Depends(get_db)):
    summary = await cancel_unpaid_bookings(db)
    return ok(summary, message=f"Cancelled {summary['cancelled']} unpaid booking(s)")


@router.get("/completion-reminders", dependencies=[Depends(optional_cron_secret)])
async def cron_completion_reminders(db: AsyncSession = Depends(get_db)):
    summary = await send_completion_reminders(db)
    return ok(summary, message=f"Sent {summary['sent']} completion reminder(s)")


@router.get("/process-payouts", dependencies=[Depends(require_cron_secret)])
async def cron_process_payouts(db: AsyncSession = Depends(get_db)):
    summary = await auto_confirm_and_process_payouts(db)
    return ok(summary, message="Payouts processed")
