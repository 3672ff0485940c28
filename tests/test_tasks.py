"""
tests/test_tasks.py
Celery wrappers: sweep run lock and the per-booking payout task.
"""

from unittest.mock import AsyncMock, patch

import fakeredis
import pytest
from fakeredis import FakeAsyncRedis

from tasks import booking_tasks


@pytest.fixture
def redis_server():
    server = fakeredis.FakeServer()
    with patch(
        "tasks.booking_tasks.aioredis.from_url",
        lambda *args, **kwargs: FakeAsyncRedis(server=server, decode_responses=True),
    ):
        yield server


def test_locked_sweep_runs_and_releases_lock(redis_server):
    sweep = AsyncMock(return_value={"found": 0, "cancelled": 0, "failed": 0})

    summary = booking_tasks._locked_sweep("cancel-unpaid-bookings", sweep)

    assert summary == {"found": 0, "cancelled": 0, "failed": 0}
    sweep.assert_awaited_once()
    assert fakeredis.FakeRedis(server=redis_server).get("sweep_lock:cancel-unpaid-bookings") is None


def test_locked_sweep_skips_while_lock_held(redis_server):
    fakeredis.FakeRedis(server=redis_server).set("sweep_lock:process-payouts", "another-worker")
    sweep = AsyncMock()

    summary = booking_tasks._locked_sweep("process-payouts", sweep)

    assert summary == {"skipped": True}
    sweep.assert_not_awaited()
    assert fakeredis.FakeRedis(server=redis_server).get("sweep_lock:process-payouts") == b"another-worker"


def test_locked_sweep_releases_lock_on_failure(redis_server):
    sweep = AsyncMock(side_effect=RuntimeError("db down"))

    with pytest.raises(RuntimeError):
        booking_tasks._locked_sweep("completion-reminders", sweep)

    assert fakeredis.FakeRedis(server=redis_server).get("sweep_lock:completion-reminders") is None
