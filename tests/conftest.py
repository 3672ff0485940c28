"""
tests/conftest.py
Shared fixtures: SQLite test database, fake Redis, Stripe/Celery stubs,
and factories for users, mentors and bookings.
"""

import os
import tempfile
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

# Settings are read once at import time; point them at test resources first.
os.environ.setdefault(
    "DATABASE_URL",
    f"sqlite+aiosqlite:///{os.path.join(tempfile.gettempdir(), 'mentorship_test.db')}",
)
os.environ.setdefault("JWT_SECRET_KEY", "test-jwt-secret")
os.environ.setdefault("CRON_SECRET", "test-cron-secret")
os.environ.setdefault("RESEND_API_KEY", "")
os.environ.setdefault("STRIPE_SECRET_KEY", "")

import pytest
import pytest_asyncio
from fakeredis import FakeAsyncRedis
from httpx import ASGITransport, AsyncClient

from config.database import AsyncSessionLocal, Base, engine
from config.redis_client import get_redis
from main import app
from shared.models.models import (
    Booking,
    BookingStatus,
    BookingType,
    Mentor,
    MentorCategory,
    OfferType,
    PayoutStatus,
    User,
    UserRole,
)
from shared.utils.security import create_access_token, hash_password

CRON_HEADERS = {"Authorization": "Bearer test-cron-secret"}


def auth_headers(user: User) -> dict:
    role = user.role.value if isinstance(user.role, UserRole) else user.role
    token, _ = create_access_token(user_id=user.id, role=role, email=user.email)
    return {"Authorization": f"Bearer {token}"}


# ── Infrastructure ─────────────────────────────────────────────────────────────

@pytest_asyncio.fixture(autouse=True)
async def setup_db():
    """Fresh schema for every test."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield
    await engine.dispose()


@pytest_asyncio.fixture
async def db():
    async with AsyncSessionLocal() as session:
        yield session


@pytest_asyncio.fixture
async def fake_redis():
    client = FakeAsyncRedis(decode_responses=True)
    yield client
    await client.flushall()
    await client.aclose()


@pytest_asyncio.fixture
async def client(fake_redis):
    app.dependency_overrides[get_redis] = lambda: fake_redis
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


@pytest.fixture(autouse=True)
def stripe_stub():
    """
    Replace every outbound Stripe call and the payout queue. Each mock is
    patched where it is imported so tests can assert on calls.
    """
    refund = MagicMock(id="re_test", status="succeeded", amount=5000)
    transfer = MagicMock(id="tr_test")
    checkout = MagicMock(id="cs_test", url="https://checkout.stripe.test/cs_test")

    issue_refund = MagicMock(return_value=refund)
    create_payout = MagicMock(return_value=transfer)
    schedule = MagicMock()
    enqueue = MagicMock()

    with patch("services.booking.lifecycle.issue_refund", issue_refund), \
         patch("services.admin.router.issue_refund", issue_refund), \
         patch("services.payment.payouts.create_payout", create_payout), \
         patch("services.admin.router.create_payout", create_payout), \
         patch("services.admin.router.reverse_transfer", MagicMock()), \
         patch("services.booking.lifecycle.update_payout_schedule", schedule), \
         patch("services.mentor.router.update_payout_schedule", schedule), \
         patch("services.payment.router.create_checkout_session", MagicMock(return_value=checkout)), \
         patch("services.payment.router.construct_webhook_event") as construct_event, \
         patch("tasks.payment_tasks.process_single_payout.delay", enqueue):
        yield SimpleNamespace(
            issue_refund=issue_refund,
            create_payout=create_payout,
            update_payout_schedule=schedule,
            construct_webhook_event=construct_event,
            enqueue_payout=enqueue,
        )


# ── Factories ──────────────────────────────────────────────────────────────────

@pytest_asyncio.fixture
async def make_user(db):
    counter = {"n": 0}

    async def _make(role: UserRole = UserRole.USER, **fields) -> User:
        counter["n"] += 1
        user = User(
            email=fields.pop("email", f"user{counter['n']}@example.com"),
            name=fields.pop("name", f"User {counter['n']}"),
            password_hash=hash_password("password123"),
            role=role,
            **fields,
        )
        db.add(user)
        await db.commit()
        return user

    return _make


@pytest_asyncio.fixture
async def user(make_user) -> User:
    return await make_user(email="student@example.com", name="Sam Student")


@pytest_asyncio.fixture
async def admin_user(make_user) -> User:
    return await make_user(UserRole.ADMIN, email="admin@example.com", name="Ada Admin")


@pytest_asyncio.fixture
async def mentor_user(make_user) -> User:
    return await make_user(email="mentor@example.com", name="Max Mentor")


@pytest_asyncio.fixture
async def make_mentor(db, make_user):
    async def _make(owner: User = None, **fields) -> Mentor:
        owner = owner or await make_user()
        mentor = Mentor(
            user_id=owner.id,
            name=fields.pop("name", owner.name or "Mentor"),
            category=fields.pop("category", MentorCategory.GAMING_ESPORTS),
            tagline=fields.pop("tagline", "Pro Valorant coach"),
            bio=fields.pop("bio", "Former pro player coaching ranked climbs for five years. " * 2),
            offer_type=fields.pop("offer_type", OfferType.BOTH),
            access_price=fields.pop("access_price", 2500),
            hourly_rate=fields.pop("hourly_rate", 6000),
            stripe_connect_id=fields.pop("stripe_connect_id", "acct_test"),
            stripe_onboarded=fields.pop("stripe_onboarded", True),
            **fields,
        )
        db.add(mentor)
        await db.commit()
        return mentor

    return _make


@pytest_asyncio.fixture
async def mentor(make_mentor, mentor_user) -> Mentor:
    return await make_mentor(mentor_user)


@pytest_asyncio.fixture
async def make_booking(db):
    async def _make(student: User, mentor: Mentor, **fields) -> Booking:
        status = fields.pop("status", BookingStatus.CONFIRMED)
        total = fields.pop("total_price", 6000)
        paid = fields.pop("paid", total > 0)
        booking = Booking(
            user_id=student.id,
            mentor_id=mentor.id,
            type=fields.pop("type", BookingType.SESSION),
            status=status,
            scheduled_at=fields.pop("scheduled_at", datetime.now(timezone.utc) + timedelta(days=2)),
            duration_minutes=fields.pop("duration_minutes", 60),
            total_price=total,
            platform_fee=fields.pop("platform_fee", round(total * 0.15)),
            mentor_payout=fields.pop("mentor_payout", total - round(total * 0.15)),
            stripe_payment_intent_id=fields.pop("stripe_payment_intent_id", "pi_test" if paid else None),
            stripe_paid_at=fields.pop("stripe_paid_at", datetime.now(timezone.utc) if paid else None),
            payout_status=fields.pop("payout_status", PayoutStatus.HELD),
            **fields,
        )
        db.add(booking)
        await db.commit()
        return booking

    return _make


@pytest_asyncio.fixture
async def completed_booking(make_booking, user, mentor) -> Booking:
    now = datetime.now(timezone.utc)
    return await make_booking(
        user, mentor,
        status=BookingStatus.COMPLETED,
        scheduled_at=now - timedelta(hours=3),
        mentor_completed_at=now - timedelta(hours=1),
        auto_confirm_at=now + timedelta(hours=71),
    )
