"""
services/auth/router.py
Credentials authentication endpoints.
Implements: Signup → Login (JWT issue) → Me → Logout (deny-list)
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from config.redis_client import RedisCache, get_redis
from config.settings import settings
from shared.middleware.auth import TokenData, get_current_user, get_token_data
from shared.models.models import User, UserRole
from shared.schemas.schemas import (
    LoginRequest,
    SignupRequest,
    TimezoneUpdateRequest,
    TokenResponse,
    UserResponse,
    dump,
    ok,
)
from shared.utils.security import (
    create_access_token,
    get_token_remaining_ttl,
    hash_password,
    verify_password,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["Authentication"])


# ── Helper ────────────────────────────────────────────────────

def _issue_token(user: User) -> dict:
    role = UserRole(user.role).value
    token, _ = create_access_token(user_id=user.id, role=role, email=user.email)
    return TokenResponse(
        access_token=token,
        expires_in=settings.JWT_ACCESS_TOKEN_EXPIRE_MINUTES * 60,
    ).model_dump()


async def _throttle(request: Request, redis, scope: str) -> None:
    client_ip = request.client.host if request.client else "unknown"
    if await RedisCache(redis).hit(scope, client_ip) > settings.RATE_LIMIT_UNAUTH_PER_MINUTE:
        raise HTTPException(status_code=429, detail="Too many requests")


# ── Endpoints ─────────────────────────────────────────────────

@router.post("/signup", status_code=status.HTTP_201_CREATED)
async def signup(
    data: SignupRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    """Create a credentials account and return an access token."""
    await _throttle(request, redis, "signup")

    email = data.email.lower()
    existing = await db.scalar(select(User).where(User.email == email))
    if existing:
        raise HTTPException(status_code=400, detail="Email already registered")

    user = User(
        email=email,
        name=data.name,
        password_hash=hash_password(data.password),
        role=UserRole.USER,
        timezone=settings.DEFAULT_TIMEZONE,
    )
    db.add(user)
    await db.commit()

    logger.info(f"[auth] new account {user.id}")
    return ok(
        {"user": dump(UserResponse, user), "token": _issue_token(user)},
        message="Account created",
    )


@router.post("/login")
async def login(
    data: LoginRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    await _throttle(request, redis, "login")

    user = await db.scalar(select(User).where(User.email == data.email.lower()))
    if not user or not user.password_hash or not verify_password(data.password, user.password_hash):
        raise HTTPException(status_code=401, detail="Invalid credentials")
    if not user.is_active:
        raise HTTPException(status_code=403, detail="User account is inactive")

    return ok(_issue_token(user))


@router.get("/me")
async def get_me(current_user: User = Depends(get_current_user)):
    """Return currently authenticated user's profile."""
    return ok(dump(UserResponse, current_user))


@router.put("/me/timezone")
async def update_timezone(
    data: TimezoneUpdateRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    current_user.timezone = data.timezone
    await db.commit()
    return ok({"timezone": current_user.timezone}, message="Timezone updated")


@router.post("/logout")
async def logout(
    token_data: TokenData = Depends(get_token_data),
    redis=Depends(get_redis),
):
    """
    Logout: add the access token JTI to the Redis deny-list until it expires.
    """
    await RedisCache(redis).revoke_token(token_data.jti, get_token_remaining_ttl(token_data.payload))
    return ok(message="Successfully logged out")
