"""
shared/middleware/auth.py
Request identity as FastAPI dependencies.

The bearer token only proves who the caller is. Role, active flag and the
mentor profile are always read from the database, so an admin demotion or a
fraud deactivation takes effect on the next request.
"""

from dataclasses import dataclass, field
from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from config.redis_client import RedisCache, get_redis
from shared.models.models import Mentor, User, UserRole
from shared.utils.security import verify_access_token

bearer = HTTPBearer(auto_error=False)


@dataclass
class TokenData:
    user_id: str
    email: str
    jti: str
    payload: dict = field(repr=False)

    @classmethod
    def from_claims(cls, claims: dict) -> "TokenData":
        return cls(user_id=claims["sub"], email=claims["email"], jti=claims["jti"], payload=claims)


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


async def get_token_data(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer),
    redis=Depends(get_redis),
) -> TokenData:
    """Decoded access token, rejected once its jti is on the logout deny-list."""
    if credentials is None:
        raise _unauthorized("Unauthorized")
    try:
        claims = verify_access_token(credentials.credentials)
    except JWTError:
        raise _unauthorized("Invalid or expired token")

    token = TokenData.from_claims(claims)
    if await RedisCache(redis).is_token_revoked(token.jti):
        raise _unauthorized("Token has been revoked")
    return token


async def get_current_user(
    token: TokenData = Depends(get_token_data),
    db: AsyncSession = Depends(get_db),
) -> User:
    user = await db.get(User, token.user_id)
    if user is None:
        raise _unauthorized("User not found")
    if not user.is_active:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="User account is inactive")
    return user


async def get_current_mentor(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> Mentor:
    """The caller's own mentor profile; mentor-facing routes depend on this."""
    mentor = await db.scalar(select(Mentor).where(Mentor.user_id == current_user.id))
    if mentor is None:
        raise HTTPException(status_code=404, detail="Mentor profile not found")
    return mentor


async def require_admin(current_user: User = Depends(get_current_user)) -> User:
    if current_user.role != UserRole.ADMIN:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden")
    return current_user
