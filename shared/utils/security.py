"""
shared/utils/security.py
Access tokens, password hashing, the cron bearer check and meeting links.
"""

import hmac
import secrets
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

from jose import JWTError, jwt
from passlib.context import CryptContext

from config.settings import settings

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

ACCESS_TOKEN_TYPE = "access"
MEETING_ROOM_BASE = "https://meet.jit.si/Mentorship-"
MEETING_ROOM_CONFIG = "#config.startWithVideoMuted=false&config.prejoinPageEnabled=false"


# ── JWT ───────────────────────────────────────────────────────

def create_access_token(user_id: str, role: str, email: str) -> tuple[str, str]:
    """
    Sign an access token for the user.
    Returns (token, jti); logout deny-lists the jti until the token expires.
    """
    issued = datetime.now(timezone.utc)
    jti = uuid.uuid4().hex
    claims = {
        "sub": str(user_id),
        "email": email,
        "role": role,
        "type": ACCESS_TOKEN_TYPE,
        "jti": jti,
        "iat": issued,
        "exp": issued + timedelta(minutes=settings.JWT_ACCESS_TOKEN_EXPIRE_MINUTES),
    }
    return jwt.encode(claims, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM), jti


def verify_access_token(token: str) -> dict:
    """Decoded claims. Raises JWTError for a bad signature, expiry or token type."""
    claims = jwt.decode(token, settings.JWT_SECRET_KEY, algorithms=[settings.JWT_ALGORITHM])
    if claims.get("type") != ACCESS_TOKEN_TYPE:
        raise JWTError("Invalid token type")
    return claims


def get_token_remaining_ttl(claims: dict) -> int:
    """Whole seconds until `exp`, never negative."""
    return max(0, int(claims.get("exp", 0) - datetime.now(timezone.utc).timestamp()))


# ── Passwords ─────────────────────────────────────────────────

def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    return pwd_context.verify(password, password_hash)


# ── Cron ──────────────────────────────────────────────────────

def verify_cron_secret(authorization: Optional[str], secret: str) -> bool:
    """Constant-time check of an `Authorization: Bearer <secret>` header."""
    if not secret or not authorization:
        return False
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        return False
    return hmac.compare_digest(token.strip(), secret)


# ── Meeting links ─────────────────────────────────────────────

def generate_meeting_link() -> str:
    """Unguessable Jitsi room for a confirmed session."""
    room = secrets.token_hex(6)
    return f"{MEETING_ROOM_BASE}{room}{MEETING_ROOM_CONFIG}"
