from datetime import datetime, timedelta, timezone
from jose import jwt, JWTError
from src.config import settings


def _encode(subject: str, token_type: str) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        "sub": subject,
        "type": token_type,
        "exp": now + timedelta(minutes=settings.jwt_expiration_minutes),
        "iat": now,
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def _decode(token: str, token_type: str) -> dict | None:
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return None
    if payload.get("type") != token_type or not payload.get("sub"):
        return None
    return payload


def create_access_token(user_id: str) -> str:
    """Create a signed JWT session token for a mail customer."""
    return _encode(user_id, "session")


def decode_access_token(token: str) -> dict | None:
    """Decode and validate a session JWT. Returns payload or None if invalid."""
    return _decode(token, "session")


def create_super_admin_token(super_admin_id: str) -> str:
    return _encode(super_admin_id, "super_admin")


def decode_super_admin_token(token: str) -> dict | None:
    return _decode(token, "super_admin")
