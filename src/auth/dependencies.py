from fastapi import Header, HTTPException, status
from src.auth.context import AuthContext, SuperAdminContext
from src.auth.jwt import decode_access_token, decode_super_admin_token
from src import db


def _extract_bearer_token(authorization: str | None) -> str | None:
    """Extract token from 'Bearer <token>' header."""
    if not authorization:
        return None
    parts = authorization.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        return None
    return parts[1]


def _get_active_user(user_id: str) -> dict | None:
    result = db.supabase.table("users").select("id, email").eq(
        "id", user_id
    ).is_("deleted_at", "null").execute()
    if not result.data:
        return None
    return result.data[0]


async def get_current_user(authorization: str | None = Header(None)) -> AuthContext:
    """
    JWT session auth for user-facing mail endpoints.
    """
    token = _extract_bearer_token(authorization)
    if not token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing authorization header",
        )

    payload = decode_access_token(token)
    user = _get_active_user(payload["sub"]) if payload else None
    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired session",
        )

    return AuthContext(user_id=user["id"], email=user.get("email"))


async def get_current_super_admin(authorization: str | None = Header(None)) -> SuperAdminContext:
    """
    Super-admin JWT auth. Validates token type is 'super_admin' and user exists in super_admins table.
    """
    token = _extract_bearer_token(authorization)
    if not token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing authorization header",
        )

    payload = decode_super_admin_token(token)
    if not payload:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired super-admin token",
        )

    result = db.supabase.table("super_admins").select("id, email").eq(
        "id", payload["sub"]
    ).execute()

    if not result.data:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Super-admin not found",
        )

    super_admin = result.data[0]
    return SuperAdminContext(
        super_admin_id=super_admin["id"],
        email=super_admin["email"],
    )
