from dataclasses import dataclass


@dataclass
class AuthContext:
    """Identity context for an authenticated mail customer."""
    user_id: str
    email: str | None = None
    auth_method: str = "session"


@dataclass
class SuperAdminContext:
    """Identity context for super-admin requests (reconciliation, webhook audit)."""
    super_admin_id: str
    email: str
