from app.auth.token import TokenPayload, get_current_user, verify_token
from app.auth.rbac import require_role, RequireMember, RequireAdmin
from app.auth.dependencies import AdminUser, CurrentUser, Services

__all__ = [
    "TokenPayload", "get_current_user", "verify_token",
    "require_role", "RequireMember", "RequireAdmin",
    "AdminUser", "CurrentUser", "Services",
]
