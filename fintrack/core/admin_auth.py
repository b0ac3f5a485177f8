"""
Admin authentication for the admin API.

Two ways in:
- X-Admin-Key header matching ADMIN_KEY (automation, scripts)
- X-Session-Id of a signed-in admin pseudo-session (the admin panel)

Every admin action is audited with the resolved actor id.
"""
import hashlib
import hmac
from dataclasses import dataclass
from typing import Literal, Optional

from fastapi import Depends, Request

from fintrack.core.config import settings
from fintrack.core.errors import AppError, AuthError
from fintrack.features.session.registry import SessionRegistry, get_session_registry
from fintrack.models.session import AdminPrincipal


@dataclass
class AdminActor:
    """Represents an authenticated admin actor."""
    actor_type: Literal["admin_session", "admin_key"]
    actor_id: str  # admin username or "key:<hash>"
    actor_display: Optional[str] = None


def verify_admin_key(request: Request) -> Optional[AdminActor]:
    """Return an AdminActor for a valid X-Admin-Key header, None otherwise."""
    expected_key = settings.ADMIN_KEY
    if not expected_key:
        return None

    header_key = request.headers.get("X-Admin-Key", "").strip()
    if not header_key or not hmac.compare_digest(header_key.encode(), expected_key.encode()):
        return None

    key_hash = hashlib.sha256(header_key.encode()).hexdigest()[:16]
    return AdminActor(actor_type="admin_key", actor_id=f"key:{key_hash}", actor_display="Admin API key")


def verify_admin_session(request: Request, registry: SessionRegistry) -> Optional[AdminActor]:
    controller = registry.find(request.headers.get("X-Session-Id"))
    if controller is None or not isinstance(controller.principal, AdminPrincipal):
        return None
    username = controller.principal.username
    return AdminActor(actor_type="admin_session", actor_id=username, actor_display=username)


def require_admin(
    request: Request,
    registry: SessionRegistry = Depends(get_session_registry),
) -> AdminActor:
    """
    FastAPI dependency: Require admin authentication.

    Usage:
        @router.get("/admin/endpoint")
        def admin_endpoint(actor: AdminActor = Depends(require_admin)):
            ...
    """
    actor = verify_admin_session(request, registry) or verify_admin_key(request)
    if actor:
        return actor

    if not settings.ADMIN_KEY and not settings.ADMIN_USERNAME:
        raise AppError(
            "Admin authentication not configured",
            code="admin_auth_unconfigured",
            status_code=503,
        )
    raise AuthError("Unauthorized: invalid or missing admin credentials", code="admin_unauthorized")
