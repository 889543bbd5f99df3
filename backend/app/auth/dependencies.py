"""
Composed FastAPI Dependencies

Route handlers import from here: the authenticated user and the service
container built by the application lifespan.
"""

from __future__ import annotations

from typing import Annotated

from fastapi import Depends, HTTPException, Request, status

from app.auth.rbac import require_admin
from app.auth.token import TokenPayload, get_current_user
from app.services.container import ServiceContainer


def get_services(request: Request) -> ServiceContainer:
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(status.HTTP_503_SERVICE_UNAVAILABLE, detail="Service is starting up")
    return services


# ---------------------------------------------------------------------------
# Type aliases for cleaner route signatures
# ---------------------------------------------------------------------------

CurrentUser = Annotated[TokenPayload,     Depends(get_current_user)]
AdminUser   = Annotated[TokenPayload,     Depends(require_admin)]
Services    = Annotated[ServiceContainer, Depends(get_services)]
