"""
Role gates for the document API.

  viewer  read document status and chat citations
  member  upload documents (department curators, chat users attaching files)
  admin   delete documents, run repair sweeps, manage the search index

Roles are ordered; a gate admits the named role and everything above it.
"""

from __future__ import annotations

from enum import IntEnum
from typing import Annotated

from fastapi import Depends, HTTPException, status

from app.auth.token import TokenPayload, get_current_user


class Role(IntEnum):
    VIEWER = 0
    MEMBER = 1
    ADMIN  = 2

    @classmethod
    def parse(cls, name: str) -> "Role | None":
        try:
            return cls[name.upper()]
        except KeyError:
            return None


def require_role(minimum_role: str):
    """Dependency factory: 403 unless the caller's role reaches `minimum_role`.

    An unrecognised `minimum_role` is a wiring mistake; the gate then admits
    nobody instead of everybody.
    """
    required = Role.parse(minimum_role)

    async def _gate(
        user: Annotated[TokenPayload, Depends(get_current_user)],
    ) -> TokenPayload:
        granted = Role.parse(user.role)
        if required is None or granted is None or granted < required:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"This action needs the '{minimum_role}' role; token grants '{user.role}'.",
            )
        return user

    return _gate


require_member = require_role("member")
require_admin  = require_role("admin")

RequireMember = Depends(require_member)
RequireAdmin  = Depends(require_admin)
