"""
JWT Token Verification — OIDC-Compatible

Authentication itself happens upstream (the chat frontend's identity
provider). This service only verifies the bearer token it receives:

    Issuer:   settings.auth_issuer
    JWKS URI: <issuer>/.well-known/jwks.json
    Claims:   sub, email, <settings.auth_role_claim>, cognito:groups

Tokens are RS256-signed with rotating key sets. The public JWKS is fetched
once and cached (TTL: 1 hour). If a kid is missing we force-refresh.

Roles:
  admin   - delete documents, trigger repair, manage the search index
  member  - upload documents, read status and citations
  viewer  - read only
"""

from __future__ import annotations

import logging
import time
from typing import Annotated

import httpx
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import ExpiredSignatureError, JWTError, jwk, jwt
from pydantic import BaseModel

from app.core.config import settings

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# HTTP Bearer extractor
# ---------------------------------------------------------------------------

bearer_scheme = HTTPBearer(auto_error=True)

VALID_ROLES = ("viewer", "member", "admin")


# ---------------------------------------------------------------------------
# Verified token payload
# ---------------------------------------------------------------------------

class TokenPayload(BaseModel):
    """Parsed, validated JWT claims — passed to route handlers."""
    sub:   str          # provider user ID; stored as Document.uploaded_by
    email: str = ""
    role:  str = "member"
    exp:   int
    iss:   str

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


# ---------------------------------------------------------------------------
# JWKS cache (in-memory, TTL-based)
# ---------------------------------------------------------------------------

_JWKS_CACHE: dict[str, tuple[dict, float]] = {}   # issuer → (jwks, fetched_at)
_JWKS_TTL   = 3600   # 1 hour


async def _fetch_jwks(issuer: str) -> dict:
    """Fetch JWKS from the provider's well-known endpoint with TTL caching."""
    now = time.monotonic()
    cached = _JWKS_CACHE.get(issuer)
    if cached and (now - cached[1]) < _JWKS_TTL:
        return cached[0]

    jwks_uri = f"{issuer.rstrip('/')}/.well-known/jwks.json"
    async with httpx.AsyncClient(timeout=10.0) as client:
        resp = await client.get(jwks_uri)
        resp.raise_for_status()
        jwks = resp.json()

    _JWKS_CACHE[issuer] = (jwks, now)
    logger.debug("JWKS refreshed for issuer: %s", issuer)
    return jwks


async def _get_signing_key(token: str):
    """
    Extract kid from token header, fetch matching public key from JWKS.
    Force-refreshes the cache if the kid is not found (handles key rotation).
    """
    try:
        header = jwt.get_unverified_header(token)
    except JWTError as exc:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, detail="Invalid token header") from exc

    kid = header.get("kid")
    issuer = settings.auth_issuer

    for attempt in range(2):   # 0 = cached, 1 = force refresh
        if attempt == 1:
            _JWKS_CACHE.pop(issuer, None)

        try:
            jwks = await _fetch_jwks(issuer)
        except httpx.HTTPError as exc:
            logger.error("JWKS fetch failed | issuer=%s error=%s", issuer, exc)
            raise HTTPException(status.HTTP_503_SERVICE_UNAVAILABLE, detail="Identity provider unavailable") from exc

        for key_data in jwks.get("keys", []):
            if key_data.get("kid") == kid:
                return jwk.construct(key_data)

    raise HTTPException(
        status.HTTP_401_UNAUTHORIZED,
        detail=f"Unable to find signing key for kid={kid}",
    )


def extract_role(claims: dict) -> str:
    """
    Role from the configured claim, else the first cognito group.
    The configured admin role name maps to 'admin'; unknown values fall back to 'member'.
    """
    role = claims.get(settings.auth_role_claim) or claims.get("role")
    if not role and claims.get("cognito:groups"):
        role = claims["cognito:groups"][0]

    if role == settings.auth_admin_role:
        return "admin"
    if role not in VALID_ROLES:
        logger.warning("Unknown role '%s' in token, defaulting to 'member'", role)
        return "member"
    return role


# ---------------------------------------------------------------------------
# Main verification function
# ---------------------------------------------------------------------------

async def verify_token(token: str) -> TokenPayload:
    signing_key = await _get_signing_key(token)

    try:
        claims = jwt.decode(
            token,
            signing_key,
            algorithms=["RS256"],
            audience=settings.auth_audience or None,
            issuer=settings.auth_issuer,
            options={"verify_exp": True, "verify_aud": bool(settings.auth_audience)},
        )
    except ExpiredSignatureError:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, detail="Token has expired")
    except JWTError as exc:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, detail=f"Invalid token: {exc}")

    return TokenPayload(
        sub=claims["sub"],
        email=claims.get("email", ""),
        role=extract_role(claims),
        exp=claims["exp"],
        iss=claims["iss"],
    )


# ---------------------------------------------------------------------------
# FastAPI dependency
# ---------------------------------------------------------------------------

async def get_current_user(
    credentials: Annotated[HTTPAuthorizationCredentials, Depends(bearer_scheme)],
) -> TokenPayload:
    """Extract and validate the Bearer token."""
    return await verify_token(credentials.credentials)
