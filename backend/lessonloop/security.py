"""
LessonLoop Backend — Authentication & Tenancy Dependencies
============================================================

What:  Bearer-token verification and per-organisation role checks.
How:   Tokens are HS256 JWTs (PyJWT) whose `sub` claim is the user UUID.
       `require_org_role(...)` builds a FastAPI dependency that resolves the
       caller's active membership for the `{org_id}` path parameter.
Who:   Every route under /api/orgs/{org_id}/... depends on one of these.

Tenant isolation is enforced here and again in every service query
(`WHERE org_id = :org_id`).
"""

import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional

import jwt
from fastapi import Depends, Header
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from lessonloop.config import settings
from lessonloop.database import get_db_session
from lessonloop.exceptions import AuthenticationError, PermissionDeniedError
from lessonloop.models.organisation import OrgMembership


def create_access_token(user_id: uuid.UUID, expires_minutes: int = 60) -> str:
    """Mints a token for `user_id`. Used by local tooling and the test suite."""
    now = datetime.now(timezone.utc)
    payload: Dict[str, Any] = {
        "sub": str(user_id),
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(minutes=expires_minutes)).timestamp()),
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_access_token(token: str) -> uuid.UUID:
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except jwt.ExpiredSignatureError as exc:
        raise AuthenticationError("Token expired") from exc
    except jwt.InvalidTokenError as exc:
        raise AuthenticationError("Invalid token") from exc

    try:
        return uuid.UUID(str(payload["sub"]))
    except (KeyError, ValueError) as exc:
        raise AuthenticationError("Invalid token payload") from exc


def _parse_bearer(auth_header: Optional[str]) -> str:
    if not auth_header:
        raise AuthenticationError("Missing Authorization header")
    parts = auth_header.split(" ", 1)
    if len(parts) != 2 or parts[0].lower() != "bearer" or not parts[1].strip():
        raise AuthenticationError("Invalid auth scheme")
    return parts[1].strip()


async def get_current_user_id(
    authorization: Optional[str] = Header(default=None, alias="Authorization"),
) -> uuid.UUID:
    return decode_access_token(_parse_bearer(authorization))


async def get_membership(
    db: AsyncSession, org_id: uuid.UUID, user_id: uuid.UUID
) -> Optional[OrgMembership]:
    """The caller's active membership of `org_id`, or None."""
    result = await db.execute(
        select(OrgMembership).where(
            OrgMembership.org_id == org_id,
            OrgMembership.user_id == user_id,
            OrgMembership.status == "active",
        )
    )
    return result.scalar_one_or_none()


def require_org_role(*allowed_roles: str) -> Callable:
    """
    Dependency factory: the caller must hold an active membership of the
    path's organisation with one of `allowed_roles`.

    Usage:
        membership: OrgMembership = Depends(require_org_role(*FINANCE_ROLES))
    """

    async def dependency(
        org_id: uuid.UUID,
        user_id: uuid.UUID = Depends(get_current_user_id),
        db: AsyncSession = Depends(get_db_session),
    ) -> OrgMembership:
        membership = await get_membership(db, org_id, user_id)
        if membership is None or membership.role not in allowed_roles:
            raise PermissionDeniedError(
                context={"org_id": str(org_id), "user_id": str(user_id)}
            )
        return membership

    return dependency
