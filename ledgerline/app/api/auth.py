"""Tenant context resolution from bearer session tokens.

Tokens are HS256 JWTs signed with SESSION_SECRET. The tenant claim is
mandatory; anything missing or unparseable fails closed with
TENANT_CONTEXT_MISSING and no partial scope. This module never queries data.
"""

import uuid
from collections.abc import Iterable, Mapping
from datetime import datetime, timedelta, timezone
from typing import Annotated, Any

import jwt
from fastapi import Depends, Header

from ledgerline.app.config import get_settings
from ledgerline.app.db.context import Principal, TenantScope
from ledgerline.app.governance.roles import assert_role_governed, get_role_registry
from ledgerline.app.invariants.errors import InvariantCode, RuntimeInvariantViolation

TOKEN_ALGORITHM = "HS256"
SESSION_AUDIENCE = "ledgerline:session"


def _reject(reason: str) -> RuntimeInvariantViolation:
    return RuntimeInvariantViolation(
        InvariantCode.TENANT_CONTEXT_MISSING,
        "Tenant context could not be established",
        {"reason": reason},
    )


def issue_session_token(
    subject: str,
    tenant_id: str,
    secret: str,
    *,
    organization_id: int | None = None,
    roles: Iterable[str] = (),
    ttl: timedelta = timedelta(hours=1),
) -> str:
    """Sign a session token. Used by the login flow and by tests."""
    now = datetime.now(timezone.utc)
    claims: dict[str, Any] = {
        "sub": subject,
        "tenant_id": tenant_id,
        "roles": list(roles),
        "aud": SESSION_AUDIENCE,
        "iat": now,
        "exp": now + ttl,
        "jti": uuid.uuid4().hex,
    }
    if organization_id is not None:
        claims["org_id"] = organization_id
    return jwt.encode(claims, secret, algorithm=TOKEN_ALGORITHM)


def resolve_tenant_scope(claims: Mapping[str, Any]) -> TenantScope:
    """Build a TenantScope from verified token claims.

    Raises:
        RuntimeInvariantViolation: TENANT_CONTEXT_MISSING
    """
    tenant_id = claims.get("tenant_id")
    if not isinstance(tenant_id, str) or not tenant_id.strip():
        raise _reject("missing_tenant_claim")

    org_id = claims.get("org_id")
    if org_id is not None and (isinstance(org_id, bool) or not isinstance(org_id, int)):
        raise _reject("invalid_org_claim")

    return TenantScope(tenant_id=tenant_id, organization_id=org_id)


def decode_session_token(token: str, secret: str) -> dict[str, Any]:
    try:
        return jwt.decode(
            token,
            secret,
            algorithms=[TOKEN_ALGORITHM],
            audience=SESSION_AUDIENCE,
            options={"require": ["exp", "sub"]},
        )
    except jwt.InvalidTokenError as e:
        raise _reject(f"invalid_token:{type(e).__name__}") from e


async def get_current_principal(
    authorization: Annotated[str | None, Header()] = None,
) -> Principal:
    """Resolve the authenticated principal and its tenant scope.

    Raises:
        RuntimeInvariantViolation: TENANT_CONTEXT_MISSING (HTTP 401)
    """
    if not authorization:
        raise _reject("missing_authorization_header")

    if not authorization.startswith("Bearer "):
        raise _reject("invalid_authorization_scheme")

    token = authorization[7:]  # Strip "Bearer "
    claims = decode_session_token(token, get_settings().session_secret)

    scope = resolve_tenant_scope(claims)
    roles = claims.get("roles", [])
    if not isinstance(roles, list) or not all(isinstance(r, str) for r in roles):
        raise _reject("invalid_roles_claim")

    return Principal(subject=str(claims["sub"]), scope=scope, roles=tuple(roles))


def require_roles(*allowed: str):
    """Dependency factory: governed roles only, and one of ``allowed``.

    Every role the principal carries must be in the governed registry; a
    token with an ungoverned role is rejected even if it also holds an
    allowed one.
    """

    async def _check(
        principal: Annotated[Principal, Depends(get_current_principal)],
    ) -> Principal:
        registry = get_role_registry()
        for role in (*allowed, *principal.roles):
            assert_role_governed(role, registry)

        if allowed and not set(principal.roles) & set(allowed):
            raise RuntimeInvariantViolation(
                InvariantCode.RBAC_ROLE_FORBIDDEN,
                "Principal holds none of the required roles",
                {"required": sorted(allowed), "held": sorted(principal.roles)},
            )
        return principal

    return _check
