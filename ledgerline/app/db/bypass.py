"""Break-glass RLS bypass.

Bypass is never a request-path feature. An operator obtains a signed,
short-lived grant naming themselves and a reason; presenting it sets
``app.bypass_rls`` on one connection only. Every activation is audited and
logged at WARNING, and the pool resets the flag when the connection is
returned.
"""

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import jwt
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection

from ledgerline.app.db.engine import BYPASS_INFO_KEY
from ledgerline.app.db.rls import BYPASS_SETTING
from ledgerline.app.invariants.errors import InvariantCode, RuntimeInvariantViolation
from ledgerline.app.utils.audit import AuditEvent, AuditSink, default_audit_sink
from ledgerline.app.utils.logging import security_logger
from ledgerline.app.utils.metrics import metrics

GRANT_ALGORITHM = "HS256"
GRANT_AUDIENCE = "ledgerline:rls-bypass"

SET_BYPASS_SQL = text("SELECT set_config(:setting, :value, false)")


@dataclass(frozen=True)
class BypassGrant:
    """Verified break-glass grant."""

    grant_id: str
    operator: str
    reason: str
    expires_at: datetime


def _unauthorized(reason: str) -> RuntimeInvariantViolation:
    return RuntimeInvariantViolation(
        InvariantCode.BYPASS_UNAUTHORIZED,
        "RLS bypass grant rejected",
        {"reason": reason},
    )


def issue_bypass_grant(operator: str, reason: str, secret: str, ttl_seconds: int) -> str:
    """Sign a grant for ``operator``.

    Raises:
        ValueError: If operator or reason is blank, or ttl is not positive.
    """
    if not operator.strip() or not reason.strip():
        raise ValueError("A bypass grant needs an operator and a reason")
    if ttl_seconds <= 0:
        raise ValueError("ttl_seconds must be positive")

    now = datetime.now(timezone.utc)
    claims = {
        "sub": operator,
        "reason": reason,
        "jti": uuid.uuid4().hex,
        "aud": GRANT_AUDIENCE,
        "iat": now,
        "exp": now + timedelta(seconds=ttl_seconds),
    }
    return jwt.encode(claims, secret, algorithm=GRANT_ALGORITHM)


def verify_bypass_grant(token: str, secret: str) -> BypassGrant:
    """Verify signature, audience and expiry of a grant.

    Raises:
        RuntimeInvariantViolation: BYPASS_UNAUTHORIZED
    """
    if not token:
        raise _unauthorized("missing_grant")
    try:
        claims = jwt.decode(
            token,
            secret,
            algorithms=[GRANT_ALGORITHM],
            audience=GRANT_AUDIENCE,
            options={"require": ["exp", "sub", "jti"]},
        )
    except jwt.InvalidTokenError as e:
        raise _unauthorized(f"invalid_grant:{type(e).__name__}") from e

    reason = claims.get("reason")
    if not isinstance(reason, str) or not reason.strip():
        raise _unauthorized("missing_reason")

    return BypassGrant(
        grant_id=claims["jti"],
        operator=claims["sub"],
        reason=reason,
        expires_at=datetime.fromtimestamp(claims["exp"], tz=timezone.utc),
    )


def bypass_active(conn: AsyncConnection) -> bool:
    return bool(conn.info.get(BYPASS_INFO_KEY))


async def activate_bypass(
    conn: AsyncConnection,
    grant_token: str,
    secret: str,
    audit: AuditSink | None = None,
) -> BypassGrant:
    """Turn on the RLS bypass for this connection only.

    Raises:
        RuntimeInvariantViolation: BYPASS_UNAUTHORIZED if the grant is
            missing, forged, expired or lacks a reason.
    """
    audit = audit or default_audit_sink
    try:
        grant = verify_bypass_grant(grant_token, secret)
    except RuntimeInvariantViolation as violation:
        security_logger.log_violation(violation)
        metrics.inc_violation(violation.code.value)
        audit.record(
            AuditEvent(kind="rls_bypass_rejected", actor="unknown", details=violation.to_log_dict())
        )
        raise

    if conn.dialect.name == "postgresql":
        await conn.execute(SET_BYPASS_SQL, {"setting": BYPASS_SETTING, "value": "on"})
        await conn.commit()
    conn.info[BYPASS_INFO_KEY] = grant.grant_id

    metrics.inc_bypass()
    security_logger.log_bypass(grant.operator, grant.reason, grant.grant_id, active=True)
    audit.record(
        AuditEvent(
            kind="rls_bypass_activated",
            actor=grant.operator,
            details={
                "grant_id": grant.grant_id,
                "reason": grant.reason,
                "expires_at": grant.expires_at.isoformat(),
            },
        )
    )
    return grant


async def deactivate_bypass(
    conn: AsyncConnection,
    grant: BypassGrant | None = None,
    audit: AuditSink | None = None,
) -> None:
    """Turn the bypass back off on this connection."""
    audit = audit or default_audit_sink
    grant_id = grant.grant_id if grant else conn.info.get(BYPASS_INFO_KEY, "")
    operator = grant.operator if grant else "unknown"
    if conn.dialect.name == "postgresql":
        await conn.execute(SET_BYPASS_SQL, {"setting": BYPASS_SETTING, "value": "off"})
        await conn.commit()
    conn.info.pop(BYPASS_INFO_KEY, None)

    security_logger.log_bypass(operator, grant.reason if grant else "", grant_id, active=False)
    audit.record(
        AuditEvent(
            kind="rls_bypass_deactivated",
            actor=operator,
            details={"grant_id": grant_id},
        )
    )
