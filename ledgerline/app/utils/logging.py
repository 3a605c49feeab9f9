"""Logging setup and structured security-event logging."""

import logging
from typing import Any

from ledgerline.app.db.context import TenantScope
from ledgerline.app.invariants.errors import (
    InvariantCode,
    RuntimeInvariantViolation,
    ViolationClass,
)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"

_SECURITY_CODES = frozenset(
    {InvariantCode.TENANT_ISOLATION_VIOLATION, InvariantCode.BYPASS_UNAUTHORIZED}
)


def configure_logging(level: str = "INFO") -> None:
    """Configure root logging once for the process."""
    logging.basicConfig(level=level, format=LOG_FORMAT)
    logging.getLogger().setLevel(level)


class StructuredSecurityLogger:
    """Structured logger for isolation and invariant events."""

    def __init__(self, name: str = "ledgerline.security") -> None:
        self._logger = logging.getLogger(name)

    def log_violation(
        self, violation: RuntimeInvariantViolation, scope: TenantScope | None = None
    ) -> None:
        """Log a violation. Isolation violations are always ERROR."""
        log_data: dict[str, Any] = violation.to_log_dict()
        if scope is not None:
            log_data["tenant_id"] = scope.tenant_id
            log_data["organization_id"] = scope.organization_id

        log_msg = f"Runtime invariant violated: {violation.code.value}"
        violation.logged = True
        if (
            violation.violation_class is ViolationClass.STARTUP
            or violation.code in _SECURITY_CODES
        ):
            self._logger.error(log_msg, extra={"structured": log_data})
        else:
            self._logger.warning(log_msg, extra={"structured": log_data})

    def log_bypass(self, operator: str, reason: str, grant_id: str, active: bool) -> None:
        """Break-glass activations are WARNING, never DEBUG."""
        log_data = {
            "operator": operator,
            "reason": reason,
            "grant_id": grant_id,
            "active": active,
        }
        state = "activated" if active else "deactivated"
        self._logger.warning(f"Row isolation bypass {state} by {operator}", extra={"structured": log_data})

    def log_pool_reset(self, reason: str, stale_scope: TenantScope | None) -> None:
        log_data: dict[str, Any] = {"reason": reason}
        if stale_scope is not None:
            log_data["stale_tenant_id"] = stale_scope.tenant_id
        self._logger.warning(f"Pooled connection scope reset: {reason}", extra={"structured": log_data})


security_logger = StructuredSecurityLogger()
