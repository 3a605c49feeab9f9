"""Runtime invariant violations - the single discriminated error type.

Every startup precondition and per-request guard in the isolation layer
raises RuntimeInvariantViolation. Callers branch on ``code``, never on the
message text.
"""

from enum import Enum
from typing import Any

# JSON-serializable value types for violation details
JsonValue = str | int | float | bool | None | dict[str, Any] | list[Any]


class ViolationClass(str, Enum):
    """Where a violation is fatal."""

    STARTUP = "startup"
    REQUEST = "request"


class InvariantCode(str, Enum):
    """Closed set of runtime invariant codes."""

    ENV_INVALID = "ENV_INVALID"
    GOVERNANCE_LOCK_MISSING = "GOVERNANCE_LOCK_MISSING"
    GOVERNANCE_LOCK_INVALID = "GOVERNANCE_LOCK_INVALID"
    DB_MIGRATIONS_MISSING = "DB_MIGRATIONS_MISSING"
    RBAC_ROLE_UNKNOWN = "RBAC_ROLE_UNKNOWN"
    RBAC_ROLE_FORBIDDEN = "RBAC_ROLE_FORBIDDEN"
    API_VERSION_HEADER_MISSING = "API_VERSION_HEADER_MISSING"
    API_VERSION_MISMATCH = "API_VERSION_MISMATCH"
    TENANT_CONTEXT_MISSING = "TENANT_CONTEXT_MISSING"
    TENANT_ISOLATION_VIOLATION = "TENANT_ISOLATION_VIOLATION"
    BYPASS_UNAUTHORIZED = "BYPASS_UNAUTHORIZED"


# code -> (violation class, HTTP status used when raised inside a request)
_CODE_TABLE: dict[InvariantCode, tuple[ViolationClass, int]] = {
    InvariantCode.ENV_INVALID: (ViolationClass.STARTUP, 500),
    InvariantCode.GOVERNANCE_LOCK_MISSING: (ViolationClass.STARTUP, 500),
    InvariantCode.GOVERNANCE_LOCK_INVALID: (ViolationClass.STARTUP, 500),
    InvariantCode.DB_MIGRATIONS_MISSING: (ViolationClass.STARTUP, 500),
    InvariantCode.RBAC_ROLE_UNKNOWN: (ViolationClass.REQUEST, 403),
    InvariantCode.RBAC_ROLE_FORBIDDEN: (ViolationClass.REQUEST, 403),
    InvariantCode.API_VERSION_HEADER_MISSING: (ViolationClass.REQUEST, 400),
    InvariantCode.API_VERSION_MISMATCH: (ViolationClass.REQUEST, 400),
    InvariantCode.TENANT_CONTEXT_MISSING: (ViolationClass.REQUEST, 401),
    InvariantCode.TENANT_ISOLATION_VIOLATION: (ViolationClass.REQUEST, 403),
    InvariantCode.BYPASS_UNAUTHORIZED: (ViolationClass.REQUEST, 403),
}

# Opaque messages returned to HTTP callers; full details stay in server logs.
PUBLIC_MESSAGES: dict[InvariantCode, str] = {
    InvariantCode.RBAC_ROLE_UNKNOWN: "Role is not permitted",
    InvariantCode.RBAC_ROLE_FORBIDDEN: "Insufficient role",
    InvariantCode.API_VERSION_HEADER_MISSING: "API version header required",
    InvariantCode.API_VERSION_MISMATCH: "Unsupported API version",
    InvariantCode.TENANT_CONTEXT_MISSING: "Authentication required",
    InvariantCode.TENANT_ISOLATION_VIOLATION: "Request rejected",
    InvariantCode.BYPASS_UNAUTHORIZED: "Request rejected",
}


class RuntimeInvariantViolation(Exception):
    """A runtime invariant does not hold.

    Created at the point of violation and never retried. Fatal to the
    operation it guards: process start for startup codes, the current
    request for request codes.
    """

    def __init__(
        self,
        code: InvariantCode,
        message: str,
        details: dict[str, JsonValue] | None = None,
    ) -> None:
        super().__init__(f"{code.value}: {message}")
        self.code = code
        self.message = message
        self.details: dict[str, JsonValue] = details or {}
        # Set once the violation has been written to the security log
        self.logged = False

    @property
    def violation_class(self) -> ViolationClass:
        return _CODE_TABLE[self.code][0]

    @property
    def http_status(self) -> int:
        return _CODE_TABLE[self.code][1]

    @property
    def public_message(self) -> str:
        return PUBLIC_MESSAGES.get(self.code, "Service unavailable")

    def to_log_dict(self) -> dict[str, JsonValue]:
        """Full structured form for server-side logs."""
        return {
            "code": self.code.value,
            "message": self.message,
            "details": self.details,
        }
