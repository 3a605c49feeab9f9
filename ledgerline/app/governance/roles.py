"""Governed role registry.

The set of valid RBAC roles comes from the contract lock and is installed
once by the startup sequence. Request-handling code only reads it; there is
no refresh short of a process restart.
"""

from dataclasses import dataclass

from ledgerline.app.governance.locks import ContractLock
from ledgerline.app.invariants.errors import InvariantCode, RuntimeInvariantViolation


@dataclass(frozen=True)
class RoleRegistry:
    """Authoritative, read-only set of role names."""

    version: str
    roles: frozenset[str]

    @classmethod
    def from_contract(cls, contract: ContractLock) -> "RoleRegistry":
        return cls(version=contract.version, roles=frozenset(contract.rbac.roles))

    @classmethod
    def empty(cls) -> "RoleRegistry":
        """Registry that governs nothing: every role check fails closed."""
        return cls(version="unavailable", roles=frozenset())

    def __contains__(self, role: object) -> bool:
        return role in self.roles


_registry: RoleRegistry | None = None


def install_role_registry(registry: RoleRegistry) -> None:
    """Set the process-wide registry. Startup sequence and tests only."""
    global _registry
    _registry = registry


def reset_role_registry() -> None:
    """Forget the installed registry. Tests only."""
    global _registry
    _registry = None


def get_role_registry() -> RoleRegistry:
    """Installed registry.

    Raises:
        RuntimeError: If startup validation has not installed one.
    """
    if _registry is None:
        raise RuntimeError("Role registry not initialized; run startup validation first")
    return _registry


def assert_role_governed(role: str, registry: RoleRegistry | None = None) -> None:
    """Reject a role that the governance lock does not declare.

    Raises:
        RuntimeInvariantViolation: RBAC_ROLE_UNKNOWN with the offending role
            and the full known-role list.
    """
    if registry is None:
        registry = get_role_registry()
    if role not in registry:
        raise RuntimeInvariantViolation(
            InvariantCode.RBAC_ROLE_UNKNOWN,
            f"Role is not governed: {role!r}",
            {
                "role": role,
                "known_roles": sorted(registry.roles),
                "registry_version": registry.version,
            },
        )
