"""Request scope for tenancy enforcement."""

from dataclasses import dataclass


@dataclass(frozen=True)
class TenantScope:
    """Tenant and organization identity for one request or session.

    Immutable once resolved. Every scoped database operation receives it by
    reference; nothing downstream re-derives it.
    """

    tenant_id: str
    organization_id: int | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.tenant_id, str) or not self.tenant_id.strip():
            raise ValueError("tenant_id must be a non-empty string")
        if self.organization_id is not None and (
            isinstance(self.organization_id, bool) or not isinstance(self.organization_id, int)
        ):
            raise ValueError("organization_id must be an integer")


@dataclass(frozen=True)
class Principal:
    """Authenticated caller: subject, resolved scope and claimed roles."""

    subject: str
    scope: TenantScope
    roles: tuple[str, ...] = ()
