"""Row isolation policies

Revision ID: 002
Revises: 001
Create Date: 2026-09-30

Enables and forces row-level security on every scoped table, attaches the
four per-operation isolation policies plus the bypass policy, and creates
the tenant_isolation_audit view. PostgreSQL only; a no-op elsewhere.
"""

from collections.abc import Sequence

from alembic import op

from ledgerline.app.db.models import ScopeKind, ScopeSpec
from ledgerline.app.db.rls import (
    ALL_OPERATIONS,
    AUDIT_VIEW,
    IsolationPolicy,
    isolation_script,
)

# revision identifiers, used by Alembic.
revision: str = "002"
down_revision: str | None = "001"
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

# Pinned here so later model changes need their own migration
SCOPED_TABLES = (
    ScopeSpec("organization", "tenant_id", ScopeKind.TENANT),
    ScopeSpec("accounts", "tenant_id", ScopeKind.TENANT),
    ScopeSpec("invoices", "tenant_id", ScopeKind.TENANT),
    ScopeSpec("inventory_items", "tenant_id", ScopeKind.TENANT),
    ScopeSpec("audit_logs", "organization_id", ScopeKind.ORGANIZATION),
    ScopeSpec("documents", "organization_id", ScopeKind.ORGANIZATION),
)


def upgrade() -> None:
    """Apply isolation policies and the audit view."""
    if op.get_bind().dialect.name != "postgresql":
        return
    for statement in isolation_script([IsolationPolicy(spec) for spec in SCOPED_TABLES]):
        op.execute(statement)


def downgrade() -> None:
    """Remove policies and the audit view, disable row-level security."""
    if op.get_bind().dialect.name != "postgresql":
        return
    op.execute(f"DROP VIEW IF EXISTS {AUDIT_VIEW}")
    for spec in SCOPED_TABLES:
        policy = IsolationPolicy(spec)
        for operation in ALL_OPERATIONS:
            op.execute(f'DROP POLICY IF EXISTS "{policy.policy_name(operation)}" ON "{spec.table}"')
        op.execute(f'DROP POLICY IF EXISTS "{policy.bypass_policy_name}" ON "{spec.table}"')
        op.execute(f'ALTER TABLE "{spec.table}" NO FORCE ROW LEVEL SECURITY')
        op.execute(f'ALTER TABLE "{spec.table}" DISABLE ROW LEVEL SECURITY')
