"""Row isolation policies (PostgreSQL row-level security).

Each scoped table gets four independent isolation policies, one per
operation kind, plus a single break-glass bypass policy. All predicates read
session variables through ``current_setting(name, true)`` so that an unset
variable is NULL and never matches a row.

The generated script is idempotent: every CREATE POLICY is preceded by a
DROP POLICY IF EXISTS, so re-applying it after a schema change leaves
exactly the same policy set.
"""

from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from enum import Enum

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection

from ledgerline.app.db.models import ScopeKind, ScopeSpec, scoped_tables

TENANT_SETTING = "app.current_tenant_id"
ORGANIZATION_SETTING = "app.current_organization_id"
BYPASS_SETTING = "app.bypass_rls"

AUDIT_VIEW = "tenant_isolation_audit"


class PolicyOperation(str, Enum):
    """Operation kinds, each enforced by its own policy."""

    SELECT = "select"
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


ALL_OPERATIONS: tuple[PolicyOperation, ...] = tuple(PolicyOperation)

# Isolation policies plus the bypass policy
EXPECTED_POLICY_COUNT = len(ALL_OPERATIONS) + 1


@dataclass(frozen=True)
class IsolationPolicy:
    """Named rule set for one scoped table."""

    spec: ScopeSpec
    operations: frozenset[PolicyOperation] = frozenset(ALL_OPERATIONS)
    # False leaves the UPDATE read predicate in place but accepts any new value
    update_write_check: bool = True

    @property
    def table(self) -> str:
        return self.spec.table

    def policy_name(self, operation: PolicyOperation) -> str:
        return f"{self.spec.table}_isolation_{operation.value}"

    @property
    def bypass_policy_name(self) -> str:
        return f"{self.spec.table}_admin_bypass"

    def without(self, *operations: PolicyOperation) -> "IsolationPolicy":
        """Copy with some operation kinds disabled."""
        return IsolationPolicy(
            spec=self.spec,
            operations=self.operations - set(operations),
            update_write_check=self.update_write_check,
        )

    def without_update_write_check(self) -> "IsolationPolicy":
        return IsolationPolicy(spec=self.spec, operations=self.operations, update_write_check=False)


def scope_predicate(spec: ScopeSpec) -> str:
    """SQL predicate comparing the scoping column to the session value."""
    column = _quote_ident(spec.column)
    if spec.kind is ScopeKind.TENANT:
        return f"{column} = current_setting('{TENANT_SETTING}', true)"
    return f"{column} = NULLIF(current_setting('{ORGANIZATION_SETTING}', true), '')::integer"


def bypass_predicate() -> str:
    return f"coalesce(current_setting('{BYPASS_SETTING}', true), 'off') = 'on'"


def policy_statements(policy: IsolationPolicy) -> list[str]:
    """Idempotent DDL applying one table's isolation policy set."""
    table = _quote_ident(policy.table)
    pred = scope_predicate(policy.spec)
    statements = [
        f"ALTER TABLE {table} ENABLE ROW LEVEL SECURITY",
        # Without FORCE the table owner would silently skip every policy
        f"ALTER TABLE {table} FORCE ROW LEVEL SECURITY",
    ]

    for operation in ALL_OPERATIONS:
        name = _quote_ident(policy.policy_name(operation))
        statements.append(f"DROP POLICY IF EXISTS {name} ON {table}")
        if operation not in policy.operations:
            continue
        if operation is PolicyOperation.SELECT:
            body = f"FOR SELECT USING ({pred})"
        elif operation is PolicyOperation.INSERT:
            body = f"FOR INSERT WITH CHECK ({pred})"
        elif operation is PolicyOperation.UPDATE:
            check = pred if policy.update_write_check else "true"
            body = f"FOR UPDATE USING ({pred}) WITH CHECK ({check})"
        else:
            body = f"FOR DELETE USING ({pred})"
        statements.append(f"CREATE POLICY {name} ON {table} {body}")

    bypass_name = _quote_ident(policy.bypass_policy_name)
    bypass = bypass_predicate()
    statements.append(f"DROP POLICY IF EXISTS {bypass_name} ON {table}")
    statements.append(
        f"CREATE POLICY {bypass_name} ON {table} FOR ALL USING ({bypass}) WITH CHECK ({bypass})"
    )
    return statements


def disable_policy_statement(policy: IsolationPolicy, operation: PolicyOperation) -> str:
    """Drop exactly one isolation policy, leaving the other three intact."""
    return (
        f"DROP POLICY IF EXISTS {_quote_ident(policy.policy_name(operation))} "
        f"ON {_quote_ident(policy.table)}"
    )


def audit_view_statement(tables: Iterable[str]) -> str:
    """Audit view: per scoped table, RLS flags and attached policy count."""
    names = ", ".join(f"'{_check_ident(t)}'" for t in tables)
    return (
        f"CREATE OR REPLACE VIEW {AUDIT_VIEW} AS "
        "SELECT c.relname::text AS table_name, "
        "c.relrowsecurity AS rls_enabled, "
        "c.relforcerowsecurity AS rls_forced, "
        "count(p.polname)::integer AS policy_count "
        "FROM pg_class c "
        "JOIN pg_namespace n ON n.oid = c.relnamespace "
        "LEFT JOIN pg_policy p ON p.polrelid = c.oid "
        f"WHERE n.nspname = current_schema() AND c.relkind = 'r' AND c.relname IN ({names}) "
        "GROUP BY c.relname, c.relrowsecurity, c.relforcerowsecurity"
    )


def default_policies(specs: Mapping[str, ScopeSpec] | None = None) -> list[IsolationPolicy]:
    """Full-strength policy for every scoped table in the ORM metadata."""
    if specs is None:
        specs = scoped_tables()
    return [IsolationPolicy(spec=spec) for spec in specs.values()]


def isolation_script(policies: Sequence[IsolationPolicy] | None = None) -> list[str]:
    """Complete, re-appliable isolation script (policies plus audit view)."""
    if policies is None:
        policies = default_policies()
    statements: list[str] = []
    for policy in policies:
        statements.extend(policy_statements(policy))
    statements.append(audit_view_statement(p.table for p in policies))
    return statements


async def apply_isolation_policies(
    conn: AsyncConnection, policies: Sequence[IsolationPolicy] | None = None
) -> None:
    """Execute the isolation script on a PostgreSQL connection."""
    for statement in isolation_script(policies):
        await conn.execute(text(statement))


@dataclass(frozen=True)
class TableIsolationStatus:
    """One row of the audit view."""

    table_name: str
    rls_enabled: bool
    rls_forced: bool
    policy_count: int

    @property
    def protected(self) -> bool:
        return self.rls_enabled and self.rls_forced and self.policy_count >= EXPECTED_POLICY_COUNT


async def audit_isolation(conn: AsyncConnection) -> list[TableIsolationStatus]:
    """Read the audit view."""
    result = await conn.execute(
        text(
            f"SELECT table_name, rls_enabled, rls_forced, policy_count FROM {AUDIT_VIEW} "
            "ORDER BY table_name"
        )
    )
    return [
        TableIsolationStatus(
            table_name=row.table_name,
            rls_enabled=bool(row.rls_enabled),
            rls_forced=bool(row.rls_forced),
            policy_count=int(row.policy_count),
        )
        for row in result
    ]


def find_unprotected(
    statuses: Sequence[TableIsolationStatus], expected_tables: Iterable[str] | None = None
) -> list[str]:
    """Tables missing from the audit view or not fully protected."""
    if expected_tables is None:
        expected_tables = scoped_tables().keys()
    by_name = {s.table_name: s for s in statuses}
    unprotected = []
    for table in sorted(expected_tables):
        status = by_name.get(table)
        if status is None or not status.protected:
            unprotected.append(table)
    return unprotected


def _check_ident(name: str) -> str:
    if not name.replace("_", "").isalnum() or not name[0].isalpha():
        raise ValueError(f"Unsafe SQL identifier: {name!r}")
    return name


def _quote_ident(name: str) -> str:
    return f'"{_check_ident(name)}"'
