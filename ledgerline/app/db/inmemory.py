"""In-memory implementation of the row isolation policy semantics.

Mirrors what PostgreSQL does with the policies rendered by ``rls``:
permissive policies are OR-ed per command, a command with no applicable
policy is denied, read predicates filter rows out silently and write checks
fail the statement. Used by the property tests and by tooling that reasons
about a policy set without a database.
"""

from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

from ledgerline.app.db.context import TenantScope
from ledgerline.app.db.models import ScopeKind
from ledgerline.app.db.rls import ALL_OPERATIONS, IsolationPolicy, PolicyOperation


class RowSecurityError(Exception):
    """New row violates a row-level security write check."""

    def __init__(self, table: str, operation: PolicyOperation) -> None:
        super().__init__(
            f'new row violates row-level security policy for table "{table}" ({operation.value})'
        )
        self.table = table
        self.operation = operation


@dataclass
class SessionSettings:
    """Session variables as text, the way set_config stores them."""

    tenant_id: str = ""
    organization_id: str = ""
    bypass: str = "off"

    @classmethod
    def for_scope(cls, scope: TenantScope) -> "SessionSettings":
        org = "" if scope.organization_id is None else str(scope.organization_id)
        return cls(tenant_id=scope.tenant_id, organization_id=org)

    @property
    def bypass_on(self) -> bool:
        return self.bypass == "on"


class PolicyEvaluator:
    """Evaluates isolation policies for rows and session settings."""

    def __init__(self, policies: Iterable[IsolationPolicy] = ()) -> None:
        self._policies: dict[str, IsolationPolicy] = {}
        for policy in policies:
            self.apply(policy)

    def apply(self, policy: IsolationPolicy) -> None:
        """Install a table's policy set, replacing any previous one."""
        self._policies[policy.table] = policy

    def policy_for(self, table: str) -> IsolationPolicy:
        return self._policies[table]

    def active_policy_names(self, table: str) -> list[str]:
        policy = self._policies.get(table)
        if policy is None:
            return []
        names = [policy.policy_name(op) for op in ALL_OPERATIONS if op in policy.operations]
        names.append(policy.bypass_policy_name)
        return names

    def _matches(self, policy: IsolationPolicy, row: dict[str, Any], settings: SessionSettings) -> bool:
        value = row.get(policy.spec.column)
        if value is None:
            return False
        if policy.spec.kind is ScopeKind.TENANT:
            return settings.tenant_id != "" and value == settings.tenant_id
        if settings.organization_id == "":
            return False
        return value == int(settings.organization_id)

    def row_visible(
        self,
        table: str,
        row: dict[str, Any],
        settings: SessionSettings,
        operation: PolicyOperation,
    ) -> bool:
        """USING clause: may this command see/target the existing row."""
        if settings.bypass_on:
            return True
        policy = self._policies[table]
        if operation not in policy.operations or operation is PolicyOperation.INSERT:
            return False
        return self._matches(policy, row, settings)

    def row_writable(
        self,
        table: str,
        row: dict[str, Any],
        settings: SessionSettings,
        operation: PolicyOperation,
    ) -> bool:
        """WITH CHECK clause: may this command write the new row."""
        if settings.bypass_on:
            return True
        policy = self._policies[table]
        if operation not in policy.operations:
            return False
        if operation is PolicyOperation.UPDATE and not policy.update_write_check:
            return True
        return self._matches(policy, row, settings)


@dataclass
class InMemoryIsolatedStore:
    """Tables of plain rows guarded by a PolicyEvaluator."""

    evaluator: PolicyEvaluator
    _tables: dict[str, dict[int, dict[str, Any]]] = field(default_factory=dict)
    _next_id: int = 1

    def seed(self, table: str, row: dict[str, Any]) -> int:
        """Insert as the schema owner during setup, before policies matter."""
        row_id = self._next_id
        self._next_id += 1
        self._tables.setdefault(table, {})[row_id] = {**row, "id": row_id}
        return row_id

    def select(self, table: str, settings: SessionSettings) -> list[dict[str, Any]]:
        return [
            dict(row)
            for row in self._tables.get(table, {}).values()
            if self.evaluator.row_visible(table, row, settings, PolicyOperation.SELECT)
        ]

    def insert(self, table: str, row: dict[str, Any], settings: SessionSettings) -> int:
        if not self.evaluator.row_writable(table, row, settings, PolicyOperation.INSERT):
            raise RowSecurityError(table, PolicyOperation.INSERT)
        return self.seed(table, row)

    def update(
        self, table: str, row_id: int, values: dict[str, Any], settings: SessionSettings
    ) -> int:
        """Returns affected row count; invisible rows are simply not updated."""
        row = self._tables.get(table, {}).get(row_id)
        if row is None or not self.evaluator.row_visible(
            table, row, settings, PolicyOperation.UPDATE
        ):
            return 0
        new_row = {**row, **values, "id": row_id}
        if not self.evaluator.row_writable(table, new_row, settings, PolicyOperation.UPDATE):
            raise RowSecurityError(table, PolicyOperation.UPDATE)
        self._tables[table][row_id] = new_row
        return 1

    def delete(self, table: str, row_id: int, settings: SessionSettings) -> int:
        row = self._tables.get(table, {}).get(row_id)
        if row is None or not self.evaluator.row_visible(
            table, row, settings, PolicyOperation.DELETE
        ):
            return 0
        del self._tables[table][row_id]
        return 1
