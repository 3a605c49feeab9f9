"""Unit tests for rendered row isolation policy DDL."""

import re

import pytest

from ledgerline.app.db.models import ScopeKind, ScopeSpec, scoped_tables
from ledgerline.app.db.rls import (
    ALL_OPERATIONS,
    AUDIT_VIEW,
    EXPECTED_POLICY_COUNT,
    IsolationPolicy,
    PolicyOperation,
    TableIsolationStatus,
    audit_view_statement,
    default_policies,
    disable_policy_statement,
    find_unprotected,
    isolation_script,
    policy_statements,
)

INVOICES = ScopeSpec("invoices", "tenant_id", ScopeKind.TENANT)
DOCUMENTS = ScopeSpec("documents", "organization_id", ScopeKind.ORGANIZATION)

CREATE_RE = re.compile(r'^CREATE POLICY "(\w+)" ON "(\w+)"')
DROP_RE = re.compile(r'^DROP POLICY IF EXISTS "(\w+)" ON "(\w+)"')


def _created(statements: list[str]) -> list[str]:
    return [m.group(1) for s in statements if (m := CREATE_RE.match(s))]


def test_scoped_tables_from_model_metadata() -> None:
    specs = scoped_tables()

    assert set(specs) == {
        "organization",
        "accounts",
        "invoices",
        "inventory_items",
        "audit_logs",
        "documents",
    }
    assert specs["invoices"].kind is ScopeKind.TENANT
    assert specs["audit_logs"].column == "organization_id"
    assert "tenant" not in specs


def test_full_policy_set_for_table() -> None:
    statements = policy_statements(IsolationPolicy(INVOICES))

    assert statements[0] == 'ALTER TABLE "invoices" ENABLE ROW LEVEL SECURITY'
    assert statements[1] == 'ALTER TABLE "invoices" FORCE ROW LEVEL SECURITY'
    assert _created(statements) == [
        "invoices_isolation_select",
        "invoices_isolation_insert",
        "invoices_isolation_update",
        "invoices_isolation_delete",
        "invoices_admin_bypass",
    ]
    assert len(_created(statements)) == EXPECTED_POLICY_COUNT


def test_every_create_is_preceded_by_drop_if_exists() -> None:
    statements = policy_statements(IsolationPolicy(DOCUMENTS))
    dropped: set[str] = set()

    for statement in statements:
        if m := DROP_RE.match(statement):
            dropped.add(m.group(1))
        elif m := CREATE_RE.match(statement):
            assert m.group(1) in dropped


def test_script_is_deterministic() -> None:
    """Re-rendering yields the same statements; applying twice changes nothing."""
    assert isolation_script() == isolation_script()


def test_tenant_predicate_reads_session_setting() -> None:
    statements = policy_statements(IsolationPolicy(INVOICES))
    select = next(s for s in statements if "invoices_isolation_select" in s and s.startswith("CREATE"))

    assert "FOR SELECT USING" in select
    assert "\"tenant_id\" = current_setting('app.current_tenant_id', true)" in select


def test_organization_predicate_casts_to_integer() -> None:
    statements = policy_statements(IsolationPolicy(DOCUMENTS))
    insert = next(s for s in statements if "documents_isolation_insert" in s and s.startswith("CREATE"))

    assert "FOR INSERT WITH CHECK" in insert
    assert "NULLIF(current_setting('app.current_organization_id', true), '')::integer" in insert


def test_update_has_read_and_write_check() -> None:
    statements = policy_statements(IsolationPolicy(INVOICES))
    update = next(s for s in statements if "invoices_isolation_update" in s and s.startswith("CREATE"))

    assert "USING (\"tenant_id\" = current_setting" in update
    assert "WITH CHECK (\"tenant_id\" = current_setting" in update


def test_update_write_check_can_be_disabled_alone() -> None:
    policy = IsolationPolicy(INVOICES).without_update_write_check()
    statements = policy_statements(policy)
    update = next(s for s in statements if "invoices_isolation_update" in s and s.startswith("CREATE"))

    assert update.endswith("WITH CHECK (true)")
    assert len(_created(statements)) == EXPECTED_POLICY_COUNT


@pytest.mark.parametrize("operation", list(PolicyOperation))
def test_each_operation_toggles_independently(operation: PolicyOperation) -> None:
    policy = IsolationPolicy(INVOICES).without(operation)
    created = _created(policy_statements(policy))

    assert f"invoices_isolation_{operation.value}" not in created
    for other in ALL_OPERATIONS:
        if other is not operation:
            assert f"invoices_isolation_{other.value}" in created
    assert "invoices_admin_bypass" in created


def test_disable_policy_statement_targets_one_policy() -> None:
    statement = disable_policy_statement(IsolationPolicy(INVOICES), PolicyOperation.DELETE)

    assert statement == 'DROP POLICY IF EXISTS "invoices_isolation_delete" ON "invoices"'


def test_bypass_policy_requires_flag() -> None:
    statements = policy_statements(IsolationPolicy(INVOICES))
    bypass = next(s for s in statements if s.startswith('CREATE POLICY "invoices_admin_bypass"'))

    assert "FOR ALL" in bypass
    assert "coalesce(current_setting('app.bypass_rls', true), 'off') = 'on'" in bypass


def test_audit_view_lists_tables() -> None:
    statement = audit_view_statement(["accounts", "invoices"])

    assert statement.startswith(f"CREATE OR REPLACE VIEW {AUDIT_VIEW}")
    assert "IN ('accounts', 'invoices')" in statement
    assert "relforcerowsecurity" in statement


def test_isolation_script_ends_with_audit_view() -> None:
    script = isolation_script(default_policies())

    assert script[-1].startswith(f"CREATE OR REPLACE VIEW {AUDIT_VIEW}")


def test_unsafe_identifier_rejected() -> None:
    spec = ScopeSpec('invoices"; DROP TABLE tenant; --', "tenant_id", ScopeKind.TENANT)

    with pytest.raises(ValueError):
        policy_statements(IsolationPolicy(spec))


class TestFindUnprotected:
    def test_fully_protected(self) -> None:
        statuses = [TableIsolationStatus("invoices", True, True, EXPECTED_POLICY_COUNT)]

        assert find_unprotected(statuses, ["invoices"]) == []

    def test_missing_force_or_policies_or_table(self) -> None:
        statuses = [
            TableIsolationStatus("accounts", True, False, EXPECTED_POLICY_COUNT),
            TableIsolationStatus("invoices", True, True, EXPECTED_POLICY_COUNT - 1),
        ]

        assert find_unprotected(statuses, ["accounts", "invoices", "documents"]) == [
            "accounts",
            "documents",
            "invoices",
        ]
