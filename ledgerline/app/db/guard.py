"""Defense-in-depth query guard - the single data-access chokepoint.

Row-level security in the database is the second line of defense, not the
only one. Every read and write on a scoped table goes through QueryGuard,
which:

- adds ``scope column == scope value`` to every SELECT before execution;
- verifies every returned row belongs to the scope, raising rather than
  filtering when one does not;
- forces the scope column on inserted and updated payloads;
- refuses to update or delete a row owned by another scope;
- confines bulk writes to the scope and caps them at MAX_BULK_ROWS;
- blocks raw SQL that names a scoped table.
"""

import logging
import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from sqlalchemy import Select, delete, func, inspect, select, text, update
from sqlalchemy.ext.asyncio import AsyncSession

from ledgerline.app.db.context import TenantScope
from ledgerline.app.db.models import Base, ScopeKind, ScopeSpec, scope_spec_for_table, scoped_tables
from ledgerline.app.invariants.errors import InvariantCode, JsonValue, RuntimeInvariantViolation
from ledgerline.app.utils.audit import AuditEvent, AuditSink, default_audit_sink
from ledgerline.app.utils.logging import security_logger
from ledgerline.app.utils.metrics import metrics

logger = logging.getLogger(__name__)

MAX_BULK_ROWS = 100


class MutationKind(str, Enum):
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


@dataclass(frozen=True)
class ScopedMutation:
    """A write against one scoped model.

    ``key`` is the primary key for updates and deletes; ``values`` is the
    payload for inserts and updates.
    """

    kind: MutationKind
    model: type[Base]
    values: Mapping[str, Any] = field(default_factory=dict)
    key: Any = None


class QueryGuard:
    """Tenant-scoped data access for one session and one scope."""

    def __init__(
        self,
        session: AsyncSession,
        scope: TenantScope,
        audit: AuditSink | None = None,
    ) -> None:
        self._session = session
        self._scope = scope
        self._audit = audit or default_audit_sink

    @property
    def scope(self) -> TenantScope:
        return self._scope

    async def scoped_read(self, stmt: Select) -> list[Any]:
        """Execute an entity SELECT with the scope filter merged in.

        Raises:
            RuntimeInvariantViolation: TENANT_ISOLATION_VIOLATION if any
                returned row belongs to another scope. No rows are returned.
        """
        model = _select_entity(stmt)
        spec = self._spec_for(model)
        value = self._scope_value(spec)

        scoped_stmt = stmt.where(getattr(model, spec.column) == value)
        result = await self._session.execute(scoped_stmt)
        rows = list(result.scalars().all())

        foreign = [row for row in rows if getattr(row, spec.column) != value]
        if foreign:
            self._raise_violation(
                spec,
                reason="foreign_rows_in_result",
                details={
                    "operation": "read",
                    "foreign_row_count": len(foreign),
                    "result_row_count": len(rows),
                },
            )
        return rows

    async def scoped_write(self, mutation: ScopedMutation) -> Any:
        """Apply a mutation with the scope column forced to the scope value.

        Returns:
            The inserted/updated/deleted ORM object, or None when the target
            of an update or delete does not exist.

        Raises:
            RuntimeInvariantViolation: TENANT_ISOLATION_VIOLATION if the
                target row belongs to another scope.
        """
        spec = self._spec_for(mutation.model)
        value = self._scope_value(spec)

        if mutation.kind is MutationKind.INSERT:
            payload = self._force_scope(spec, value, mutation.values)
            obj = mutation.model(**payload)
            self._session.add(obj)
            await self._session.flush()
            return obj

        obj = await self._session.get(mutation.model, mutation.key)
        if obj is None:
            return None
        if getattr(obj, spec.column) != value:
            self._raise_violation(
                spec,
                reason="foreign_row_targeted",
                details={"operation": mutation.kind.value, "key": str(mutation.key)},
            )

        if mutation.kind is MutationKind.UPDATE:
            payload = self._force_scope(spec, value, mutation.values)
            for name, new_value in payload.items():
                setattr(obj, name, new_value)
        else:
            await self._session.delete(obj)
        await self._session.flush()
        return obj

    async def get(self, model: type[Base], key: Any) -> Any:
        """Fetch one row by primary key within the scope."""
        pk = inspect(model).primary_key[0]
        rows = await self.scoped_read(select(model).where(pk == key))
        return rows[0] if rows else None

    async def insert(self, model: type[Base], values: Mapping[str, Any]) -> Any:
        return await self.scoped_write(ScopedMutation(MutationKind.INSERT, model, values))

    async def update(self, model: type[Base], key: Any, values: Mapping[str, Any]) -> Any:
        return await self.scoped_write(ScopedMutation(MutationKind.UPDATE, model, values, key))

    async def delete(self, model: type[Base], key: Any) -> Any:
        return await self.scoped_write(ScopedMutation(MutationKind.DELETE, model, key=key))

    async def insert_many(
        self, model: type[Base], rows: Sequence[Mapping[str, Any]]
    ) -> list[Any]:
        """Insert several rows, each with the scope column forced.

        Raises:
            ValueError: If ``rows`` is empty or longer than MAX_BULK_ROWS.
        """
        spec = self._spec_for(model)
        value = self._scope_value(spec)
        if not rows or len(rows) > MAX_BULK_ROWS:
            raise ValueError(f"insert_many takes 1 to {MAX_BULK_ROWS} rows, got {len(rows)}")

        objs = [model(**self._force_scope(spec, value, row)) for row in rows]
        self._session.add_all(objs)
        await self._session.flush()
        self._log_bulk(spec, "insert_many", len(objs))
        return objs

    async def update_where(self, stmt: Select, values: Mapping[str, Any]) -> int:
        """Bulk UPDATE of the rows ``stmt`` selects, confined to the scope.

        ``stmt`` is a ``select(Model).where(...)``; only its criteria are used,
        and rows of other scopes never match them.

        Returns:
            The number of rows updated.

        Raises:
            ValueError: If more than MAX_BULK_ROWS rows match.
            RuntimeInvariantViolation: TENANT_ISOLATION_VIOLATION if an updated
                row no longer carries the scope value.
        """
        model, spec, value, keys = await self._bulk_targets(stmt)
        if not keys:
            return 0
        pk = _primary_key(model)
        column = getattr(model, spec.column)

        payload = self._force_scope(spec, value, values)
        result = await self._session.execute(
            update(model).where(pk.in_(keys), column == value).values(**payload)
        )

        moved = await self._session.scalar(
            select(func.count()).select_from(model).where(pk.in_(keys), column != value)
        )
        if moved:
            self._raise_violation(
                spec,
                reason="foreign_rows_after_update",
                details={"operation": "update_many", "foreign_row_count": moved},
            )
        self._log_bulk(spec, "update_many", result.rowcount)
        return result.rowcount

    async def delete_where(self, stmt: Select) -> int:
        """Bulk DELETE of the rows ``stmt`` selects, confined to the scope.

        Raises:
            ValueError: If more than MAX_BULK_ROWS rows match.
        """
        model, spec, value, keys = await self._bulk_targets(stmt)
        if not keys:
            return 0
        pk = _primary_key(model)

        result = await self._session.execute(
            delete(model).where(pk.in_(keys), getattr(model, spec.column) == value)
        )
        self._log_bulk(spec, "delete_many", result.rowcount)
        return result.rowcount

    async def commit(self) -> None:
        await self._session.commit()

    async def execute_text(self, sql: str, params: Mapping[str, Any] | None = None) -> Any:
        """Run raw SQL that does not touch scoped tables.

        Raw SQL cannot be filtered or verified, so naming a scoped table is
        a violation regardless of what the statement does.
        """
        touched = _scoped_tables_in_sql(sql, scoped_tables().values())
        if touched:
            self._raise_violation(
                touched[0],
                reason="raw_query_blocked",
                details={"tables": [s.table for s in touched], "sql_preview": sql[:200]},
            )
        return await self._session.execute(text(sql), dict(params or {}))

    def _spec_for(self, model: type[Base]) -> ScopeSpec:
        spec = scope_spec_for_table(model.__table__)  # type: ignore[arg-type]
        if spec is None:
            raise ValueError(f"{model.__name__} is not a scoped table")
        return spec

    def _scope_value(self, spec: ScopeSpec) -> str | int:
        if spec.kind is ScopeKind.TENANT:
            return self._scope.tenant_id
        if self._scope.organization_id is None:
            self._raise_violation(
                spec,
                reason="organization_scope_missing",
                details={"operation": "resolve_scope"},
            )
        return self._scope.organization_id  # type: ignore[return-value]

    async def _bulk_targets(
        self, stmt: Select
    ) -> tuple[type[Base], ScopeSpec, str | int, list[Any]]:
        """Primary keys of the in-scope rows matching ``stmt``'s criteria."""
        model = _select_entity(stmt)
        spec = self._spec_for(model)
        value = self._scope_value(spec)
        pk = _primary_key(model)

        target = select(pk).where(getattr(model, spec.column) == value)
        if stmt.whereclause is not None:
            target = target.where(stmt.whereclause)
        result = await self._session.execute(target.limit(MAX_BULK_ROWS + 1))
        keys = list(result.scalars().all())
        if len(keys) > MAX_BULK_ROWS:
            raise ValueError(f"Bulk write matches more than {MAX_BULK_ROWS} rows")
        return model, spec, value, keys

    def _log_bulk(self, spec: ScopeSpec, operation: str, count: int) -> None:
        logger.info(
            f"Bulk {operation} on {spec.table}: {count} row(s)",
            extra={
                "structured": {
                    "table": spec.table,
                    "operation": operation,
                    "row_count": count,
                    "tenant_id": self._scope.tenant_id,
                }
            },
        )

    def _force_scope(
        self, spec: ScopeSpec, value: str | int, values: Mapping[str, Any]
    ) -> dict[str, Any]:
        payload = dict(values)
        supplied = payload.get(spec.column)
        if supplied is not None and supplied != value:
            logger.warning(
                "Overriding caller-supplied scope column",
                extra={
                    "structured": {
                        "table": spec.table,
                        "column": spec.column,
                        "supplied": supplied,
                        "tenant_id": self._scope.tenant_id,
                    }
                },
            )
        payload[spec.column] = value
        return payload

    def _raise_violation(
        self, spec: ScopeSpec, reason: str, details: dict[str, JsonValue]
    ) -> None:
        violation = RuntimeInvariantViolation(
            InvariantCode.TENANT_ISOLATION_VIOLATION,
            f"Tenant isolation violation on {spec.table}: {reason}",
            {"table": spec.table, "reason": reason, **details},
        )
        security_logger.log_violation(violation, self._scope)
        metrics.inc_violation(violation.code.value)
        metrics.inc_isolation_violation(spec.table, reason)
        self._audit.record(
            AuditEvent(
                kind="tenant_isolation_violation",
                actor=self._scope.tenant_id,
                details=violation.to_log_dict(),
            )
        )
        raise violation


def _primary_key(model: type[Base]) -> Any:
    """Mapped attribute of the model's single-column primary key."""
    mapper = inspect(model)
    return mapper.get_property_by_column(mapper.primary_key[0]).class_attribute


def _select_entity(stmt: Select) -> type[Base]:
    descriptions = stmt.column_descriptions
    entity = descriptions[0].get("entity") if descriptions else None
    # select(Model.id) also reports Model as its entity; only whole rows can be verified
    if entity is None or len(descriptions) != 1 or descriptions[0].get("expr") is not entity:
        raise ValueError("scoped_read requires a single-entity select(Model) statement")
    return entity


def _scoped_tables_in_sql(sql: str, specs: Sequence[ScopeSpec] | Any) -> list[ScopeSpec]:
    lowered = sql.lower()
    return [s for s in specs if re.search(rf"\b{re.escape(s.table)}\b", lowered)]
