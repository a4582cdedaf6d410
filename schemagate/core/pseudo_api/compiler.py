"""
COMMAND COMPILER - typed command algebra → parameterized SQL

Purpose:
    1. Resolve loose table/column names through the schema catalog
    2. Enforce tenant scope on every filter and value set
    3. Emit SQL text built only from catalog identifiers, values always as $n params
    4. Refuse update/delete without a WHERE clause

Data Flow:
    QueryCommand / MutateCommand / BatchCommand + RequestScope
                ↓
    resolve table → scope filters/values → compile clauses → CompiledCommand
                ↓
    CompileResult (compiled | error), never a half-built statement
"""

import json
import re
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional, Union

from schemagate.core.config import settings
from schemagate.core.pseudo_api.catalog import (
    CatalogTable,
    SchemaCatalog,
    quote_identifier,
)
from schemagate.core.pseudo_api.errors import CompileError, CompileErrorKind
from schemagate.core.schemas import (
    AgentCommand,
    BatchCommand,
    CommandFilter,
    FilterOperator,
    MutateCommand,
    QueryCommand,
    RequestScope,
)

COMPARISON_SQL = {
    FilterOperator.EQ: "=",
    FilterOperator.NEQ: "!=",
    FilterOperator.GT: ">",
    FilterOperator.GTE: ">=",
    FilterOperator.LT: "<",
    FilterOperator.LTE: "<=",
    FilterOperator.LIKE: "LIKE",
    FilterOperator.ILIKE: "ILIKE",
}

INTEGER_TYPES = {"integer", "int", "int2", "int4", "int8", "smallint", "bigint"}


@dataclass
class CompiledCommand:
    kind: str
    table: str
    sql: str
    params: List[Any]
    action: Optional[str] = None


@dataclass
class CompiledBatch:
    steps: List[Union["CompiledBatch", CompiledCommand]] = field(default_factory=list)
    kind: str = "batch"

    def leaves(self) -> List[CompiledCommand]:
        """Leaf statements in execution order (depth-first, left to right)."""
        out = []
        for step in self.steps:
            if isinstance(step, CompiledBatch):
                out.extend(step.leaves())
            else:
                out.append(step)
        return out


CompiledPlan = Union[CompiledCommand, CompiledBatch]


@dataclass
class CompileResult:
    compiled: Optional[CompiledPlan] = None
    error: Optional[CompileError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> CompiledPlan:
        if self.error is not None:
            raise self.error
        return self.compiled


# ============================================================================
# PARAMETER BINDING
# ============================================================================


def _parse_datetime(value: str) -> datetime:
    # fromisoformat() before 3.11 does not accept a trailing "Z"
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    return datetime.fromisoformat(value)


def bind_value(sql_type: str, value: Any) -> Any:
    """
    Convert a JSON-transported value into the Python type the driver expects
    for the column. Values that do not parse are passed through unchanged so
    the database reports the real problem.

    Examples:
        ("TIMESTAMP", "2026-01-01T10:00:00.000Z") → datetime(2026, 1, 1, 10, tzinfo=UTC)
        ("NUMERIC(12, 2)", "19.90")              → Decimal("19.90")
        ("JSONB", {"a": 1})                      → '{"a": 1}'
    """
    if value is None:
        return None

    sql_type = sql_type.lower()
    base_type = sql_type.split("(")[0].strip()

    if "json" in base_type:
        return value if isinstance(value, str) else json.dumps(value)

    if not isinstance(value, str):
        return value

    try:
        if "timestamp" in base_type or base_type == "datetime":
            return _parse_datetime(value)
        if base_type == "date":
            return date.fromisoformat(value)
        if base_type in ("numeric", "decimal"):
            return Decimal(value)
        if base_type in INTEGER_TYPES and re.fullmatch(r"-?\d+", value.strip()):
            return int(value)
        if base_type in ("boolean", "bool") and value.lower() in ("true", "false"):
            return value.lower() == "true"
    except (ValueError, InvalidOperation):
        return value

    return value


# ============================================================================
# COMPILER
# ============================================================================


class CommandCompiler:
    """Compiles commands against one catalog snapshot."""

    def __init__(self, catalog: SchemaCatalog, default_limit: Optional[int] = None):
        self.catalog = catalog
        self.default_limit = default_limit or settings.DEFAULT_QUERY_LIMIT

    def compile(self, command: AgentCommand, scope: RequestScope) -> CompileResult:
        """
        Compile a command tree without raising for validation failures.

        Returns:
            CompileResult with either the compiled plan or the CompileError.
        """
        try:
            return CompileResult(compiled=self._compile_node(command, scope))
        except CompileError as error:
            return CompileResult(error=error)

    def _compile_node(self, command: AgentCommand, scope: RequestScope) -> CompiledPlan:
        if isinstance(command, BatchCommand):
            return CompiledBatch(
                steps=[self._compile_node(step, scope) for step in command.steps]
            )
        if isinstance(command, QueryCommand):
            return self.compile_query(command, scope)
        if isinstance(command, MutateCommand):
            return self.compile_mutate(command, scope)

        raise CompileError(
            CompileErrorKind.UNSUPPORTED_COMMAND,
            f"Unsupported command kind: {getattr(command, 'kind', type(command).__name__)}",
        )

    # ------------------------------------------------------------------
    # Resolution helpers
    # ------------------------------------------------------------------

    def _table(self, raw_name: str) -> CatalogTable:
        resolved = self.catalog.resolve_table_name(raw_name) or raw_name
        table = self.catalog.tables.get(resolved)
        if table is None:
            raise CompileError(CompileErrorKind.UNKNOWN_TABLE, f"Unknown table: {raw_name}")
        return table

    def _column(self, table: CatalogTable, raw_column: str, usage: str = "") -> str:
        resolved = self.catalog.resolve_column_name(table.name, raw_column)
        if resolved is None:
            label = f"Unknown {usage} column" if usage else "Unknown column"
            raise CompileError(
                CompileErrorKind.UNKNOWN_COLUMN,
                f'{label} "{raw_column}" for table "{table.name}"',
            )
        return resolved

    def _columns(self, table: CatalogTable, columns: Optional[List[str]]) -> List[str]:
        if not columns:
            return [column.name for column in table.columns]
        return [self._column(table, column) for column in columns]

    def _bind(self, table: CatalogTable, column_name: str, value: Any) -> Any:
        column = table.column(column_name)
        return bind_value(column.sql_type, value) if column else value

    def _returning_sql(self, table: CatalogTable, returning: Optional[List[str]]) -> str:
        columns = self._columns(table, returning) if returning else list(table.primary_keys)
        if not columns:
            return ""
        return "RETURNING " + ", ".join(quote_identifier(c) for c in columns)

    # ------------------------------------------------------------------
    # Tenant scope
    # ------------------------------------------------------------------

    def _require_tenant(self, table: CatalogTable, scope: RequestScope) -> str:
        if not scope.biz_id:
            raise CompileError(
                CompileErrorKind.TENANT_SCOPE_REQUIRED,
                f'Table "{table.name}" is tenant-scoped and requires scope.bizId '
                "in pseudo request.",
            )
        return scope.biz_id

    def scope_filters(
        self, table: CatalogTable, filters: List[CommandFilter], scope: RequestScope
    ) -> List[CommandFilter]:
        """
        Inject or verify the tenant filter. An explicit tenant filter must be
        `eq` with exactly the scope's id; a missing one is prepended.
        """
        if not table.has_tenant_column:
            return list(filters)

        biz_id = self._require_tenant(table, scope)
        tenant_column = self.catalog.tenant_column
        tenant_filters = [
            f
            for f in filters
            if self.catalog.resolve_column_name(table.name, f.column) == tenant_column
        ]

        for existing in tenant_filters:
            if existing.op != FilterOperator.EQ or existing.value != biz_id:
                raise CompileError(
                    CompileErrorKind.TENANT_SCOPE_MISMATCH,
                    f"Tenant scope mismatch: command uses {tenant_column} filter "
                    "that does not match scope.bizId.",
                )

        if tenant_filters:
            return list(filters)

        injected = CommandFilter(column=tenant_column, op=FilterOperator.EQ, value=biz_id)
        return [injected] + list(filters)

    def scope_values(
        self,
        table: CatalogTable,
        values: Dict[str, Any],
        scope: RequestScope,
        inject: bool = True,
    ) -> Dict[str, Any]:
        """Verify a tenant value the caller sent; with `inject`, add the missing one first."""
        if not table.has_tenant_column:
            return dict(values)

        biz_id = self._require_tenant(table, scope)
        tenant_column = self.catalog.tenant_column
        scoped: Dict[str, Any] = {}
        present = False

        for raw_column, value in values.items():
            if self.catalog.resolve_column_name(table.name, raw_column) == tenant_column:
                if value is None:
                    continue
                if value != biz_id:
                    raise CompileError(
                        CompileErrorKind.TENANT_SCOPE_MISMATCH,
                        f"Tenant scope mismatch: values include {tenant_column} "
                        "that does not match scope.bizId.",
                    )
                present = True
            scoped[raw_column] = value

        if present or not inject:
            return scoped
        return {tenant_column: biz_id, **scoped}

    # ------------------------------------------------------------------
    # Clauses
    # ------------------------------------------------------------------

    def compile_filters(
        self, table: CatalogTable, filters: List[CommandFilter], params: List[Any]
    ) -> str:
        if not filters:
            return ""

        clauses = []
        for item in filters:
            column = self._column(table, item.column, "filter")
            column_sql = quote_identifier(column)

            if item.op == FilterOperator.IS_NULL:
                clauses.append(f"{column_sql} IS NULL")
            elif item.op == FilterOperator.NOT_NULL:
                clauses.append(f"{column_sql} IS NOT NULL")
            elif item.op == FilterOperator.IN:
                if not isinstance(item.value, list):
                    raise CompileError(
                        CompileErrorKind.INVALID_FILTER,
                        f'IN operator requires array value for column "{column}"',
                    )
                if not item.value:
                    # Empty IN list never matches
                    clauses.append("1 = 0")
                    continue
                placeholders = []
                for value in item.value:
                    params.append(self._bind(table, column, value))
                    placeholders.append(f"${len(params)}")
                clauses.append(f"{column_sql} IN ({', '.join(placeholders)})")
            else:
                if not item.has_value:
                    raise CompileError(
                        CompileErrorKind.INVALID_FILTER,
                        f'Operator "{item.op.value}" requires value for column "{column}"',
                    )
                if isinstance(item.value, list):
                    raise CompileError(
                        CompileErrorKind.INVALID_FILTER,
                        f'Operator "{item.op.value}" does not accept an array '
                        f'for column "{column}"',
                    )
                if item.value is None and item.op == FilterOperator.EQ:
                    clauses.append(f"{column_sql} IS NULL")
                    continue
                if item.value is None and item.op == FilterOperator.NEQ:
                    clauses.append(f"{column_sql} IS NOT NULL")
                    continue
                if item.value is None:
                    raise CompileError(
                        CompileErrorKind.INVALID_FILTER,
                        f'Operator "{item.op.value}" cannot compare column "{column}" to null',
                    )

                if item.op in (FilterOperator.LIKE, FilterOperator.ILIKE):
                    params.append(item.value)
                else:
                    params.append(self._bind(table, column, item.value))
                clauses.append(f"{column_sql} {COMPARISON_SQL[item.op]} ${len(params)}")

        return "WHERE " + " AND ".join(clauses)

    # ------------------------------------------------------------------
    # Statements
    # ------------------------------------------------------------------

    def compile_query(self, command: QueryCommand, scope: RequestScope) -> CompiledCommand:
        table = self._table(command.table)
        selected = self._columns(table, command.select)
        filters = self.scope_filters(table, command.filters, scope)

        params: List[Any] = []
        where_sql = self.compile_filters(table, filters, params)

        sort_sql = ""
        if command.sort:
            ordering = [
                f"{quote_identifier(self._column(table, entry.column, 'sort'))} "
                f"{entry.direction.upper()}"
                for entry in command.sort
            ]
            sort_sql = "ORDER BY " + ", ".join(ordering)

        limit = command.limit or self.default_limit
        offset = command.offset or 0

        parts = [
            "SELECT " + ", ".join(quote_identifier(c) for c in selected),
            "FROM " + quote_identifier(table.name),
            where_sql,
            sort_sql,
            f"LIMIT {int(limit)}",
            f"OFFSET {int(offset)}" if offset > 0 else "",
        ]
        return CompiledCommand(
            kind="query",
            table=table.name,
            sql=" ".join(part for part in parts if part),
            params=params,
        )

    def compile_mutate(self, command: MutateCommand, scope: RequestScope) -> CompiledCommand:
        table = self._table(command.table)

        if command.action == "insert":
            return self._compile_insert(table, command, scope)
        if command.action == "update":
            return self._compile_update(table, command, scope)
        if command.action == "delete":
            return self._compile_delete(table, command, scope)

        raise CompileError(
            CompileErrorKind.UNSUPPORTED_COMMAND, f"Unsupported mutate action: {command.action}"
        )

    def _compile_insert(
        self, table: CatalogTable, command: MutateCommand, scope: RequestScope
    ) -> CompiledCommand:
        values = self.scope_values(table, command.values or {}, scope)
        if not values:
            raise CompileError(
                CompileErrorKind.EMPTY_VALUES, "Insert command requires at least one value."
            )

        columns, placeholders, params = [], [], []
        for raw_column, value in values.items():
            column = self._column(table, raw_column, "insert")
            columns.append(quote_identifier(column))
            params.append(self._bind(table, column, value))
            placeholders.append(f"${len(params)}")

        parts = [
            f"INSERT INTO {quote_identifier(table.name)} ({', '.join(columns)})",
            f"VALUES ({', '.join(placeholders)})",
            self._returning_sql(table, command.returning),
        ]
        return CompiledCommand(
            kind="mutate",
            action="insert",
            table=table.name,
            sql=" ".join(part for part in parts if part),
            params=params,
        )

    def _compile_update(
        self, table: CatalogTable, command: MutateCommand, scope: RequestScope
    ) -> CompiledCommand:
        values = self.scope_values(table, command.values or {}, scope, inject=False)
        if not values:
            raise CompileError(
                CompileErrorKind.EMPTY_VALUES, "Update command requires at least one value."
            )

        # The injected tenant filter alone would still touch every tenant row
        if not command.filters:
            raise CompileError(
                CompileErrorKind.UNSAFE_MUTATION,
                "Unsafe update blocked: mutation requires at least one filter condition.",
            )
        filters = self.scope_filters(table, command.filters, scope)

        params: List[Any] = []
        set_clauses = []
        for raw_column, value in values.items():
            column = self._column(table, raw_column, "update")
            params.append(self._bind(table, column, value))
            set_clauses.append(f"{quote_identifier(column)} = ${len(params)}")

        parts = [
            f"UPDATE {quote_identifier(table.name)}",
            "SET " + ", ".join(set_clauses),
            self.compile_filters(table, filters, params),
            self._returning_sql(table, command.returning),
        ]
        return CompiledCommand(
            kind="mutate",
            action="update",
            table=table.name,
            sql=" ".join(part for part in parts if part),
            params=params,
        )

    def _compile_delete(
        self, table: CatalogTable, command: MutateCommand, scope: RequestScope
    ) -> CompiledCommand:
        if not command.filters:
            raise CompileError(
                CompileErrorKind.UNSAFE_MUTATION,
                "Unsafe delete blocked: mutation requires at least one filter condition.",
            )
        filters = self.scope_filters(table, command.filters, scope)

        params: List[Any] = []
        parts = [
            f"DELETE FROM {quote_identifier(table.name)}",
            self.compile_filters(table, filters, params),
            self._returning_sql(table, command.returning),
        ]
        return CompiledCommand(
            kind="mutate",
            action="delete",
            table=table.name,
            sql=" ".join(part for part in parts if part),
            params=params,
        )
