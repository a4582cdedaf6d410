"""
SCHEMA CATALOG - runtime dictionary of tables and columns

Purpose:
    1. Introspect the live database once and cache the result
    2. Index tables under human-friendly aliases ("booking orders", "booking_order", ...)
    3. Resolve loose table/column names to canonical identifiers
    4. Guard every identifier before it is written into SQL text

Data Flow:
    live schema → inspector → build_catalog() → SchemaCatalog (cached)
                                                      ↓
                       resolve_table_name() / resolve_column_name()
                                                      ↓
                                  quote_identifier() → compiler SQL text
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Tuple

from sqlalchemy import MetaData, inspect
from sqlalchemy.ext.asyncio import AsyncEngine

from schemagate.core.config import settings
from schemagate.core.pseudo_api.errors import CompileError, CompileErrorKind

logger = logging.getLogger(__name__)

SAFE_IDENTIFIER = re.compile(r"^[a-z][a-z0-9_]*$")


# ============================================================================
# CATALOG TYPES
# ============================================================================


@dataclass(frozen=True)
class CatalogColumn:
    name: str
    sql_type: str
    not_null: bool
    primary_key: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "sqlType": self.sql_type,
            "notNull": self.not_null,
            "primaryKey": self.primary_key,
        }


@dataclass(frozen=True)
class CatalogTable:
    name: str
    columns: Tuple[CatalogColumn, ...]
    column_set: FrozenSet[str]
    primary_keys: Tuple[str, ...]
    has_tenant_column: bool

    def column(self, name: str) -> Optional[CatalogColumn]:
        for column in self.columns:
            if column.name == name:
                return column
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "hasBizId": self.has_tenant_column,
            "primaryKeys": list(self.primary_keys),
            "columns": [column.to_dict() for column in self.columns],
        }


@dataclass(frozen=True)
class SchemaCatalog:
    generated_at: str
    tables: Dict[str, CatalogTable]
    aliases: Dict[str, str]
    tenant_column: str = "biz_id"
    summary: Dict[str, int] = field(default_factory=dict)

    def resolve_table_name(self, raw: str) -> Optional[str]:
        """
        Resolve a table alias (human or machine format) into a canonical table name.

        Examples:
            "booking orders" → "booking_orders"
            "Booking-Order"  → "booking_orders"
            "nothing here"   → None
        """
        normalized = normalize_key(raw)
        if not normalized:
            return None

        direct = self.aliases.get(normalized)
        if direct:
            return direct

        return self.aliases.get(normalize_key(normalize_db_identifier(raw)))

    def resolve_column_name(self, table_name: str, raw: str) -> Optional[str]:
        """
        Resolve a column tolerantly (snake_case, camelCase and space variants).

        Returns None when the table is unknown or no variant matches.
        """
        table = self.tables.get(table_name)
        if table is None:
            return None

        direct = normalize_db_identifier(raw)
        if direct in table.column_set:
            return direct

        space_to_underscore = re.sub(r"\s+", "_", raw.lower())
        if space_to_underscore in table.column_set:
            return space_to_underscore

        camel_to_snake = re.sub(r"[A-Z]", lambda m: "_" + m.group(0).lower(), raw)
        camel_to_snake = camel_to_snake.lstrip("_").lower()
        if camel_to_snake in table.column_set:
            return camel_to_snake

        return None

    def to_snapshot(self, table: Optional[str] = None) -> Dict[str, Any]:
        """
        Compact JSON view of the catalog for admin tools and agents.
        With `table` set, only that table is returned (LookupError when unknown).
        """
        if table is None:
            return {
                "generatedAt": self.generated_at,
                "summary": self.summary,
                "tables": [self.tables[name].to_dict() for name in sorted(self.tables)],
            }

        resolved = self.resolve_table_name(table) or table
        focus = self.tables.get(resolved)
        if focus is None:
            raise LookupError(f"Unknown table alias/name: {table}")

        return {
            "generatedAt": self.generated_at,
            "summary": {"tableCount": 1, "columnCount": len(focus.columns)},
            "table": focus.to_dict(),
        }


# ============================================================================
# NAME NORMALIZATION + SAFETY GATE
# ============================================================================


def normalize_key(raw: str) -> str:
    return re.sub(r"\s+", " ", raw.strip().lower())


def normalize_db_identifier(raw: str) -> str:
    return re.sub(r"[\s-]+", "_", raw.strip().lower())


def to_singular(name: str) -> str:
    if name.endswith("ies") and len(name) > 3:
        return name[:-3] + "y"
    if name.endswith("s") and len(name) > 1:
        return name[:-1]
    return name


def assert_safe_identifier(identifier: str) -> None:
    """
    The only gate between caller-controlled strings and SQL text.
    Lowercase snake_case or nothing.
    """
    if not isinstance(identifier, str) or not SAFE_IDENTIFIER.match(identifier):
        raise CompileError(
            CompileErrorKind.UNSAFE_IDENTIFIER, f"Unsafe SQL identifier: {identifier}"
        )


def quote_identifier(identifier: str) -> str:
    assert_safe_identifier(identifier)
    return f'"{identifier}"'


# ============================================================================
# CATALOG CONSTRUCTION
# ============================================================================


def _add_alias(aliases: Dict[str, str], alias: str, table_name: str) -> None:
    normalized = normalize_key(alias)
    # First writer wins, a later table never steals an alias
    if normalized and normalized not in aliases:
        aliases[normalized] = table_name


def build_catalog(
    tables: Iterable[Tuple[str, List[CatalogColumn]]],
    tenant_column: Optional[str] = None,
) -> SchemaCatalog:
    """
    Build an immutable catalog from (table name, columns) pairs.

    Args:
        tables: Table descriptors, registered in the given order.
        tenant_column: Column that marks a table as tenant-scoped.

    Returns:
        SchemaCatalog with tables, aliases and summary counts.
    """
    tenant_column = tenant_column or settings.TENANT_COLUMN
    by_name: Dict[str, CatalogTable] = {}
    aliases: Dict[str, str] = {}

    for name, columns in tables:
        if not name or name in by_name:
            continue

        column_set = frozenset(column.name for column in columns)
        by_name[name] = CatalogTable(
            name=name,
            columns=tuple(columns),
            column_set=column_set,
            primary_keys=tuple(c.name for c in columns if c.primary_key),
            has_tenant_column=tenant_column in column_set,
        )

        singular = to_singular(name)
        _add_alias(aliases, name, name)
        _add_alias(aliases, name.replace("_", " "), name)
        _add_alias(aliases, singular, name)
        _add_alias(aliases, singular.replace("_", " "), name)
        _add_alias(aliases, name.replace("_", ""), name)

    return SchemaCatalog(
        generated_at=datetime.now(timezone.utc).isoformat(),
        tables=by_name,
        aliases=aliases,
        tenant_column=tenant_column,
        summary={
            "tableCount": len(by_name),
            "columnCount": sum(len(t.columns) for t in by_name.values()),
        },
    )


def catalog_from_metadata(
    metadata: MetaData, tenant_column: Optional[str] = None
) -> SchemaCatalog:
    """Build a catalog from declarative models without touching a database."""
    descriptors = []
    for table in sorted(metadata.tables.values(), key=lambda t: t.name):
        columns = [
            CatalogColumn(
                name=column.name,
                sql_type=str(column.type),
                not_null=not column.nullable,
                primary_key=column.primary_key,
            )
            for column in table.columns
        ]
        descriptors.append((table.name, columns))
    return build_catalog(descriptors, tenant_column)


def _introspect(sync_conn, schema: Optional[str]) -> List[Tuple[str, List[CatalogColumn]]]:
    inspector = inspect(sync_conn)
    descriptors = []

    for table_name in sorted(inspector.get_table_names(schema=schema)):
        try:
            pk = inspector.get_pk_constraint(table_name, schema=schema) or {}
            pk_columns = set(pk.get("constrained_columns") or [])
            columns = [
                CatalogColumn(
                    name=column["name"],
                    sql_type=column["type"].compile(dialect=sync_conn.dialect),
                    not_null=not column.get("nullable", True),
                    primary_key=column["name"] in pk_columns,
                )
                for column in inspector.get_columns(table_name, schema=schema)
            ]
        except Exception as error:
            # An incomplete catalog is still usable
            logger.warning(f"Skipping table {table_name} during introspection: {error}")
            continue
        descriptors.append((table_name, columns))

    return descriptors


# ============================================================================
# CATALOG SERVICES
# ============================================================================


class SchemaCatalogService:
    """
    Lazily introspected, cached catalog.

    The snapshot is replaced atomically by force_refresh(); readers racing a
    refresh may still get the previous snapshot, which is fine because the
    identifier gate protects every compiled statement anyway.
    """

    def __init__(
        self,
        engine: AsyncEngine,
        schema: Optional[str] = None,
        tenant_column: Optional[str] = None,
    ):
        self.engine = engine
        self.schema = schema
        self.tenant_column = tenant_column or settings.TENANT_COLUMN
        self._cached: Optional[SchemaCatalog] = None

    async def get(self, force_refresh: bool = False) -> SchemaCatalog:
        if self._cached is not None and not force_refresh:
            return self._cached

        async with self.engine.connect() as conn:
            descriptors = await conn.run_sync(_introspect, self.schema)

        catalog = build_catalog(descriptors, self.tenant_column)
        self._cached = catalog
        logger.info(
            f"Schema catalog built: {catalog.summary['tableCount']} tables, "
            f"{catalog.summary['columnCount']} columns"
        )
        return catalog

    async def force_refresh(self) -> SchemaCatalog:
        return await self.get(force_refresh=True)


class StaticCatalogService:
    """Serves a fixed catalog snapshot, used where no live schema is wanted."""

    def __init__(self, catalog: SchemaCatalog):
        self.catalog = catalog

    async def get(self, force_refresh: bool = False) -> SchemaCatalog:
        return self.catalog

    async def force_refresh(self) -> SchemaCatalog:
        return self.catalog
