import pytest

from schemagate.core.pseudo_api.catalog import (
    CatalogColumn,
    StaticCatalogService,
    assert_safe_identifier,
    build_catalog,
    quote_identifier,
)
from schemagate.core.pseudo_api.errors import CompileError, CompileErrorKind


def _columns(*names):
    return [CatalogColumn(name, "VARCHAR", name == "id", name == "id") for name in names]


def test_table_aliases_resolve_to_canonical_name(catalog):
    """Human, singular and squashed aliases all land on the same table"""
    assert catalog.resolve_table_name("booking_orders") == "booking_orders"
    assert catalog.resolve_table_name("booking orders") == "booking_orders"
    assert catalog.resolve_table_name("Booking Order") == "booking_orders"
    assert catalog.resolve_table_name("bookingorders") == "booking_orders"
    assert catalog.resolve_table_name("Booking-Orders") == "booking_orders"


def test_unknown_table_resolves_to_none(catalog):
    """Unknown or blank names never resolve"""
    assert catalog.resolve_table_name("ghosts") is None
    assert catalog.resolve_table_name("   ") is None


def test_first_writer_wins_alias():
    """A later table cannot steal an alias an earlier one registered"""
    catalog = build_catalog(
        [("categories", _columns("id")), ("category", _columns("id", "label"))],
        tenant_column="biz_id",
    )
    # "category" is the singular of "categories", registered first
    assert catalog.resolve_table_name("category") == "categories"
    assert set(catalog.tables) == {"categories", "category"}


def test_column_resolution_variants(catalog):
    """snake_case, camelCase and spaced column names resolve"""
    assert catalog.resolve_column_name("booking_orders", "customer_name") == "customer_name"
    assert catalog.resolve_column_name("booking_orders", "customerName") == "customer_name"
    assert catalog.resolve_column_name("booking_orders", "Customer Name") == "customer_name"
    assert catalog.resolve_column_name("booking_orders", "nickname") is None
    assert catalog.resolve_column_name("ghosts", "id") is None


def test_tenant_tables_are_flagged(catalog):
    """Tables with biz_id are tenant scoped, the tenant table itself is not"""
    assert catalog.tables["booking_orders"].has_tenant_column is True
    assert catalog.tables["payments"].has_tenant_column is True
    assert catalog.tables["bizes"].has_tenant_column is False
    assert catalog.tables["booking_orders"].primary_keys == ("id",)


def test_safe_identifier_gate():
    """Only lowercase snake_case identifiers pass"""
    assert_safe_identifier("booking_orders")
    assert quote_identifier("biz_id") == '"biz_id"'

    for bad in ["Booking", "1abc", 'id"; drop table x; --', "a-b", ""]:
        with pytest.raises(CompileError) as error:
            assert_safe_identifier(bad)
        assert error.value.kind == CompileErrorKind.UNSAFE_IDENTIFIER


def test_snapshot_full_and_focused(catalog):
    """Full snapshot lists every table, focus mode resolves aliases"""
    snapshot = catalog.to_snapshot()
    assert snapshot["summary"]["tableCount"] == 4
    assert [t["name"] for t in snapshot["tables"]] == [
        "bizes",
        "booking_orders",
        "locations",
        "payments",
    ]

    focused = catalog.to_snapshot("booking order")
    assert focused["table"]["name"] == "booking_orders"
    assert focused["table"]["hasBizId"] is True
    assert focused["summary"]["tableCount"] == 1

    with pytest.raises(LookupError):
        catalog.to_snapshot("ghosts")


@pytest.mark.asyncio
async def test_static_catalog_service_returns_same_snapshot(catalog):
    """Refreshing a static catalog keeps the same snapshot"""
    service = StaticCatalogService(catalog)
    assert await service.get() is catalog
    assert await service.force_refresh() is catalog
