import pytest
from sqlalchemy import text

from schemagate.core.pseudo_api.catalog import SchemaCatalogService
from schemagate.core.pseudo_api.executor import CommandExecutor
from schemagate.core.pseudo_api.lifecycle import LifecycleOrchestrator
from schemagate.core.pseudo_api.translator import UnavailableTranslator
from schemagate.core.schemas import LifecycleRunRequest, PseudoApiRequest, RunStatus


def _request(command, dry_run=True, biz_id="biz_pg"):
    return PseudoApiRequest.model_validate(
        {"dryRun": dry_run, "scope": {"bizId": biz_id}, "command": command}
    )


CREATE_BIZ = {
    "kind": "mutate",
    "action": "insert",
    "table": "bizes",
    "values": {"id": "biz_pg", "name": "Pg Biz", "slug": "pg-biz"},
}


def _create_booking(booking_id, status="pending"):
    return {
        "kind": "mutate",
        "action": "insert",
        "table": "booking orders",
        "values": {
            "id": booking_id,
            "customerName": "Ada",
            "status": status,
            "partySize": 2,
            "startsAt": "2030-01-01T18:00:00.000Z",
        },
        "returning": ["id", "status", "biz_id"],
    }


async def _count(engine, table):
    async with engine.connect() as conn:
        result = await conn.execute(text(f'SELECT count(*) FROM "{table}"'))
        return result.scalar_one()


@pytest.fixture
def pg_executor(pg_engine):
    return CommandExecutor(pg_engine, SchemaCatalogService(pg_engine))


@pytest.mark.asyncio
async def test_dry_run_leaves_no_rows(pg_engine, pg_executor):
    """Dry-run writes are visible inside the request and gone after it"""
    command = {"kind": "batch", "steps": [CREATE_BIZ, _create_booking("bo_dry")]}
    response = await pg_executor.execute(_request(command))

    assert response.success is True, response.error
    booking = response.result["steps"][1]["rows"][0]
    assert booking == {"id": "bo_dry", "status": "pending", "biz_id": "biz_pg"}
    assert await _count(pg_engine, "booking_orders") == 0
    assert await _count(pg_engine, "bizes") == 0


@pytest.mark.asyncio
async def test_empty_in_returns_zero_rows(pg_engine, pg_executor):
    """An empty IN list is valid SQL that matches nothing"""
    command = {
        "kind": "query",
        "table": "booking_orders",
        "filters": [{"column": "status", "op": "in", "value": []}],
    }
    response = await pg_executor.execute(_request(command))

    assert response.success is True, response.error
    assert response.result["rowCount"] == 0
    assert response.result["rows"] == []


@pytest.mark.asyncio
async def test_check_constraint_surfaces_as_database_error(pg_engine, pg_executor):
    """The database's own constraint message reaches the caller"""
    command = {"kind": "batch", "steps": [CREATE_BIZ, _create_booking("bo_bad", status="lost")]}
    response = await pg_executor.execute(_request(command, dry_run=False))

    assert response.success is False
    assert response.error.code == "DATABASE_ERROR"
    assert "booking_orders_status_check" in response.error.message
    assert response.error.detail == {"sqlstate": "23514"}
    # The whole request rolled back, the biz insert included
    assert await _count(pg_engine, "bizes") == 0


@pytest.mark.asyncio
async def test_lifecycle_savepoint_keeps_the_run_alive(pg_engine, pg_executor):
    """A failed step is rolled back to its savepoint and later steps still write"""
    orchestrator = LifecycleOrchestrator(pg_engine, pg_executor, UnavailableTranslator())
    request = LifecycleRunRequest.model_validate(
        {
            "defaults": {"dryRun": False, "scope": {"bizId": "biz_pg"}},
            "phases": [
                {
                    "name": "Setup",
                    "steps": [
                        {"name": "Create biz", "request": {"command": CREATE_BIZ}},
                        {
                            "name": "Bad status",
                            "request": {"command": _create_booking("bo_bad", status="lost")},
                            "expect": {"success": False, "errorContains": "violates check constraint"},
                        },
                        {
                            "name": "Good booking",
                            "request": {"command": _create_booking("{{id:booking}}")},
                            "captures": [{"key": "bookingId", "from": "result", "path": "rows[0].id"}],
                        },
                    ],
                },
                {
                    "name": "Verify",
                    "steps": [
                        {
                            "name": "Read back",
                            "request": {
                                "command": {
                                    "kind": "query",
                                    "table": "booking_orders",
                                    "filters": [
                                        {"column": "id", "op": "eq", "value": "{{bookingId}}"}
                                    ],
                                }
                            },
                            "expect": {
                                "rowCountEq": 1,
                                "asserts": [{"path": "result.rows[0].status", "equals": "pending"}],
                            },
                        }
                    ],
                },
            ],
        }
    )
    result = await orchestrator.run(request)

    assert result.success is True, result.issues
    assert result.status == RunStatus.COMMITTED
    assert result.persisted is True
    assert await _count(pg_engine, "booking_orders") == 1
