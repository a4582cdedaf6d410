import pytest
from httpx import AsyncClient

QUERY_REQUEST = {
    "scope": {"bizId": "biz_1"},
    "command": {
        "kind": "query",
        "table": "booking orders",
        "select": ["id", "status"],
        "filters": [{"column": "status", "op": "eq", "value": "confirmed"}],
    },
}


@pytest.mark.asyncio
async def test_root_banner(client: AsyncClient):
    """Root returns the service banner"""
    response = await client.get("/")
    assert response.status_code == 200
    assert "message" in response.json()


@pytest.mark.asyncio
async def test_schema_snapshot(client: AsyncClient):
    """Full catalog snapshot lists the demo tables"""
    response = await client.get("/agent/schema")

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["summary"]["tableCount"] == 4


@pytest.mark.asyncio
async def test_schema_focus_by_alias(client: AsyncClient):
    """Focus mode accepts human aliases"""
    response = await client.get("/agent/schema", params={"table": "booking order"})

    assert response.status_code == 200
    assert response.json()["data"]["table"]["name"] == "booking_orders"


@pytest.mark.asyncio
async def test_schema_unknown_table(client: AsyncClient):
    """Unknown focus table returns 404 with a machine-readable code"""
    response = await client.get("/agent/schema", params={"table": "ghosts"})

    assert response.status_code == 404
    body = response.json()
    assert body["success"] is False
    assert body["error"]["code"] == "TABLE_NOT_FOUND"


@pytest.mark.asyncio
async def test_translate(client: AsyncClient):
    """Known prompts translate, unknown prompts return 400"""
    response = await client.post(
        "/agent/translate",
        json={"input": "Show confirmed bookings", "scope": {"bizId": "biz_1"}},
    )
    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["pseudoRequest"]["scope"]["bizId"] == "biz_1"
    assert body["pseudoRequest"]["command"]["kind"] == "query"

    response = await client.post("/agent/translate", json={"input": "dance for me"})
    assert response.status_code == 400
    assert response.json()["success"] is False


@pytest.mark.asyncio
async def test_execute_defaults_to_dry_run(client: AsyncClient):
    """Execute without dryRun rolls back and warns"""
    response = await client.post("/agent/execute", json=QUERY_REQUEST)

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["dryRun"] is True
    assert body["commandKind"] == "query"
    assert len(body["warnings"]) == 1
    assert body["trace"][0]["params"] == ["biz_1", "confirmed"]


@pytest.mark.asyncio
async def test_execute_unsafe_delete(client: AsyncClient):
    """Unsafe mutations return 400 with the compile error code"""
    payload = {
        "scope": {"bizId": "biz_1"},
        "command": {"kind": "mutate", "action": "delete", "table": "booking_orders", "filters": []},
    }
    response = await client.post("/agent/execute", json=payload)

    assert response.status_code == 400
    body = response.json()
    assert body["success"] is False
    assert body["error"]["code"] == "UNSAFE_MUTATION"


@pytest.mark.asyncio
async def test_execute_invalid_payload(client: AsyncClient):
    """Malformed commands are rejected by validation"""
    response = await client.post("/agent/execute", json={"command": {"table": "bizes"}})
    assert response.status_code == 422

    bad_limit = {"command": {"kind": "query", "table": "bizes", "limit": 1000}}
    response = await client.post("/agent/execute", json=bad_limit)
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_simulate_forces_dry_run(client: AsyncClient):
    """Simulation never commits, even when asked to"""
    response = await client.post(
        "/agent/simulate",
        json={"input": "show confirmed bookings", "dryRun": False, "scope": {"bizId": "biz_1"}},
    )

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["translation"]["success"] is True
    assert body["execution"]["dryRun"] is True


@pytest.mark.asyncio
async def test_simulate_untranslatable(client: AsyncClient):
    """A failed translation skips execution"""
    response = await client.post("/agent/simulate", json={"input": "dance for me"})

    assert response.status_code == 400
    assert response.json()["execution"] is None


@pytest.mark.asyncio
async def test_scenarios_run_status_codes(client: AsyncClient):
    """200 when every scenario passes, 207 otherwise"""
    ok = {"scenarios": [{"name": "List", "request": QUERY_REQUEST}]}
    response = await client.post("/agent/scenarios/run", json=ok)
    assert response.status_code == 200
    assert response.json()["succeeded"] == 1

    mixed = {
        "scenarios": [
            {"name": "List", "request": QUERY_REQUEST},
            {"name": "Nope", "prompt": "dance for me"},
        ]
    }
    response = await client.post("/agent/scenarios/run", json=mixed)
    assert response.status_code == 207
    assert response.json()["failed"] == 1


@pytest.mark.asyncio
async def test_scenario_needs_prompt_or_request(client: AsyncClient):
    """A scenario with nothing to run is invalid"""
    response = await client.post("/agent/scenarios/run", json={"scenarios": [{"name": "Empty"}]})
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_lifecycle_run_status_codes(client: AsyncClient):
    """200 all passed, 207 step failures, 500 fatal"""
    passing = {
        "defaults": {"scope": {"bizId": "biz_1"}},
        "phases": [{"name": "Browse", "steps": [{"name": "List", "request": QUERY_REQUEST}]}],
    }
    response = await client.post("/agent/lifecycle/run", json=passing)
    assert response.status_code == 200
    body = response.json()
    assert body["persisted"] is False
    assert body["status"] == "rolled_back"
    assert body["summary"]["passedSteps"] == 1

    failing = {
        "defaults": {"scope": {"bizId": "biz_1"}},
        "phases": [{"name": "Browse", "steps": [{"name": "Nope", "prompt": "dance for me"}]}],
    }
    response = await client.post("/agent/lifecycle/run", json=failing)
    assert response.status_code == 207
    assert response.json()["issues"][0]["classification"] == "scenario_contract"

    fatal = {**passing, "variables": {"who": "{{nobody}}"}}
    response = await client.post("/agent/lifecycle/run", json=fatal)
    assert response.status_code == 500
    assert response.json()["status"] == "fatal"


@pytest.mark.asyncio
async def test_lifecycle_step_needs_exactly_one_source(client: AsyncClient):
    """A step with both prompt and request is invalid"""
    payload = {
        "phases": [
            {
                "name": "Browse",
                "steps": [{"name": "Both", "prompt": "show confirmed bookings", "request": QUERY_REQUEST}],
            }
        ]
    }
    response = await client.post("/agent/lifecycle/run", json=payload)
    assert response.status_code == 422
