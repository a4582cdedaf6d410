import pytest

from schemagate.core.pseudo_api.scenarios import ScenarioRunner
from schemagate.core.schemas import ScenarioRunRequest

QUERY = {"kind": "query", "table": "booking_orders", "select": ["id"]}


def _run_request(scenarios, **defaults):
    return ScenarioRunRequest.model_validate(
        {"scenarios": scenarios, "defaults": {"scope": {"bizId": "biz_1"}, **defaults}}
    )


@pytest.mark.asyncio
async def test_each_scenario_gets_its_own_transaction(executor, fake_engine, translator):
    """Scenarios are independent, each opens and closes a transaction"""
    request = _run_request(
        [
            {"name": "Literal", "request": {"command": QUERY}},
            {"name": "Prompt", "prompt": "show confirmed bookings"},
        ]
    )
    result = await ScenarioRunner(executor, translator).run(request)

    assert result.success is True
    assert (result.total, result.succeeded, result.failed) == (2, 2, 0)
    assert fake_engine.events.count("begin") == 2
    assert fake_engine.events.count("transaction:rollback") == 2
    assert [r.id for r in result.results] == ["scenario-1", "scenario-2"]


@pytest.mark.asyncio
async def test_dry_run_precedence(executor, fake_engine, translator):
    """Scenario flag beats the request's own flag, which beats the defaults"""
    request = _run_request(
        [
            {"name": "Defaults", "request": {"command": QUERY}},
            {"name": "Request says commit", "request": {"dryRun": False, "command": QUERY}},
            {
                "name": "Scenario says dry",
                "dryRun": True,
                "request": {"dryRun": False, "command": QUERY},
            },
        ],
        dryRun=True,
    )
    result = await ScenarioRunner(executor, translator).run(request)

    assert [r.response.dry_run for r in result.results] == [True, False, True]


@pytest.mark.asyncio
async def test_scope_layers_merge(executor, fake_engine, translator):
    """Scenario scope overrides request scope, which overrides defaults"""
    request = _run_request(
        [
            {
                "name": "Scoped",
                "scope": {"locationId": "loc_1"},
                "request": {"scope": {"bizId": "biz_2"}, "command": QUERY},
            }
        ]
    )
    result = await ScenarioRunner(executor, translator).run(request)

    scope = result.results[0].request.scope
    assert (scope.biz_id, scope.location_id) == ("biz_2", "loc_1")
    assert fake_engine.statements[0][1] == ("biz_2",)


@pytest.mark.asyncio
async def test_failures_are_reported_per_scenario(executor, fake_engine, translator):
    """One bad scenario does not stop the others"""
    request = _run_request(
        [
            {"name": "Untranslatable", "prompt": "dance for me"},
            {"name": "Unknown table", "prompt": "show everything in ghosts"},
            {"name": "Fine", "request": {"command": QUERY}},
        ]
    )
    result = await ScenarioRunner(executor, translator).run(request)

    assert result.success is False
    assert (result.succeeded, result.failed) == (1, 2)
    untranslatable, unknown, fine = result.results
    assert untranslatable.error.startswith("No translation registered")
    assert unknown.response.error.code == "UNKNOWN_TABLE"
    assert fine.success is True


@pytest.mark.asyncio
async def test_translate_only_scenarios_do_not_execute(executor, fake_engine, translator):
    """execute=false stops after translation"""
    request = _run_request(
        [{"name": "Plan only", "prompt": "show confirmed bookings", "execute": False}]
    )
    result = await ScenarioRunner(executor, translator).run(request)

    item = result.results[0]
    assert item.success is True
    assert item.request.command.table == "booking orders"
    assert item.response is None
    assert fake_engine.events == []
