from fastapi import APIRouter, Response, status

from schemagate.api.deps import lifecycle_dep, scenario_runner_dep
from schemagate.core import schemas

router = APIRouter(prefix="/agent", tags=["Runs"])


@router.post("/scenarios/run", response_model=schemas.ScenarioRunResult)
async def run_scenarios(
    payload: schemas.ScenarioRunRequest,
    runner: scenario_runner_dep,
    response: Response,
):
    """
    Run independent scenarios, each in its own transaction.
    207 when at least one scenario failed.
    """
    result = await runner.run(payload)
    if not result.success:
        response.status_code = status.HTTP_207_MULTI_STATUS
    return result


@router.post("/lifecycle/run", response_model=schemas.LifecycleRunResult)
async def run_lifecycle(
    payload: schemas.LifecycleRunRequest,
    orchestrator: lifecycle_dep,
    response: Response,
):
    """
    Run a phase -> step lifecycle script inside one transaction.

    200: every step passed
    207: the run finished but some steps failed
    500: the run itself broke (deadline, connection, bad variables)
    """
    result = await orchestrator.run(payload)
    if result.fatal_error is not None:
        response.status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    elif not result.success:
        response.status_code = status.HTTP_207_MULTI_STATUS
    return result
