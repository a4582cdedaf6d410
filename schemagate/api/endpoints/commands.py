from fastapi import APIRouter, Response, status

from schemagate.api.deps import executor_dep, translator_dep
from schemagate.core import schemas

router = APIRouter(prefix="/agent", tags=["Commands"])


# Prompt -> canonical request, nothing is executed
@router.post("/translate", response_model=schemas.TranslationResult)
async def translate(
    payload: schemas.TranslationRequest, translator: translator_dep, response: Response
):
    result = translator.translate(payload)
    if not result.success:
        response.status_code = status.HTTP_400_BAD_REQUEST
    return result


@router.post("/execute", response_model=schemas.PseudoApiResponse)
async def execute(
    payload: schemas.PseudoApiRequest, executor: executor_dep, response: Response
):
    """
    Execute one canonical pseudo request in its own transaction.
    dryRun defaults to true: everything runs, then the transaction rolls back.
    """
    result = await executor.execute(payload)
    if not result.success:
        response.status_code = status.HTTP_400_BAD_REQUEST
    return result


# Translate, then always execute as dry-run
@router.post("/simulate", response_model=schemas.SimulationResult)
async def simulate(
    payload: schemas.TranslationRequest,
    translator: translator_dep,
    executor: executor_dep,
    response: Response,
):
    translation = translator.translate(payload.model_copy(update={"dry_run": True}))
    if not translation.success or translation.pseudo_request is None:
        response.status_code = status.HTTP_400_BAD_REQUEST
        return schemas.SimulationResult(success=False, translation=translation)

    forced = translation.pseudo_request.model_copy(update={"dry_run": True})
    execution = await executor.execute(forced)
    if not execution.success:
        response.status_code = status.HTTP_400_BAD_REQUEST

    return schemas.SimulationResult(
        success=execution.success, translation=translation, execution=execution
    )
