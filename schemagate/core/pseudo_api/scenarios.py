import logging
from typing import List

from schemagate.core.pseudo_api.executor import CommandExecutor
from schemagate.core.pseudo_api.translator import Translator
from schemagate.core.schemas import (
    RequestScope,
    ScenarioResult,
    ScenarioRunRequest,
    ScenarioRunResult,
    TranslationRequest,
)

logger = logging.getLogger(__name__)


def _merge_scopes(*scopes) -> RequestScope:
    merged = {}
    for scope in scopes:
        if scope is not None:
            merged.update(scope.model_dump(exclude_none=True))
    return RequestScope(**merged)


class ScenarioRunner:
    """
    Runs a batch of independent scenarios, each in its own transaction.

    A scenario is either natural language (`prompt`, translated first) or a
    canonical `request` that a generator already emitted as JSON.
    """

    def __init__(self, executor: CommandExecutor, translator: Translator):
        self.executor = executor
        self.translator = translator

    async def run(self, request: ScenarioRunRequest) -> ScenarioRunResult:
        results: List[ScenarioResult] = []
        defaults = request.defaults

        for index, scenario in enumerate(request.scenarios):
            scenario_id = scenario.id or f"scenario-{index + 1}"
            translation = None

            try:
                if scenario.request is not None:
                    dry_run = scenario.dry_run
                    if dry_run is None:
                        dry_run = (
                            scenario.request.dry_run
                            if "dry_run" in scenario.request.model_fields_set
                            else defaults.dry_run
                        )
                    pseudo_request = scenario.request.model_copy(
                        update={
                            "dry_run": dry_run,
                            "scope": _merge_scopes(
                                defaults.scope, scenario.request.scope, scenario.scope
                            ),
                        }
                    )
                else:
                    translation = self.translator.translate(
                        TranslationRequest(
                            input=scenario.prompt,
                            dry_run=defaults.dry_run if scenario.dry_run is None else scenario.dry_run,
                            scope=_merge_scopes(defaults.scope, scenario.scope),
                        )
                    )
                    if not translation.success or translation.pseudo_request is None:
                        results.append(
                            ScenarioResult(
                                id=scenario_id,
                                name=scenario.name,
                                success=False,
                                prompt=scenario.prompt,
                                translation=translation,
                                error=translation.error.message
                                if translation.error
                                else "translation_failed",
                            )
                        )
                        continue
                    pseudo_request = translation.pseudo_request

                if not scenario.execute:
                    results.append(
                        ScenarioResult(
                            id=scenario_id,
                            name=scenario.name,
                            success=True,
                            prompt=scenario.prompt,
                            translation=translation,
                            request=pseudo_request,
                        )
                    )
                    continue

                response = await self.executor.execute(pseudo_request)
                results.append(
                    ScenarioResult(
                        id=scenario_id,
                        name=scenario.name,
                        success=response.success,
                        prompt=scenario.prompt,
                        translation=translation,
                        request=pseudo_request,
                        response=response,
                        error=response.error.message if response.error else None,
                    )
                )
            except Exception as error:
                logger.error(f"Scenario {scenario_id} crashed: {error}")
                results.append(
                    ScenarioResult(
                        id=scenario_id,
                        name=scenario.name,
                        success=False,
                        prompt=scenario.prompt,
                        translation=translation,
                        error=str(error) or "unknown_scenario_error",
                    )
                )

        succeeded = sum(1 for result in results if result.success)
        return ScenarioRunResult(
            success=succeeded == len(results),
            total=len(results),
            succeeded=succeeded,
            failed=len(results) - succeeded,
            results=results,
        )
