from typing import Annotated

from fastapi import Depends

from schemagate.core.database import engine, get_catalog_service
from schemagate.core.pseudo_api.catalog import SchemaCatalogService
from schemagate.core.pseudo_api.executor import CommandExecutor
from schemagate.core.pseudo_api.lifecycle import LifecycleOrchestrator
from schemagate.core.pseudo_api.scenarios import ScenarioRunner
from schemagate.core.pseudo_api.translator import Translator, UnavailableTranslator

# The natural-language translator is an external collaborator; tests and
# deployments swap it in through app.dependency_overrides
_translator = UnavailableTranslator()


def get_translator() -> Translator:
    return _translator


def get_executor(
    catalog_service: Annotated[SchemaCatalogService, Depends(get_catalog_service)],
) -> CommandExecutor:
    return CommandExecutor(engine, catalog_service)


def get_scenario_runner(
    executor: Annotated[CommandExecutor, Depends(get_executor)],
    translator: Annotated[Translator, Depends(get_translator)],
) -> ScenarioRunner:
    return ScenarioRunner(executor, translator)


def get_lifecycle_orchestrator(
    executor: Annotated[CommandExecutor, Depends(get_executor)],
    translator: Annotated[Translator, Depends(get_translator)],
) -> LifecycleOrchestrator:
    return LifecycleOrchestrator(executor.engine, executor, translator)


# Modern Dependency Injection
catalog_dep = Annotated[SchemaCatalogService, Depends(get_catalog_service)]
translator_dep = Annotated[Translator, Depends(get_translator)]
executor_dep = Annotated[CommandExecutor, Depends(get_executor)]
scenario_runner_dep = Annotated[ScenarioRunner, Depends(get_scenario_runner)]
lifecycle_dep = Annotated[LifecycleOrchestrator, Depends(get_lifecycle_orchestrator)]
