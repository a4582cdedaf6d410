"""
LIFECYCLE ORCHESTRATOR - phase → step test scripts in one transaction

Purpose:
    Run a "movie test" instead of a "single-scene test":
    setup → publish → browse → booking → edge cases → verification,
    all against real tables, with captures flowing from one step to the next.

Run flow:
    seed variables → BEGIN
        for each phase, for each step:
            interpolate → translate | literal → SAVEPOINT → execute → RELEASE | ROLLBACK TO
            → captures → expectations → classification
    → COMMIT (persisted) or ROLLBACK (dry-run / rollbackOnFailure / fatal)
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from schemagate.core.pseudo_api.executor import CommandExecutor
from schemagate.core.pseudo_api.expectations import (
    FailureClassifier,
    PatternFailureClassifier,
    StepContext,
    apply_captures,
    evaluate_expectations,
)
from schemagate.core.pseudo_api.templates import TemplateInterpreter, to_text
from schemagate.core.pseudo_api.translator import Translator
from schemagate.core.schemas import (
    FailureClass,
    LifecyclePhase,
    LifecyclePhaseSummary,
    LifecycleRunRequest,
    LifecycleRunResult,
    LifecycleRunSummary,
    LifecycleStep,
    LifecycleStepIssue,
    LifecycleStepResult,
    PseudoApiRequest,
    PseudoApiResponse,
    RequestScope,
    RunStatus,
    StepState,
    TranslationRequest,
)

logger = logging.getLogger(__name__)

DRY_RUN_WARNING = "Lifecycle executed in dry-run mode; transaction rolled back."
ROLLBACK_ON_FAILURE_WARNING = "Lifecycle failed and rollbackOnFailure=true; transaction rolled back."


def _iso(moment: datetime) -> str:
    return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _elapsed_ms(start: datetime, end: datetime) -> int:
    return int((end - start).total_seconds() * 1000)


def _as_json(model: Optional[BaseModel]) -> Optional[Dict[str, Any]]:
    return model.model_dump(mode="json", by_alias=True) if model is not None else None


def _scope_dict(scope: Optional[RequestScope]) -> Dict[str, Any]:
    if scope is None:
        return {}
    return scope.model_dump(by_alias=True, exclude_none=True)


@dataclass
class RunState:
    """Mutable state owned by one run; nothing here outlives the run."""

    variables: Dict[str, Any]
    interpreter: TemplateInterpreter
    default_scope: Dict[str, Any] = field(default_factory=dict)
    steps: List[LifecycleStepResult] = field(default_factory=list)
    phase_summaries: List[LifecyclePhaseSummary] = field(default_factory=list)
    issues: List[LifecycleStepIssue] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def failed_steps(self) -> int:
        return sum(1 for step in self.steps if not step.success)


class LifecycleOrchestrator:
    def __init__(
        self,
        engine: AsyncEngine,
        executor: CommandExecutor,
        translator: Translator,
        classifier: Optional[FailureClassifier] = None,
    ):
        self.engine = engine
        self.executor = executor
        self.translator = translator
        self.classifier = classifier or PatternFailureClassifier()

    async def run(self, request: LifecycleRunRequest) -> LifecycleRunResult:
        """
        Run every phase of a lifecycle request inside one transaction.

        Args:
            request: Validated lifecycle run request.

        Returns:
            LifecycleRunResult; step failures and run-level fatal errors are
            both reported in the result, never raised.
        """
        started_at = datetime.now(timezone.utc)
        variables: Dict[str, Any] = {
            "runId": str(uuid.uuid4()),
            "runStartedAt": _iso(started_at),
        }
        state = RunState(variables=variables, interpreter=TemplateInterpreter(variables))
        status = RunStatus.RUNNING
        fatal_error: Optional[str] = None

        try:
            variables.update(state.interpreter.interpolate(request.variables))
            state.default_scope = state.interpreter.interpolate(
                _scope_dict(request.defaults.scope)
            )
        except Exception as error:
            fatal_error = f"Failed to seed run variables: {error}"

        if fatal_error is None:
            status, fatal_error = await self._run_in_transaction(request, state)

        if fatal_error is not None:
            status = RunStatus.FATAL
            logger.error(f"Lifecycle run {variables['runId']} aborted: {fatal_error}")

        ended_at = datetime.now(timezone.utc)
        failed = state.failed_steps
        return LifecycleRunResult(
            success=fatal_error is None and failed == 0,
            status=status,
            dry_run=request.defaults.dry_run,
            persisted=status == RunStatus.COMMITTED,
            started_at=_iso(started_at),
            ended_at=_iso(ended_at),
            duration_ms=_elapsed_ms(started_at, ended_at),
            summary=LifecycleRunSummary(
                total_phases=len(request.phases),
                total_steps=len(state.steps),
                passed_steps=len(state.steps) - failed,
                failed_steps=failed,
            ),
            phase_summaries=state.phase_summaries,
            steps=state.steps,
            issues=state.issues,
            variables=variables,
            warnings=state.warnings,
            fatal_error=fatal_error,
        )

    async def _run_in_transaction(self, request: LifecycleRunRequest, state: RunState):
        status = RunStatus.RUNNING
        fatal_error: Optional[str] = None
        timeout_ms = request.options.timeout_ms

        try:
            async with self.engine.connect() as conn:
                transaction = await conn.begin()
                try:
                    phases = self._run_phases(conn, request, state)
                    if timeout_ms:
                        await asyncio.wait_for(phases, timeout=timeout_ms / 1000)
                    else:
                        await phases
                except asyncio.TimeoutError:
                    fatal_error = f"Lifecycle run exceeded its deadline of {timeout_ms} ms."
                    await self._rollback_quietly(transaction)
                except Exception as error:
                    fatal_error = str(error) or "unknown_lifecycle_run_error"
                    await self._rollback_quietly(transaction)
                else:
                    failed = state.failed_steps
                    rollback_on_failure = failed > 0 and request.options.rollback_on_failure
                    if request.defaults.dry_run or rollback_on_failure:
                        await transaction.rollback()
                        status = RunStatus.ROLLED_BACK
                        if request.defaults.dry_run:
                            state.warnings.append(DRY_RUN_WARNING)
                        else:
                            state.warnings.append(ROLLBACK_ON_FAILURE_WARNING)
                    else:
                        await transaction.commit()
                        status = RunStatus.COMMITTED
        except Exception as error:
            # Connection loss, failed BEGIN/COMMIT; the original error wins if there was one
            fatal_error = fatal_error or str(error) or "unknown_lifecycle_run_error"

        return status, fatal_error

    async def _rollback_quietly(self, transaction) -> None:
        try:
            await transaction.rollback()
        except Exception as error:
            logger.warning(f"Lifecycle rollback failed: {error}")

    # ------------------------------------------------------------------
    # Phases and steps
    # ------------------------------------------------------------------

    async def _run_phases(
        self, conn: AsyncConnection, request: LifecycleRunRequest, state: RunState
    ) -> None:
        for phase_index, phase in enumerate(request.phases):
            phase_id = phase.id or f"phase-{phase_index + 1}"
            passed = failed = 0
            stop_run = False

            for step_index, step in enumerate(phase.steps):
                step_id = step.id or f"{phase_id}-step-{step_index + 1}"
                result = await self._run_step(conn, request, phase, phase_id, step, step_id, state)
                state.steps.append(result)

                if result.success:
                    passed += 1
                    continue

                failed += 1
                message = (result.expectation_failures or [result.error or "lifecycle_step_failed"])[0]
                if result.classification != FailureClass.EXPECTATION_MISMATCH and result.error:
                    message = result.error.splitlines()[0]
                state.issues.append(
                    LifecycleStepIssue(
                        phase_id=phase_id,
                        phase_name=phase.name,
                        step_id=step_id,
                        step_name=step.name,
                        classification=result.classification or FailureClass.EXECUTION_ERROR,
                        message=message,
                    )
                )

                if not request.defaults.continue_on_failure:
                    stop_run = True
                    break
                if not phase.continue_on_failure:
                    break

            state.phase_summaries.append(
                LifecyclePhaseSummary(
                    phase_id=phase_id,
                    phase_name=phase.name,
                    total_steps=len(phase.steps),
                    passed_steps=passed,
                    failed_steps=failed,
                )
            )

            if stop_run:
                break

    async def _run_step(
        self,
        conn: AsyncConnection,
        request: LifecycleRunRequest,
        phase: LifecyclePhase,
        phase_id: str,
        step: LifecycleStep,
        step_id: str,
        state: RunState,
    ) -> LifecycleStepResult:
        started_at = datetime.now(timezone.utc)
        interpreter = state.interpreter
        stage = StepState.PENDING

        translation = None
        pseudo_request: Optional[PseudoApiRequest] = None
        response: Optional[PseudoApiResponse] = None
        resolved_prompt: Optional[str] = None
        error: Optional[str] = None

        try:
            stage = StepState.INTERPOLATING
            step_scope = interpreter.interpolate(_scope_dict(step.scope))

            if step.request is not None:
                stage = StepState.LITERAL
                raw = interpreter.interpolate(
                    step.request.model_dump(by_alias=True, exclude_unset=True)
                )
                raw["dryRun"] = False
                raw["scope"] = {
                    **state.default_scope,
                    **{k: v for k, v in (raw.get("scope") or {}).items() if v is not None},
                    **step_scope,
                }
                pseudo_request = PseudoApiRequest.model_validate(raw)
            else:
                stage = StepState.TRANSLATING
                resolved_prompt = to_text(interpreter.interpolate_string(step.prompt))
                translation = self.translator.translate(
                    TranslationRequest(
                        input=resolved_prompt,
                        dry_run=False,
                        scope=RequestScope.model_validate({**state.default_scope, **step_scope}),
                    )
                )
                if not translation.success or translation.pseudo_request is None:
                    error = translation.error.message if translation.error else "translation_failed"
                else:
                    pseudo_request = translation.pseudo_request.model_copy(
                        update={"dry_run": False}
                    )
        except Exception as step_error:
            error = str(step_error) or "unknown_lifecycle_step_error"

        # Outside the step guard: savepoint failures mean the run itself is broken
        if error is None and step.execute and pseudo_request is not None:
            stage = StepState.EXECUTING
            response = await self._execute(conn, pseudo_request, request.options.step_savepoints)
            if not response.success:
                error = response.error.message if response.error else "execution_failed"

        stage = StepState.EVALUATED
        context = StepContext(
            prompt=resolved_prompt or step.prompt,
            translation=_as_json(translation),
            request=_as_json(pseudo_request),
            response=_as_json(response),
            error=error,
            variables=state.variables,
        )
        captured, capture_failures = apply_captures(step.captures, context, state.variables)
        context.captures = captured

        failures = evaluate_expectations(step.expect, context) + capture_failures
        success = not failures
        classification = None if success else self.classifier.classify(failures, context)
        if not success:
            logger.info(
                f"Step {step_id} failed after {stage.value} "
                f"[{classification.value}]: {failures[0].message}"
            )

        ended_at = datetime.now(timezone.utc)
        include_trace = request.options.include_step_trace
        return LifecycleStepResult(
            phase_id=phase_id,
            phase_name=phase.name,
            step_id=step_id,
            step_name=step.name,
            success=success,
            state=StepState.PASSED if success else StepState.FAILED,
            started_at=_iso(started_at),
            ended_at=_iso(ended_at),
            duration_ms=_elapsed_ms(started_at, ended_at),
            prompt=step.prompt,
            resolved_prompt=resolved_prompt,
            translation=translation if include_trace else None,
            request=pseudo_request if include_trace else None,
            response=response if include_trace else None,
            expectation_failures=[failure.message for failure in failures],
            captures=captured,
            classification=classification,
            error=error,
        )

    async def _execute(
        self, conn: AsyncConnection, pseudo_request: PseudoApiRequest, use_savepoint: bool
    ) -> PseudoApiResponse:
        if not use_savepoint:
            return await self.executor.execute_in_transaction(pseudo_request, conn)

        # A failed statement aborts the whole Postgres transaction unless it
        # ran under its own savepoint
        savepoint = await conn.begin_nested()
        response = await self.executor.execute_in_transaction(pseudo_request, conn)
        if response.success:
            await savepoint.commit()
        else:
            await savepoint.rollback()
        return response
