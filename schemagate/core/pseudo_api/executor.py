"""
EXECUTOR - run compiled commands inside one transaction

Two entry points over the same core:
    execute()                → owns the transaction: BEGIN → run → COMMIT, or ROLLBACK on dry-run/error
    execute_in_transaction() → guest in a caller's transaction, never BEGIN/COMMIT/ROLLBACK

Both always return a PseudoApiResponse; failures are data, not exceptions.
"""

import logging
import uuid
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from schemagate.core.pseudo_api.compiler import (
    CommandCompiler,
    CompiledBatch,
    CompiledCommand,
    CompiledPlan,
)
from schemagate.core.pseudo_api.errors import CompileError
from schemagate.core.schemas import (
    ErrorDetail,
    ExecutionTraceStep,
    PseudoApiRequest,
    PseudoApiResponse,
)

logger = logging.getLogger(__name__)

DRY_RUN_WARNING = "Request executed in dry-run mode; all writes were rolled back."


def describe_error(error: Exception) -> ErrorDetail:
    """Turn any failure into the response error payload."""
    if isinstance(error, CompileError):
        return ErrorDetail(message=error.message, code=error.kind.value)

    if isinstance(error, DBAPIError):
        orig = error.orig
        sqlstate = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
        return ErrorDetail(
            message=str(orig) if orig is not None else str(error),
            code="DATABASE_ERROR",
            detail={"sqlstate": sqlstate} if sqlstate else None,
        )

    return ErrorDetail(
        message=str(error) or "unknown_execution_error", code="EXECUTION_ERROR"
    )


class CommandExecutor:
    def __init__(self, engine: AsyncEngine, catalog_service):
        self.engine = engine
        self.catalog_service = catalog_service

    async def compile(self, request: PseudoApiRequest) -> CompiledPlan:
        """Compile the whole command tree up front; raises CompileError."""
        catalog = await self.catalog_service.get()
        return CommandCompiler(catalog).compile(request.command, request.scope).unwrap()

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def execute(self, request: PseudoApiRequest) -> PseudoApiResponse:
        """
        Execute one pseudo request in its own transaction.

        dryRun=true runs everything for real and rolls back at the end, which
        gives production-like validation without persisting writes.
        """
        request_id = request.request_id or str(uuid.uuid4())
        trace: List[ExecutionTraceStep] = []
        warnings: List[str] = []

        try:
            plan = await self.compile(request)
        except Exception as error:
            # Nothing reached the database
            return self._respond(request, request_id, request.dry_run, trace, warnings, error=error)

        try:
            async with self.engine.connect() as conn:
                transaction = await conn.begin()
                try:
                    result = await self._run(conn, plan, request.dry_run, trace, [0])
                except Exception as error:
                    await self._rollback_quietly(transaction, request_id)
                    return self._respond(
                        request, request_id, request.dry_run, trace, warnings, error=error
                    )

                if request.dry_run:
                    await transaction.rollback()
                    warnings.append(DRY_RUN_WARNING)
                else:
                    await transaction.commit()
        except Exception as error:
            return self._respond(request, request_id, request.dry_run, trace, warnings, error=error)

        return self._respond(request, request_id, request.dry_run, trace, warnings, result=result)

    async def execute_in_transaction(
        self, request: PseudoApiRequest, conn: AsyncConnection
    ) -> PseudoApiResponse:
        """
        Execute inside a transaction the caller already opened.
        The caller decides what to commit or roll back.
        """
        request_id = request.request_id or str(uuid.uuid4())
        trace: List[ExecutionTraceStep] = []

        try:
            plan = await self.compile(request)
            result = await self._run(conn, plan, False, trace, [0])
        except Exception as error:
            return self._respond(request, request_id, False, trace, [], error=error)

        return self._respond(request, request_id, False, trace, [], result=result)

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    async def _run(
        self,
        conn: AsyncConnection,
        plan: CompiledPlan,
        dry_run: bool,
        trace: List[ExecutionTraceStep],
        counter: List[int],
    ) -> Dict[str, Any]:
        if isinstance(plan, CompiledBatch):
            steps = []
            for step in plan.steps:
                steps.append(await self._run(conn, step, dry_run, trace, counter))
            return {"kind": "batch", "steps": steps}

        step_index = counter[0]
        counter[0] += 1
        return await self._run_single(conn, plan, dry_run, trace, step_index)

    async def _run_single(
        self,
        conn: AsyncConnection,
        compiled: CompiledCommand,
        dry_run: bool,
        trace: List[ExecutionTraceStep],
        step_index: int,
    ) -> Dict[str, Any]:
        params = tuple(compiled.params) if compiled.params else None
        result = await conn.exec_driver_sql(compiled.sql, params)

        rows = [dict(row) for row in result.mappings().all()] if result.returns_rows else []
        row_count = result.rowcount if result.rowcount is not None and result.rowcount >= 0 else len(rows)

        trace.append(
            ExecutionTraceStep(
                step_index=step_index,
                kind=compiled.kind,
                table=compiled.table,
                sql=compiled.sql,
                params=list(compiled.params),
                row_count=row_count,
                dry_run=dry_run,
            )
        )

        payload: Dict[str, Any] = {"table": compiled.table}
        if compiled.action:
            payload["action"] = compiled.action
        payload["rowCount"] = row_count
        payload["rows"] = rows
        return payload

    async def _rollback_quietly(self, transaction, request_id: str) -> None:
        try:
            await transaction.rollback()
        except Exception as error:
            # Keep the original failure visible
            logger.warning(f"Rollback failed for request {request_id}: {error}")

    def _respond(
        self,
        request: PseudoApiRequest,
        request_id: str,
        dry_run: bool,
        trace: List[ExecutionTraceStep],
        warnings: List[str],
        result: Any = None,
        error: Optional[Exception] = None,
    ) -> PseudoApiResponse:
        detail = describe_error(error) if error is not None else None

        if detail is None:
            logger.info(
                f"Request {request_id} ({request.command.kind}) succeeded, dry_run={dry_run}"
            )
        elif detail.code == "DATABASE_ERROR":
            logger.warning(f"Request {request_id} rejected by database: {detail.message}")
        else:
            logger.info(f"Request {request_id} failed [{detail.code}]: {detail.message}")

        return PseudoApiResponse(
            request_id=request_id,
            dry_run=dry_run,
            success=detail is None,
            command_kind=request.command.kind,
            warnings=warnings,
            trace=trace,
            result=result,
            error=detail,
        )
