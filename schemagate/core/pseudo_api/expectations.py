"""
EXPECTATIONS - judge one lifecycle step and label its failure

Purpose:
    1. Compare what a step did with what it declared it would do
    2. Pull captured values into the shared variables bag
    3. Put every failed step into exactly one failure bucket

Failure buckets (strict precedence, first match wins):
    expectation_mismatch → assertions or captures failed
    scenario_contract    → bad translation, unknown identifiers, tenant mismatch, bad templates
    schema_constraint    → the database rejected the write on a real constraint
    execution_error      → everything else
"""

import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Tuple

from schemagate.core.pseudo_api.errors import CompileErrorKind
from schemagate.core.pseudo_api.templates import MISSING, get_by_path, to_text
from schemagate.core.schemas import (
    FailureClass,
    StepCapture,
    StepExpectation,
)

# Failure check labels
SUCCESS_CHECK = "success"
ROW_COUNT_CHECK = "row_count"
ERROR_CHECK = "error_contains"
ASSERT_CHECK = "assert"
CAPTURE_CHECK = "capture"

CONTRACT_PATTERN = re.compile(
    r"unknown\s+(\w+\s+)?(table|column)|unsafe|tenant|unresolved template token",
    re.IGNORECASE,
)
CONSTRAINT_PATTERN = re.compile(
    r"violates|constraint|not-null|check|foreign key|duplicate key", re.IGNORECASE
)


@dataclass
class ExpectationFailure:
    check: str
    message: str

    def __str__(self) -> str:
        return self.message


@dataclass
class StepContext:
    """Everything known about a step once it has run (dicts are JSON-shaped)."""

    prompt: Optional[str] = None
    translation: Optional[Dict[str, Any]] = None
    request: Optional[Dict[str, Any]] = None
    response: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    captures: Dict[str, Any] = field(default_factory=dict)
    variables: Dict[str, Any] = field(default_factory=dict)

    @property
    def result(self) -> Any:
        return self.response.get("result") if self.response else None

    @property
    def actual_success(self) -> bool:
        if self.response is not None:
            return bool(self.response.get("success"))
        if self.translation is not None and not self.translation.get("success"):
            return False
        return self.error is None

    @property
    def error_message(self) -> str:
        """The most specific error text available for the step."""
        for source in (self.response, self.translation):
            message = ((source or {}).get("error") or {}).get("message")
            if message:
                return message
        return to_text(self.error)

    @property
    def error_code(self) -> Optional[str]:
        return ((self.response or {}).get("error") or {}).get("code")

    @property
    def row_count(self) -> Optional[int]:
        result = self.result
        if isinstance(result, dict) and isinstance(result.get("rowCount"), int):
            return result["rowCount"]
        return None

    def capture_sources(self) -> Dict[str, Any]:
        return {
            "translation": self.translation,
            "request": self.request,
            "response": self.response,
            "result": self.result,
            "error": self.error,
        }

    def assertion_root(self) -> Dict[str, Any]:
        return {
            "prompt": self.prompt,
            "translation": self.translation,
            "request": self.request,
            "response": self.response,
            "result": self.result,
            "error": self.error,
            "captures": self.captures,
            "variables": self.variables,
        }


# ============================================================================
# EVALUATION
# ============================================================================


def _strict_equals(actual: Any, expected: Any) -> bool:
    # true is not 1 and "1" is not 1
    if isinstance(actual, bool) or isinstance(expected, bool):
        return isinstance(actual, bool) and isinstance(expected, bool) and actual == expected
    if isinstance(expected, (int, float)) and isinstance(actual, (int, float)):
        return actual == expected
    return type(actual) is type(expected) and actual == expected


def evaluate_expectations(
    expectation: Optional[StepExpectation], context: StepContext
) -> List[ExpectationFailure]:
    """
    Check one step against its declared expectation.

    Every check runs independently, so one step can report several failures.

    Args:
        expectation: Declared expectation (None means "should succeed").
        context: The step's outcome.

    Returns:
        List of failures, empty when the step behaved as declared.
    """
    expectation = expectation or StepExpectation()
    failures: List[ExpectationFailure] = []

    expected_success = True if expectation.success is None else expectation.success
    actual_success = context.actual_success
    if actual_success != expected_success:
        failures.append(
            ExpectationFailure(
                SUCCESS_CHECK,
                f"Expected success={str(expected_success).lower()} "
                f"but got success={str(actual_success).lower()}.",
            )
        )

    row_count = context.row_count
    if expectation.row_count_eq is not None:
        if row_count is None or row_count != expectation.row_count_eq:
            failures.append(
                ExpectationFailure(
                    ROW_COUNT_CHECK,
                    f"Expected rowCount={expectation.row_count_eq} but got {row_count}.",
                )
            )
    if expectation.row_count_gte is not None:
        if row_count is None or row_count < expectation.row_count_gte:
            failures.append(
                ExpectationFailure(
                    ROW_COUNT_CHECK,
                    f"Expected rowCount >= {expectation.row_count_gte} but got {row_count}.",
                )
            )
    if expectation.row_count_lte is not None:
        if row_count is None or row_count > expectation.row_count_lte:
            failures.append(
                ExpectationFailure(
                    ROW_COUNT_CHECK,
                    f"Expected rowCount <= {expectation.row_count_lte} but got {row_count}.",
                )
            )

    needles = expectation.error_contains or []
    if isinstance(needles, str):
        needles = [needles]
    error_message = context.error_message
    for needle in needles:
        if needle not in error_message:
            failures.append(
                ExpectationFailure(
                    ERROR_CHECK,
                    f'Expected error to include "{needle}" but got "{error_message}".',
                )
            )

    root = context.assertion_root()
    for assertion in expectation.asserts:
        actual = get_by_path(root, assertion.path, default=None)

        if assertion.exists is not None:
            exists = actual is not None
            if exists != assertion.exists:
                failures.append(
                    ExpectationFailure(
                        ASSERT_CHECK,
                        f'Assert path "{assertion.path}" exists expected '
                        f"{str(assertion.exists).lower()} but got {str(exists).lower()}.",
                    )
                )

        if assertion.checks_equality and not _strict_equals(actual, assertion.equals):
            failures.append(
                ExpectationFailure(
                    ASSERT_CHECK,
                    f'Assert path "{assertion.path}" equals {to_text(assertion.equals)} '
                    f"but got {to_text(actual)}.",
                )
            )

        if assertion.contains is not None:
            as_text = to_text(actual)
            if assertion.contains not in as_text:
                failures.append(
                    ExpectationFailure(
                        ASSERT_CHECK,
                        f'Assert path "{assertion.path}" should contain '
                        f'"{assertion.contains}" but got "{as_text}".',
                    )
                )

    return failures


def apply_captures(
    captures: List[StepCapture],
    context: StepContext,
    variables: Dict[str, Any],
) -> Tuple[Dict[str, Any], List[ExpectationFailure]]:
    """
    Copy values out of a step's outcome into the shared variables bag.

    Values land in `variables` right away, so later steps see them even if
    this step fails afterwards.

    Returns:
        (values captured by this step, failures for required captures that had no value)
    """
    sources = context.capture_sources()
    captured: Dict[str, Any] = {}
    failures: List[ExpectationFailure] = []

    for capture in captures:
        value = get_by_path(sources[capture.source], capture.path)
        if value is MISSING and capture.has_default:
            value = capture.default_value

        if value is MISSING:
            if capture.required:
                failures.append(
                    ExpectationFailure(
                        CAPTURE_CHECK,
                        f'Capture "{capture.key}" from {capture.source}.{capture.path} '
                        "could not be resolved.",
                    )
                )
            continue

        variables[capture.key] = value
        captured[capture.key] = value

    return captured, failures


# ============================================================================
# CLASSIFICATION
# ============================================================================


class FailureClassifier(Protocol):
    def classify(
        self, failures: List[ExpectationFailure], context: StepContext
    ) -> FailureClass: ...


class PatternFailureClassifier:
    """
    Default classifier: evaluator output first, then error code, then
    targeted regexes over the error message.

    A step whose only failure is "expected success but got an error" is
    judged by that error (required captures it could not fill do not count); anything else the evaluator reports is an
    expectation mismatch, even when the error text also sounds like a
    constraint violation.
    """

    contract_codes = {kind.value for kind in CompileErrorKind}

    def classify(
        self, failures: List[ExpectationFailure], context: StepContext
    ) -> FailureClass:
        if self._has_expectation_failure(failures, context):
            return FailureClass.EXPECTATION_MISMATCH

        if context.translation is not None and not context.translation.get("success"):
            return FailureClass.SCENARIO_CONTRACT

        if context.error_code in self.contract_codes:
            return FailureClass.SCENARIO_CONTRACT

        message = context.error_message
        if CONTRACT_PATTERN.search(message):
            return FailureClass.SCENARIO_CONTRACT
        if CONSTRAINT_PATTERN.search(message):
            return FailureClass.SCHEMA_CONSTRAINT

        return FailureClass.EXECUTION_ERROR

    @staticmethod
    def _has_expectation_failure(
        failures: List[ExpectationFailure], context: StepContext
    ) -> bool:
        broke_unexpectedly = not context.actual_success and any(
            failure.check == SUCCESS_CHECK for failure in failures
        )
        for failure in failures:
            if failure.check == SUCCESS_CHECK:
                # Succeeded while a failure was expected
                if context.actual_success:
                    return True
                continue
            # Nothing to capture from a step that broke
            if failure.check == CAPTURE_CHECK and broke_unexpectedly:
                continue
            return True
        return False
