from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel


class ContractModel(BaseModel):
    """
    Base for every pseudo API payload.
    JSON stays camelCase on the wire, Python code uses snake_case.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


ScalarValue = Union[str, int, float, bool, None]


# =========================
# Enums
# =========================
class FilterOperator(str, Enum):
    EQ = "eq"
    NEQ = "neq"
    GT = "gt"
    GTE = "gte"
    LT = "lt"
    LTE = "lte"
    LIKE = "like"
    ILIKE = "ilike"
    IN = "in"
    IS_NULL = "is_null"
    NOT_NULL = "not_null"


class FailureClass(str, Enum):
    SCENARIO_CONTRACT = "scenario_contract"
    SCHEMA_CONSTRAINT = "schema_constraint"
    EXPECTATION_MISMATCH = "expectation_mismatch"
    EXECUTION_ERROR = "execution_error"


class RunStatus(str, Enum):
    RUNNING = "running"
    ROLLED_BACK = "rolled_back"
    COMMITTED = "committed"
    FATAL = "fatal"


class StepState(str, Enum):
    PENDING = "pending"
    INTERPOLATING = "interpolating"
    TRANSLATING = "translating"
    LITERAL = "literal"
    EXECUTING = "executing"
    EVALUATED = "evaluated"
    PASSED = "passed"
    FAILED = "failed"


# =========================
# COMMANDS
# =========================
class CommandFilter(ContractModel):
    column: str = Field(min_length=1)
    op: FilterOperator
    # Left unset means "no value"; an explicit null means a NULL comparison
    value: Optional[Union[ScalarValue, List[ScalarValue]]] = None

    @property
    def has_value(self) -> bool:
        return "value" in self.model_fields_set


class CommandSort(ContractModel):
    column: str = Field(min_length=1)
    direction: Literal["asc", "desc"] = "asc"


class QueryCommand(ContractModel):
    kind: Literal["query"]
    table: str = Field(min_length=1)
    select: Optional[List[str]] = None
    filters: List[CommandFilter] = []
    sort: List[CommandSort] = []
    limit: Optional[int] = Field(default=None, ge=1, le=500)
    offset: Optional[int] = Field(default=None, ge=0)


class MutateCommand(ContractModel):
    kind: Literal["mutate"]
    action: Literal["insert", "update", "delete"]
    table: str = Field(min_length=1)
    values: Optional[Dict[str, Any]] = None
    filters: List[CommandFilter] = []
    returning: Optional[List[str]] = None


class BatchCommand(ContractModel):
    kind: Literal["batch"]
    steps: List["AgentCommand"] = Field(min_length=1)


AgentCommand = Annotated[
    Union[QueryCommand, MutateCommand, BatchCommand], Field(discriminator="kind")
]

BatchCommand.model_rebuild()


# =========================
# REQUEST / RESPONSE ENVELOPE
# =========================
class RequestScope(ContractModel):
    biz_id: Optional[str] = Field(default=None, min_length=1)
    location_id: Optional[str] = Field(default=None, min_length=1)
    actor_user_id: Optional[str] = Field(default=None, min_length=1)


class PseudoApiRequest(ContractModel):
    request_id: Optional[str] = Field(default=None, min_length=1)
    idempotency_key: Optional[str] = Field(default=None, min_length=1)
    dry_run: bool = True
    scope: RequestScope = RequestScope()
    command: AgentCommand
    metadata: Optional[Dict[str, Any]] = None


class ExecutionTraceStep(ContractModel):
    step_index: int
    kind: Literal["query", "mutate"]
    table: str
    sql: str
    params: List[Any]
    row_count: int
    dry_run: bool


class ErrorDetail(ContractModel):
    message: str
    code: Optional[str] = None
    detail: Optional[Any] = None


class PseudoApiResponse(ContractModel):
    request_id: str
    dry_run: bool
    success: bool
    command_kind: Literal["query", "mutate", "batch"]
    warnings: List[str] = []
    trace: List[ExecutionTraceStep] = []
    result: Any = None
    error: Optional[ErrorDetail] = None


# =========================
# TRANSLATION
# =========================
class TranslationOptions(ContractModel):
    force_table: Optional[str] = Field(default=None, min_length=1)
    force_action: Optional[Literal["query", "insert", "update", "delete"]] = None


class TranslationRequest(ContractModel):
    input: str = Field(min_length=1)
    dry_run: bool = True
    scope: RequestScope = RequestScope()
    options: Optional[TranslationOptions] = None


class TranslationError(ContractModel):
    message: str
    suggestions: List[str] = []


class TranslationResult(ContractModel):
    success: bool
    confidence: float = 0.0
    notes: List[str] = []
    pseudo_request: Optional[PseudoApiRequest] = None
    error: Optional[TranslationError] = None


class SimulationResult(ContractModel):
    success: bool
    translation: TranslationResult
    execution: Optional[PseudoApiResponse] = None


# =========================
# SCENARIOS
# =========================
class ScenarioItem(ContractModel):
    id: Optional[str] = Field(default=None, min_length=1)
    name: str = Field(min_length=1)
    prompt: Optional[str] = Field(default=None, min_length=1)
    request: Optional[PseudoApiRequest] = None
    execute: bool = True
    dry_run: Optional[bool] = None
    scope: Optional[RequestScope] = None

    @model_validator(mode="after")
    def require_prompt_or_request(self):
        if not self.prompt and self.request is None:
            raise ValueError("Scenario must provide either prompt or request.")
        return self


class ScenarioDefaults(ContractModel):
    dry_run: bool = True
    scope: RequestScope = RequestScope()


class ScenarioRunRequest(ContractModel):
    scenarios: List[ScenarioItem] = Field(min_length=1)
    defaults: ScenarioDefaults = ScenarioDefaults()


class ScenarioResult(ContractModel):
    id: str
    name: str
    success: bool
    prompt: Optional[str] = None
    translation: Optional[TranslationResult] = None
    request: Optional[PseudoApiRequest] = None
    response: Optional[PseudoApiResponse] = None
    error: Optional[str] = None


class ScenarioRunResult(ContractModel):
    success: bool
    total: int
    succeeded: int
    failed: int
    results: List[ScenarioResult]


# =========================
# LIFECYCLE RUNS
# =========================
class PathAssertion(ContractModel):
    path: str = Field(min_length=1)
    equals: ScalarValue = None
    exists: Optional[bool] = None
    contains: Optional[str] = Field(default=None, min_length=1)

    @property
    def checks_equality(self) -> bool:
        return "equals" in self.model_fields_set

    @model_validator(mode="after")
    def require_one_check(self):
        if not self.checks_equality and self.exists is None and self.contains is None:
            raise ValueError(
                "Path assertion needs at least one check: equals, exists, or contains."
            )
        return self


class StepExpectation(ContractModel):
    success: Optional[bool] = None
    row_count_eq: Optional[int] = Field(default=None, ge=0)
    row_count_gte: Optional[int] = Field(default=None, ge=0)
    row_count_lte: Optional[int] = Field(default=None, ge=0)
    error_contains: Optional[Union[str, List[str]]] = None
    asserts: List[PathAssertion] = []


class StepCapture(ContractModel):
    key: str = Field(min_length=1)
    source: Literal["translation", "request", "response", "result", "error"] = Field(
        default="response", alias="from"
    )
    path: str = Field(min_length=1)
    required: bool = True
    default_value: Any = None

    @property
    def has_default(self) -> bool:
        return "default_value" in self.model_fields_set


class LifecycleStep(ContractModel):
    id: Optional[str] = Field(default=None, min_length=1)
    name: str = Field(min_length=1)
    description: Optional[str] = None
    prompt: Optional[str] = Field(default=None, min_length=1)
    request: Optional[PseudoApiRequest] = None
    execute: bool = True
    scope: Optional[RequestScope] = None
    expect: Optional[StepExpectation] = None
    captures: List[StepCapture] = []
    tags: List[str] = []

    @model_validator(mode="after")
    def require_prompt_or_request(self):
        if bool(self.prompt) == bool(self.request):
            raise ValueError("Lifecycle step must provide exactly one of prompt or request.")
        return self


class LifecyclePhase(ContractModel):
    id: Optional[str] = Field(default=None, min_length=1)
    name: str = Field(min_length=1)
    description: Optional[str] = None
    continue_on_failure: bool = True
    steps: List[LifecycleStep] = Field(min_length=1)


class LifecycleDefaults(ContractModel):
    dry_run: bool = True
    scope: RequestScope = RequestScope()
    continue_on_failure: bool = True


class LifecycleOptions(ContractModel):
    rollback_on_failure: bool = False
    include_step_trace: bool = False
    step_savepoints: bool = True
    timeout_ms: Optional[int] = Field(default=None, gt=0)


class LifecycleRunRequest(ContractModel):
    defaults: LifecycleDefaults = LifecycleDefaults()
    variables: Dict[str, Any] = {}
    phases: List[LifecyclePhase] = Field(min_length=1)
    options: LifecycleOptions = LifecycleOptions()


class LifecycleStepIssue(ContractModel):
    phase_id: str
    phase_name: str
    step_id: str
    step_name: str
    classification: FailureClass
    message: str


class LifecycleStepResult(ContractModel):
    phase_id: str
    phase_name: str
    step_id: str
    step_name: str
    success: bool
    state: StepState
    started_at: str
    ended_at: str
    duration_ms: int
    prompt: Optional[str] = None
    resolved_prompt: Optional[str] = None
    translation: Optional[TranslationResult] = None
    request: Optional[PseudoApiRequest] = None
    response: Optional[PseudoApiResponse] = None
    expectation_failures: List[str] = []
    captures: Dict[str, Any] = {}
    classification: Optional[FailureClass] = None
    error: Optional[str] = None


class LifecyclePhaseSummary(ContractModel):
    phase_id: str
    phase_name: str
    total_steps: int
    passed_steps: int
    failed_steps: int


class LifecycleRunSummary(ContractModel):
    total_phases: int
    total_steps: int
    passed_steps: int
    failed_steps: int


class LifecycleRunResult(ContractModel):
    success: bool
    status: RunStatus
    dry_run: bool
    persisted: bool
    started_at: str
    ended_at: str
    duration_ms: int
    summary: LifecycleRunSummary
    phase_summaries: List[LifecyclePhaseSummary]
    steps: List[LifecycleStepResult]
    issues: List[LifecycleStepIssue]
    variables: Dict[str, Any]
    warnings: List[str] = []
    fatal_error: Optional[str] = None
