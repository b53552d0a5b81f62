"""Pydantic models for every document the control plane persists or returns."""

from __future__ import annotations

import datetime as dt
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from loopwarden.errors import CheckpointNotFoundError, InvalidStateError

CURRENT_SCHEMA_VERSION = 1


def utc_now() -> str:
    """Return the current UTC time as an ISO-8601 string."""
    return dt.datetime.now(dt.timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Backlog (prd.json) and classification
# ---------------------------------------------------------------------------

# prd.json is shared with other tooling that writes camelCase keys and extra
# fields, so these models alias to camelCase and keep unknown keys.
_BACKLOG_CONFIG = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")


class ComplexityLevel(str, Enum):
    """Pipeline tier selected by the complexity classifier."""

    SIMPLE = "SIMPLE"
    STANDARD = "STANDARD"
    COMPLEX = "COMPLEX"


class QADepth(str, Enum):
    LIGHT = "light"
    STANDARD = "standard"
    EXTENSIVE = "extensive"


class PipelinePolicy(BaseModel):
    """Behavioral toggles handed to the implementation executor."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    use_planner: bool = True
    qa_depth: QADepth = QADepth.STANDARD
    parallel_agents: bool = False
    research_phase: bool = False
    self_critique: bool = False
    description: str = ""


class ClassificationMetrics(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    item_count: int = 0
    file_count: int = 0
    dependency_count: int = 0
    criteria_count: int = 0


class ClassificationResult(BaseModel):
    """Output of :func:`loopwarden.classifier.classify`."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    level: ComplexityLevel
    score: int
    metrics: ClassificationMetrics = Field(default_factory=ClassificationMetrics)
    indicators: dict[str, int] = Field(default_factory=dict)
    recommendation: PipelinePolicy = Field(default_factory=PipelinePolicy)


class WorkItem(BaseModel):
    """One backlog entry (a user story)."""

    model_config = _BACKLOG_CONFIG

    id: str
    title: str = ""
    description: str = ""
    acceptance_criteria: list[str] = Field(default_factory=list)
    priority: int = 1
    passes: bool = False
    notes: str = ""
    files: list[str] = Field(default_factory=list)
    blocked_by: list[str] = Field(default_factory=list)
    blocks: list[str] = Field(default_factory=list)


class Backlog(BaseModel):
    """The ordered work items for one run, persisted as ``prd.json``."""

    model_config = _BACKLOG_CONFIG

    schema_version: int = CURRENT_SCHEMA_VERSION
    revision: int = 0
    project_name: str = Field(default="", alias="project")
    branch_name: str = ""
    description: str = ""
    items: list[WorkItem] = Field(default_factory=list, alias="userStories")
    complexity: ComplexityLevel | None = None
    complexity_details: ClassificationResult | None = None

    def get_item(self, item_id: str) -> WorkItem | None:
        for item in self.items:
            if item.id == item_id:
                return item
        return None

    def pending_items(self) -> list[WorkItem]:
        """Items not yet passing, lowest priority number first (stable)."""
        return sorted((i for i in self.items if not i.passes), key=lambda i: i.priority)


class BacklogValidation(BaseModel):
    valid: bool
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)


class BacklogStats(BaseModel):
    total: int = 0
    complete: int = 0
    remaining: int = 0
    percent_complete: int = 0
    next_item_id: str | None = None


# ---------------------------------------------------------------------------
# Execution control (intervention.json, checkpoints/)
# ---------------------------------------------------------------------------


class VersionedDocument(BaseModel):
    """Base for persisted documents: schema version plus write revision."""

    schema_version: int = CURRENT_SCHEMA_VERSION
    revision: int = 0


class ControlStatus(str, Enum):
    RUNNING = "running"
    PAUSED = "paused"
    CANCELLED = "cancelled"
    COMPLETED = "completed"


TERMINAL_STATUSES = frozenset({ControlStatus.CANCELLED, ControlStatus.COMPLETED})


class CheckpointRef(BaseModel):
    """Index entry for a checkpoint, stored inside :class:`ControlState`."""

    id: str
    item_id: str
    created_at: str


class Checkpoint(VersionedDocument):
    """Full snapshot stored as ``checkpoints/<id>.json``."""

    id: str
    item_id: str
    created_at: str = Field(default_factory=utc_now)
    data: dict[str, Any] = Field(default_factory=dict)

    def ref(self) -> CheckpointRef:
        return CheckpointRef(id=self.id, item_id=self.item_id, created_at=self.created_at)


class ControlState(VersionedDocument):
    """Where the runner is. Persisted as ``intervention.json``."""

    state: ControlStatus = ControlStatus.RUNNING
    started_at: str = Field(default_factory=utc_now)
    last_updated: str = Field(default_factory=utc_now)
    current_item_id: str | None = None
    current_item_started_at: str | None = None
    completed_item_ids: list[str] = Field(default_factory=list)
    checkpoints: list[CheckpointRef] = Field(default_factory=list)

    pause_reason: str | None = None
    paused_at: str | None = None
    resumed_at: str | None = None
    cancel_reason: str | None = None
    cancelled_at: str | None = None
    completed_at: str | None = None
    rollback_from: str | None = None
    rollback_to: str | None = None
    rolled_back_at: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATUSES

    def last_checkpoint(self) -> CheckpointRef | None:
        return self.checkpoints[-1] if self.checkpoints else None


class ErrorKind(str, Enum):
    INVALID_STATE = "invalid_state"
    CHECKPOINT_NOT_FOUND = "checkpoint_not_found"


class ActionResult(BaseModel):
    """Structured outcome of an operator-facing control operation."""

    success: bool
    message: str
    error: ErrorKind | None = None
    checkpoint: CheckpointRef | None = None
    removed_checkpoints: int = 0
    next_step: str = ""

    def raise_for_error(self) -> ActionResult:
        """Return self, or raise the exception matching a refused operation."""
        if self.success:
            return self
        if self.error == ErrorKind.CHECKPOINT_NOT_FOUND:
            raise CheckpointNotFoundError(self.message)
        raise InvalidStateError(self.message)


class PauseCheck(BaseModel):
    should_pause: bool
    reason: str = ""


# ---------------------------------------------------------------------------
# Quality validation (qa-history.json)
# ---------------------------------------------------------------------------


class GateStatus(str, Enum):
    PASSED = "passed"
    FAILED = "failed"
    UNKNOWN = "unknown"


class QualityGateResults(BaseModel):
    """External gate results. Gates that never ran stay ``unknown``."""

    typecheck: GateStatus = GateStatus.UNKNOWN
    lint: GateStatus = GateStatus.UNKNOWN
    tests: GateStatus = GateStatus.UNKNOWN

    def merged_with(self, other: QualityGateResults | None) -> QualityGateResults:
        """Return gates where every known status in *other* wins."""
        if other is None:
            return self
        updates = {
            name: status
            for name, status in other.model_dump().items()
            if status != GateStatus.UNKNOWN
        }
        return self.model_copy(update=updates)


class ImplementationResult(BaseModel):
    """What the implementation executor reports for one iteration."""

    completed_criteria: list[str] = Field(default_factory=list)
    evidence: dict[str, str] = Field(default_factory=dict)
    quality_gates: QualityGateResults = Field(default_factory=QualityGateResults)


class IssueSeverity(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class IssueType(str, Enum):
    CRITERION_NOT_MET = "criterion_not_met"
    TYPECHECK_FAILED = "typecheck_failed"
    LINT_FAILED = "lint_failed"
    TESTS_FAILED = "tests_failed"
    MISSING_EXPORT = "missing_export"


class Issue(BaseModel):
    """A single unmet criterion or failed gate."""

    severity: IssueSeverity = IssueSeverity.MEDIUM
    type: str
    description: str = ""
    file: str | None = None
    suggestion: str = ""


class FixAction(BaseModel):
    issue: Issue
    can_auto_fix: bool
    action: str
    command: str | None = None
    file: str | None = None
    suggestion: str = ""


class FixOutcome(BaseModel):
    fixed: list[Issue] = Field(default_factory=list)
    remaining: list[Issue] = Field(default_factory=list)
    actions: list[FixAction] = Field(default_factory=list)


class CriterionCheck(BaseModel):
    criterion: str
    passed: bool
    evidence: str | None = None


class ValidationReport(BaseModel):
    item_id: str
    timestamp: str = Field(default_factory=utc_now)
    criteria: list[CriterionCheck] = Field(default_factory=list)
    quality_gates: QualityGateResults = Field(default_factory=QualityGateResults)
    issues: list[Issue] = Field(default_factory=list)
    passed: bool = False


class IterationStatus(str, Enum):
    PASSED = "passed"
    NEEDS_FIX = "needs_fix"


class QAIteration(BaseModel):
    model_config = ConfigDict(frozen=True)

    number: int
    status: IterationStatus
    issues: tuple[Issue, ...] = ()
    fixed: tuple[Issue, ...] = ()
    remaining: tuple[Issue, ...] = ()
    timestamp: str = Field(default_factory=utc_now)


class IterationOutcome(BaseModel):
    """Result of one :meth:`QASession.run_iteration` call."""

    iteration: int
    passed: bool = False
    issues: list[Issue] = Field(default_factory=list)
    fixed: list[Issue] = Field(default_factory=list)
    remaining: list[Issue] = Field(default_factory=list)
    actions: list[FixAction] = Field(default_factory=list)
    should_escalate: bool = False


class SessionStatus(str, Enum):
    PASSED = "passed"
    FAILED = "failed"
    ESCALATED = "escalated"
    SKIPPED = "skipped"
    INTERRUPTED = "interrupted"


class QASessionSummary(BaseModel):
    """Immutable record written by :meth:`QASession.complete`."""

    model_config = ConfigDict(frozen=True)

    item_id: str
    start_time: str
    end_time: str = Field(default_factory=utc_now)
    status: SessionStatus
    iterations: tuple[QAIteration, ...] = ()
    total_iterations: int = 0


class HumanResponse(str, Enum):
    GUIDANCE = "guidance"
    SKIP = "skip"
    ABORT = "abort"


class EscalationOption(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: HumanResponse
    label: str


class EscalationReport(BaseModel):
    """Structured hand-off to a human once automated fixing is exhausted."""

    model_config = ConfigDict(frozen=True)

    timestamp: str = Field(default_factory=utc_now)
    item_id: str
    title: str = ""
    attempts: int
    max_attempts: int
    issues: tuple[Issue, ...] = ()
    recommendation: str
    options: tuple[EscalationOption, ...] = ()


class OperatorDecision(BaseModel):
    response: HumanResponse
    guidance: str = ""


class RecurringIssue(BaseModel):
    type: str
    file: str | None = None
    occurrences: int = 0
    first_seen: str = Field(default_factory=utc_now)
    last_seen: str | None = None
    flagged_for_review: bool = False


class Insight(BaseModel):
    context: str
    learning: str
    tags: list[str] = Field(default_factory=list)
    timestamp: str = Field(default_factory=utc_now)


class QAHistory(VersionedDocument):
    """Append-only QA log plus the recurring-issue index."""

    sessions: list[QASessionSummary] = Field(default_factory=list)
    escalations: list[EscalationReport] = Field(default_factory=list)
    recurring_issues: list[RecurringIssue] = Field(default_factory=list)
    insights: list[Insight] = Field(default_factory=list)


class QAStats(BaseModel):
    total_sessions: int = 0
    escalations: int = 0
    success_rate: float | None = None
    flagged_recurring_issues: int = 0
    insights: int = 0


# ---------------------------------------------------------------------------
# Runner
# ---------------------------------------------------------------------------


class IterationContext(BaseModel):
    """Everything the implementation executor gets for one attempt."""

    item_id: str
    iteration: int
    max_iterations: int
    policy: PipelinePolicy = Field(default_factory=PipelinePolicy)
    previous: IterationOutcome | None = None
    guidance: str = ""


class RunStopReason(str, Enum):
    COMPLETED = "completed"
    PAUSED = "paused"
    CANCELLED = "cancelled"
    ALREADY_FINISHED = "already_finished"


class RunSummary(BaseModel):
    stop_reason: RunStopReason
    message: str = ""
    classification: ClassificationResult | None = None
    completed_items: list[str] = Field(default_factory=list)
    skipped_items: list[str] = Field(default_factory=list)
    escalations: list[EscalationReport] = Field(default_factory=list)
    started_at: str = Field(default_factory=utc_now)
    finished_at: str | None = None
