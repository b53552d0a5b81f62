"""Quality validation loop.

Each :class:`QASession` validates one work item over at most
``max_iterations`` rounds. A round checks the implementation against the
item's acceptance criteria and the quality gates, sorts the resulting issues
into auto-fixable and manual ones, and records every issue with the recurring
issue tracker. When issues remain after the final round the caller escalates
with :func:`escalate_to_human`.

Everything is appended to ``qa-history.json``; history is never rolled back.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable

from loopwarden.errors import SessionClosedError
from loopwarden.recurring import RECURRING_ISSUE_THRESHOLD, RecurringIssueTracker
from loopwarden.schemas import (
    CriterionCheck,
    EscalationOption,
    EscalationReport,
    FixAction,
    FixOutcome,
    GateStatus,
    HumanResponse,
    ImplementationResult,
    Insight,
    Issue,
    IssueSeverity,
    IssueType,
    IterationOutcome,
    IterationStatus,
    QAHistory,
    QAIteration,
    QASessionSummary,
    QAStats,
    SessionStatus,
    ValidationReport,
    WorkItem,
    utc_now,
)
from loopwarden.store import RunStore, apply_with_retry

logger = logging.getLogger(__name__)

MAX_QA_ITERATIONS = 5
DEFAULT_LINT_FIX_COMMAND = "npm run lint:fix"

# Gate name -> (issue type, severity, description, suggestion)
_GATE_ISSUES: dict[str, tuple[IssueType, IssueSeverity, str, str]] = {
    "typecheck": (
        IssueType.TYPECHECK_FAILED,
        IssueSeverity.HIGH,
        "Type check errors",
        "Fix type errors before proceeding",
    ),
    "lint": (
        IssueType.LINT_FAILED,
        IssueSeverity.MEDIUM,
        "Linting errors found",
        "Run the lint fixer",
    ),
    "tests": (
        IssueType.TESTS_FAILED,
        IssueSeverity.HIGH,
        "Test failures detected",
        "Fix failing tests",
    ),
}

# Checked in order against high-severity issues; first match wins.
RECOMMENDATIONS: tuple[tuple[str, str], ...] = (
    (
        IssueType.TYPECHECK_FAILED.value,
        "Type errors suggest architectural changes may be needed. "
        "Consider reviewing the type definitions.",
    ),
    (
        IssueType.TESTS_FAILED.value,
        "Test failures may indicate logic errors or missing edge cases. "
        "Review test output carefully.",
    ),
    (
        IssueType.CRITERION_NOT_MET.value,
        "Some acceptance criteria could not be met automatically. "
        "The requirements may need clarification.",
    ),
)
DEFAULT_RECOMMENDATION = (
    "Multiple fix attempts failed. Human review recommended to determine the best path forward."
)

ESCALATION_OPTIONS: tuple[EscalationOption, ...] = (
    EscalationOption(id=HumanResponse.GUIDANCE, label="Provide guidance to continue"),
    EscalationOption(id=HumanResponse.SKIP, label="Skip this item for now"),
    EscalationOption(id=HumanResponse.ABORT, label="Abort the run"),
)


# ── Validation ────────────────────────────────────────────────────


def validate(item: WorkItem, implementation: ImplementationResult) -> ValidationReport:
    """Check *implementation* against *item*'s criteria and the quality gates."""
    completed = set(implementation.completed_criteria)
    target_file = item.files[0] if item.files else None
    criteria: list[CriterionCheck] = []
    issues: list[Issue] = []

    for criterion in item.acceptance_criteria:
        if criterion in completed:
            criteria.append(
                CriterionCheck(
                    criterion=criterion,
                    passed=True,
                    evidence=implementation.evidence.get(criterion, "Marked complete by executor"),
                )
            )
            continue
        criteria.append(CriterionCheck(criterion=criterion, passed=False))
        issues.append(
            Issue(
                severity=IssueSeverity.HIGH,
                type=IssueType.CRITERION_NOT_MET.value,
                description=criterion,
                file=target_file,
                suggestion=f"Implement: {criterion}",
            )
        )

    gates = implementation.quality_gates
    for gate_name, (issue_type, severity, description, suggestion) in _GATE_ISSUES.items():
        if getattr(gates, gate_name) == GateStatus.FAILED:
            issues.append(
                Issue(
                    severity=severity,
                    type=issue_type.value,
                    description=description,
                    suggestion=suggestion,
                )
            )

    all_criteria = all(check.passed for check in criteria)
    all_gates = all(
        getattr(gates, name) in (GateStatus.PASSED, GateStatus.UNKNOWN) for name in _GATE_ISSUES
    )
    return ValidationReport(
        item_id=item.id,
        criteria=criteria,
        quality_gates=gates,
        issues=issues,
        passed=all_criteria and all_gates,
    )


# ── Fixing ────────────────────────────────────────────────────────


def determine_fix_action(issue: Issue, *, lint_fix_command: str = DEFAULT_LINT_FIX_COMMAND) -> FixAction:
    """Look up how *issue* can be remediated."""
    kind = issue.type
    if kind == IssueType.LINT_FAILED.value:
        return FixAction(
            issue=issue,
            can_auto_fix=True,
            action="run_lint_fix",
            command=lint_fix_command,
            suggestion=issue.suggestion,
        )
    if kind == IssueType.MISSING_EXPORT.value:
        return FixAction(
            issue=issue,
            can_auto_fix=True,
            action="add_export",
            file=issue.file,
            suggestion=issue.suggestion,
        )
    if kind == IssueType.TYPECHECK_FAILED.value:
        return FixAction(
            issue=issue,
            can_auto_fix=False,
            action="manual_fix",
            suggestion="Type errors require manual intervention",
        )
    if kind == IssueType.TESTS_FAILED.value:
        return FixAction(
            issue=issue,
            can_auto_fix=False,
            action="manual_fix",
            suggestion="Failing tests require investigation",
        )
    if kind == IssueType.CRITERION_NOT_MET.value:
        return FixAction(issue=issue, can_auto_fix=False, action="implement", suggestion=issue.suggestion)
    return FixAction(
        issue=issue,
        can_auto_fix=False,
        action="unknown",
        suggestion="Unknown issue type - requires manual review",
    )


def run_fix(issues: Iterable[Issue], *, lint_fix_command: str = DEFAULT_LINT_FIX_COMMAND) -> FixOutcome:
    """Split *issues* into auto-fixable (with actions) and remaining ones."""
    outcome = FixOutcome()
    for issue in issues:
        action = determine_fix_action(issue, lint_fix_command=lint_fix_command)
        if action.can_auto_fix:
            outcome.fixed.append(issue)
            outcome.actions.append(action)
        else:
            outcome.remaining.append(issue)
    return outcome


# ── Escalation ────────────────────────────────────────────────────


def generate_recommendation(issues: Iterable[Issue]) -> str:
    high_types = {issue.type for issue in issues if issue.severity == IssueSeverity.HIGH}
    for issue_type, text in RECOMMENDATIONS:
        if issue_type in high_types:
            return text
    return DEFAULT_RECOMMENDATION


def escalate_to_human(
    store: RunStore,
    issues: Iterable[Issue],
    item: WorkItem,
    attempts: int,
    *,
    max_attempts: int = MAX_QA_ITERATIONS,
    save_retries: int = 3,
) -> EscalationReport:
    """Build an escalation report for *item* and append it to QA history."""
    issue_list = tuple(issues)
    report = EscalationReport(
        item_id=item.id,
        title=item.title,
        attempts=attempts,
        max_attempts=max_attempts,
        issues=issue_list,
        recommendation=generate_recommendation(issue_list),
        options=ESCALATION_OPTIONS,
    )

    def mutate(history: QAHistory) -> tuple[bool, None]:
        history.escalations.append(report)
        return True, None

    apply_with_retry(store.load_qa_history, store.save_qa_history, mutate, retries=save_retries)
    logger.warning(
        "Escalating %s after %d attempt(s) with %d open issue(s)",
        item.id,
        attempts,
        len(issue_list),
    )
    return report


# ── Sessions ──────────────────────────────────────────────────────


class QASession:
    """Bounded validate-then-fix iterations for one work item."""

    def __init__(
        self,
        store: RunStore,
        item_id: str,
        *,
        max_iterations: int = MAX_QA_ITERATIONS,
        tracker: RecurringIssueTracker | None = None,
        lint_fix_command: str = DEFAULT_LINT_FIX_COMMAND,
        save_retries: int = 3,
    ) -> None:
        self.store = store
        self.item_id = item_id
        self.max_iterations = max_iterations
        self.tracker = tracker or RecurringIssueTracker(
            store, threshold=RECURRING_ISSUE_THRESHOLD, save_retries=save_retries
        )
        self.lint_fix_command = lint_fix_command
        self.save_retries = save_retries
        self.start_time = utc_now()
        self.iterations: list[QAIteration] = []
        self.current_iteration = 0
        self._summary: QASessionSummary | None = None

    @property
    def closed(self) -> bool:
        return self._summary is not None

    @property
    def exhausted(self) -> bool:
        return self.current_iteration >= self.max_iterations

    def _ensure_open(self) -> None:
        if self._summary is not None:
            raise SessionClosedError(
                f"QA session for {self.item_id} already completed as {self._summary.status.value}"
            )

    def last_remaining(self) -> list[Issue]:
        return list(self.iterations[-1].remaining) if self.iterations else []

    def run_iteration(self, item: WorkItem, implementation: ImplementationResult) -> IterationOutcome:
        """Validate one attempt. Past the cap, escalates without validating."""
        self._ensure_open()
        if self.exhausted:
            remaining = self.last_remaining()
            return IterationOutcome(
                iteration=self.current_iteration,
                issues=remaining,
                remaining=remaining,
                should_escalate=True,
            )

        self.current_iteration += 1
        report = validate(item, implementation)

        if report.passed:
            self.iterations.append(QAIteration(number=self.current_iteration, status=IterationStatus.PASSED))
            logger.debug("QA iteration %d for %s passed", self.current_iteration, item.id)
            return IterationOutcome(iteration=self.current_iteration, passed=True)

        fix = run_fix(report.issues, lint_fix_command=self.lint_fix_command)
        self.iterations.append(
            QAIteration(
                number=self.current_iteration,
                status=IterationStatus.NEEDS_FIX,
                issues=tuple(report.issues),
                fixed=tuple(fix.fixed),
                remaining=tuple(fix.remaining),
            )
        )
        self.tracker.track_many(report.issues)

        should_escalate = bool(fix.remaining) and self.exhausted
        logger.debug(
            "QA iteration %d/%d for %s: %d issue(s), %d auto-fixable, %d remaining",
            self.current_iteration,
            self.max_iterations,
            item.id,
            len(report.issues),
            len(fix.fixed),
            len(fix.remaining),
        )
        return IterationOutcome(
            iteration=self.current_iteration,
            passed=False,
            issues=report.issues,
            fixed=fix.fixed,
            remaining=fix.remaining,
            actions=fix.actions,
            should_escalate=should_escalate,
        )

    def complete(self, status: SessionStatus | str) -> QASessionSummary:
        """Append the immutable session summary to QA history and close."""
        self._ensure_open()
        summary = QASessionSummary(
            item_id=self.item_id,
            start_time=self.start_time,
            status=SessionStatus(status),
            iterations=tuple(self.iterations),
            total_iterations=self.current_iteration,
        )

        def mutate(history: QAHistory) -> tuple[bool, None]:
            history.sessions.append(summary)
            return True, None

        apply_with_retry(self.store.load_qa_history, self.store.save_qa_history, mutate, retries=self.save_retries)
        self._summary = summary
        logger.info(
            "QA session for %s finished: %s after %d iteration(s)",
            self.item_id,
            summary.status.value,
            summary.total_iterations,
        )
        return summary


# ── Insights and stats ────────────────────────────────────────────


def log_insight(
    store: RunStore,
    context: str,
    learning: str,
    tags: Iterable[str] = (),
    *,
    save_retries: int = 3,
) -> Insight:
    insight = Insight(context=context, learning=learning, tags=list(tags))

    def mutate(history: QAHistory) -> tuple[bool, None]:
        history.insights.append(insight)
        return True, None

    apply_with_retry(store.load_qa_history, store.save_qa_history, mutate, retries=save_retries)
    return insight


def qa_stats(store: RunStore) -> QAStats:
    """Aggregate counts over ``qa-history.json``.

    ``success_rate`` is the percentage (one decimal) of sessions that passed,
    or ``None`` before any session has completed.
    """
    history = store.load_qa_history()
    sessions = history.sessions
    success_rate: float | None = None
    if sessions:
        passed = sum(1 for s in sessions if s.status == SessionStatus.PASSED)
        success_rate = round(passed * 100 / len(sessions), 1)
    return QAStats(
        total_sessions=len(sessions),
        escalations=len(history.escalations),
        success_rate=success_rate,
        flagged_recurring_issues=sum(1 for r in history.recurring_issues if r.flagged_for_review),
        insights=len(history.insights),
    )
