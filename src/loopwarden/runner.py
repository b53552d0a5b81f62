"""Backlog runner.

The :class:`BacklogRunner` ties the control plane together: it classifies the
backlog once, then works through pending items in priority order. Each item
gets a :class:`~loopwarden.qa_loop.QASession`; a passing item is
checkpointed, an item that exhausts its iterations is escalated to the
operator. Pause and cancel requests are honored at item boundaries and
between QA iterations.
"""

from __future__ import annotations

import logging
from collections.abc import Callable

from loopwarden.classifier import classify_and_persist
from loopwarden.config import RunnerConfig
from loopwarden.control import ExecutionControl
from loopwarden.errors import BacklogNotFoundError
from loopwarden.qa_loop import QASession, escalate_to_human
from loopwarden.recurring import RecurringIssueTracker
from loopwarden.run_lock import RunLock
from loopwarden.schemas import (
    ControlStatus,
    EscalationReport,
    HumanResponse,
    ImplementationResult,
    IterationContext,
    IterationOutcome,
    OperatorDecision,
    PipelinePolicy,
    QualityGateResults,
    RunStopReason,
    RunSummary,
    SessionStatus,
    WorkItem,
    utc_now,
)
from loopwarden.store import RunStore

logger = logging.getLogger(__name__)

Executor = Callable[[WorkItem, IterationContext], ImplementationResult]
GateRunner = Callable[[WorkItem], QualityGateResults]
Operator = Callable[[EscalationReport], OperatorDecision]

# ---------------------------------------------------------------------------
# Item outcomes
# ---------------------------------------------------------------------------

_COMPLETED = "completed"
_SKIPPED = "skipped"
_INTERRUPTED = "interrupted"
_WAITING = "waiting"


class BacklogRunner:
    """Drives a backlog to completion under execution control.

    Parameters
    ----------
    store:
        The run directory's :class:`RunStore`.
    executor:
        Performs one implementation attempt for an item and reports which
        criteria it completed.
    gate_runner:
        Optional external quality gates; known results override what the
        executor reported.
    operator:
        Optional human decision hook for escalations. Without one, an
        escalation pauses the run.
    config:
        Tunables; defaults to :class:`RunnerConfig` defaults.
    """

    def __init__(
        self,
        store: RunStore,
        executor: Executor,
        *,
        gate_runner: GateRunner | None = None,
        operator: Operator | None = None,
        config: RunnerConfig | None = None,
    ) -> None:
        self.store = store
        self.executor = executor
        self.gate_runner = gate_runner
        self.operator = operator
        self.config = config or RunnerConfig()
        self.control = ExecutionControl(store, save_retries=self.config.save_retries)
        self.tracker = RecurringIssueTracker(
            store,
            threshold=self.config.recurring_issue_threshold,
            save_retries=self.config.save_retries,
        )

    # ------------------------------------------------------------------
    # Public entry point
    # ------------------------------------------------------------------

    def run(self) -> RunSummary:
        """Process pending items until the backlog is done or the run stops."""
        started_at = utc_now()
        with RunLock(self.store.lock_path, stale_seconds=self.config.lock_stale_seconds) as lock:
            state = self.control.initialize()
            if state.is_terminal:
                logger.info("Run in %s is already %s", self.store.root, state.state.value)
                return RunSummary(
                    stop_reason=RunStopReason.ALREADY_FINISHED,
                    message=f"Run is already {state.state.value}",
                    started_at=started_at,
                    finished_at=utc_now(),
                )

            classification = classify_and_persist(self.store)
            policy = classification.recommendation
            summary = RunSummary(
                stop_reason=RunStopReason.COMPLETED,
                classification=classification,
                started_at=started_at,
            )
            logger.info(
                "Starting run: level=%s, max_qa_iterations=%d",
                classification.level.value,
                self.config.max_qa_iterations,
            )

            while True:
                lock.heartbeat()
                check = self.control.should_pause()
                if check.should_pause:
                    status = self.control.status().state
                    summary.stop_reason = (
                        RunStopReason.CANCELLED if status == ControlStatus.CANCELLED else RunStopReason.PAUSED
                    )
                    summary.message = check.reason
                    break

                backlog = self.store.load_backlog()
                if backlog is None:
                    raise BacklogNotFoundError(f"Backlog disappeared from {self.store.backlog_path}")
                pending = [i for i in backlog.pending_items() if i.id not in summary.skipped_items]
                if not pending:
                    self.control.complete()
                    summary.stop_reason = RunStopReason.COMPLETED
                    if summary.skipped_items:
                        summary.message = f"Finished with {len(summary.skipped_items)} skipped item(s)"
                    else:
                        summary.message = "All backlog items complete"
                    break

                item = pending[0]
                result = self._process_item(item, policy, summary, lock)
                if result == _COMPLETED:
                    summary.completed_items.append(item.id)
                elif result == _SKIPPED:
                    summary.skipped_items.append(item.id)

        summary.finished_at = utc_now()
        logger.info(
            "Run stopped: %s (%d completed, %d skipped, %d escalation(s))",
            summary.stop_reason.value,
            len(summary.completed_items),
            len(summary.skipped_items),
            len(summary.escalations),
        )
        return summary

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _new_session(self, item: WorkItem) -> QASession:
        return QASession(
            self.store,
            item.id,
            max_iterations=self.config.max_qa_iterations,
            tracker=self.tracker,
            lint_fix_command=self.config.lint_fix_command,
            save_retries=self.config.save_retries,
        )

    def _attempt(self, item: WorkItem, context: IterationContext) -> ImplementationResult:
        implementation = self.executor(item, context)
        if self.gate_runner is not None:
            gates = implementation.quality_gates.merged_with(self.gate_runner(item))
            implementation = implementation.model_copy(update={"quality_gates": gates})
        return implementation

    def _run_session(
        self, item: WorkItem, policy: PipelinePolicy, guidance: str, lock: RunLock
    ) -> tuple[str, QASession, IterationOutcome | None, ImplementationResult | None]:
        """Iterate one QA session until pass, escalation or interruption."""
        session = self._new_session(item)
        previous: IterationOutcome | None = None
        implementation: ImplementationResult | None = None
        try:
            while True:
                if session.current_iteration > 0 and self.control.should_pause().should_pause:
                    session.complete(SessionStatus.INTERRUPTED)
                    return _INTERRUPTED, session, previous, implementation
                if session.exhausted:
                    # Escalates without running the executor again.
                    return _WAITING, session, session.run_iteration(item, ImplementationResult()), implementation

                # One executor call can take a long time; keep the lock fresh per attempt.
                lock.heartbeat()
                context = IterationContext(
                    item_id=item.id,
                    iteration=session.current_iteration + 1,
                    max_iterations=session.max_iterations,
                    policy=policy,
                    previous=previous,
                    guidance=guidance,
                )
                implementation = self._attempt(item, context)
                outcome = session.run_iteration(item, implementation)
                if outcome.passed:
                    session.complete(SessionStatus.PASSED)
                    return _COMPLETED, session, outcome, implementation
                if outcome.should_escalate:
                    return _WAITING, session, outcome, implementation
                previous = outcome
        except Exception:
            if not session.closed:
                session.complete(SessionStatus.INTERRUPTED)
            raise

    def _process_item(self, item: WorkItem, policy: PipelinePolicy, summary: RunSummary, lock: RunLock) -> str:
        self.control.set_current_item(item.id)
        logger.info("Working on %s: %s", item.id, item.title)
        guidance = ""
        while True:
            result, session, outcome, implementation = self._run_session(item, policy, guidance, lock)
            if result == _INTERRUPTED:
                logger.info("Item %s interrupted by %s", item.id, self.control.should_pause().reason)
                return _INTERRUPTED
            if result == _COMPLETED:
                self.control.create_checkpoint(
                    item.id,
                    {
                        "iterations": session.current_iteration,
                        "evidence": dict(implementation.evidence) if implementation else {},
                    },
                )
                if self.config.checkpoint_keep_last > 0:
                    self.control.prune_checkpoints(self.config.checkpoint_keep_last)
                return _COMPLETED

            session.complete(SessionStatus.ESCALATED)
            issues = (outcome.remaining if outcome else []) or (
                list(session.iterations[-1].issues) if session.iterations else []
            )
            report = escalate_to_human(
                self.store,
                issues,
                item,
                session.current_iteration,
                max_attempts=session.max_iterations,
                save_retries=self.config.save_retries,
            )
            summary.escalations.append(report)

            if self.operator is None:
                self.control.pause(f"Escalation for {item.id} awaits an operator decision")
                return _INTERRUPTED

            decision = self.operator(report)
            if decision.response == HumanResponse.GUIDANCE:
                guidance = decision.guidance
                logger.info("Retrying %s with operator guidance", item.id)
                continue
            if decision.response == HumanResponse.SKIP:
                logger.info("Operator skipped %s", item.id)
                self.control.set_current_item(None)
                return _SKIPPED
            self.control.cancel(f"Operator aborted the run at {item.id}")
            return _INTERRUPTED
