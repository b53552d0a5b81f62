"""Execution control: run state, checkpoints and rollback.

State machine persisted in ``intervention.json``::

    RUNNING --pause--> PAUSED --resume--> RUNNING
    RUNNING --cancel--> CANCELLED <--cancel-- PAUSED
    RUNNING --complete--> COMPLETED

Pause and cancel are requests: the runner observes them at item boundaries
through :meth:`ExecutionControl.should_pause`. Operator-facing operations
return an :class:`~loopwarden.schemas.ActionResult` instead of raising.

Every state write re-reads the document and re-applies the change when
another writer got there first, so a pause issued from a second process is
never lost.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import Any

from loopwarden.errors import ConcurrentModificationError
from loopwarden.schemas import (
    ActionResult,
    Backlog,
    Checkpoint,
    CheckpointRef,
    ControlState,
    ControlStatus,
    ErrorKind,
    PauseCheck,
    utc_now,
)
from loopwarden.store import RunStore, apply_with_retry

logger = logging.getLogger(__name__)

LAST = "last"
DEFAULT_PAUSE_REASON = "Operator requested pause"
DEFAULT_CANCEL_REASON = "Operator requested cancel"


def _checkpoint_millis(checkpoint_id: str) -> int | None:
    prefix, _, raw = checkpoint_id.partition("-")
    if prefix != "cp" or not raw.isdigit():
        return None
    return int(raw)


def _invalid(message: str) -> ActionResult:
    return ActionResult(success=False, message=message, error=ErrorKind.INVALID_STATE)


def _not_found(message: str) -> ActionResult:
    return ActionResult(success=False, message=message, error=ErrorKind.CHECKPOINT_NOT_FOUND)


class ExecutionControl:
    """Operator and runner entry points for one run directory."""

    def __init__(
        self,
        store: RunStore,
        *,
        save_retries: int = 3,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.save_retries = save_retries
        self._clock = clock

    # ------------------------------------------------------------------
    # Plumbing
    # ------------------------------------------------------------------

    def _transact(self, mutator: Callable[[ControlState], tuple[bool, Any]]) -> Any:
        return apply_with_retry(
            self.store.load_control_state,
            self.store.save_control_state,
            mutator,
            retries=self.save_retries,
        )

    def _update_backlog_passes(self, item_ids: set[str], passes: bool) -> None:
        if not item_ids or not self.store.has_backlog():
            return

        def mutate(backlog: Backlog | None) -> tuple[bool, None]:
            if backlog is None:
                return False, None
            changed = False
            for item in backlog.items:
                if item.id in item_ids and item.passes != passes:
                    item.passes = passes
                    changed = True
            return changed, None

        apply_with_retry(
            self.store.load_backlog,
            self.store.save_backlog,
            mutate,
            retries=self.save_retries,
        )

    def _next_checkpoint_id(self, state: ControlState) -> str:
        millis = int(self._clock() * 1000)
        for ref in state.checkpoints:
            previous = _checkpoint_millis(ref.id)
            if previous is not None and millis <= previous:
                millis = previous + 1
        while self.store.has_checkpoint(f"cp-{millis}"):
            millis += 1
        return f"cp-{millis}"

    # ------------------------------------------------------------------
    # State queries
    # ------------------------------------------------------------------

    def initialize(self, *, reset: bool = False) -> ControlState:
        """Create ``intervention.json`` in RUNNING if it does not exist yet.

        With *reset*, an existing state is replaced by a fresh RUNNING one;
        checkpoint records on disk are left for :meth:`prune_orphaned_checkpoints`.
        """
        self.store.ensure_layout()
        if self.store.has_control_state() and not reset:
            return self.store.load_control_state()

        def mutate(state: ControlState) -> tuple[bool, ControlState]:
            fresh = ControlState()
            for name in ControlState.model_fields:
                if name != "revision":
                    setattr(state, name, getattr(fresh, name))
            return True, state

        state = self._transact(mutate)
        logger.info("Initialized run state in %s", self.store.root)
        return state

    def status(self) -> ControlState:
        return self.store.load_control_state()

    def should_pause(self) -> PauseCheck:
        state = self.store.load_control_state()
        if state.state == ControlStatus.PAUSED:
            return PauseCheck(should_pause=True, reason=state.pause_reason or DEFAULT_PAUSE_REASON)
        if state.state == ControlStatus.CANCELLED:
            return PauseCheck(should_pause=True, reason=state.cancel_reason or "Run cancelled by operator")
        return PauseCheck(should_pause=False)

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def pause(self, reason: str = DEFAULT_PAUSE_REASON) -> ActionResult:
        def mutate(state: ControlState) -> tuple[bool, ActionResult]:
            if state.state != ControlStatus.RUNNING:
                return False, _invalid(f"Cannot pause: run is {state.state.value}, not running")
            state.state = ControlStatus.PAUSED
            state.pause_reason = reason
            state.paused_at = utc_now()
            return True, ActionResult(
                success=True,
                message=f"Run will pause after the current item completes. Reason: {reason}",
            )

        result = self._transact(mutate)
        if result.success:
            logger.info("Pause requested: %s", reason)
        return result

    def resume(self) -> ActionResult:
        def mutate(state: ControlState) -> tuple[bool, ActionResult]:
            if state.state != ControlStatus.PAUSED:
                return False, _invalid(f"Cannot resume: run is {state.state.value}, not paused")
            state.state = ControlStatus.RUNNING
            state.pause_reason = None
            state.resumed_at = utc_now()
            last = state.last_checkpoint()
            return True, ActionResult(
                success=True,
                message="Run resumed from last checkpoint" if last else "Run resumed",
                checkpoint=last,
            )

        result = self._transact(mutate)
        if result.success:
            logger.info("Run resumed")
        return result

    def cancel(self, reason: str = DEFAULT_CANCEL_REASON) -> ActionResult:
        def mutate(state: ControlState) -> tuple[bool, ActionResult]:
            if state.is_terminal:
                return False, _invalid(f"Cannot cancel: run is already {state.state.value}")
            state.state = ControlStatus.CANCELLED
            state.cancel_reason = reason
            state.cancelled_at = utc_now()
            return True, ActionResult(success=True, message=f"Run cancelled. Reason: {reason}")

        result = self._transact(mutate)
        if result.success:
            logger.info("Run cancelled: %s", reason)
        return result

    def complete(self) -> ActionResult:
        def mutate(state: ControlState) -> tuple[bool, ActionResult]:
            if state.state != ControlStatus.RUNNING:
                return False, _invalid(f"Cannot complete: run is {state.state.value}, not running")
            state.state = ControlStatus.COMPLETED
            state.current_item_id = None
            state.current_item_started_at = None
            state.completed_at = utc_now()
            return True, ActionResult(success=True, message="Run completed successfully")

        result = self._transact(mutate)
        if result.success:
            logger.info("Run completed")
        return result

    def set_current_item(self, item_id: str | None) -> ControlState:
        def mutate(state: ControlState) -> tuple[bool, ControlState]:
            state.current_item_id = item_id
            state.current_item_started_at = utc_now() if item_id else None
            return True, state

        state = self._transact(mutate)
        logger.debug("Current item: %s", item_id)
        return state

    # ------------------------------------------------------------------
    # Checkpoints
    # ------------------------------------------------------------------

    def create_checkpoint(self, item_id: str, data: dict[str, Any] | None = None) -> Checkpoint:
        """Record completion of *item_id*.

        The record file is written before the state references it; if the
        state write fails the record is removed again.
        """
        state = self.store.load_control_state()
        checkpoint = Checkpoint(id=self._next_checkpoint_id(state), item_id=item_id, data=dict(data or {}))
        self.store.ensure_layout()
        self.store.write_checkpoint(checkpoint)

        def mutate(current: ControlState) -> tuple[bool, None]:
            current.checkpoints.append(checkpoint.ref())
            if item_id not in current.completed_item_ids:
                current.completed_item_ids.append(item_id)
            current.current_item_id = None
            current.current_item_started_at = None
            return True, None

        try:
            self._transact(mutate)
        except (ConcurrentModificationError, OSError):
            self.store.delete_checkpoint(checkpoint.id)
            raise

        self._update_backlog_passes({item_id}, True)
        logger.info("Checkpoint %s recorded for %s", checkpoint.id, item_id)
        return checkpoint

    def list_checkpoints(self) -> list[CheckpointRef]:
        return list(self.store.load_control_state().checkpoints)

    def load_checkpoint(self, checkpoint_id: str) -> Checkpoint | None:
        return self.store.load_checkpoint(checkpoint_id)

    def rollback(self, target: str = LAST) -> ActionResult:
        """Return the run to a checkpoint and pause it.

        An explicit checkpoint id keeps that checkpoint and drops everything
        after it. ``"last"`` drops the most recent checkpoint, returning the
        run to the one before it (or to before any checkpoint when only one
        exists). Items whose completion is undone get ``passes`` reset.

        To pause at the newest checkpoint without dropping it, pass its id:
        ``rollback(control.list_checkpoints()[-1].id)``.
        """
        plan: dict[str, Any] = {}

        def mutate(state: ControlState) -> tuple[bool, ActionResult]:
            plan.clear()
            if state.is_terminal:
                return False, _invalid(f"Cannot roll back: run is {state.state.value}")
            if not state.checkpoints:
                return False, _not_found("No checkpoints available for rollback")

            refs = state.checkpoints
            if target == LAST:
                kept, removed = refs[:-1], refs[-1:]
            else:
                index = next((i for i, ref in enumerate(refs) if ref.id == target), None)
                if index is None:
                    return False, _not_found(f"Checkpoint not found: {target}")
                kept, removed = refs[: index + 1], refs[index + 1 :]
            destination = kept[-1] if kept else None

            if destination is not None and not self.store.has_checkpoint(destination.id):
                return False, _not_found(f"Checkpoint data not found: {destination.id}")

            completed = list(state.completed_item_ids)
            if destination is not None and destination.item_id in completed:
                completed = completed[: completed.index(destination.item_id) + 1]
            elif destination is None and removed and removed[0].item_id in completed:
                completed = completed[: completed.index(removed[0].item_id)]
            kept_items = {ref.item_id for ref in kept}
            removed_items = {ref.item_id for ref in removed} - kept_items
            completed = [item for item in completed if item not in removed_items]
            rolled_back = (set(state.completed_item_ids) - set(completed)) | removed_items

            now = utc_now()
            state.checkpoints = list(kept)
            state.completed_item_ids = completed
            state.state = ControlStatus.PAUSED
            state.pause_reason = (
                f"Rolled back to checkpoint {destination.id}" if destination else "Rolled back to run start"
            )
            state.paused_at = now
            state.current_item_id = None
            state.current_item_started_at = None
            state.rollback_from = "latest" if target == LAST else target
            state.rollback_to = destination.id if destination else None
            state.rolled_back_at = now

            plan["removed"] = list(removed)
            plan["rolled_back"] = rolled_back
            resume_from = destination.item_id if destination else "the first pending item"
            return True, ActionResult(
                success=True,
                message=(
                    f"Rolled back to checkpoint: {destination.id}"
                    if destination
                    else "Rolled back to before the first checkpoint"
                ),
                checkpoint=destination,
                removed_checkpoints=len(removed),
                next_step=f"Resume to continue after {resume_from}",
            )

        result: ActionResult = self._transact(mutate)
        if not result.success:
            logger.warning("Rollback to %s refused: %s", target, result.message)
            return result

        self._update_backlog_passes(plan["rolled_back"], False)
        for ref in plan["removed"]:
            self.store.delete_checkpoint(ref.id)
        logger.info(
            "Rolled back to %s; removed %d checkpoint(s), reset %d item(s)",
            result.checkpoint.id if result.checkpoint else "run start",
            result.removed_checkpoints,
            len(plan["rolled_back"]),
        )
        return result

    def prune_checkpoints(self, keep_last: int) -> ActionResult:
        """Drop the oldest checkpoints beyond *keep_last*. ``0`` keeps all."""
        removed: list[CheckpointRef] = []

        def mutate(state: ControlState) -> tuple[bool, None]:
            removed.clear()
            if keep_last <= 0 or len(state.checkpoints) <= keep_last:
                return False, None
            removed.extend(state.checkpoints[:-keep_last])
            state.checkpoints = state.checkpoints[-keep_last:]
            return True, None

        self._transact(mutate)
        for ref in removed:
            self.store.delete_checkpoint(ref.id)
        if removed:
            logger.info("Pruned %d old checkpoint(s), kept %d", len(removed), keep_last)
        return ActionResult(
            success=True,
            message=f"Removed {len(removed)} checkpoint(s)",
            removed_checkpoints=len(removed),
        )

    def prune_orphaned_checkpoints(self) -> int:
        """Delete checkpoint records that no state entry references."""
        referenced = {ref.id for ref in self.store.load_control_state().checkpoints}
        removed = 0
        for checkpoint_id in self.store.checkpoint_ids_on_disk():
            if checkpoint_id not in referenced and self.store.delete_checkpoint(checkpoint_id):
                removed += 1
        if removed:
            logger.info("Removed %d orphaned checkpoint record(s)", removed)
        return removed
