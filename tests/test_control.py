"""Tests for execution control: transitions, checkpoints and rollback."""

from __future__ import annotations

import json

import pytest

from loopwarden.control import ExecutionControl
from loopwarden.errors import CheckpointNotFoundError, ConcurrentModificationError, InvalidStateError
from loopwarden.schemas import Backlog, ControlStatus, ErrorKind
from loopwarden.store import RunStore

pytestmark = pytest.mark.unit


class _Clock:
    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def control(store: RunStore) -> ExecutionControl:
    ctl = ExecutionControl(store, clock=_Clock())
    ctl.initialize()
    return ctl


def _snapshot(store: RunStore) -> tuple[bytes, list[str], bytes | None]:
    return (
        store.control_state_path.read_bytes(),
        store.checkpoint_ids_on_disk(),
        store.backlog_bytes(),
    )


class TestTransitions:
    def test_initialize_creates_running_state_once(self, store: RunStore) -> None:
        ctl = ExecutionControl(store)

        first = ctl.initialize()
        ctl.pause("hold")
        second = ctl.initialize()

        assert first.state == ControlStatus.RUNNING
        assert second.state == ControlStatus.PAUSED
        assert ctl.initialize(reset=True).state == ControlStatus.RUNNING

    def test_pause_resume_cycle(self, control: ExecutionControl) -> None:
        paused = control.pause("coffee")

        assert paused.success is True
        assert "coffee" in paused.message
        check = control.should_pause()
        assert check.should_pause is True
        assert check.reason == "coffee"

        resumed = control.resume()

        assert resumed.success is True
        assert control.should_pause().should_pause is False
        state = control.status()
        assert state.pause_reason is None
        assert state.resumed_at is not None

    def test_resume_requires_paused(self, control: ExecutionControl) -> None:
        result = control.resume()

        assert result.success is False
        assert result.error == ErrorKind.INVALID_STATE
        assert control.status().state == ControlStatus.RUNNING

    def test_pause_only_while_running(self, control: ExecutionControl) -> None:
        control.pause()

        again = control.pause()

        assert again.success is False
        assert again.error == ErrorKind.INVALID_STATE

    @pytest.mark.parametrize("pause_first", [False, True])
    def test_cancel_from_non_terminal_states(self, control: ExecutionControl, pause_first: bool) -> None:
        if pause_first:
            control.pause()

        result = control.cancel("scope changed")

        assert result.success is True
        check = control.should_pause()
        assert check.should_pause is True
        assert check.reason == "scope changed"
        assert control.status().state == ControlStatus.CANCELLED

    def test_terminal_states_refuse_transitions(self, control: ExecutionControl) -> None:
        assert control.complete().success is True

        for result in (control.pause(), control.resume(), control.cancel(), control.complete()):
            assert result.success is False
            assert result.error == ErrorKind.INVALID_STATE
        assert control.status().state == ControlStatus.COMPLETED
        assert control.should_pause().should_pause is False

    def test_complete_requires_running(self, control: ExecutionControl) -> None:
        control.pause()

        assert control.complete().error == ErrorKind.INVALID_STATE

    def test_set_current_item(self, control: ExecutionControl) -> None:
        state = control.set_current_item("US-004")

        assert state.current_item_id == "US-004"
        assert state.current_item_started_at is not None
        assert control.set_current_item(None).current_item_started_at is None

    def test_pause_from_second_writer_is_not_lost(self, store: RunStore, control: ExecutionControl) -> None:
        operator = ExecutionControl(store)
        stale = store.load_control_state()

        operator.pause("from the operator")
        stale.current_item_id = "US-009"
        with pytest.raises(ConcurrentModificationError):
            store.save_control_state(stale)

        control.set_current_item("US-009")
        state = control.status()
        assert state.state == ControlStatus.PAUSED
        assert state.current_item_id == "US-009"


class TestCheckpoints:
    def test_create_checkpoint_updates_state_record_and_backlog(
        self, store: RunStore, control: ExecutionControl, saved_backlog: Backlog
    ) -> None:
        control.set_current_item("US-001")

        checkpoint = control.create_checkpoint("US-001", {"files": ["a.ts"]})

        assert checkpoint.id == "cp-1700000000000"
        state = control.status()
        assert [ref.id for ref in state.checkpoints] == [checkpoint.id]
        assert state.completed_item_ids == ["US-001"]
        assert state.current_item_id is None
        assert control.load_checkpoint(checkpoint.id).data == {"files": ["a.ts"]}
        assert store.load_backlog().get_item("US-001").passes is True

    def test_ids_are_strictly_increasing_with_a_frozen_clock(self, control: ExecutionControl) -> None:
        ids = [control.create_checkpoint(f"US-00{n}").id for n in range(1, 4)]

        assert ids == ["cp-1700000000000", "cp-1700000000001", "cp-1700000000002"]

    def test_completed_items_are_not_duplicated(self, control: ExecutionControl) -> None:
        control.create_checkpoint("US-001")
        control.create_checkpoint("US-001")

        assert control.status().completed_item_ids == ["US-001"]
        assert len(control.list_checkpoints()) == 2

    def test_record_is_removed_when_state_write_fails(
        self, store: RunStore, control: ExecutionControl, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        def conflict(_state) -> None:
            raise ConcurrentModificationError("busy")

        monkeypatch.setattr(store, "save_control_state", conflict)

        with pytest.raises(ConcurrentModificationError):
            control.create_checkpoint("US-001")

        assert store.checkpoint_ids_on_disk() == []

    def test_missing_backlog_does_not_block_checkpoints(self, store: RunStore, control: ExecutionControl) -> None:
        control.create_checkpoint("US-001")

        assert not store.has_backlog()


class TestRollback:
    def test_last_undoes_most_recent_checkpoint(
        self, store: RunStore, control: ExecutionControl, saved_backlog: Backlog
    ) -> None:
        first = control.create_checkpoint("US-001")
        second = control.create_checkpoint("US-002")

        result = control.rollback("last")

        assert result.success is True
        assert result.checkpoint.id == first.id
        assert result.removed_checkpoints == 1
        state = control.status()
        assert state.state == ControlStatus.PAUSED
        assert [ref.id for ref in state.checkpoints] == [first.id]
        assert state.completed_item_ids == ["US-001"]
        assert state.rollback_from == "latest"
        assert state.rollback_to == first.id
        assert store.checkpoint_ids_on_disk() == [first.id]
        assert store.load_checkpoint(second.id) is None
        backlog = store.load_backlog()
        assert backlog.get_item("US-001").passes is True
        assert backlog.get_item("US-002").passes is False

    def test_last_with_single_checkpoint_returns_to_start(
        self, store: RunStore, control: ExecutionControl, saved_backlog: Backlog
    ) -> None:
        control.create_checkpoint("US-001")

        result = control.rollback()

        assert result.success is True
        assert result.checkpoint is None
        state = control.status()
        assert state.checkpoints == []
        assert state.completed_item_ids == []
        assert state.rollback_to is None
        assert store.checkpoint_ids_on_disk() == []
        assert store.load_backlog().get_item("US-001").passes is False

    def test_explicit_id_keeps_target_and_drops_later(self, store: RunStore, control: ExecutionControl) -> None:
        ids = [control.create_checkpoint(f"US-00{n}").id for n in range(1, 5)]

        result = control.rollback(ids[1])

        assert result.success is True
        assert result.removed_checkpoints == 2
        state = control.status()
        assert [ref.id for ref in state.checkpoints] == ids[:2]
        assert state.completed_item_ids == ["US-001", "US-002"]
        assert state.rollback_from == ids[1]
        assert store.checkpoint_ids_on_disk() == ids[:2]

    def test_rollback_to_latest_id_is_a_state_only_pause(self, control: ExecutionControl) -> None:
        ids = [control.create_checkpoint(f"US-00{n}").id for n in range(1, 3)]

        result = control.rollback(ids[-1])

        assert result.removed_checkpoints == 0
        assert control.status().state == ControlStatus.PAUSED
        assert [ref.id for ref in control.list_checkpoints()] == ids

    def test_rollback_then_rerun_restores_same_sets(self, control: ExecutionControl) -> None:
        for n in range(1, 4):
            control.create_checkpoint(f"US-00{n}")
        target = control.list_checkpoints()[0]

        control.rollback(target.id)
        control.resume()
        control.create_checkpoint("US-002")
        control.create_checkpoint("US-003")

        state = control.status()
        assert state.completed_item_ids == ["US-001", "US-002", "US-003"]
        assert [ref.item_id for ref in state.checkpoints] == ["US-001", "US-002", "US-003"]

    def test_unknown_id_changes_nothing(
        self, store: RunStore, control: ExecutionControl, saved_backlog: Backlog
    ) -> None:
        control.create_checkpoint("US-001")
        before = _snapshot(store)

        result = control.rollback("cp-does-not-exist")

        assert result.success is False
        assert result.error == ErrorKind.CHECKPOINT_NOT_FOUND
        assert _snapshot(store) == before

    def test_missing_record_for_target_changes_nothing(self, store: RunStore, control: ExecutionControl) -> None:
        first = control.create_checkpoint("US-001")
        control.create_checkpoint("US-002")
        store.delete_checkpoint(first.id)
        before = _snapshot(store)

        result = control.rollback("last")

        assert result.error == ErrorKind.CHECKPOINT_NOT_FOUND
        assert _snapshot(store) == before

    def test_no_checkpoints(self, control: ExecutionControl) -> None:
        result = control.rollback()

        assert result.success is False
        assert result.error == ErrorKind.CHECKPOINT_NOT_FOUND

    def test_terminal_state_refuses_rollback(self, store: RunStore, control: ExecutionControl) -> None:
        control.create_checkpoint("US-001")
        control.cancel()
        before = _snapshot(store)

        result = control.rollback()

        assert result.error == ErrorKind.INVALID_STATE
        assert _snapshot(store) == before


class TestPruning:
    def test_keep_last_drops_oldest_refs_and_records(self, store: RunStore, control: ExecutionControl) -> None:
        ids = [control.create_checkpoint(f"US-00{n}").id for n in range(1, 5)]

        result = control.prune_checkpoints(2)

        assert result.removed_checkpoints == 2
        assert [ref.id for ref in control.list_checkpoints()] == ids[2:]
        assert store.checkpoint_ids_on_disk() == ids[2:]
        assert control.status().completed_item_ids == ["US-001", "US-002", "US-003", "US-004"]

    @pytest.mark.parametrize("keep_last", [0, 4, 10])
    def test_nothing_to_prune(self, control: ExecutionControl, keep_last: int) -> None:
        for n in range(1, 5):
            control.create_checkpoint(f"US-00{n}")

        assert control.prune_checkpoints(keep_last).removed_checkpoints == 0
        assert len(control.list_checkpoints()) == 4

    def test_orphaned_records_are_removed(self, store: RunStore, control: ExecutionControl) -> None:
        kept = control.create_checkpoint("US-001")
        (store.checkpoints_dir / "cp-1.json").write_text(
            json.dumps({"id": "cp-1", "item_id": "US-000", "schema_version": 1}), encoding="utf-8"
        )

        assert control.prune_orphaned_checkpoints() == 1
        assert store.checkpoint_ids_on_disk() == [kept.id]


class TestRaiseForError:
    def test_success_returns_result(self, control: ExecutionControl) -> None:
        result = control.pause()

        assert result.raise_for_error() is result

    def test_refusals_map_to_exceptions(self, control: ExecutionControl) -> None:
        with pytest.raises(InvalidStateError, match="not paused"):
            control.resume().raise_for_error()
        with pytest.raises(CheckpointNotFoundError, match="No checkpoints"):
            control.rollback().raise_for_error()
