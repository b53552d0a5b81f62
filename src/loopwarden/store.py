"""Run-scoped document store.

A :class:`RunStore` owns one run directory and every JSON document in it::

    <run_dir>/intervention.json      ControlState
    <run_dir>/checkpoints/<id>.json  Checkpoint
    <run_dir>/qa-history.json        QAHistory
    <run_dir>/prd.json               Backlog

Components receive the store explicitly; nothing resolves the run directory
implicitly, so several stores can coexist in one process.

Reads are forgiving: an unparseable or unsupported document is logged and
replaced by a fresh default (the backlog is treated as absent). Writes are
strict: each document carries a ``revision`` and a save fails with
:class:`ConcurrentModificationError` when the file on disk is no longer at the
revision the caller loaded.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from pathlib import Path
from typing import Any, TypeVar

from pydantic import BaseModel, ValidationError

from loopwarden.errors import ConcurrentModificationError, CorruptDocumentError
from loopwarden.file_io import locked_path, read_json_object, remove_file, write_json_object
from loopwarden.migrations import UnsupportedSchemaVersion, upgrade_document
from loopwarden.schemas import Backlog, Checkpoint, ControlState, QAHistory, utc_now

logger = logging.getLogger(__name__)

CONTROL_STATE_FILE = "intervention.json"
CHECKPOINTS_DIR = "checkpoints"
QA_HISTORY_FILE = "qa-history.json"
BACKLOG_FILE = "prd.json"
LOCK_FILE = "run.lock"
CONFIG_FILE = "config.yaml"

_ModelT = TypeVar("_ModelT", bound=BaseModel)


class RunStore:
    """Durable JSON documents for one run directory."""

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root).resolve()
        self.control_state_path = self.root / CONTROL_STATE_FILE
        self.checkpoints_dir = self.root / CHECKPOINTS_DIR
        self.qa_history_path = self.root / QA_HISTORY_FILE
        self.backlog_path = self.root / BACKLOG_FILE
        self.lock_path = self.root / LOCK_FILE
        self.config_path = self.root / CONFIG_FILE

    def __repr__(self) -> str:
        return f"RunStore({str(self.root)!r})"

    def ensure_layout(self) -> None:
        self.checkpoints_dir.mkdir(parents=True, exist_ok=True)

    # ------------------------------------------------------------------
    # Generic document helpers
    # ------------------------------------------------------------------

    def _read_model(self, path: Path, kind: str, model: type[_ModelT]) -> _ModelT | None:
        """Load *path* into *model*; ``None`` when absent or unreadable."""
        try:
            payload = read_json_object(path)
            if payload is None:
                return None
            return model.model_validate(upgrade_document(kind, payload))
        except CorruptDocumentError as exc:
            logger.warning("Ignoring corrupt %s document: %s", kind, exc)
        except (UnsupportedSchemaVersion, ValidationError) as exc:
            logger.warning("Ignoring invalid %s document %s: %s", kind, path, exc)
        return None

    @staticmethod
    def _disk_revision(path: Path, revision_key: str = "revision") -> int:
        """Revision currently on disk; 0 for absent or unreadable files."""
        try:
            payload = read_json_object(path)
        except CorruptDocumentError:
            return 0
        if payload is None:
            return 0
        try:
            return int(payload.get(revision_key, 0))
        except (TypeError, ValueError):
            return 0

    def _write_versioned(self, path: Path, document: Any, payload_fn) -> None:
        """Compare-and-swap write of *document* keyed on its ``revision``."""
        with locked_path(path):
            on_disk = self._disk_revision(path)
            if on_disk != document.revision:
                raise ConcurrentModificationError(
                    f"{path.name} changed on disk (expected revision {document.revision}, "
                    f"found {on_disk})"
                )
            next_revision = document.revision + 1
            payload = payload_fn(document)
            payload["revision"] = next_revision
            write_json_object(path, payload)
            document.revision = next_revision

    # ------------------------------------------------------------------
    # Control state
    # ------------------------------------------------------------------

    def has_control_state(self) -> bool:
        return self.control_state_path.exists()

    def load_control_state(self) -> ControlState:
        """Load ``intervention.json`` or synthesize a fresh RUNNING state."""
        state = self._read_model(self.control_state_path, "control_state", ControlState)
        return state if state is not None else ControlState()

    def save_control_state(self, state: ControlState) -> None:
        state.last_updated = utc_now()
        self._write_versioned(
            self.control_state_path,
            state,
            lambda doc: doc.model_dump(mode="json"),
        )

    # ------------------------------------------------------------------
    # Checkpoints
    # ------------------------------------------------------------------

    def checkpoint_path(self, checkpoint_id: str) -> Path:
        return self.checkpoints_dir / f"{checkpoint_id}.json"

    def has_checkpoint(self, checkpoint_id: str) -> bool:
        return self.checkpoint_path(checkpoint_id).exists()

    def write_checkpoint(self, checkpoint: Checkpoint) -> None:
        path = self.checkpoint_path(checkpoint.id)
        if path.exists():
            raise ConcurrentModificationError(f"Checkpoint {checkpoint.id} already exists")
        write_json_object(path, checkpoint.model_dump(mode="json"))

    def load_checkpoint(self, checkpoint_id: str) -> Checkpoint | None:
        return self._read_model(self.checkpoint_path(checkpoint_id), "checkpoint", Checkpoint)

    def delete_checkpoint(self, checkpoint_id: str) -> bool:
        return remove_file(self.checkpoint_path(checkpoint_id))

    def checkpoint_ids_on_disk(self) -> list[str]:
        if not self.checkpoints_dir.is_dir():
            return []
        return sorted(p.stem for p in self.checkpoints_dir.glob("*.json"))

    # ------------------------------------------------------------------
    # QA history
    # ------------------------------------------------------------------

    def load_qa_history(self) -> QAHistory:
        history = self._read_model(self.qa_history_path, "qa_history", QAHistory)
        return history if history is not None else QAHistory()

    def save_qa_history(self, history: QAHistory) -> None:
        self._write_versioned(
            self.qa_history_path,
            history,
            lambda doc: doc.model_dump(mode="json"),
        )

    # ------------------------------------------------------------------
    # Backlog
    # ------------------------------------------------------------------

    def has_backlog(self) -> bool:
        return self.backlog_path.exists()

    def load_backlog(self) -> Backlog | None:
        return self._read_model(self.backlog_path, "backlog", Backlog)

    def load_backlog_payload(self) -> dict[str, Any] | None:
        """Raw ``prd.json`` object for structural validation; ``None`` if unusable."""
        try:
            return read_json_object(self.backlog_path)
        except CorruptDocumentError as exc:
            logger.warning("Ignoring corrupt backlog document: %s", exc)
            return None

    def save_backlog(self, backlog: Backlog) -> None:
        self._write_versioned(
            self.backlog_path,
            backlog,
            lambda doc: doc.model_dump(mode="json", by_alias=True, exclude_none=True),
        )

    def backlog_bytes(self) -> bytes | None:
        """Exact bytes of ``prd.json`` (used to verify idempotent rewrites)."""
        try:
            return self.backlog_path.read_bytes()
        except FileNotFoundError:
            return None

    def describe(self) -> dict[str, Any]:
        """Paths and presence flags, for status output."""
        return {
            "root": str(self.root),
            "control_state": self.control_state_path.exists(),
            "qa_history": self.qa_history_path.exists(),
            "backlog": self.backlog_path.exists(),
            "checkpoint_files": len(self.checkpoint_ids_on_disk()),
        }


_DocT = TypeVar("_DocT")
_ResultT = TypeVar("_ResultT")


def apply_with_retry(
    load: Callable[[], _DocT],
    save: Callable[[_DocT], None],
    mutator: Callable[[_DocT], tuple[bool, _ResultT]],
    *,
    retries: int = 3,
) -> _ResultT:
    """Load, mutate and save a document, re-reading on revision conflicts.

    *mutator* returns ``(commit, result)``; nothing is written when *commit*
    is false. After *retries* failed re-applications the conflict propagates.
    """
    attempt = 0
    while True:
        document = load()
        commit, result = mutator(document)
        if not commit:
            return result
        try:
            save(document)
        except ConcurrentModificationError as exc:
            if attempt >= retries:
                raise
            attempt += 1
            logger.warning("Revision conflict, retrying (%d/%d): %s", attempt, retries, exc)
            continue
        return result
