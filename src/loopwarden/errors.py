"""Error taxonomy for the run control plane.

Control operations report refused transitions and unknown checkpoints as
:class:`~loopwarden.schemas.ActionResult` values;
:meth:`~loopwarden.schemas.ActionResult.raise_for_error` turns those into
``InvalidStateError`` / ``CheckpointNotFoundError`` for callers that prefer
exceptions.
"""

from __future__ import annotations


class LoopwardenError(RuntimeError):
    """Base class for every error raised by loopwarden."""


class InvalidStateError(LoopwardenError):
    """Raised when an operation is not allowed in the current run state."""


class CheckpointNotFoundError(LoopwardenError):
    """Raised when a rollback target does not resolve to a stored checkpoint."""


class CorruptDocumentError(LoopwardenError):
    """Raised when a persisted JSON document cannot be parsed or validated."""

    def __init__(self, path: str, detail: str) -> None:
        super().__init__(f"Corrupt document {path}: {detail}")
        self.path = path
        self.detail = detail


class ConcurrentModificationError(LoopwardenError):
    """Raised when a document changed on disk since it was read."""


class RunLockError(LoopwardenError):
    """Raised when another live runner holds the run directory lock."""


class BacklogNotFoundError(LoopwardenError):
    """Raised when an operation needs ``prd.json`` and none is available."""


class SessionClosedError(InvalidStateError):
    """Raised when a completed QA session is used again."""
