"""Advisory single-writer lock for a run directory.

The lock file is created with ``O_CREAT | O_EXCL`` and records who holds it::

    {"pid": ..., "host": ..., "owner": ..., "started_at": ..., "last_heartbeat_at": ...}

A lock whose heartbeat is older than ``stale_seconds`` is moved aside and
replaced; a live lock makes the second runner fail fast with
:class:`~loopwarden.errors.RunLockError`.
"""

from __future__ import annotations

import datetime as dt
import json
import logging
import os
import socket
import uuid
from pathlib import Path
from typing import Any

from loopwarden.errors import RunLockError
from loopwarden.file_io import write_json_object

logger = logging.getLogger(__name__)

_ACQUIRE_ATTEMPTS = 3


def _utc_now() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def _parse_utc(raw: Any) -> dt.datetime | None:
    if not raw:
        return None
    try:
        parsed = dt.datetime.fromisoformat(str(raw))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=dt.timezone.utc)
    return parsed


def read_lock_payload(lock_path: Path) -> dict[str, Any]:
    """Return the lock holder record, or ``{}`` when absent or unreadable."""
    try:
        loaded = json.loads(lock_path.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return {}
    return loaded if isinstance(loaded, dict) else {}


def lock_age_seconds(payload: dict[str, Any], *, now: dt.datetime | None = None) -> float | None:
    heartbeat = _parse_utc(payload.get("last_heartbeat_at"))
    if heartbeat is None:
        return None
    now = now or _utc_now()
    return max(0.0, (now - heartbeat).total_seconds())


class RunLock:
    """Context manager guarding one run directory against a second runner.

    Usage::

        with RunLock(store.lock_path, stale_seconds=900):
            ...
    """

    def __init__(self, lock_path: str | Path, *, stale_seconds: int = 900) -> None:
        self.lock_path = Path(lock_path)
        self.stale_seconds = stale_seconds
        self.owner = uuid.uuid4().hex
        self._held = False

    @property
    def held(self) -> bool:
        return self._held

    def _payload(self) -> dict[str, Any]:
        now = _utc_now().isoformat()
        return {
            "pid": os.getpid(),
            "host": socket.gethostname(),
            "owner": self.owner,
            "started_at": now,
            "last_heartbeat_at": now,
        }

    def _write_exclusive(self, payload: dict[str, Any]) -> None:
        fd = os.open(self.lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(json.dumps(payload, indent=2) + "\n")

    def _is_stale(self, existing: dict[str, Any]) -> bool:
        age = lock_age_seconds(existing)
        # A lock with no parseable heartbeat is treated as abandoned.
        return age is None or age > self.stale_seconds

    def acquire(self) -> None:
        """Take the lock or raise :class:`RunLockError`."""
        if self._held:
            return
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        for _ in range(_ACQUIRE_ATTEMPTS):
            try:
                self._write_exclusive(self._payload())
            except FileExistsError:
                existing = read_lock_payload(self.lock_path)
                if not self._is_stale(existing):
                    age = lock_age_seconds(existing)
                    age_text = f"{age:.0f}s" if age is not None else "unknown"
                    logger.warning("Run directory is locked by another runner: %s", self.lock_path)
                    raise RunLockError(
                        f"active lock at {self.lock_path} "
                        f"(pid={existing.get('pid', '<unknown>')}, "
                        f"host={existing.get('host', '<unknown>')}, age={age_text})"
                    ) from None
                stale_path = self.lock_path.with_name(
                    f"{self.lock_path.name}.stale.{self.owner[:8]}"
                )
                try:
                    os.replace(self.lock_path, stale_path)
                except FileNotFoundError:
                    continue
                except OSError as exc:
                    raise RunLockError(f"cannot replace stale lock at {self.lock_path}: {exc}") from exc
                logger.warning("Replaced stale run lock at %s", self.lock_path)
                continue
            except OSError as exc:
                raise RunLockError(f"cannot create lock at {self.lock_path}: {exc}") from exc
            self._held = True
            logger.debug("Acquired run lock %s", self.lock_path)
            return
        raise RunLockError(f"failed to acquire lock at {self.lock_path} after retries")

    def heartbeat(self) -> None:
        """Refresh ``last_heartbeat_at`` so long runs are not judged stale.

        Raises :class:`RunLockError` when the lock file no longer names this
        holder, i.e. another runner has taken the run directory over.
        """
        if not self._held:
            return
        payload = read_lock_payload(self.lock_path)
        if payload.get("owner") != self.owner:
            logger.error("Run lock %s was taken over by another runner", self.lock_path)
            raise RunLockError(
                f"lost lock at {self.lock_path} "
                f"(now held by pid={payload.get('pid', '<unknown>')}, host={payload.get('host', '<unknown>')})"
            )
        payload["last_heartbeat_at"] = _utc_now().isoformat()
        write_json_object(self.lock_path, payload)

    def release(self) -> None:
        if not self._held:
            return
        self._held = False
        payload = read_lock_payload(self.lock_path)
        if payload and payload.get("owner") != self.owner:
            return
        self.lock_path.unlink(missing_ok=True)
        logger.debug("Released run lock %s", self.lock_path)

    def __enter__(self) -> RunLock:
        self.acquire()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.release()
