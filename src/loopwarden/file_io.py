"""Atomic JSON document I/O for the run directory.

Every document write goes through a temp file in the destination directory and
an ``os.replace`` so readers never observe a half-written file.
"""

from __future__ import annotations

import errno
import json
import os
import tempfile
import threading
import time
from collections.abc import Iterator
from contextlib import contextmanager, suppress
from pathlib import Path
from typing import Any

from loopwarden.errors import CorruptDocumentError

_ATOMIC_REPLACE_MAX_RETRIES = 8
_ATOMIC_REPLACE_RETRY_SECONDS = 0.01

_PATH_LOCKS_GUARD = threading.Lock()
_PATH_LOCKS: dict[str, threading.RLock] = {}


def _path_lock(path: Path) -> threading.RLock:
    key = str(path.resolve())
    with _PATH_LOCKS_GUARD:
        lock = _PATH_LOCKS.get(key)
        if lock is None:
            lock = threading.RLock()
            _PATH_LOCKS[key] = lock
    return lock


@contextmanager
def locked_path(path: Path) -> Iterator[None]:
    """Serialize read-check-write sequences on one path within this process."""
    with _path_lock(path):
        yield


def _replace_file_with_retry(src: Path, dst: Path) -> None:
    """``os.replace`` that tolerates a reader briefly holding *dst* open on Windows."""
    for attempt in range(1, _ATOMIC_REPLACE_MAX_RETRIES + 1):
        try:
            src.replace(dst)
            return
        except OSError as exc:
            if not isinstance(exc, PermissionError) and exc.errno != errno.EACCES:
                raise
            if attempt == _ATOMIC_REPLACE_MAX_RETRIES:
                raise
        time.sleep(_ATOMIC_REPLACE_RETRY_SECONDS * attempt)


def read_json_object(path: Path) -> dict[str, Any] | None:
    """Return the JSON object stored at *path*, or ``None`` when the file is absent.

    Raises :class:`CorruptDocumentError` for empty files, invalid JSON, and
    top-level values that are not objects.
    """
    if not path.exists():
        return None
    try:
        raw = path.read_text(encoding="utf-8-sig")
    except (OSError, UnicodeDecodeError) as exc:
        raise CorruptDocumentError(str(path), f"unreadable: {exc}") from exc
    if not raw.strip():
        raise CorruptDocumentError(str(path), "file is empty")
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise CorruptDocumentError(str(path), f"invalid JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise CorruptDocumentError(str(path), f"expected an object, got {type(payload).__name__}")
    return payload


def write_json_object(path: Path, payload: dict[str, Any]) -> None:
    """Write *payload* as indented JSON via a sibling temp file and a replace."""
    body = json.dumps(payload, indent=2, ensure_ascii=False) + "\n"
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f"{path.name}.", suffix=".tmp", dir=str(path.parent))
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(body)
        with locked_path(path):
            _replace_file_with_retry(tmp_path, path)
    finally:
        # Gone already after a successful replace.
        with suppress(OSError):
            tmp_path.unlink(missing_ok=True)


def remove_file(path: Path) -> bool:
    """Delete *path* if present. Returns True when a file was removed."""
    with locked_path(path):
        try:
            path.unlink()
        except FileNotFoundError:
            return False
    return True
