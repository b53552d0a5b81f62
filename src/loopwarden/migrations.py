"""Schema upgrades for persisted documents.

Documents written before versioning carry no ``schema_version``. They use the
legacy ``.ralph`` layout: camelCase keys and "subtask" naming. They are
rewritten into version 1 in memory before pydantic validation; the upgraded
form is persisted on the next write.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable
from typing import Any

from loopwarden.schemas import CURRENT_SCHEMA_VERSION, SessionStatus

logger = logging.getLogger(__name__)

_CAMEL_BOUNDARY = re.compile(r"(?<!^)(?=[A-Z])")

_LEGACY_RENAMES = {
    "current_subtask": "current_item_id",
    "current_subtask_started": "current_item_started_at",
    "completed_subtasks": "completed_item_ids",
    "subtask_id": "item_id",
}

# Keys whose values are caller-owned mappings; their keys are never renamed.
_OPAQUE_KEYS = frozenset({"data", "evidence", "indicators", "context"})

_KNOWN_SESSION_STATUSES = frozenset(s.value for s in SessionStatus)


class UnsupportedSchemaVersion(ValueError):
    """Raised for documents written by a newer schema than this build knows."""


def _snake_key(key: str) -> str:
    snake = _CAMEL_BOUNDARY.sub("_", key).lower()
    return _LEGACY_RENAMES.get(snake, snake)


def _normalize_keys(value: Any) -> Any:
    if isinstance(value, list):
        return [_normalize_keys(v) for v in value]
    if not isinstance(value, dict):
        return value
    out: dict[str, Any] = {}
    for key, item in value.items():
        new_key = _snake_key(str(key))
        out[new_key] = item if new_key in _OPAQUE_KEYS else _normalize_keys(item)
    return out


def _migrate_control_state_v0(payload: dict[str, Any]) -> dict[str, Any]:
    return _normalize_keys(payload)


def _migrate_checkpoint_v0(payload: dict[str, Any]) -> dict[str, Any]:
    return _normalize_keys(payload)


def _migrate_qa_history_v0(payload: dict[str, Any]) -> dict[str, Any]:
    legacy = _normalize_keys(payload)
    legacy.pop("version", None)
    sessions: list[dict[str, Any]] = []
    escalations: list[dict[str, Any]] = list(legacy.get("escalations") or [])
    for entry in legacy.get("sessions") or []:
        if not isinstance(entry, dict):
            continue
        kind = entry.pop("type", "validation")
        if kind == "escalation":
            escalations.append(entry)
            continue
        if entry.get("status") not in _KNOWN_SESSION_STATUSES:
            entry["status"] = SessionStatus.FAILED.value
        sessions.append(entry)
    legacy["sessions"] = sessions
    legacy["escalations"] = escalations
    return legacy


def _migrate_backlog_v0(payload: dict[str, Any]) -> dict[str, Any]:
    # prd.json has always been camelCase; only the version marker is new.
    # Legacy complexityDetails held a list of indicator names and a timestamp,
    # which no longer validates, so it is dropped and recomputed on demand.
    upgraded = dict(payload)
    details = upgraded.get("complexityDetails")
    if isinstance(details, dict) and not isinstance(details.get("indicators"), dict):
        upgraded.pop("complexityDetails", None)
        upgraded.pop("complexity", None)
    return upgraded


_V0_MIGRATIONS: dict[str, Callable[[dict[str, Any]], dict[str, Any]]] = {
    "control_state": _migrate_control_state_v0,
    "checkpoint": _migrate_checkpoint_v0,
    "qa_history": _migrate_qa_history_v0,
    "backlog": _migrate_backlog_v0,
}

_VERSION_KEYS = {"backlog": "schemaVersion"}


def upgrade_document(kind: str, payload: dict[str, Any]) -> dict[str, Any]:
    """Return *payload* upgraded to :data:`CURRENT_SCHEMA_VERSION`.

    Raises :class:`UnsupportedSchemaVersion` when the document is newer than
    this build understands.
    """
    version_key = _VERSION_KEYS.get(kind, "schema_version")
    raw_version = payload.get(version_key)
    if raw_version is None:
        logger.info("Upgrading legacy %s document to schema v%d", kind, CURRENT_SCHEMA_VERSION)
        upgraded = _V0_MIGRATIONS[kind](payload)
        upgraded[version_key] = CURRENT_SCHEMA_VERSION
        upgraded.setdefault("revision", 0)
        return upgraded
    try:
        version = int(raw_version)
    except (TypeError, ValueError) as exc:
        raise UnsupportedSchemaVersion(f"{kind}: invalid schema version {raw_version!r}") from exc
    if version > CURRENT_SCHEMA_VERSION:
        raise UnsupportedSchemaVersion(
            f"{kind}: schema version {version} is newer than supported {CURRENT_SCHEMA_VERSION}"
        )
    return payload
