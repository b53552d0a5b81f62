"""Backlog validation and progress statistics.

:func:`validate_backlog` inspects the raw ``prd.json`` object, so it can report
problems that would otherwise only surface as a pydantic error.
"""

from __future__ import annotations

import re
from typing import Any

from pydantic import ValidationError

from loopwarden.errors import BacklogNotFoundError
from loopwarden.migrations import UnsupportedSchemaVersion, upgrade_document
from loopwarden.schemas import Backlog, BacklogStats, BacklogValidation
from loopwarden.store import RunStore

REQUIRED_FIELDS = ("project", "branchName", "userStories")
REQUIRED_ITEM_FIELDS = ("id", "title", "acceptanceCriteria", "priority")

_ITEM_ID_RE = re.compile(r"^US-\d+$")
BRANCH_PREFIX = "ralph/"


def _validate_item(item: Any, index: int) -> tuple[list[str], list[str]]:
    errors: list[str] = []
    warnings: list[str] = []
    prefix = f"Item [{index}]"

    if not isinstance(item, dict):
        return [f"{prefix}: must be an object"], warnings

    for field in REQUIRED_ITEM_FIELDS:
        if item.get(field) is None:
            errors.append(f"{prefix}: missing required field '{field}'")

    item_id = item.get("id")
    if isinstance(item_id, str) and not _ITEM_ID_RE.match(item_id):
        warnings.append(f"{prefix}: ID '{item_id}' should follow format 'US-NNN'")

    title = item.get("title")
    if title is not None and not isinstance(title, str):
        errors.append(f"{prefix}: title must be a string")

    criteria = item.get("acceptanceCriteria")
    if criteria is not None:
        if not isinstance(criteria, list):
            errors.append(f"{prefix}: acceptanceCriteria must be an array")
        elif not criteria:
            errors.append(f"{prefix}: acceptanceCriteria cannot be empty")
        elif not all(isinstance(c, str) for c in criteria):
            errors.append(f"{prefix}: acceptanceCriteria entries must be strings")
        elif not any(isinstance(c, str) and "typecheck" in c.lower() for c in criteria):
            warnings.append(f"{prefix}: consider adding 'Typecheck passes' to acceptance criteria")

    priority = item.get("priority")
    if priority is not None:
        # bool is an int subclass; 2.0 is accepted, 1.5 is not.
        if (
            isinstance(priority, bool)
            or not isinstance(priority, (int, float))
            or (isinstance(priority, float) and not priority.is_integer())
            or priority < 1
        ):
            errors.append(f"{prefix}: priority must be a positive integer")

    passes = item.get("passes")
    if passes is not None and not isinstance(passes, bool):
        warnings.append(f"{prefix}: passes should be a boolean (true/false)")

    return errors, warnings


def validate_backlog(payload: Any) -> BacklogValidation:
    """Structural checks over a raw backlog object, then a full model check."""
    if not isinstance(payload, dict):
        return BacklogValidation(valid=False, errors=["Backlog must be a JSON object"])

    errors: list[str] = []
    warnings: list[str] = []

    for field in REQUIRED_FIELDS:
        if payload.get(field) is None:
            errors.append(f"Missing required field: {field}")

    project = payload.get("project")
    if project is not None and not isinstance(project, str):
        errors.append("project must be a string")

    branch = payload.get("branchName")
    if branch:
        if not isinstance(branch, str):
            errors.append("branchName must be a string")
        elif not branch.startswith(BRANCH_PREFIX):
            warnings.append(f'branchName should start with "{BRANCH_PREFIX}" for consistency')

    items = payload.get("userStories")
    if items is not None:
        if not isinstance(items, list):
            errors.append("userStories must be an array")
        elif not items:
            errors.append("userStories cannot be empty")
        else:
            for index, item in enumerate(items):
                item_errors, item_warnings = _validate_item(item, index)
                errors.extend(item_errors)
                warnings.extend(item_warnings)

            ids = [item.get("id") for item in items if isinstance(item, dict) and item.get("id") is not None]
            seen: set[Any] = set()
            duplicates: list[str] = []
            for item_id in ids:
                if item_id in seen and str(item_id) not in duplicates:
                    duplicates.append(str(item_id))
                seen.add(item_id)
            if duplicates:
                errors.append(f"Duplicate item IDs found: {', '.join(duplicates)}")

    if not errors:
        errors.extend(_model_errors(payload))

    return BacklogValidation(valid=not errors, errors=errors, warnings=warnings)


def _model_errors(payload: dict[str, Any]) -> list[str]:
    """Whatever the :class:`Backlog` model still rejects after the structural checks."""
    try:
        Backlog.model_validate(upgrade_document("backlog", payload))
    except UnsupportedSchemaVersion as exc:
        return [str(exc)]
    except ValidationError as exc:
        return [f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}" for err in exc.errors()]
    return []


def validate_store_backlog(store: RunStore) -> BacklogValidation:
    """Validate ``prd.json`` in *store*; raises when the file is absent."""
    if not store.has_backlog():
        raise BacklogNotFoundError(f"No backlog at {store.backlog_path}")
    payload = store.load_backlog_payload()
    if payload is None:
        return BacklogValidation(valid=False, errors=["Backlog file is not a readable JSON object"])
    return validate_backlog(payload)


def backlog_stats(backlog: Backlog | None) -> BacklogStats:
    """Completion counts and the next item the runner would pick."""
    if backlog is None or not backlog.items:
        return BacklogStats()
    total = len(backlog.items)
    complete = sum(1 for item in backlog.items if item.passes)
    pending = backlog.pending_items()
    return BacklogStats(
        total=total,
        complete=complete,
        remaining=total - complete,
        percent_complete=int((complete * 100 / total) + 0.5),
        next_item_id=pending[0].id if pending else None,
    )
