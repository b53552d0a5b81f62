"""Recurring issue tracking.

Issues are keyed by ``(type, file)``. Once a signature has been seen
``threshold`` times it is flagged for human review, and the flag is never
cleared.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable

from loopwarden.schemas import Issue, QAHistory, RecurringIssue, utc_now
from loopwarden.store import RunStore, apply_with_retry

logger = logging.getLogger(__name__)

RECURRING_ISSUE_THRESHOLD = 3


def _find(history: QAHistory, issue_type: str, file: str | None) -> RecurringIssue | None:
    for entry in history.recurring_issues:
        if entry.type == issue_type and entry.file == file:
            return entry
    return None


def record_occurrence(history: QAHistory, issue: Issue, *, threshold: int) -> RecurringIssue:
    """Count one occurrence of *issue* in *history* (in memory)."""
    entry = _find(history, issue.type, issue.file)
    if entry is None:
        entry = RecurringIssue(type=issue.type, file=issue.file)
        history.recurring_issues.append(entry)
    entry.occurrences += 1
    entry.last_seen = utc_now()
    if entry.occurrences >= threshold and not entry.flagged_for_review:
        entry.flagged_for_review = True
        logger.info(
            "Issue %s in %s recurred %d times; flagged for review",
            entry.type,
            entry.file or "<no file>",
            entry.occurrences,
        )
    return entry


class RecurringIssueTracker:
    """Occurrence counts persisted in ``qa-history.json``."""

    def __init__(self, store: RunStore, *, threshold: int = RECURRING_ISSUE_THRESHOLD, save_retries: int = 3) -> None:
        self.store = store
        self.threshold = threshold
        self.save_retries = save_retries

    def track(self, issue: Issue) -> RecurringIssue:
        return self.track_many([issue])[0]

    def track_many(self, issues: Iterable[Issue]) -> list[RecurringIssue]:
        """Record every issue with a single history write."""
        batch = list(issues)
        if not batch:
            return []

        def mutate(history: QAHistory) -> tuple[bool, list[RecurringIssue]]:
            entries = [record_occurrence(history, issue, threshold=self.threshold) for issue in batch]
            return True, [entry.model_copy() for entry in entries]

        return apply_with_retry(
            self.store.load_qa_history,
            self.store.save_qa_history,
            mutate,
            retries=self.save_retries,
        )

    def check(self, issue: Issue) -> RecurringIssue | None:
        """Current record for *issue*'s signature, without counting it."""
        return _find(self.store.load_qa_history(), issue.type, issue.file)

    def flagged(self) -> list[RecurringIssue]:
        return [entry for entry in self.store.load_qa_history().recurring_issues if entry.flagged_for_review]
