"""Shared pytest configuration: marker registration, ordering and run-directory fixtures."""

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

from loopwarden.schemas import Backlog, WorkItem
from loopwarden.store import RunStore


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line("markers", "unit: fast isolated unit tests")
    config.addinivalue_line("markers", "integration: filesystem/subprocess integration tests")


def pytest_collection_modifyitems(items: list[pytest.Item]) -> None:
    """Run fast unit tests first and integration tests second."""

    def sort_key(item: pytest.Item) -> tuple[int, str]:
        if item.get_closest_marker("integration"):
            return (1, item.nodeid)
        return (0, item.nodeid)

    items.sort(key=sort_key)


@pytest.fixture
def store(tmp_path: Path) -> RunStore:
    run_store = RunStore(tmp_path / "run")
    run_store.ensure_layout()
    return run_store


@pytest.fixture
def make_item() -> Callable[..., WorkItem]:
    def _make(item_id: str = "US-001", **overrides: Any) -> WorkItem:
        fields: dict[str, Any] = {
            "id": item_id,
            "title": f"Item {item_id}",
            "description": "Plain change",
            "acceptance_criteria": ["Typecheck passes", "Button shows label"],
            "priority": 1,
        }
        fields.update(overrides)
        return WorkItem(**fields)

    return _make


@pytest.fixture
def make_backlog(make_item: Callable[..., WorkItem]) -> Callable[..., Backlog]:
    def _make(items: list[WorkItem] | None = None, **overrides: Any) -> Backlog:
        fields: dict[str, Any] = {
            "project_name": "demo",
            "branch_name": "ralph/demo",
            "description": "Small demo backlog",
            "items": items if items is not None else [make_item("US-001"), make_item("US-002", priority=2)],
        }
        fields.update(overrides)
        return Backlog(**fields)

    return _make


@pytest.fixture
def saved_backlog(store: RunStore, make_backlog: Callable[..., Backlog]) -> Backlog:
    backlog = make_backlog()
    store.save_backlog(backlog)
    return backlog
