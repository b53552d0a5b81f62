"""Tests for backlog complexity classification."""

from __future__ import annotations

import json

import pytest

from loopwarden.classifier import (
    INDICATORS,
    calculate_score,
    classify,
    classify_and_persist,
    count_affected_files,
    count_dependencies,
    detect_indicators,
    determine_level,
    recommend,
)
from loopwarden.errors import BacklogNotFoundError
from loopwarden.schemas import (
    Backlog,
    ClassificationMetrics,
    ComplexityLevel,
    QADepth,
    WorkItem,
)
from loopwarden.store import RunStore

pytestmark = pytest.mark.unit

_LEVEL_RANK = {ComplexityLevel.SIMPLE: 0, ComplexityLevel.STANDARD: 1, ComplexityLevel.COMPLEX: 2}


def _item(item_id: str, criteria: list[str], **extra) -> WorkItem:
    return WorkItem(id=item_id, title=f"Item {item_id}", acceptance_criteria=criteria, **extra)


def _complex_backlog() -> Backlog:
    # 8 items, 12 distinct files, 2 dependencies, 40 criteria, one "database" mention.
    items = []
    for n in range(8):
        criteria = [f"Check {n}-{k} holds" for k in range(5)]
        if n < 6:
            criteria[0] = f"Update widget{n}a.py"
            criteria[1] = f"Update widget{n}b.py"
        extra = {}
        if n == 0:
            extra["description"] = "Store totals in the database"
        if n == 1:
            extra["blocked_by"] = ["US-000"]
        if n == 2:
            extra["blocks"] = ["US-003"]
        items.append(_item(f"US-00{n}", criteria, **extra))
    return Backlog(project_name="big", branch_name="ralph/big", items=items)


def _simple_backlog() -> Backlog:
    return Backlog(
        project_name="tiny",
        branch_name="ralph/tiny",
        items=[_item("US-001", ["Edit header.css", "Typecheck passes", "Button shows label"])],
    )


class TestMetrics:
    def test_file_patterns_are_deduplicated(self) -> None:
        backlog = Backlog(
            items=[
                _item("US-001", ["Edit main.py and main.py", "Touch src/core/loop"]),
                _item("US-002", ["Edit main.py", "Add tests/unit/check"]),
            ]
        )

        # main.py, src/core/loop, tests/unit/check
        assert count_affected_files(backlog) == 3

    def test_dependencies_count_phrases_and_links(self) -> None:
        backlog = Backlog(
            items=[
                _item("US-001", [], description="This depends on US-000"),
                _item("US-002", [], description="Requires the header", blocked_by=["US-001"], blocks=["US-003"]),
                _item("US-003", [], description="Standalone"),
            ]
        )

        assert count_dependencies(backlog) == 4

    def test_indicator_scan_is_case_insensitive_and_counts_once(self) -> None:
        backlog = Backlog(
            description="Add a WEBHOOK receiver",
            items=[_item("US-001", ["Webhook retries", "Callback is logged"])],
        )

        assert detect_indicators(backlog) == {"webhooks": 5}

    def test_indicator_scan_ignores_bookkeeping_fields(self) -> None:
        backlog = _simple_backlog()
        backlog.schema_version = 1
        backlog.revision = 12

        # "schemaVersion" must not trigger the database indicator.
        assert detect_indicators(backlog) == {}

    def test_indicator_weights_match_table(self) -> None:
        weights = {indicator.name: indicator.weight for indicator in INDICATORS}

        assert weights["architectural_changes"] == 10
        assert weights["new_database"] == 8
        assert weights["realtime"] == 8
        assert weights["security_requirements"] == 7
        assert len(weights) == 16


class TestScoring:
    def test_score_rounds_half_up(self) -> None:
        metrics = ClassificationMetrics(item_count=1, file_count=1, dependency_count=0, criteria_count=0)

        # 2 + 1.5 = 3.5 -> 4
        assert calculate_score(metrics, {}) == 4

    def test_score_adds_indicator_weights(self) -> None:
        metrics = ClassificationMetrics(item_count=2, file_count=0, dependency_count=1, criteria_count=4)

        assert calculate_score(metrics, {"webhooks": 5, "new_api": 4}) == 4 + 3 + 2 + 9

    @pytest.mark.parametrize(
        ("metrics", "score", "expected"),
        [
            (ClassificationMetrics(item_count=2, file_count=3, dependency_count=1), 14, ComplexityLevel.SIMPLE),
            (ClassificationMetrics(item_count=2, file_count=3, dependency_count=1), 15, ComplexityLevel.STANDARD),
            (ClassificationMetrics(item_count=3, file_count=0, dependency_count=0), 6, ComplexityLevel.STANDARD),
            (ClassificationMetrics(item_count=6, file_count=10, dependency_count=5), 39, ComplexityLevel.STANDARD),
            (ClassificationMetrics(item_count=6, file_count=10, dependency_count=5), 40, ComplexityLevel.COMPLEX),
            (ClassificationMetrics(item_count=7, file_count=0, dependency_count=0), 14, ComplexityLevel.COMPLEX),
        ],
    )
    def test_level_thresholds(self, metrics: ClassificationMetrics, score: int, expected: ComplexityLevel) -> None:
        assert determine_level(score, metrics) == expected


class TestClassify:
    def test_complex_scenario(self) -> None:
        result = classify(_complex_backlog())

        assert result.metrics.item_count == 8
        assert result.metrics.file_count == 12
        assert result.metrics.dependency_count == 2
        assert result.metrics.criteria_count == 40
        assert result.indicators == {"new_database": 8}
        assert result.score == 16 + 18 + 6 + 20 + 8
        assert result.level == ComplexityLevel.COMPLEX
        assert result.recommendation.research_phase is True
        assert result.recommendation.self_critique is True
        assert result.recommendation.qa_depth == QADepth.EXTENSIVE

    def test_simple_scenario(self) -> None:
        result = classify(_simple_backlog())

        assert result.metrics.item_count == 1
        assert result.metrics.file_count == 1
        assert result.metrics.dependency_count == 0
        assert result.metrics.criteria_count == 3
        assert result.level == ComplexityLevel.SIMPLE
        assert result.recommendation.use_planner is False
        assert result.recommendation.qa_depth == QADepth.LIGHT
        assert result.recommendation.parallel_agents is False

    def test_classification_is_deterministic(self) -> None:
        assert classify(_complex_backlog()) == classify(_complex_backlog())

    def test_adding_an_item_never_lowers_the_score(self) -> None:
        backlog = _simple_backlog()
        before = classify(backlog)
        backlog.items.append(_item("US-002", ["Label is bold"]))
        after = classify(backlog)

        assert after.score >= before.score

    @pytest.mark.parametrize(
        ("indicator", "keyword"),
        [(indicator.name, keyword) for indicator in INDICATORS for keyword in indicator.keywords],
    )
    def test_mentioning_a_keyword_never_lowers_score_or_level(self, indicator: str, keyword: str) -> None:
        backlog = _simple_backlog()
        before = classify(backlog)
        backlog.items[0].description = f"Plain change with {keyword} work"
        after = classify(backlog)

        assert indicator in after.indicators
        assert after.metrics == before.metrics
        assert after.score > before.score
        assert _LEVEL_RANK[after.level] >= _LEVEL_RANK[before.level]

    @pytest.mark.parametrize(
        ("keyword", "score", "level"),
        [("sdk", 11, ComplexityLevel.SIMPLE), ("security", 15, ComplexityLevel.STANDARD)],
    )
    def test_keyword_can_push_a_small_backlog_past_simple(
        self, keyword: str, score: int, level: ComplexityLevel
    ) -> None:
        backlog = _simple_backlog()
        backlog.items.append(_item("US-002", ["Label is bold"]))
        assert classify(backlog).score == 8
        assert classify(backlog).level == ComplexityLevel.SIMPLE

        backlog.items[1].description = f"Plain change with {keyword} work"
        result = classify(backlog)

        assert result.score == score
        assert result.level == level

    def test_classification_ignores_its_own_output(self) -> None:
        backlog = _complex_backlog()
        first = classify(backlog)
        backlog.complexity = first.level
        backlog.complexity_details = first

        assert classify(backlog) == first

    @pytest.mark.parametrize("level", list(ComplexityLevel))
    def test_recommend_accepts_enum_and_string(self, level: ComplexityLevel) -> None:
        assert recommend(level) == recommend(level.value)


class TestClassifyAndPersist:
    def test_missing_backlog_raises(self, store: RunStore) -> None:
        with pytest.raises(BacklogNotFoundError):
            classify_and_persist(store)

    def test_attaches_classification_with_camel_case_keys(self, store: RunStore) -> None:
        store.save_backlog(_simple_backlog())

        result = classify_and_persist(store)
        raw = json.loads(store.backlog_path.read_text(encoding="utf-8"))

        assert raw["complexity"] == "SIMPLE"
        assert raw["complexityDetails"]["score"] == result.score
        assert raw["complexityDetails"]["recommendation"]["usePlanner"] is False
        assert store.load_backlog().complexity == ComplexityLevel.SIMPLE

    def test_reclassifying_unchanged_backlog_is_byte_identical(self, store: RunStore) -> None:
        store.save_backlog(_complex_backlog())
        classify_and_persist(store)
        before = store.backlog_bytes()

        classify_and_persist(store)
        classify_and_persist(store, force=True)

        assert store.backlog_bytes() == before

    def test_existing_classification_is_kept_without_force(self, store: RunStore) -> None:
        store.save_backlog(_simple_backlog())
        first = classify_and_persist(store)

        backlog = store.load_backlog()
        backlog.items.extend(_item(f"US-1{n}", ["Label is bold"]) for n in range(7))
        store.save_backlog(backlog)

        assert classify_and_persist(store) == first
        forced = classify_and_persist(store, force=True)
        assert forced.level == ComplexityLevel.COMPLEX
        assert store.load_backlog().complexity == ComplexityLevel.COMPLEX
