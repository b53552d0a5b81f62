"""Backlog complexity classification.

Scores a backlog from four structural metrics plus a keyword scan, maps the
score to SIMPLE / STANDARD / COMPLEX, and picks the pipeline policy for that
level. :func:`classify` is pure; :func:`classify_and_persist` attaches the
result to ``prd.json``.
"""

from __future__ import annotations

import json
import logging
import math
import re
from dataclasses import dataclass

from loopwarden.errors import BacklogNotFoundError
from loopwarden.schemas import (
    Backlog,
    ClassificationMetrics,
    ClassificationResult,
    ComplexityLevel,
    PipelinePolicy,
    QADepth,
)
from loopwarden.store import RunStore

logger = logging.getLogger(__name__)

_FILE_NAME_RE = re.compile(r"[\w\-]+\.\w+")
_PATH_RE = re.compile(r"(?:src|lib|tests?)/[\w\-/]+")

_DEPENDENCY_PHRASES = ("depends on", "requires")


@dataclass(frozen=True)
class Indicator:
    name: str
    weight: int
    keywords: tuple[str, ...]


INDICATORS: tuple[Indicator, ...] = (
    Indicator("architectural_changes", 10, ("architecture", "refactor", "redesign")),
    Indicator("new_database", 8, ("database", "migration", "schema")),
    Indicator("new_service", 5, ("service", "microservice")),
    Indicator("new_api", 4, ("api", "endpoint", "rest")),
    Indicator("authentication", 6, ("auth", "login", "password")),
    Indicator("authorization", 5, ("permission", "role", "access control")),
    Indicator("external_apis", 7, ("external api", "third-party", "integration")),
    Indicator("third_party_libs", 3, ("new dependency", "new library", "sdk")),
    Indicator("webhooks", 5, ("webhook", "callback")),
    Indicator("realtime", 8, ("realtime", "websocket", "socket")),
    Indicator("integration_tests", 4, ("integration test",)),
    Indicator("e2e_tests", 6, ("e2e", "end-to-end")),
    Indicator("performance_tests", 5, ("performance test", "load test", "benchmark")),
    Indicator("migrations", 5, ("migration",)),
    Indicator("backwards_compatibility", 6, ("backwards compat", "backward compat", "breaking change")),
    Indicator("security_requirements", 7, ("security", "vulnerability", "owasp")),
)


@dataclass(frozen=True)
class LevelThreshold:
    max_items: int
    max_files: int
    max_dependencies: int
    max_score: int  # exclusive


SIMPLE_THRESHOLD = LevelThreshold(max_items=2, max_files=3, max_dependencies=1, max_score=15)
STANDARD_THRESHOLD = LevelThreshold(max_items=6, max_files=10, max_dependencies=5, max_score=40)

_POLICIES: dict[ComplexityLevel, PipelinePolicy] = {
    ComplexityLevel.SIMPLE: PipelinePolicy(
        use_planner=False,
        qa_depth=QADepth.LIGHT,
        parallel_agents=False,
        research_phase=False,
        self_critique=False,
        description="Direct implementation with light QA validation",
    ),
    ComplexityLevel.STANDARD: PipelinePolicy(
        use_planner=True,
        qa_depth=QADepth.STANDARD,
        parallel_agents=True,
        research_phase=False,
        self_critique=False,
        description="Planner, implementation and QA pipeline with parallel execution",
    ),
    ComplexityLevel.COMPLEX: PipelinePolicy(
        use_planner=True,
        qa_depth=QADepth.EXTENSIVE,
        parallel_agents=True,
        research_phase=True,
        self_critique=True,
        description="Research phase, extended planning and extensive QA with self-critique",
    ),
}

# Fields that are outputs of classification or write bookkeeping; they never
# feed the keyword scan.
_SCAN_EXCLUDED_FIELDS = {"complexity", "complexity_details", "schema_version", "revision"}


# ── Metrics ───────────────────────────────────────────────────────


def count_affected_files(backlog: Backlog) -> int:
    files: set[str] = set()
    for item in backlog.items:
        for criterion in item.acceptance_criteria:
            files.update(_FILE_NAME_RE.findall(criterion))
            files.update(_PATH_RE.findall(criterion))
    return len(files)


def count_dependencies(backlog: Backlog) -> int:
    deps = 0
    for item in backlog.items:
        description = item.description.lower()
        if any(phrase in description for phrase in _DEPENDENCY_PHRASES):
            deps += 1
        deps += len(item.blocked_by) + len(item.blocks)
    return deps


def count_criteria(backlog: Backlog) -> int:
    return sum(len(item.acceptance_criteria) for item in backlog.items)


def collect_metrics(backlog: Backlog) -> ClassificationMetrics:
    return ClassificationMetrics(
        item_count=len(backlog.items),
        file_count=count_affected_files(backlog),
        dependency_count=count_dependencies(backlog),
        criteria_count=count_criteria(backlog),
    )


def _scan_text(backlog: Backlog) -> str:
    payload = backlog.model_dump(mode="json", by_alias=True, exclude=_SCAN_EXCLUDED_FIELDS)
    return json.dumps(payload, sort_keys=True, ensure_ascii=False).lower()


def detect_indicators(backlog: Backlog) -> dict[str, int]:
    """Return ``{indicator_name: weight}`` for every indicator whose keywords appear."""
    content = _scan_text(backlog)
    return {
        indicator.name: indicator.weight
        for indicator in INDICATORS
        if any(keyword in content for keyword in indicator.keywords)
    }


# ── Scoring ───────────────────────────────────────────────────────


def calculate_score(metrics: ClassificationMetrics, indicators: dict[str, int]) -> int:
    raw = (
        metrics.item_count * 2
        + metrics.file_count * 1.5
        + metrics.dependency_count * 3
        + metrics.criteria_count * 0.5
        + sum(indicators.values())
    )
    # Half-up, not Python's banker's rounding.
    return int(math.floor(raw + 0.5))


def _within(threshold: LevelThreshold, score: int, metrics: ClassificationMetrics) -> bool:
    return (
        metrics.item_count <= threshold.max_items
        and metrics.file_count <= threshold.max_files
        and metrics.dependency_count <= threshold.max_dependencies
        and score < threshold.max_score
    )


def determine_level(score: int, metrics: ClassificationMetrics) -> ComplexityLevel:
    if _within(SIMPLE_THRESHOLD, score, metrics):
        return ComplexityLevel.SIMPLE
    if _within(STANDARD_THRESHOLD, score, metrics):
        return ComplexityLevel.STANDARD
    return ComplexityLevel.COMPLEX


def recommend(level: ComplexityLevel | str) -> PipelinePolicy:
    """Pipeline policy for *level*."""
    return _POLICIES[ComplexityLevel(level)]


def classify(backlog: Backlog) -> ClassificationResult:
    """Classify *backlog*. Pure and deterministic."""
    metrics = collect_metrics(backlog)
    indicators = detect_indicators(backlog)
    score = calculate_score(metrics, indicators)
    level = determine_level(score, metrics)
    return ClassificationResult(
        level=level,
        score=score,
        metrics=metrics,
        indicators=indicators,
        recommendation=recommend(level),
    )


def classify_and_persist(store: RunStore, *, force: bool = False) -> ClassificationResult:
    """Classify ``prd.json`` in *store* and record the result on it.

    An existing classification is returned unchanged unless *force* is set.
    The file is rewritten only when the stored classification differs, so
    classifying an unchanged backlog leaves it byte-identical.
    """
    backlog = store.load_backlog()
    if backlog is None:
        raise BacklogNotFoundError(f"No usable backlog at {store.backlog_path}")

    if not force and backlog.complexity is not None and backlog.complexity_details is not None:
        logger.debug("Backlog already classified as %s", backlog.complexity.value)
        return backlog.complexity_details

    result = classify(backlog)
    if backlog.complexity == result.level and backlog.complexity_details == result:
        return result

    backlog.complexity = result.level
    backlog.complexity_details = result
    store.save_backlog(backlog)
    logger.info(
        "Classified backlog %r as %s (score %d, %d indicator(s))",
        backlog.project_name,
        result.level.value,
        result.score,
        len(result.indicators),
    )
    return result
