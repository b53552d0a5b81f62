"""Runner configuration.

Values come from, lowest precedence first: model defaults, ``config.yaml`` in
the run directory, and ``LOOPWARDEN_<FIELD>`` environment variables (for
example ``LOOPWARDEN_MAX_QA_ITERATIONS=3``).
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from loopwarden.qa_loop import DEFAULT_LINT_FIX_COMMAND, MAX_QA_ITERATIONS
from loopwarden.recurring import RECURRING_ISSUE_THRESHOLD
from loopwarden.store import CONFIG_FILE

logger = logging.getLogger(__name__)

ENV_PREFIX = "LOOPWARDEN_"


class RunnerConfig(BaseModel):
    """Tunables shared by the control plane and the runner."""

    model_config = ConfigDict(extra="ignore")

    max_qa_iterations: int = Field(default=MAX_QA_ITERATIONS, ge=1)
    recurring_issue_threshold: int = Field(default=RECURRING_ISSUE_THRESHOLD, ge=1)
    # 0 keeps every checkpoint.
    checkpoint_keep_last: int = Field(default=0, ge=0)
    lint_fix_command: str = DEFAULT_LINT_FIX_COMMAND
    lock_stale_seconds: int = Field(default=900, ge=1)
    save_retries: int = Field(default=3, ge=0)

    @model_validator(mode="after")
    def _normalize(self) -> RunnerConfig:
        self.lint_fix_command = self.lint_fix_command.strip() or DEFAULT_LINT_FIX_COMMAND
        return self


def _load_yaml(path: Path) -> dict[str, Any]:
    """Load a YAML mapping, returning ``{}`` (with a warning) on any problem."""
    if not path.is_file():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except (OSError, yaml.YAMLError) as exc:
        logger.warning("Failed to load %s: %s", path, exc)
        return {}
    if not isinstance(data, dict):
        logger.warning("Ignoring %s: expected a mapping, got %s", path, type(data).__name__)
        return {}
    return data


def _env_overrides(environ: dict[str, str] | None = None) -> dict[str, str]:
    env = os.environ if environ is None else environ
    overrides: dict[str, str] = {}
    for name in RunnerConfig.model_fields:
        raw = str(env.get(f"{ENV_PREFIX}{name.upper()}", "")).strip()
        if raw:
            overrides[name] = raw
    return overrides


def load_config(
    run_dir: str | Path | None = None,
    *,
    environ: dict[str, str] | None = None,
) -> RunnerConfig:
    """Build a :class:`RunnerConfig` for *run_dir*.

    A file or environment value that fails validation is dropped with a
    warning and the remaining sources still apply.
    """
    file_values = _load_yaml(Path(run_dir) / CONFIG_FILE) if run_dir is not None else {}
    values: dict[str, Any] = {}
    for source_name, source in (("config file", file_values), ("environment", _env_overrides(environ))):
        for key, raw in source.items():
            if key not in RunnerConfig.model_fields:
                continue
            candidate = {**values, key: raw}
            try:
                RunnerConfig.model_validate(candidate)
            except ValidationError as exc:
                logger.warning("Ignoring invalid %s value for %s=%r: %s", source_name, key, raw, exc.errors()[0]["msg"])
                continue
            values[key] = raw
    return RunnerConfig.model_validate(values)
