"""loopwarden - execution control, quality validation and escalation for iterative backlog runs."""

from importlib.metadata import PackageNotFoundError, version

from loopwarden.classifier import classify, classify_and_persist
from loopwarden.config import RunnerConfig, load_config
from loopwarden.control import ExecutionControl
from loopwarden.qa_loop import QASession
from loopwarden.runner import BacklogRunner
from loopwarden.store import RunStore

__all__ = [
    "BacklogRunner",
    "ExecutionControl",
    "QASession",
    "RunStore",
    "RunnerConfig",
    "classify",
    "classify_and_persist",
    "load_config",
]

try:
    __version__ = version("loopwarden")
except PackageNotFoundError:
    __version__ = "0.0.0"
