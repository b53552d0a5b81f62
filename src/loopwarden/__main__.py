"""CLI entrypoint for loopwarden.

Operator commands against one run directory. Every command prints a JSON
document to stdout; failures exit non-zero.
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from pathlib import Path
from typing import Any

from dotenv import load_dotenv
from pydantic import ValidationError

from loopwarden.backlog import backlog_stats, validate_backlog, validate_store_backlog
from loopwarden.classifier import classify_and_persist
from loopwarden.config import load_config
from loopwarden.control import LAST, ExecutionControl
from loopwarden.errors import LoopwardenError
from loopwarden.file_io import read_json_object
from loopwarden.migrations import UnsupportedSchemaVersion, upgrade_document
from loopwarden.qa_loop import qa_stats
from loopwarden.schemas import ActionResult, Backlog
from loopwarden.store import RunStore

logger = logging.getLogger(__name__)

DEFAULT_RUN_DIR = ".loopwarden"
ENV_RUN_DIR = "LOOPWARDEN_RUN_DIR"


def _load_dotenv() -> None:
    """Load .env from cwd or its parent so settings are found regardless of cwd."""
    for dir_ in (Path.cwd(), Path.cwd().parent):
        env_file = dir_ / ".env"
        if env_file.is_file():
            load_dotenv(env_file)
            return


def _emit(payload: Any) -> None:
    print(json.dumps(payload, indent=2, ensure_ascii=False))


def _emit_action(result: ActionResult) -> int:
    _emit(result.model_dump(mode="json", exclude_none=True))
    return 0 if result.success else 1


def _build_parser() -> argparse.ArgumentParser:
    """Build and return the command-line parser."""
    p = argparse.ArgumentParser(
        prog="loopwarden",
        description="loopwarden - execution control for iterative backlog runs.",
    )
    p.add_argument(
        "--run-dir",
        default=None,
        help=f"Run directory (default: ${ENV_RUN_DIR} or ./{DEFAULT_RUN_DIR})",
    )
    p.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose (DEBUG) logging.",
    )
    sub = p.add_subparsers(dest="command")

    init_p = sub.add_parser("init", help="Create the run state (and optionally import a backlog).")
    init_p.add_argument("--backlog", default="", help="Path to a prd.json to copy into the run directory")
    init_p.add_argument("--force", action="store_true", help="Reset an existing run state to RUNNING")

    sub.add_parser("status", help="Show run state and backlog progress.")

    pause_p = sub.add_parser("pause", help="Request a pause at the next item boundary.")
    pause_p.add_argument("--reason", default="Operator requested pause")

    sub.add_parser("resume", help="Resume a paused run.")

    cancel_p = sub.add_parser("cancel", help="Cancel the run at the next item boundary.")
    cancel_p.add_argument("--reason", default="Operator requested cancel")

    sub.add_parser("complete", help="Mark a running run as completed.")

    rollback_p = sub.add_parser("rollback", help="Roll back to a checkpoint and pause.")
    rollback_p.add_argument(
        "target",
        nargs="?",
        default=LAST,
        help="Checkpoint id, or 'last' to undo the most recent checkpoint (default)",
    )

    sub.add_parser("checkpoints", help="List checkpoints.")

    prune_p = sub.add_parser("prune", help="Remove old or orphaned checkpoints.")
    prune_p.add_argument("--keep-last", type=int, default=None, help="Keep only the newest N checkpoints")
    prune_p.add_argument("--orphans", action="store_true", help="Delete records no state entry references")

    classify_p = sub.add_parser("classify", help="Classify backlog complexity.")
    classify_p.add_argument("--force", action="store_true", help="Reclassify even when already classified")

    validate_p = sub.add_parser("validate", help="Validate the backlog structure.")
    validate_p.add_argument("--file", default="", help="Validate this prd.json instead of the run's")

    sub.add_parser("qa-stats", help="Summarize QA history.")
    return p


def _resolve_run_dir(args: argparse.Namespace) -> Path:
    raw = args.run_dir or os.environ.get(ENV_RUN_DIR, "").strip() or DEFAULT_RUN_DIR
    return Path(raw)


def _cmd_init(args: argparse.Namespace, store: RunStore, control: ExecutionControl) -> int:
    if args.backlog:
        payload = read_json_object(Path(args.backlog))
        if payload is None:
            print(f"Backlog file not found: {args.backlog}", file=sys.stderr)
            return 1
        validation = validate_backlog(payload)
        if not validation.valid:
            _emit(validation.model_dump(mode="json"))
            return 1
        try:
            backlog = Backlog.model_validate(upgrade_document("backlog", payload))
        except (ValidationError, UnsupportedSchemaVersion) as exc:
            _emit({"valid": False, "errors": [str(exc)], "warnings": validation.warnings})
            return 1
        if store.has_backlog():
            existing = store.load_backlog()
            backlog.revision = existing.revision if existing is not None else 0
        store.ensure_layout()
        store.save_backlog(backlog)
    state = control.initialize(reset=args.force)
    _emit({"state": state.state.value, "run_dir": str(store.root), "backlog": store.has_backlog()})
    return 0


def _cmd_status(store: RunStore, control: ExecutionControl) -> int:
    state = control.status()
    _emit(
        {
            "state": state.model_dump(mode="json"),
            "backlog": backlog_stats(store.load_backlog()).model_dump(mode="json"),
            "run_dir": store.describe(),
        }
    )
    return 0


def _cmd_prune(args: argparse.Namespace, control: ExecutionControl, default_keep: int) -> int:
    keep_last = args.keep_last if args.keep_last is not None else default_keep
    result = control.prune_checkpoints(keep_last)
    orphans = control.prune_orphaned_checkpoints() if args.orphans else 0
    _emit({"removed_checkpoints": result.removed_checkpoints, "removed_orphans": orphans})
    return 0


def _cmd_validate(args: argparse.Namespace, store: RunStore) -> int:
    if args.file:
        result = validate_backlog(read_json_object(Path(args.file)))
    else:
        result = validate_store_backlog(store)
    _emit(result.model_dump(mode="json"))
    return 0 if result.valid else 1


def _dispatch(args: argparse.Namespace, store: RunStore) -> int:
    config = load_config(store.root)
    control = ExecutionControl(store, save_retries=config.save_retries)
    command = args.command

    if command == "init":
        return _cmd_init(args, store, control)
    if command == "status":
        return _cmd_status(store, control)
    if command == "pause":
        return _emit_action(control.pause(args.reason))
    if command == "resume":
        return _emit_action(control.resume())
    if command == "cancel":
        return _emit_action(control.cancel(args.reason))
    if command == "complete":
        return _emit_action(control.complete())
    if command == "rollback":
        return _emit_action(control.rollback(args.target))
    if command == "checkpoints":
        _emit([ref.model_dump(mode="json") for ref in control.list_checkpoints()])
        return 0
    if command == "prune":
        return _cmd_prune(args, control, config.checkpoint_keep_last)
    if command == "classify":
        _emit(classify_and_persist(store, force=args.force).model_dump(mode="json"))
        return 0
    if command == "validate":
        return _cmd_validate(args, store)
    if command == "qa-stats":
        _emit(qa_stats(store).model_dump(mode="json"))
        return 0
    raise ValueError(f"Unknown command: {command}")


def main(argv: list[str] | None = None) -> int:
    """Parse arguments and dispatch to the requested command."""
    _load_dotenv()
    parser = _build_parser()
    args = parser.parse_args(argv)
    level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s  %(levelname)-8s  %(name)s  %(message)s",
        datefmt="%H:%M:%S",
    )
    if not args.command:
        parser.print_help()
        return 1

    store = RunStore(_resolve_run_dir(args))
    try:
        return _dispatch(args, store)
    except LoopwardenError as exc:
        logger.error("%s", exc)
        return 2


if __name__ == "__main__":
    sys.exit(main())
