"""
Command-line interface for stackrestore.

Notes
-----
The CLI is intentionally thin. It parses arguments and delegates to engine modules.

Exit codes
----------
- 0: restore COMPLETED, manual rollback succeeded, status printed.
- 1: restore FAILED or ROLLED_BACK; manual rollback failed.
- 2: precondition or usage error (invalid mode, operation in progress,
  missing configuration, unknown operation, no snapshot) raised before a
  restore starts. An internal error after submission exits 1, or 3 when the
  recorded rollback failed.
- 3: restore FAILED and its rollback failed; manual intervention required.
"""

from __future__ import annotations

import argparse
import json
import signal
import threading
from pathlib import Path
from types import FrameType

from restore_engine.config import load_settings
from restore_engine.data_models import OperationStatus, RestoreMode
from restore_engine.errors import RestoreEngineError
from restore_engine.logging_setup import get_logger, setup_logging
from restore_engine.orchestrator import RestoreOrchestrator, build_orchestrator
from restore_engine.paths import EnginePaths, ensure_engine_directories, resolve_engine_paths
from restore_engine.recorder import OutcomeRecorder
from restore_engine.status_query import (
    OperationView,
    StatusQuery,
    render_operation_detail,
    render_operation_table,
)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_USAGE = 2
EXIT_MANUAL_INTERVENTION = 3

logger = get_logger("cli")


def _global_options() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--data-root",
        type=Path,
        default=None,
        help="Override the stackrestore data root (records, snapshots, lock). Defaults to STACKRESTORE_DATA_ROOT.",
    )
    common.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Settings file. Defaults to <data_root>/restore_config.json.",
    )
    common.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Console log level (default: INFO).",
    )
    common.add_argument("--log-file", type=Path, default=None, help="Also write a detailed log to this file.")
    common.add_argument("--debug", action="store_true", help="Verbose output with source locations.")
    return common


def build_parser() -> argparse.ArgumentParser:
    """
    Build and return the top-level argument parser.

    Returns
    -------
    argparse.ArgumentParser
        Configured parser.
    """
    parser = argparse.ArgumentParser(
        prog="stackrestore",
        description="Restore an application stack (database, volumes, configuration) from a backup",
    )
    sub = parser.add_subparsers(dest="command", required=True)
    common = _global_options()

    run_p = sub.add_parser(
        "run",
        parents=[common],
        help="Run a restore: preflight, snapshot, restore, validate, health-check, cleanup",
    )
    run_p.add_argument("backup_reference", help="Backup archive path or file:// URI")
    run_p.add_argument(
        "mode",
        nargs="?",
        default=RestoreMode.FULL.value,
        help=f"Restore mode: {', '.join(m.value for m in RestoreMode)} (default: full)",
    )
    run_p.add_argument(
        "--force",
        action="store_true",
        help="Break the restore lock if it is provably stale (same host, dead PID).",
    )
    run_p.add_argument(
        "--break-lock",
        action="store_true",
        help="Break the restore lock even if it is not provably stale. Dangerous.",
    )

    status_p = sub.add_parser("status", parents=[common], help="Show one operation, or list recent operations")
    status_p.add_argument("operation_id", nargs="?", default=None, help="Operation to show")
    status_p.add_argument("--limit", type=int, default=20, help="Maximum operations to list (default: 20).")
    status_p.add_argument("--json", action="store_true", help="Print JSON instead of text.")

    rollback_p = sub.add_parser(
        "rollback",
        parents=[common],
        help="Replay the rollback snapshot captured by a finished operation",
    )
    rollback_p.add_argument("operation_id", help="Operation whose snapshot to replay")
    rollback_p.add_argument(
        "--force",
        action="store_true",
        help="Break the restore lock if it is provably stale (same host, dead PID).",
    )
    rollback_p.add_argument(
        "--break-lock",
        action="store_true",
        help="Break the restore lock even if it is not provably stale. Dangerous.",
    )

    return parser


def exit_code_for(view: OperationView) -> int:
    """Map a finished operation to the process exit code."""
    if view.status is OperationStatus.COMPLETED:
        return EXIT_OK
    if view.needs_manual_intervention:
        return EXIT_MANUAL_INTERVENTION
    return EXIT_FAILED


def _resolve_paths(args: argparse.Namespace) -> EnginePaths:
    paths = resolve_engine_paths(args.data_root)
    ensure_engine_directories(paths)
    return paths


def _build(args: argparse.Namespace, paths: EnginePaths) -> RestoreOrchestrator:
    settings = load_settings(args.config or paths.config_path)
    return build_orchestrator(paths, settings)


def _run(args: argparse.Namespace) -> int:
    paths = _resolve_paths(args)
    orchestrator = _build(args, paths)
    operation_id = orchestrator.submit(
        args.backup_reference, args.mode, force=args.force, break_lock=args.break_lock
    )
    print(f"Operation: {operation_id}")

    def _on_interrupt(signum: int, frame: FrameType | None) -> None:
        _ = (signum, frame)
        # Off the signal frame: cancel() takes locks the interrupted code may hold.
        threading.Thread(target=orchestrator.cancel, args=(operation_id,), daemon=True).start()

    previous = signal.signal(signal.SIGINT, _on_interrupt)
    try:
        final = orchestrator.run(operation_id)
    except RestoreEngineError as exc:
        logger.debug("Restore %s aborted with %s", operation_id, exc.code)
        print(f"ERROR: {exc}")
        return _aborted_exit_code(orchestrator.recorder, operation_id)
    finally:
        signal.signal(signal.SIGINT, previous)

    view = OperationView.from_operation(final)
    print(render_operation_detail(view))
    return exit_code_for(view)


def _aborted_exit_code(recorder: OutcomeRecorder, operation_id: str) -> int:
    """
    Exit code for a submitted restore whose run ended in an internal error.

    The run already happened, so this is never a usage error: the recorded
    outcome decides between 1 and 3, and an unreadable record counts as failed.
    """
    try:
        view = OperationView.from_operation(recorder.get(operation_id))
    except RestoreEngineError as exc:
        logger.warning("Could not read the record of restore %s: %s", operation_id, exc)
        return EXIT_FAILED
    print(render_operation_detail(view))
    code = exit_code_for(view)
    return EXIT_FAILED if code == EXIT_OK else code


def _status(args: argparse.Namespace) -> int:
    paths = _resolve_paths(args)
    query = StatusQuery(OutcomeRecorder(paths.operations_root))

    if args.operation_id:
        view = query.get(args.operation_id)
        if args.json:
            print(json.dumps(view.to_dict(), indent=2, sort_keys=True))
        else:
            print(render_operation_detail(view))
        return EXIT_OK

    if args.limit < 0:
        print("ERROR: --limit must be >= 0")
        return EXIT_USAGE
    views = query.list(limit=args.limit)
    if args.json:
        print(json.dumps([v.to_dict() for v in views], indent=2, sort_keys=True))
    else:
        print(render_operation_table(views))
    return EXIT_OK


def _rollback(args: argparse.Namespace) -> int:
    paths = _resolve_paths(args)
    orchestrator = _build(args, paths)
    result = orchestrator.rollback(args.operation_id, force=args.force, break_lock=args.break_lock)
    print(f"Rollback of {args.operation_id}: {'succeeded' if result.success else 'FAILED'}")
    print(result.details)
    return EXIT_OK if result.success else EXIT_FAILED


def main(argv: list[str] | None = None) -> int:
    """
    CLI entry point.

    Parameters
    ----------
    argv:
        Optional argument vector. If None, argparse uses sys.argv.

    Returns
    -------
    int
        Process exit code.
    """
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(level=args.log_level, log_file=args.log_file, debug=args.debug)

    handlers = {"run": _run, "status": _status, "rollback": _rollback}
    handler = handlers.get(args.command)
    if handler is None:
        parser.print_help()
        return EXIT_USAGE

    try:
        return handler(args)
    except RestoreEngineError as exc:
        logger.debug("Command %s failed with %s", args.command, exc.code)
        print(f"ERROR: {exc}")
        return EXIT_USAGE


if __name__ == "__main__":
    raise SystemExit(main())
