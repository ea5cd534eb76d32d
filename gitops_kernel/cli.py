"""
Command-line interface.

Usage examples::

    gitops-kernel run --config gitops.yaml
    gitops-kernel reconcile --environment staging
    gitops-kernel diff production
    gitops-kernel sync production
    gitops-kernel status
"""

import argparse
import asyncio
import json
import logging
import sys
from typing import Any, Callable, Dict, List, Optional

from gitops_kernel.api.app import build_cluster
from gitops_kernel.config import ConfigError, GitOpsConfig, configure_logging, load_config
from gitops_kernel.errors import GitOpsError
from gitops_kernel.history.store import SyncHistoryStore
from gitops_kernel.reconciler.loop import ReconcilerLoop
from gitops_kernel.source.git_source import GitManifestSource

logger = logging.getLogger(__name__)


def _build_parser() -> argparse.ArgumentParser:
    """Build the top-level argument parser with subcommands."""
    parser = argparse.ArgumentParser(
        prog="gitops-kernel",
        description="Reconcile cluster environments with manifests versioned in Git.",
    )
    parser.add_argument(
        "--config",
        default=None,
        help="Path to the YAML configuration (default: $GITOPS_KERNEL_CONFIG).",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        help="Logging level (default: $GITOPS_KERNEL_LOG_LEVEL or INFO).",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available subcommands")

    subparsers.add_parser(
        "run",
        help="Run the reconciler heartbeat until interrupted.",
    )

    reconcile_parser = subparsers.add_parser(
        "reconcile",
        help="Run a single reconciliation pass.",
    )
    reconcile_parser.add_argument(
        "--environment",
        default=None,
        help="Reconcile only this environment (default: all).",
    )

    diff_parser = subparsers.add_parser(
        "diff",
        help="Show the delta for an environment without applying it.",
    )
    diff_parser.add_argument("environment")

    sync_parser = subparsers.add_parser(
        "sync",
        help="Apply the current delta regardless of sync policy.",
    )
    sync_parser.add_argument("environment")

    status_parser = subparsers.add_parser(
        "status",
        help="Show environment status.",
    )
    status_parser.add_argument("environment", nargs="?", default=None)

    history_parser = subparsers.add_parser(
        "history",
        help="Show recorded sync operations for an environment.",
    )
    history_parser.add_argument("environment")
    history_parser.add_argument("--limit", type=int, default=20)

    return parser


def _build_reconciler(config: GitOpsConfig) -> ReconcilerLoop:
    return ReconcilerLoop(
        environments=config.environments,
        source=GitManifestSource(config.repository, cache_dir=config.cache_dir),
        cluster=build_cluster(config),
        history=SyncHistoryStore(config.history_db),
        config=config.reconciler,
    )


def _print(data: Any) -> None:
    print(json.dumps(data, indent=2, default=str))


# =========================================================================
# Subcommand handlers
# =========================================================================

def _cmd_run(reconciler: ReconcilerLoop, args: argparse.Namespace) -> int:
    logger.info(
        "Reconciling %d environment(s) every %ss",
        len(reconciler.scheduler.environments()),
        reconciler.config.heartbeat_interval_seconds,
    )
    asyncio.run(reconciler.run_async())
    return 0


def _cmd_reconcile(reconciler: ReconcilerLoop, args: argparse.Namespace) -> int:
    if args.environment:
        results = [reconciler.reconcile_environment(args.environment)]
    else:
        results = reconciler.reconcile_once()
    _print(results)
    return 1 if any(r.get("decision") == "error" for r in results) else 0


def _cmd_diff(reconciler: ReconcilerLoop, args: argparse.Namespace) -> int:
    delta = reconciler.preview(args.environment)
    for op in delta.operations:
        fields = f" ({', '.join(op.changed_fields)})" if op.changed_fields else ""
        print(f"{op.action.value:<7} {op.key}{fields}")
    for key in delta.orphans:
        print(f"orphan  {key}")
    print(delta.summary())
    return 0


def _cmd_sync(reconciler: ReconcilerLoop, args: argparse.Namespace) -> int:
    result = reconciler.trigger_sync(args.environment)
    _print(result)
    if result.get("decision") == "error":
        return 1
    return 0 if result.get("status") in (None, "succeeded") else 2


def _cmd_status(reconciler: ReconcilerLoop, args: argparse.Namespace) -> int:
    if args.environment:
        _print(reconciler.get_status(args.environment))
    else:
        _print([reconciler.get_status(name) for name in reconciler.environments()])
    return 0


def _cmd_history(reconciler: ReconcilerLoop, args: argparse.Namespace) -> int:
    reconciler.scheduler.environment(args.environment)
    operations = reconciler.history.query_by_environment(args.environment, limit=args.limit)
    _print([op.model_dump(mode="json") for op in operations])
    return 0


# =========================================================================
# Main entry point
# =========================================================================

HANDLERS: Dict[str, Callable[[ReconcilerLoop, argparse.Namespace], int]] = {
    "run": _cmd_run,
    "reconcile": _cmd_reconcile,
    "diff": _cmd_diff,
    "sync": _cmd_sync,
    "status": _cmd_status,
    "history": _cmd_history,
}


def main(argv: Optional[List[str]] = None) -> None:
    """CLI entry point."""
    parser = _build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        sys.exit(0)

    configure_logging(args.log_level)

    try:
        config = load_config(args.config)
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    handler = HANDLERS[args.command]
    try:
        exit_code = handler(_build_reconciler(config), args)
    except KeyboardInterrupt:
        print("\nInterrupted.", file=sys.stderr)
        exit_code = 130
    except GitOpsError as e:
        print(f"Error: {type(e).__name__}: {e}", file=sys.stderr)
        exit_code = 1

    sys.exit(exit_code)


if __name__ == "__main__":
    main()
