"""CLI entry point for leakwatch.

The pytest plugin does the per-test work; this command inspects its
artifacts offline: the flaky history file, dumped heap snapshots, and the
effective configuration.
"""

from __future__ import annotations

import argparse
import pickle
import sys
from pathlib import Path

import orjson
from rich.console import Console
from rich.table import Table

from . import __version__
from .config import ENVIRONMENT_PROFILES, config_to_dict, load_config
from .console import FLAKY_ACTIONS, build_flaky_table
from .exceptions import LeakwatchError
from .flaky import analyze_history, read_history
from .heap_snapshot import top_allocations
from .logging_config import get_logger
from .models import FlakyRun

logger = get_logger("cli")

DEFAULT_HEAP_LIMIT = 10


def handle_error(e: BaseException) -> int:
    if isinstance(e, LeakwatchError):
        print(f"Error: {e.message}", file=sys.stderr)
        return 1
    if isinstance(e, (FileNotFoundError, ValueError)):
        print(f"Error: {e}", file=sys.stderr)
        return 1
    logger.exception("Unexpected error")
    print("Error: An unexpected error occurred. Check logs for details.", file=sys.stderr)
    return 1


def _trim_history(history: dict[str, list[FlakyRun]], max_runs: int) -> dict[str, list[FlakyRun]]:
    """Keep only the newest max_runs entries per test, as save_history would."""
    return {name: runs[-max_runs:] for name, runs in history.items()}


def _cmd_flaky(args: argparse.Namespace, console: Console) -> int:
    config = load_config(args.config, args.env)
    flaky_config = config.flaky
    if args.threshold is not None:
        flaky_config.flaky_threshold = args.threshold
    if args.max_runs is not None:
        flaky_config.max_history_runs = args.max_runs
    if not 0 < flaky_config.flaky_threshold <= 1:
        print("Error: --threshold must be > 0 and <= 1", file=sys.stderr)
        return 1
    if flaky_config.max_history_runs < 1:
        print("Error: --max-runs must be >= 1", file=sys.stderr)
        return 1

    history_path = Path(args.history or flaky_config.history_file)
    history = _trim_history(read_history(history_path), flaky_config.max_history_runs)
    flaky = analyze_history(
        history,
        flaky_config.flaky_threshold,
        window_size=flaky_config.window_size,
        min_runs=flaky_config.min_runs,
    )

    console.print(f"History: {history_path} ({len(history)} test(s))")
    if flaky:
        console.print(f"[bold yellow]FLAKY TESTS DETECTED: {len(flaky)} potentially unstable test(s)[/]")
        console.print(build_flaky_table(flaky))
        for line in FLAKY_ACTIONS:
            console.print(f"[dim]- {line}[/]")
    else:
        console.print("[green]No flaky tests detected in recent history[/]")

    if args.json_path:
        out = Path(args.json_path)
        try:
            out.parent.mkdir(parents=True, exist_ok=True)
            out.write_bytes(orjson.dumps([f.to_dict() for f in flaky], option=orjson.OPT_INDENT_2))
        except OSError as e:
            print(f"Error: cannot write {out}: {e}", file=sys.stderr)
            return 1
        console.print(f"JSON written: {out}")

    if args.fail_on_flaky and flaky:
        return 1
    return 0


def _cmd_heap(args: argparse.Namespace, console: Console) -> int:
    if args.limit < 1:
        print("Error: --limit must be >= 1", file=sys.stderr)
        return 1
    try:
        stats = top_allocations(args.path, limit=args.limit)
    except FileNotFoundError:
        print(f"Error: heap snapshot not found: {args.path}", file=sys.stderr)
        return 1
    except (OSError, EOFError, pickle.UnpicklingError, AttributeError) as e:
        print(f"Error: cannot load heap snapshot {args.path}: {e}", file=sys.stderr)
        return 1

    table = Table(title=f"Top {args.limit} allocation sites")
    table.add_column("#", justify="right")
    table.add_column("Location")
    table.add_column("Size (KiB)", justify="right")
    table.add_column("Blocks", justify="right")
    for i, (location, size, count) in enumerate(stats, 1):
        table.add_row(str(i), location, f"{size / 1024:.1f}", str(count))
    console.print(table)
    if not stats:
        console.print("[dim]Snapshot holds no traced allocations[/]")
    return 0


def _cmd_config(args: argparse.Namespace, console: Console) -> int:
    config = load_config(args.config, args.env)
    console.print_json(orjson.dumps(config_to_dict(config)).decode("utf-8"))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="leakwatch",
        description="Inspect leakwatch artifacts: flaky test history, heap snapshots, effective config. "
        "Per-test tracking runs inside pytest with --leakwatch.",
    )
    parser.add_argument(
        "-v",
        "--version",
        action="version",
        version=f"leakwatch {__version__}",
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    flaky = sub.add_parser("flaky", help="Analyze a flaky test history file")
    flaky.add_argument(
        "--history",
        metavar="PATH",
        default=None,
        help="History JSON file (default: flaky.history_file from config)",
    )
    flaky.add_argument("--threshold", type=float, default=None, metavar="F", help="Override flaky threshold (0-1]")
    flaky.add_argument("--max-runs", type=int, default=None, metavar="N", dest="max_runs", help="Only consider the newest N runs per test")
    flaky.add_argument("--json", metavar="PATH", dest="json_path", help="Also write flaky tests as JSON to PATH")
    flaky.add_argument("--fail-on-flaky", action="store_true", dest="fail_on_flaky", help="Exit 1 if any flaky test is found")
    flaky.add_argument("-f", "--config", default=None, help="Path to YAML config")
    flaky.add_argument("--env", default=None, choices=sorted(ENVIRONMENT_PROFILES), help="Config profile")
    flaky.set_defaults(handler=_cmd_flaky)

    heap = sub.add_parser("heap", help="Show top allocation sites of a heap snapshot")
    heap.add_argument("path", help="Snapshot file (.tracemalloc)")
    heap.add_argument("--limit", type=int, default=DEFAULT_HEAP_LIMIT, metavar="N", help="Number of sites to show (default: 10)")
    heap.set_defaults(handler=_cmd_heap)

    cfg = sub.add_parser("config", help="Print the effective configuration")
    cfg.add_argument("-f", "--config", default=None, help="Path to YAML config")
    cfg.add_argument("--env", default=None, choices=sorted(ENVIRONMENT_PROFILES), help="Config profile")
    cfg.set_defaults(handler=_cmd_config)
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command is None:
        parser.print_help(sys.stderr)
        return 1

    console = Console()
    try:
        return args.handler(args, console)
    except KeyboardInterrupt:
        print("\nInterrupted.", file=sys.stderr)
        return 130
    except Exception as e:
        return handle_error(e)


if __name__ == "__main__":
    sys.exit(main())
