"""CLI entry point for api-workbench.

Handles argument parsing and dispatches to run, history, show, stats,
prune or clear mode.
"""

from __future__ import annotations

import argparse
import logging
import sys
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from api_workbench.config_loader import (
    ConfigError,
    load_environment,
    load_request_definition,
    load_runtime_config,
)
from api_workbench.errors import DomainError
from api_workbench.executor import Executor
from api_workbench.history import HistoryService
from api_workbench.models import (
    ExecutionResponse,
    HistoryFilter,
    HistoryRecord,
    PageRequest,
    RuntimeConfig,
    StatusMatch,
)
from api_workbench.service import ExecutionService
from api_workbench.storage import JsonFileHistoryRepository, StorageError

DEFAULT_HISTORY_PATH = Path(".api-workbench") / "history.json"
DEFAULT_PAGE_SIZE = 20


def positive_float(value: str) -> float:
    """Parse and validate a positive float value.

    Raises:
        argparse.ArgumentTypeError: If value is not a positive number.
    """
    try:
        result = float(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"Invalid number '{value}'.")
    if result <= 0:
        raise argparse.ArgumentTypeError(f"Value must be positive, got {result}.")
    return result


def positive_int(value: str) -> int:
    """Parse and validate a positive integer value.

    Raises:
        argparse.ArgumentTypeError: If value is not a positive integer.
    """
    try:
        result = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"Invalid integer '{value}'.")
    if result <= 0:
        raise argparse.ArgumentTypeError(f"Value must be positive, got {result}.")
    return result


def non_negative_int(value: str) -> int:
    """Parse and validate a non-negative integer value."""
    try:
        result = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"Invalid integer '{value}'.")
    if result < 0:
        raise argparse.ArgumentTypeError(f"Value must not be negative, got {result}.")
    return result


def iso_datetime(value: str) -> datetime:
    """Parse an ISO 8601 date or datetime."""
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        raise argparse.ArgumentTypeError(
            f"Invalid datetime '{value}'. Expected ISO 8601 (e.g., 2026-01-31T12:00:00)."
        )


@dataclass
class CommonArgs:
    """Options shared by every subcommand."""

    config: Path | None
    history: Path | None
    verbose: int


@dataclass
class RunArgs(CommonArgs):
    """Parsed arguments for run mode."""

    request: Path
    env: Path | None
    timeout: float | None
    show_body: bool


@dataclass
class HistoryArgs(CommonArgs):
    """Parsed arguments for history mode."""

    method: str | None
    status: int | None
    exact_status: bool
    search: str | None
    since: datetime | None
    until: datetime | None
    page: int
    size: int


@dataclass
class ShowArgs(CommonArgs):
    """Parsed arguments for show mode."""

    record_id: int


@dataclass
class StatsArgs(CommonArgs):
    """Parsed arguments for stats mode."""


@dataclass
class PruneArgs(CommonArgs):
    """Parsed arguments for prune mode."""

    days: int


@dataclass
class ClearArgs(CommonArgs):
    """Parsed arguments for clear mode."""


def _add_common_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to runtime config YAML",
    )
    parser.add_argument(
        "--history",
        type=Path,
        default=None,
        help=f"History JSON file (default: config history_path or {DEFAULT_HISTORY_PATH})",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Increase log verbosity (-v info, -vv debug)",
    )


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser with all subcommands."""
    parser = argparse.ArgumentParser(
        prog="api-workbench",
        description="Execute stored API requests and query their execution history.",
    )

    subparsers = parser.add_subparsers(dest="command", required=True, help="Mode")

    # Run subcommand
    run_parser = subparsers.add_parser("run", help="Execute a request definition")
    _add_common_arguments(run_parser)
    run_parser.add_argument(
        "--request",
        type=Path,
        required=True,
        help="Path to request definition YAML",
    )
    run_parser.add_argument(
        "--env",
        type=Path,
        default=None,
        help="Path to environment YAML used for {{variable}} resolution",
    )
    run_parser.add_argument(
        "--timeout",
        type=positive_float,
        default=None,
        help="Timeout in seconds (overrides config)",
    )
    run_parser.add_argument(
        "--show-body",
        action="store_true",
        help="Print the response body",
    )

    # History subcommand
    history_parser = subparsers.add_parser("history", help="List execution history")
    _add_common_arguments(history_parser)
    history_parser.add_argument("--method", type=str, default=None, help="Filter by HTTP method")
    history_parser.add_argument(
        "--status",
        type=int,
        default=None,
        help="Filter by status band (2xx, 3xx or >=400) containing this code",
    )
    history_parser.add_argument(
        "--exact-status",
        action="store_true",
        help="Match --status exactly instead of by band",
    )
    history_parser.add_argument("--search", type=str, default=None, help="Substring of the URL")
    history_parser.add_argument("--since", type=iso_datetime, default=None, help="Executed at or after")
    history_parser.add_argument("--until", type=iso_datetime, default=None, help="Executed at or before")
    history_parser.add_argument("--page", type=non_negative_int, default=0, help="Zero-based page index")
    history_parser.add_argument("--size", type=positive_int, default=DEFAULT_PAGE_SIZE, help="Page size")

    # Show subcommand
    show_parser = subparsers.add_parser("show", help="Show one history record in detail")
    _add_common_arguments(show_parser)
    show_parser.add_argument("record_id", type=int, help="History record id")

    # Stats subcommand
    stats_parser = subparsers.add_parser("stats", help="Show history statistics")
    _add_common_arguments(stats_parser)

    # Prune subcommand
    prune_parser = subparsers.add_parser("prune", help="Delete history older than N days")
    _add_common_arguments(prune_parser)
    prune_parser.add_argument("--days", type=non_negative_int, required=True, help="Age in days")

    # Clear subcommand
    clear_parser = subparsers.add_parser("clear", help="Delete all history")
    _add_common_arguments(clear_parser)

    return parser


def parse_args(args: list[str] | None = None) -> CommonArgs:
    """Parse command-line arguments and return the typed args dataclass.

    Raises:
        SystemExit: If arguments are invalid (argparse behavior).
    """
    parser = build_parser()
    namespace = parser.parse_args(args)
    common = {
        "config": namespace.config,
        "history": namespace.history,
        "verbose": namespace.verbose,
    }

    if namespace.command == "run":
        return RunArgs(
            **common,
            request=namespace.request,
            env=namespace.env,
            timeout=namespace.timeout,
            show_body=namespace.show_body,
        )
    elif namespace.command == "history":
        return HistoryArgs(
            **common,
            method=namespace.method,
            status=namespace.status,
            exact_status=namespace.exact_status,
            search=namespace.search,
            since=namespace.since,
            until=namespace.until,
            page=namespace.page,
            size=namespace.size,
        )
    elif namespace.command == "show":
        return ShowArgs(**common, record_id=namespace.record_id)
    elif namespace.command == "stats":
        return StatsArgs(**common)
    elif namespace.command == "prune":
        return PruneArgs(**common, days=namespace.days)
    elif namespace.command == "clear":
        return ClearArgs(**common)
    else:
        # Should not happen with required=True on subparsers
        parser.error(f"Unknown command: {namespace.command}")


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    try:
        parsed = parse_args(argv)
        config = load_runtime_config(parsed.config)
        _configure_logging(parsed.verbose, config.log_level)
        history = HistoryService(JsonFileHistoryRepository(_history_path(parsed, config)))

        if isinstance(parsed, RunArgs):
            return run_request(parsed, config, history)
        elif isinstance(parsed, HistoryArgs):
            return run_history(parsed, history)
        elif isinstance(parsed, ShowArgs):
            return run_show(parsed, history)
        elif isinstance(parsed, StatsArgs):
            return run_stats(history)
        elif isinstance(parsed, PruneArgs):
            return run_prune(parsed, history)
        else:
            return run_clear(history)

    except (ConfigError, DomainError, StorageError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("\nInterrupted", file=sys.stderr)
        return 1


def _configure_logging(verbose: int, configured_level: str) -> None:
    if verbose >= 2:
        level = logging.DEBUG
    elif verbose == 1:
        level = logging.INFO
    else:
        level = logging.getLevelName(configured_level.upper())
        if not isinstance(level, int):
            level = logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


def _history_path(args: CommonArgs, config: RuntimeConfig) -> Path:
    if args.history is not None:
        return args.history
    if config.history_path:
        return Path(config.history_path)
    return DEFAULT_HISTORY_PATH


def run_request(args: RunArgs, config: RuntimeConfig, history: HistoryService) -> int:
    """Run mode: execute one request definition and record it.

    Returns 0 when a response was received (any status), 1 otherwise.
    """
    definition = load_request_definition(args.request)
    environment = load_environment(args.env) if args.env is not None else None
    timeout = args.timeout if args.timeout is not None else config.timeout_seconds

    with Executor(
        timeout=timeout,
        follow_redirects=config.follow_redirects,
        user_agent=config.user_agent,
    ) as executor:
        service = ExecutionService(executor, history, default_headers=config.default_headers)
        response = service.execute(definition, environment)

    _print_response(response, args.show_body)

    if config.history_retention_days is not None:
        history.delete_older_than(config.history_retention_days)

    return 0 if response.success else 1


def _print_response(response: ExecutionResponse, show_body: bool) -> None:
    print(f"{response.request_method} {response.request_url}")
    if response.success:
        print(f"  Status: {response.status_code} {response.status_text or ''}".rstrip())
        print(f"  Time: {response.response_time_ms} ms")
        print(f"  Size: {response.body_size} bytes")
        if response.content_type:
            print(f"  Content-Type: {response.content_type}")
        if show_body and response.body is not None:
            print()
            print(response.body)
    else:
        print(f"  Failed: {response.error_type.value}")
        print(f"  {response.error_message}")
        print(f"  Time: {response.response_time_ms} ms")


def run_history(args: HistoryArgs, history: HistoryService) -> int:
    """History mode: print one page of matching records, newest first."""
    history_filter = HistoryFilter(
        method=args.method,
        status_code=args.status,
        status_match=StatusMatch.EXACT if args.exact_status else StatusMatch.BAND,
        search=args.search,
        start=args.since,
        end=args.until,
    )
    page = history.query(history_filter, PageRequest(page=args.page, size=args.size))

    for record in page.items:
        print(_format_record_line(record))
    print()
    print(
        f"Page {page.page + 1} of {max(page.total_pages, 1)} "
        f"({len(page.items)} shown, {page.total} total)"
    )
    return 0


def _format_record_line(record: HistoryRecord) -> str:
    method = record.method.value if record.method else "-"
    if record.success:
        outcome = str(record.status_code)
    else:
        outcome = record.error_type or "failed"
    timing = f"{record.response_time} ms" if record.response_time is not None else "-"
    return (
        f"{record.id:>6}  {record.executed_at.isoformat(timespec='seconds')}  "
        f"{method:<7} {outcome:<18} {timing:>9}  {record.url}"
    )


def run_show(args: ShowArgs, history: HistoryService) -> int:
    """Show mode: print one record with parsed headers."""
    detail = history.get_by_id(args.record_id)
    record = detail.record

    print(_format_record_line(record))
    if detail.request_name:
        print(f"  Request: {detail.request_name}")
    if detail.collection_name:
        print(f"  Collection: {detail.collection_name}")
    print(f"  Auth: {record.auth_type or 'NONE'}")
    print("  Request headers:")
    for key, value in detail.request_headers:
        print(f"    {key}: {value}")
    if record.request_body:
        print("  Request body:")
        print(f"    {record.request_body}")
    if record.success:
        print("  Response headers:")
        for key, value in detail.response_headers:
            print(f"    {key}: {value}")
        if record.response_body:
            print("  Response body:")
            print(f"    {record.response_body}")
    else:
        print(f"  Error: {record.error_message}")
    return 0


def run_stats(history: HistoryService) -> int:
    """Stats mode: print aggregate statistics."""
    stats = history.get_stats()
    print(f"Total requests: {stats.total_requests}")
    print(f"Success (2xx/3xx): {stats.success_count}")
    print(f"Errors (>=400): {stats.error_count}")
    print(f"Average response time: {stats.avg_response_time:.1f} ms")
    if stats.method_breakdown:
        print("By method:")
        for method, count in sorted(stats.method_breakdown.items()):
            print(f"  {method}: {count}")
    return 0


def run_prune(args: PruneArgs, history: HistoryService) -> int:
    """Prune mode: delete records older than --days."""
    removed = history.delete_older_than(args.days)
    print(f"Removed {removed} history records older than {args.days} days")
    return 0


def run_clear(history: HistoryService) -> int:
    """Clear mode: delete all records."""
    removed = history.clear_all()
    print(f"Removed {removed} history records")
    return 0


if __name__ == "__main__":
    sys.exit(main())
