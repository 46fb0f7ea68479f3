"""Command-line entry point for clifana.

Usage:
    clifana [--config PATH] [-d]                 interactive dashboard
    clifana query cpu -s default -e job=node     one-shot query to stdout
    clifana query cpu --range 3600 --step 60
    clifana dump-config > config.toml
"""

from __future__ import annotations

import argparse
import logging
import sys
import time
from pathlib import Path

from clifana.app import TerminalSetupError, app_version
from clifana.config import AppConfig, ConfigError, dump_default_config, load_config
from clifana.dashboard import run_dashboard
from clifana.logsink import LogRing, resolve_verbosity, setup_logging
from clifana.query import QueryError, QueryExecutor, TimeRange, parse_substitutions

_log = logging.getLogger("clifana.cli")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="clifana",
        description="Terminal dashboard for Prometheus-compatible query APIs.",
    )
    parser.add_argument(
        "--version", action="version", version=f"%(prog)s {app_version()}"
    )
    parser.add_argument(
        "-c",
        "--config",
        type=Path,
        default=None,
        metavar="FILE",
        help="Path to TOML config file (default: ./config.toml)",
    )
    parser.add_argument(
        "-d",
        "--debug",
        action="count",
        default=0,
        help="Raise log verbosity (repeat for more)",
    )
    sub = parser.add_subparsers(dest="command")

    sub.add_parser("dashboard", help="Interactive chart and log view (default)")

    query = sub.add_parser("query", help="Run one query and print its samples")
    query.add_argument("query", help="Query name from the config")
    query.add_argument(
        "-s", "--server", default="default", help="Server name (default: default)"
    )
    query.add_argument(
        "-e",
        "--eval",
        action="append",
        default=[],
        metavar="KEY=VALUE",
        help="Template substitution; repeatable",
    )
    query.add_argument(
        "--range",
        type=float,
        default=None,
        metavar="SECONDS",
        help="Run a range query over the last SECONDS instead of an instant query",
    )
    query.add_argument(
        "--step",
        type=float,
        default=60.0,
        metavar="SECONDS",
        help="Range query resolution (default: 60)",
    )

    sub.add_parser("dump-config", help="Print the default config as TOML")
    return parser


def run_query(config: AppConfig, args: argparse.Namespace) -> int:
    """One-shot query: samples to stdout, failures to stderr and the log."""
    executor = QueryExecutor.from_config(config)
    time_range = TimeRange(args.range, args.step) if args.range else None
    try:
        variables = parse_substitutions(args.eval)
        samples = executor.execute(args.server, args.query, time_range, variables)
    except QueryError as e:
        _log.warning("query %s/%s failed: %s", args.server, args.query, e)
        print(f"clifana: {e}", file=sys.stderr)
        return 1

    for s in samples:
        stamp = time.strftime("%Y-%m-%dT%H:%M:%S", time.localtime(s.timestamp))
        print(f"{stamp}\t{s.timestamp:.3f}\t{s.value:g}")
    _log.info("query %s/%s: %d sample(s)", args.server, args.query, len(samples))
    return 0


def main(argv: list[str] | None = None) -> None:
    args = build_parser().parse_args(argv)

    if args.command == "dump-config":
        sys.stdout.write(dump_default_config())
        return

    try:
        config = load_config(args.config)
    except ConfigError as e:
        print(f"clifana: {e}", file=sys.stderr)
        raise SystemExit(1) from e

    ring = LogRing(config.log_capacity)
    setup_logging(
        resolve_verbosity(config.log_level, args.debug), ring, config.log_file
    )
    _log.info("loaded %s: %d server(s), %d query(ies)",
              config.source, len(config.servers), len(config.queries))

    if args.command == "query":
        raise SystemExit(run_query(config, args))

    try:
        run_dashboard(config, ring)
    except TerminalSetupError as e:
        print(f"clifana: {e}", file=sys.stderr)
        raise SystemExit(1) from e
    except KeyboardInterrupt:
        pass
    except Exception:
        # Terminal is already restored; keep the traceback in the log file
        _log.exception("dashboard crashed")
        raise


if __name__ == "__main__":
    main()
