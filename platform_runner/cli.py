"""CLI entry point for the platform test runner."""

import argparse
import asyncio
import json
import logging
import sys
from collections.abc import Sequence
from pathlib import Path

from platform_runner.aggregator import RunAggregator
from platform_runner.config import RunnerConfig
from platform_runner.config_loader import load_config
from platform_runner.errors import ConfigError, PlatformNotFoundError, UsageError
from platform_runner.orchestrator import RunOrchestrator
from platform_runner.reporter import Reporter, format_output, log_results_summary

EX_USAGE = 64
EX_INTERRUPTED = 130


async def run(config: RunnerConfig) -> int:
    """Run every configured suite and return the exit code."""
    log = logging.getLogger("platform_runner")

    if not config.paths:
        raise UsageError("No test suites given")

    registry = config.runtime_registry()
    aggregator = RunAggregator(strict_completion=config.strict_completion)
    reporter = Reporter(aggregator, log)
    reporter.start()
    orchestrator = RunOrchestrator(
        config=config, aggregator=aggregator, registry=registry
    )
    try:
        summary = await orchestrator.run(config.paths)
        await reporter.wait()
    finally:
        await reporter.close()

    log_results_summary(log, summary)
    print(json.dumps(format_output(summary), indent=2))
    return summary.exit_code


async def run_from_args(args: argparse.Namespace) -> int:
    config = await load_config(
        args.config,
        {
            "paths": args.paths or None,
            "platforms": args.platform,
            "compiler": args.compiler,
            "timeout": args.timeout,
            "load_timeout": args.load_timeout,
            "retry": args.retry,
            "concurrency": args.concurrency,
            "global_timeout": args.global_timeout,
            "strict_completion": args.strict_completion or None,
            "debug": args.debug or None,
        },
    )
    return await run(config)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="platform-test",
        description="Run test suites on one or more platforms",
    )
    parser.add_argument("paths", nargs="*", type=Path, help="Test suites to run")
    parser.add_argument(
        "-p",
        "--platform",
        action="append",
        help="Platform to run on (vm, node, chrome, firefox, ...); repeatable",
    )
    parser.add_argument(
        "-c", "--compiler", help="Compiler to use instead of each platform default"
    )
    parser.add_argument(
        "--timeout",
        type=float,
        help="Seconds a test may run without reporting before it times out",
    )
    parser.add_argument(
        "--load-timeout", type=float, help="Seconds a suite may take to load"
    )
    parser.add_argument(
        "--retry", type=int, help="Number of times to retry a failing test"
    )
    parser.add_argument(
        "-j",
        "--concurrency",
        type=int,
        help="Number of suites to run at the same time",
    )
    parser.add_argument(
        "--global-timeout", type=float, help="Seconds the whole run may take"
    )
    parser.add_argument(
        "--config",
        type=Path,
        help="Configuration file (defaults to platform_test.yaml if present)",
    )
    parser.add_argument(
        "--strict-completion",
        action="store_true",
        help="Fail a suite when a test reports completion twice",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Pause browsers after each suite loads, for attaching a debugger",
    )
    parser.add_argument(
        "--verbose", action="store_true", help="Enable debug logging"
    )
    return parser


def main(argv: Sequence[str] | None = None) -> None:
    """CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stderr,
    )
    log = logging.getLogger("platform_runner")

    try:
        exit_code = asyncio.run(run_from_args(args))
    except (UsageError, ConfigError, PlatformNotFoundError) as e:
        log.error("%s", e)
        exit_code = EX_USAGE
    except KeyboardInterrupt:
        log.warning("Interrupted, all platforms were closed")
        exit_code = EX_INTERRUPTED
    sys.exit(exit_code)


if __name__ == "__main__":  # pragma: no cover
    main()
