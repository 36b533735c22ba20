#!/usr/bin/env python3
"""
Batch Register - Main Entry Point

Submits a batch of registrations to a web form with bounded, adaptive
concurrency and retries.

Usage:
    # Run a batch now
    python main.py run --input data.csv --url https://example.com

    # Run a batch at a fixed time with a YAML config
    python main.py run --input data.json --config batch.yaml --at 15:00:00

    # Check input and configuration without submitting anything
    python main.py validate --input data.csv --config batch.yaml
"""

import sys
import asyncio
import argparse
import logging

from core.config import load_config
from core.errors import SchemaError
from core.logging_config import setup_logging

logger = logging.getLogger(__name__)


def cli_overrides(args) -> dict:
    """CLI flags that map onto configuration keys (None means not given)."""
    return {
        "target_url": args.url,
        "client_kind": args.client,
        "max_attempts": args.max_attempts,
        "initial_concurrency": args.concurrency,
        "peak_concurrency": args.max_concurrency,
        "output_dir": args.output_dir,
        "fallback_check_url": args.fallback_url,
        "log_level": args.log_level,
        "headless": False if getattr(args, "headed", False) else None,
        "preflight_enabled": False if getattr(args, "no_preflight", False) else None,
    }


async def run_batch(config, input_path: str, start_at: str = None) -> int:
    """Run one batch; returns the process exit code."""
    from campaigns.batch_runner import BatchRunner

    runner = BatchRunner(config)
    runner.install_signal_handlers()
    summary = await runner.run(input_path, start_at=start_at)
    if summary["interrupted"]:
        logger.warning("Batch interrupted; unfinished items are reported as interrupted")
    return 0


def validate_batch(config, input_path: str) -> int:
    """Load and deduplicate the input, report problems, submit nothing."""
    from campaigns.records_io import load_records
    from core.deduplicator import RecordDeduplicator

    problems = config.validate()
    for problem in problems:
        logger.error(f"Config: {problem}")

    rows = load_records(input_path)
    result = RecordDeduplicator(
        identifier_max_digits=config.IDENTIFIER_MAX_DIGITS,
        phone_max_digits=config.PHONE_MAX_DIGITS,
    ).deduplicate(rows)

    logger.info(
        f"{len(rows)} rows: {len(result.accepted)} unique, "
        f"{len(result.rejected)} rejected, {len(result.duplicates)} duplicates"
    )
    for rejected in result.rejected:
        logger.warning(f"Row {rejected.index + 1}: {rejected.reason}")
    return 1 if problems else 0


def main(argv=None) -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Batch Register - resilient batch form submission"
    )

    subparsers = parser.add_subparsers(dest='command', help='Command to run')

    def add_common(sub):
        sub.add_argument('--input', required=True, help='Input file (.csv or .json)')
        sub.add_argument('--config', help='Path to YAML config')
        sub.add_argument('--url', help='Target form URL')
        sub.add_argument('--client', choices=['http', 'browser'], help='Form client kind')
        sub.add_argument('--max-attempts', type=int, help='Attempts per record')
        sub.add_argument('--concurrency', type=int, help='Initial concurrency limit')
        sub.add_argument('--max-concurrency', type=int, help='Concurrency ceiling')
        sub.add_argument('--output-dir', help='Directory for report files')
        sub.add_argument('--fallback-url', help='Status-check endpoint URL')
        sub.add_argument('--log-level', help='Log level (DEBUG, INFO, ...)')

    # Run command
    run_parser = subparsers.add_parser('run', help='Submit a batch')
    add_common(run_parser)
    run_parser.add_argument('--at', help='Start at HH:MM[:SS] (next occurrence)')
    run_parser.add_argument('--headed', action='store_true', help='Show the browser window')
    run_parser.add_argument('--no-preflight', action='store_true', help='Skip the reachability wait')

    # Validate command
    validate_parser = subparsers.add_parser('validate', help='Check input and config only')
    add_common(validate_parser)

    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 0

    try:
        config = load_config(args.config, cli_overrides(args))
    except (OSError, ValueError, KeyError) as e:
        print(f"❌ Invalid configuration: {e}", file=sys.stderr)
        return 1

    setup_logging(level=config.LOG_LEVEL, log_dir=config.LOG_DIR)

    try:
        if args.command == 'validate':
            return validate_batch(config, args.input)

        problems = config.validate()
        if problems:
            for problem in problems:
                logger.error(f"Config: {problem}")
            return 1
        return asyncio.run(run_batch(config, args.input, args.at))

    except SchemaError as e:
        logger.error(f"Input schema error: {e.message}")
        return 1
    except (OSError, ValueError) as e:
        logger.error(f"Cannot process input: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
