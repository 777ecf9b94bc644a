#!/usr/bin/env python3
"""
Run one batch of story generation and exit.

Usage:
    python -m storyhub.jobs.run_once                     # One job
    python -m storyhub.jobs.run_once --limit 5           # Up to 5 jobs
    python -m storyhub.jobs.run_once --dry-run           # Claim without generating
    python -m storyhub.jobs.run_once --peek              # Show the next job, claim nothing
    python -m storyhub.jobs.run_once --with-audio        # Also narrate and upload

Exits with status 1 if any job failed or the run could not start.
"""

import argparse
import asyncio
import json
import sys
from typing import Optional, Sequence

from storyhub.config import ConfigurationError, cap_limit, config
from storyhub.database import Database, JobQueueService
from storyhub.jobs.runner import GenerationRunner, create_runner
from storyhub.utils.logging import configure_logging, get_log_buffer


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Generate stories for queued scenarios")
    parser.add_argument(
        "--limit",
        "-l",
        type=float,
        default=1,
        help=f"Jobs to process (default: 1, max: {config.MANUAL_BATCH_LIMIT_MAX})"
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Claim jobs without generating anything (locks expire after the lock timeout)"
    )
    parser.add_argument(
        "--peek",
        action="store_true",
        help="Print the next claimable scenario without claiming it"
    )
    parser.add_argument(
        "--with-audio",
        action="store_true",
        help="Generate narration audio and upload it"
    )
    parser.add_argument(
        "--lock-id-prefix",
        default="manual",
        help="Prefix for the lock id recorded on claimed jobs (default: manual)"
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable debug logging"
    )
    return parser


async def peek(db: Database) -> int:
    jobs = JobQueueService(
        db,
        max_attempts=config.JOB_MAX_ATTEMPTS,
        lock_timeout_minutes=config.JOB_LOCK_TIMEOUT_MINUTES
    )
    created = await jobs.create_missing_jobs()
    scenario = await jobs.peek_next_scenario()

    print(json.dumps({
        "newJobsCreated": created,
        "next": scenario.to_dict() if scenario else None,
        "counts": await jobs.get_status_counts(),
        "logs": {
            "stats": get_log_buffer().get_stats(),
            "errors": get_log_buffer().get_errors(limit=20)
        }
    }, indent=2, ensure_ascii=False, default=str))
    return 0


async def run_batch(args: argparse.Namespace, runner: GenerationRunner) -> int:
    try:
        result = await runner.run(
            limit=cap_limit(args.limit, config.MANUAL_BATCH_LIMIT_MAX),
            dry_run=args.dry_run,
            generate_audio=args.with_audio,
            lock_prefix=args.lock_id_prefix
        )
    except ConfigurationError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        missing = config.missing_settings(generate_audio=args.with_audio)
        if missing:
            print(f"Missing settings: {', '.join(missing)}", file=sys.stderr)
        return 1

    print(json.dumps(result.to_dict(), indent=2, ensure_ascii=False))
    if result.failed:
        for entry in reversed(get_log_buffer().get_errors(limit=result.failed)):
            print(f"{entry['timestamp']} {entry['source']}: {entry['message']} {entry['metadata']}", file=sys.stderr)
        return 1
    return 0


async def main_async(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging("DEBUG" if args.verbose else config.LOG_LEVEL)

    db = Database(config.database_path)
    await db.connect()
    try:
        if args.peek:
            return await peek(db)
        return await run_batch(args, create_runner(db))
    finally:
        await db.close()


def main(argv: Optional[Sequence[str]] = None):
    try:
        sys.exit(asyncio.run(main_async(argv)))
    except KeyboardInterrupt:
        print("\nStopped by user", file=sys.stderr)
        sys.exit(130)


if __name__ == "__main__":
    main()
