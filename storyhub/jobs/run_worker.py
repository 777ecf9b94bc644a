#!/usr/bin/env python3
"""
Standalone generation scheduler process.

Runs a capped batch every CRON_INTERVAL_MINUTES until stopped.

Usage:
    python -m storyhub.jobs.run_worker
"""

import asyncio
import signal

from storyhub.config import config
from storyhub.database import Database
from storyhub.jobs.runner import create_runner
from storyhub.jobs.scheduler import GenerationScheduler
from storyhub.utils.logging import configure_logging, get_log_buffer, get_logger

logger = get_logger("worker")


async def main():
    """Run the generation scheduler as a standalone process."""
    configure_logging(config.LOG_LEVEL)

    logger.info(
        "Starting story generation worker",
        database=config.database_path,
        interval_minutes=config.CRON_INTERVAL_MINUTES,
        batch_cap=config.CRON_BATCH_LIMIT,
        generate_audio=config.GENERATE_AUDIO
    )

    missing = config.missing_settings(generate_audio=config.GENERATE_AUDIO)
    if missing:
        logger.warning("Worker started with missing settings; batches will fail", missing=missing)

    db = Database(config.database_path)
    scheduler = None

    # Handle shutdown signals gracefully
    shutdown_event = asyncio.Event()

    def handle_shutdown(signum, frame):
        logger.info(f"Received signal {signum}, shutting down...")
        shutdown_event.set()

    signal.signal(signal.SIGTERM, handle_shutdown)
    signal.signal(signal.SIGINT, handle_shutdown)

    try:
        await db.connect()
        scheduler = GenerationScheduler(create_runner(db))
        scheduler.start()

        # Keep running until shutdown signal
        await shutdown_event.wait()

    finally:
        if scheduler is not None:
            scheduler.shutdown()
        await db.close()
        stats = get_log_buffer().get_stats()
        logger.info("Worker stopped", errors=stats["error_count"], warnings=stats["warning_count"])


def run():
    asyncio.run(main())


if __name__ == "__main__":
    run()
