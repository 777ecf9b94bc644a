"""
Scheduled story generation.

Runs a small batch on a fixed interval so the catalog fills up
gradually without tripping vendor rate limits. Each run is capped at
CRON_BATCH_LIMIT jobs regardless of what the caller asks for.
"""

from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from storyhub.config import cap_limit, config
from storyhub.jobs.runner import BatchResult, GenerationRunner
from storyhub.utils.logging import get_logger

logger = get_logger("scheduler")


class GenerationScheduler:
    """
    Periodic batch trigger backed by APScheduler.

    Overlapping runs are skipped: APScheduler's max_instances=1 covers
    the interval job, _is_running covers direct run_batch() calls.
    """

    def __init__(
        self,
        runner: GenerationRunner,
        interval_minutes: Optional[int] = None,
        batch_cap: Optional[int] = None,
        generate_audio: Optional[bool] = None,
    ):
        self.runner = runner
        self.interval_minutes = interval_minutes or config.CRON_INTERVAL_MINUTES
        self.batch_cap = batch_cap or config.CRON_BATCH_LIMIT
        self.generate_audio = generate_audio if generate_audio is not None else config.GENERATE_AUDIO

        self.scheduler = AsyncIOScheduler()
        self._is_running = False
        self.last_result: Optional[BatchResult] = None

    async def run_batch(self, limit: Optional[int] = None) -> Optional[BatchResult]:
        """
        Run one capped batch. Returns None if a batch is already in progress.
        """
        if self._is_running:
            logger.debug("Skipping scheduled run - previous batch still running")
            return None

        self._is_running = True
        try:
            result = await self.runner.run(
                limit=cap_limit(limit, self.batch_cap),
                generate_audio=self.generate_audio,
                lock_prefix="cron"
            )
            self.last_result = result
            return result
        finally:
            self._is_running = False

    async def _scheduled_run(self):
        # A failed batch must not stop the interval job; the next run tries again
        try:
            await self.run_batch(self.batch_cap)
        except Exception as e:
            logger.error("Scheduled batch failed", error=str(e), error_type=type(e).__name__)

    def start(self):
        """Start the interval job."""
        self.scheduler.add_job(
            self._scheduled_run,
            trigger=IntervalTrigger(minutes=self.interval_minutes),
            id="story_generation",
            name="Generate queued stories",
            replace_existing=True,
            max_instances=1
        )

        self.scheduler.start()
        logger.info(
            "Generation scheduler started",
            interval_minutes=self.interval_minutes,
            batch_cap=self.batch_cap,
            generate_audio=self.generate_audio
        )

    def shutdown(self):
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        logger.info("Generation scheduler stopped")

    @property
    def is_running(self) -> bool:
        return self._is_running
