"""
Batch runner for story generation jobs.

One run = reconcile missing jobs, then up to `limit` sequential
claim -> pipeline cycles under a single lock id. Shared by the
scheduler and the one-shot CLI.
"""

import asyncio
import math
import random
import string
import sys
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from storyhub.config import AppConfig, config
from storyhub.database import Database, JobQueueService, StoryService
from storyhub.storyteller.pipeline import GenerationPipeline
from storyhub.storyteller.siliconflow import SpeechClient, StoryTextClient
from storyhub.storyteller.storage import AudioStorage
from storyhub.utils.logging import job_logger as logger


ERROR_DISPLAY_LIMIT = 500

_LOCK_ALPHABET = string.digits + string.ascii_lowercase


def clamp_limit(limit: Optional[float]) -> int:
    """Floor a requested batch size to an int, with a minimum (and default) of 1."""
    if limit is None:
        return 1
    try:
        value = float(limit)
    except (TypeError, ValueError):
        return 1
    if math.isnan(value) or value < 1:
        return 1
    if math.isinf(value):
        return sys.maxsize
    return int(math.floor(value))


def make_lock_id(prefix: str, now: Optional[float] = None) -> str:
    """Lock id of the form '{prefix}-{epoch_ms}-{6 random base36 chars}'."""
    epoch_ms = int((now if now is not None else time.time()) * 1000)
    suffix = "".join(random.choices(_LOCK_ALPHABET, k=6))
    return f"{prefix}-{epoch_ms}-{suffix}"


def truncate_error(message: Optional[str], limit: int = ERROR_DISPLAY_LIMIT) -> Optional[str]:
    if message is None or len(message) <= limit:
        return message
    return message[:limit]


@dataclass
class JobRunResult:
    scenario_slug: str
    success: bool
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        result = {"scenarioSlug": self.scenario_slug, "success": self.success}
        if self.error is not None:
            result["error"] = self.error
        return result


@dataclass
class BatchResult:
    """Summary of one batch run."""
    new_jobs_created: int = 0
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    results: List[JobRunResult] = field(default_factory=list)

    def record(self, result: JobRunResult):
        self.processed += 1
        if result.success:
            self.succeeded += 1
        else:
            self.failed += 1
        self.results.append(result)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "newJobsCreated": self.new_jobs_created,
            "processed": self.processed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "results": [r.to_dict() for r in self.results],
        }


class GenerationRunner:
    """
    Processes up to `limit` jobs, one after another.

    Per-job failures are recorded in the BatchResult; configuration and
    database errors propagate to the caller.
    """

    def __init__(
        self,
        jobs: JobQueueService,
        pipeline: GenerationPipeline,
        inter_job_delay: Optional[float] = None,
        sleep=asyncio.sleep,
    ):
        self.jobs = jobs
        self.pipeline = pipeline
        self.inter_job_delay = inter_job_delay if inter_job_delay is not None else config.INTER_JOB_DELAY_SECONDS
        self._sleep = sleep

    async def run(
        self,
        limit: Optional[float] = 1,
        dry_run: bool = False,
        generate_audio: bool = False,
        lock_prefix: str = "manual",
    ) -> BatchResult:
        limit = clamp_limit(limit)

        closed = await self.jobs.fail_exhausted_stale_jobs()
        if closed:
            logger.warning("Closed out jobs abandoned on their final attempt", count=closed)

        batch = BatchResult(new_jobs_created=await self.jobs.create_missing_jobs())
        lock_id = make_lock_id(lock_prefix)

        logger.info(
            "Starting batch",
            lock_id=lock_id,
            limit=limit,
            dry_run=dry_run,
            generate_audio=generate_audio,
            new_jobs=batch.new_jobs_created
        )

        # Configuration is checked before the first claim
        if not dry_run:
            self.pipeline.ensure_ready(generate_audio=generate_audio)

        for i in range(limit):
            if i > 0 and self.inter_job_delay > 0:
                await self._sleep(self.inter_job_delay)

            scenario = await self.jobs.claim_next_job(lock_id)
            if scenario is None:
                logger.info("No claimable jobs left", lock_id=lock_id)
                break

            if dry_run:
                logger.info("Dry run: claimed without generating", scenario=scenario.slug)
                batch.record(JobRunResult(scenario_slug=scenario.slug, success=True))
                continue

            outcome = await self.pipeline.process(scenario, generate_audio=generate_audio, lock_id=lock_id)
            batch.record(JobRunResult(
                scenario_slug=scenario.slug,
                success=outcome.success,
                error=truncate_error(outcome.error)
            ))

        logger.info(
            "Batch finished",
            lock_id=lock_id,
            processed=batch.processed,
            succeeded=batch.succeeded,
            failed=batch.failed
        )
        return batch


def create_runner(db: Database, settings: AppConfig = config) -> GenerationRunner:
    """Wire a runner and its collaborators from settings."""
    jobs = JobQueueService(
        db,
        max_attempts=settings.JOB_MAX_ATTEMPTS,
        lock_timeout_minutes=settings.JOB_LOCK_TIMEOUT_MINUTES
    )
    pipeline = GenerationPipeline(
        jobs,
        StoryService(db),
        StoryTextClient(
            api_key=settings.SILICONFLOW_API_KEY,
            model=settings.SILICONFLOW_STORY_MODEL,
            base_url=settings.SILICONFLOW_BASE_URL,
            temperature=settings.TEMPERATURE,
            max_key_phrases=settings.MAX_KEY_PHRASES,
            timeout=settings.REQUEST_TIMEOUT_SECONDS
        ),
        SpeechClient(
            api_key=settings.SILICONFLOW_API_KEY,
            model=settings.SILICONFLOW_TTS_MODEL,
            voice=settings.SILICONFLOW_TTS_VOICE,
            fallback_voice=settings.SILICONFLOW_TTS_FALLBACK_VOICE,
            base_url=settings.SILICONFLOW_BASE_URL,
            timeout=settings.REQUEST_TIMEOUT_SECONDS
        ),
        AudioStorage(
            bucket=settings.CLOUDFLARE_R2_BUCKET_NAME,
            public_url=settings.CLOUDFLARE_R2_PUBLIC_URL,
            endpoint_url=settings.r2_endpoint_url,
            access_key_id=settings.CLOUDFLARE_R2_ACCESS_KEY_ID,
            secret_access_key=settings.CLOUDFLARE_R2_SECRET_ACCESS_KEY
        ),
        retry_attempts=settings.RETRY_MAX_ATTEMPTS,
        retry_base_delay=settings.RETRY_BASE_DELAY_SECONDS,
        retry_max_delay=settings.RETRY_MAX_DELAY_SECONDS,
        retry_on_parse_error=settings.RETRY_ON_PARSE_ERROR
    )
    return GenerationRunner(jobs, pipeline, inter_job_delay=settings.INTER_JOB_DELAY_SECONDS)
