import asyncio

import pytest

from storyhub.config import cap_limit
from storyhub.jobs.runner import BatchResult
from storyhub.jobs.scheduler import GenerationScheduler


class RecordingRunner:
    def __init__(self, block: asyncio.Event = None, error: Exception = None):
        self.calls = []
        self.block = block
        self.error = error

    async def run(self, limit=1, dry_run=False, generate_audio=False, lock_prefix="manual"):
        self.calls.append({"limit": limit, "generate_audio": generate_audio, "lock_prefix": lock_prefix})
        if self.block is not None:
            await self.block.wait()
        if self.error is not None:
            raise self.error
        return BatchResult(processed=limit, succeeded=limit)


@pytest.mark.parametrize("requested,cap,expected", [
    (None, 1, 1),
    (10, 1, 1),
    (10, 50, 10),
    (0, 50, 1),
    (75, 50, 50),
    (12.7, 50, 12),
    ("7", 50, 7),
    ("many", 50, 1),
    (float("nan"), 50, 1),
    (float("inf"), 50, 50),
    (float("-inf"), 50, 1),
])
def test_cap_limit(requested, cap, expected):
    assert cap_limit(requested, cap) == expected


@pytest.mark.anyio
async def test_scheduled_batches_are_capped_and_tagged_cron():
    runner = RecordingRunner()
    scheduler = GenerationScheduler(runner, interval_minutes=60, batch_cap=1, generate_audio=True)

    result = await scheduler.run_batch(limit=25)

    assert runner.calls == [{"limit": 1, "generate_audio": True, "lock_prefix": "cron"}]
    assert result.processed == 1
    assert scheduler.last_result is result


@pytest.mark.anyio
async def test_overlapping_run_is_skipped():
    release = asyncio.Event()
    runner = RecordingRunner(block=release)
    scheduler = GenerationScheduler(runner, interval_minutes=60, batch_cap=3, generate_audio=False)

    first = asyncio.create_task(scheduler.run_batch())
    await asyncio.sleep(0)
    assert scheduler.is_running

    assert await scheduler.run_batch() is None

    release.set()
    await first
    assert len(runner.calls) == 1
    assert not scheduler.is_running


@pytest.mark.anyio
async def test_interval_run_logs_and_survives_batch_errors():
    runner = RecordingRunner(error=RuntimeError("database is locked"))
    scheduler = GenerationScheduler(runner, interval_minutes=60, batch_cap=2, generate_audio=False)

    await scheduler._scheduled_run()

    assert runner.calls[0]["limit"] == 2
    assert not scheduler.is_running


@pytest.mark.anyio
async def test_start_registers_single_instance_interval_job():
    scheduler = GenerationScheduler(RecordingRunner(), interval_minutes=15, batch_cap=1, generate_audio=False)
    scheduler.start()
    try:
        job = scheduler.scheduler.get_job("story_generation")
        assert job.max_instances == 1
        assert job.trigger.interval.total_seconds() == 15 * 60
    finally:
        scheduler.shutdown()
