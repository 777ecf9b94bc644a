import re

import pytest

from conftest import FakeTextClient, make_story, seed_scenarios
from storyhub.config import ConfigurationError
from storyhub.jobs.runner import GenerationRunner, clamp_limit, make_lock_id
from storyhub.storyteller.pipeline import GenerationPipeline


@pytest.fixture
def text_client():
    return FakeTextClient()


@pytest.fixture
def runner(jobs, stories, text_client, fake_sleep):
    pipeline = GenerationPipeline(
        jobs, stories, text_client,
        retry_attempts=1,
        sleep=fake_sleep
    )
    return GenerationRunner(jobs, pipeline, inter_job_delay=1.0, sleep=fake_sleep)


@pytest.mark.parametrize("requested,expected", [
    (None, 1),
    (0, 1),
    (-3, 1),
    (1, 1),
    (2.9, 2),
    ("4", 4),
    ("nope", 1),
    (float("nan"), 1),
    (float("-inf"), 1),
])
def test_clamp_limit(requested, expected):
    assert clamp_limit(requested) == expected


def test_lock_id_format():
    lock_id = make_lock_id("cron", now=1700000000.123)
    assert re.fullmatch(r"cron-1700000000123-[0-9a-z]{6}", lock_id)


@pytest.mark.anyio
async def test_batch_limit_respected(catalog, jobs, runner, recorded_sleeps):
    await seed_scenarios(catalog, ["one", "two", "three"])

    result = await runner.run(limit=2)

    assert result.new_jobs_created == 3
    assert result.processed == 2
    assert result.succeeded == 2
    assert result.failed == 0
    assert await jobs.get_status_counts() == {"queued": 1, "running": 0, "succeeded": 2, "failed": 0}
    # delay between jobs only, not after the last one
    assert recorded_sleeps == [1.0]


@pytest.mark.anyio
async def test_stops_when_queue_is_empty(catalog, runner, recorded_sleeps):
    await seed_scenarios(catalog, ["one"])

    result = await runner.run(limit=5)

    assert result.processed == 1
    assert result.results[0].scenario_slug.startswith("bedroom-one-")
    assert recorded_sleeps == [1.0]


@pytest.mark.anyio
async def test_empty_catalog(runner):
    result = await runner.run(limit=3)
    assert result.to_dict() == {
        "newJobsCreated": 0,
        "processed": 0,
        "succeeded": 0,
        "failed": 0,
        "results": [],
    }


@pytest.mark.anyio
async def test_failures_are_recorded_and_batch_continues(catalog, jobs, stories, fake_sleep):
    await seed_scenarios(catalog, ["one", "two"])
    long_error = ValueError("model refused: " + "x" * 800)
    pipeline = GenerationPipeline(
        jobs, stories, FakeTextClient([long_error, make_story()]),
        retry_attempts=1,
        sleep=fake_sleep
    )
    runner = GenerationRunner(jobs, pipeline, inter_job_delay=0, sleep=fake_sleep)

    result = await runner.run(limit=2)

    assert (result.processed, result.succeeded, result.failed) == (2, 1, 1)
    failed = result.results[0]
    assert not failed.success
    assert len(failed.error) == 500
    job = await jobs.get_job_by_scenario((await catalog.get_scenario_by_slug(failed.scenario_slug))["id"])
    assert len(job["last_error"]) > 500


@pytest.mark.anyio
async def test_dry_run_claims_without_generating(catalog, jobs, runner, text_client):
    [scenario_id] = await seed_scenarios(catalog, ["one"])
    text_client.configured = False

    result = await runner.run(limit=1, dry_run=True)

    assert result.processed == 1
    assert result.succeeded == 1
    assert text_client.calls == []
    job = await jobs.get_job_by_scenario(scenario_id)
    assert job["status"] == "running"
    assert job["locked_by"].startswith("manual-")


@pytest.mark.anyio
async def test_configuration_checked_before_claiming(catalog, jobs, runner, text_client):
    [scenario_id] = await seed_scenarios(catalog, ["one"])
    text_client.configured = False

    with pytest.raises(ConfigurationError):
        await runner.run(limit=1)

    job = await jobs.get_job_by_scenario(scenario_id)
    assert job["status"] == "queued"
    assert job["attempt_count"] == 0


@pytest.mark.anyio
async def test_configuration_error_mid_batch_halts(catalog, jobs, stories, fake_sleep):
    await seed_scenarios(catalog, ["one", "two"])
    pipeline = GenerationPipeline(
        jobs, stories, FakeTextClient([ConfigurationError("Missing SILICONFLOW_STORY_MODEL")]),
        retry_attempts=1,
        sleep=fake_sleep
    )
    runner = GenerationRunner(jobs, pipeline, inter_job_delay=0, sleep=fake_sleep)

    with pytest.raises(ConfigurationError):
        await runner.run(limit=2)

    assert await jobs.get_status_counts() == {"queued": 1, "running": 0, "succeeded": 0, "failed": 1}


@pytest.mark.anyio
async def test_lock_prefix_recorded_on_jobs(catalog, jobs, runner):
    [scenario_id] = await seed_scenarios(catalog, ["one"])

    await runner.run(limit=1, dry_run=True, lock_prefix="cron")

    job = await jobs.get_job_by_scenario(scenario_id)
    assert re.fullmatch(r"cron-\d+-[0-9a-z]{6}", job["locked_by"])
