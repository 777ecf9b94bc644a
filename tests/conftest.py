"""Shared fixtures: a temporary SQLite store, catalog seeding and fake collaborators."""

from types import SimpleNamespace
from typing import Dict, List, Optional

import pytest

from storyhub.config import ConfigurationError
from storyhub.database import CatalogService, Database, JobQueueService, StoryService
from storyhub.storyteller.parsing import GeneratedStory, KeyPhrase
from storyhub.storyteller.storage import AudioStorage


# Force anyio to use asyncio
@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "storyhub.db")


@pytest.fixture
async def db(db_path, anyio_backend):
    database = Database(db_path)
    await database.connect()
    yield database
    await database.close()


@pytest.fixture
def catalog(db):
    return CatalogService(db)


@pytest.fixture
def jobs(db):
    return JobQueueService(db, max_attempts=5, lock_timeout_minutes=10)


@pytest.fixture
def stories(db):
    return StoryService(db)


async def seed_scenarios(catalog: CatalogService, seeds: List[str], place: str = "bedroom") -> List[str]:
    """Create one category/place and a scenario per seed text. Returns scenario ids in order."""
    category_id = await catalog.add_category("Home")
    place_id = await catalog.add_place(category_id, place)
    return [await catalog.add_scenario(category_id, place_id, seed) for seed in seeds]


def make_story(title: str = "Where Are My Keys?", phrases: int = 2) -> GeneratedStory:
    return GeneratedStory(
        title=title,
        body="I'm digging around under the bed.\n\nFinally, I yanked it open.",
        key_phrases=[
            KeyPhrase(
                phrase=f"phrase {i}",
                meaning_en=f"meaning {i}",
                meaning_zh=f"意思 {i}",
                type="phrasal verb"
            )
            for i in range(phrases)
        ],
    )


class FakeTextClient:
    """Returns (or raises) queued outcomes in order; repeats a story outcome once the queue runs dry."""

    def __init__(self, outcomes=None, configured: bool = True):
        self.outcomes = list(outcomes) if outcomes is not None else [make_story()]
        self.configured = configured
        self.calls: List[str] = []

    def ensure_configured(self):
        if not self.configured:
            raise ConfigurationError("Missing SILICONFLOW_API_KEY in environment variables")

    async def generate_story(self, scenario):
        self.calls.append(scenario.slug)
        outcome = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


class FakeSpeechClient:
    def __init__(self, audio: bytes = b"ID3-fake-mp3", configured: bool = True, error: Optional[Exception] = None):
        self.audio = audio
        self.configured = configured
        self.error = error
        self.calls: List[str] = []

    def ensure_configured(self):
        if not self.configured:
            raise ConfigurationError("Missing SILICONFLOW_TTS_MODEL in environment variables")

    async def synthesize(self, story_body: str) -> bytes:
        self.calls.append(story_body)
        if self.error is not None:
            raise self.error
        return self.audio


class FakeS3Client:
    """Records put_object calls the way boto3's client would receive them."""

    def __init__(self):
        self.objects: Dict[str, Dict] = {}

    def put_object(self, **kwargs):
        self.objects[kwargs["Key"]] = kwargs
        return {"ETag": '"fake"'}


@pytest.fixture
def s3_client():
    return FakeS3Client()


@pytest.fixture
def storage(s3_client):
    return AudioStorage(
        bucket="story-audio",
        public_url="https://cdn.example.com/",
        client=s3_client
    )


@pytest.fixture
def recorded_sleeps():
    return []


@pytest.fixture
def fake_sleep(recorded_sleeps):
    async def _sleep(delay: float):
        recorded_sleeps.append(delay)
    return _sleep


def stream_chunks(*pieces):
    """Async iterator shaped like a streamed chat completion."""
    async def _stream():
        for piece in pieces:
            yield SimpleNamespace(choices=[SimpleNamespace(delta=SimpleNamespace(content=piece))])
    return _stream()
