"""
Story + audio generation pipeline.

One claimed job at a time: generate the story -> save it with its
vocabulary -> (optionally) narrate, upload, attach the audio URL ->
mark the job succeeded. Any failure marks the job failed so a later
batch can retry it.
"""

import time
from dataclasses import dataclass
from typing import Optional, Dict, Any

from storyhub.config import ConfigurationError, config
from storyhub.database.catalog import ScenarioPayload
from storyhub.database.jobs import JobQueueService, LockLostError
from storyhub.database.stories import StoryService
from storyhub.storyteller.retry import classify_error, with_retries
from storyhub.storyteller.siliconflow import SpeechClient, StoryTextClient
from storyhub.storyteller.storage import AudioStorage
from storyhub.utils.logging import story_logger as logger


@dataclass
class PipelineResult:
    """Result of processing one scenario."""
    success: bool
    error: Optional[str] = None
    story_id: Optional[str] = None
    audio_url: Optional[str] = None
    generation_time: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "error": self.error,
            "story_id": self.story_id,
            "audio_url": self.audio_url,
            "generation_time": self.generation_time
        }


class GenerationPipeline:
    """
    Runs the generation workflow for claimed scenarios.

    Text and audio calls each get their own retry budget.
    """

    def __init__(
        self,
        jobs: JobQueueService,
        stories: StoryService,
        text_client: StoryTextClient,
        speech_client: Optional[SpeechClient] = None,
        storage: Optional[AudioStorage] = None,
        *,
        retry_attempts: Optional[int] = None,
        retry_base_delay: Optional[float] = None,
        retry_max_delay: Optional[float] = None,
        retry_on_parse_error: Optional[bool] = None,
        sleep=None,
    ):
        self.jobs = jobs
        self.stories = stories
        self.text_client = text_client
        self.speech_client = speech_client
        self.storage = storage
        self.retry_attempts = retry_attempts or config.RETRY_MAX_ATTEMPTS
        self.retry_base_delay = retry_base_delay if retry_base_delay is not None else config.RETRY_BASE_DELAY_SECONDS
        self.retry_max_delay = retry_max_delay if retry_max_delay is not None else config.RETRY_MAX_DELAY_SECONDS
        self.retry_on_parse_error = (
            retry_on_parse_error if retry_on_parse_error is not None else config.RETRY_ON_PARSE_ERROR
        )
        self._sleep = sleep

    def ensure_ready(self, generate_audio: bool = False):
        """
        Raise ConfigurationError if the services a run needs are not configured.
        """
        self.text_client.ensure_configured()
        if generate_audio:
            if self.speech_client is None or self.storage is None:
                raise ConfigurationError("Audio generation requested but no speech client or storage configured")
            self.speech_client.ensure_configured()
            self.storage.ensure_configured()

    async def _retry(self, label: str, fn):
        kwargs = {}
        if self._sleep is not None:
            kwargs["sleep"] = self._sleep
        return await with_retries(
            label,
            fn,
            max_attempts=self.retry_attempts,
            base_delay=self.retry_base_delay,
            max_delay=self.retry_max_delay,
            classify=lambda e: classify_error(e, retry_on_parse_error=self.retry_on_parse_error),
            **kwargs
        )

    async def process(
        self,
        scenario: ScenarioPayload,
        generate_audio: bool = False,
        lock_id: Optional[str] = None,
    ) -> PipelineResult:
        """
        Generate (and optionally narrate) the story for a claimed scenario.

        Returns a PipelineResult; per-job failures are recorded on the job
        rather than raised. ConfigurationError is re-raised after the job
        is released, since no other job could succeed either.

        With a lock_id, every write is fenced on that lock. If another
        runner reclaimed the job in the meantime, the result is a failure
        and neither the story nor the job row is touched.
        """
        start_time = time.time()
        story_id = None
        audio_url = None

        try:
            logger.info("Starting generation", scenario=scenario.slug)

            # Step 1: story text
            story = await self._retry(
                "Story generation",
                lambda: self.text_client.generate_story(scenario)
            )
            logger.info(
                f'Story generated: "{story.title}"',
                scenario=scenario.slug,
                phrases=len(story.key_phrases)
            )

            # Step 2: story + vocabulary, saved before any audio work
            story_id = await self.stories.upsert_story_with_vocabulary(
                scenario.id,
                scenario.slug,
                story.title,
                story.body,
                [phrase.model_dump() for phrase in story.key_phrases],
                lock_id=lock_id
            )

            if generate_audio:
                self.ensure_ready(generate_audio=True)

                # Step 3: narration
                audio = await self._retry(
                    "Audio generation",
                    lambda: self.speech_client.synthesize(story.body)
                )
                logger.info("Audio generated", scenario=scenario.slug, size=len(audio))

                # Step 4: upload + attach
                audio_url = await self.storage.upload_audio(audio, scenario.slug)
                await self.stories.update_audio_url(scenario.id, audio_url, lock_id=lock_id)
            else:
                logger.info("Skipping audio generation (story-only mode)", scenario=scenario.slug)

            if not await self.jobs.mark_succeeded(scenario.id, lock_id=lock_id):
                raise LockLostError(f"Lock {lock_id} no longer held for scenario {scenario.id}")

            generation_time = time.time() - start_time
            logger.info(
                "Completed generation",
                scenario=scenario.slug,
                seconds=round(generation_time, 1)
            )
            return PipelineResult(
                success=True,
                story_id=story_id,
                audio_url=audio_url,
                generation_time=generation_time
            )

        except ConfigurationError as e:
            logger.critical("Generation halted by configuration error", scenario=scenario.slug, error=str(e))
            await self.jobs.mark_failed(scenario.id, str(e), lock_id=lock_id)
            raise

        except LockLostError as e:
            logger.warning("Job taken over by another runner", scenario=scenario.slug, lock_id=lock_id)
            return PipelineResult(
                success=False,
                error=str(e),
                story_id=story_id,
                generation_time=time.time() - start_time
            )

        except Exception as e:
            error_msg = str(e) or type(e).__name__
            logger.error("Generation failed", scenario=scenario.slug, error=error_msg)
            if not await self.jobs.mark_failed(scenario.id, error_msg, lock_id=lock_id):
                logger.warning("Failure not recorded: lock no longer held", scenario=scenario.slug, lock_id=lock_id)
            return PipelineResult(
                success=False,
                error=error_msg,
                story_id=story_id,
                generation_time=time.time() - start_time
            )
