"""
Story generation: prompt, model clients, output parsing, retries,
audio upload and the per-job pipeline.
"""

from storyhub.storyteller.parsing import (
    GeneratedStory,
    KeyPhrase,
    StoryParseError,
    StoryValidationError,
    parse_story,
)
from storyhub.storyteller.retry import ErrorClass, classify_error, with_retries
from storyhub.storyteller.siliconflow import SpeechClient, StoryTextClient
from storyhub.storyteller.storage import AudioStorage
from storyhub.storyteller.pipeline import GenerationPipeline, PipelineResult

__all__ = [
    "GeneratedStory",
    "KeyPhrase",
    "StoryParseError",
    "StoryValidationError",
    "parse_story",
    "ErrorClass",
    "classify_error",
    "with_retries",
    "SpeechClient",
    "StoryTextClient",
    "AudioStorage",
    "GenerationPipeline",
    "PipelineResult",
]
