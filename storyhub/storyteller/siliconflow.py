"""
SiliconFlow clients for story text and narration audio.

SiliconFlow exposes OpenAI-compatible chat completion and speech
endpoints, so both clients sit on the openai SDK pointed at its base
URL. SDK retries are disabled; retry.with_retries owns that policy.
"""

from typing import Any, AsyncIterator, Optional

import openai
from openai import NOT_GIVEN, AsyncOpenAI

from storyhub.config import ConfigurationError, config
from storyhub.database.catalog import ScenarioPayload
from storyhub.storyteller.parsing import GeneratedStory, parse_story, strip_markdown_for_tts
from storyhub.storyteller.prompts import build_story_messages
from storyhub.utils.logging import story_logger as logger


def content_to_text(content: Any) -> str:
    """Flatten a message/delta content value (string or list of parts) to text."""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for part in content:
            if isinstance(part, str):
                parts.append(part)
            elif isinstance(part, dict) and isinstance(part.get("text"), str):
                parts.append(part["text"])
            elif isinstance(getattr(part, "text", None), str):
                parts.append(part.text)
        return "".join(parts)
    return ""


async def accumulate_stream_content(stream: AsyncIterator[Any]) -> str:
    """Concatenate the delta content of every chunk in a streamed completion."""
    content = []
    async for chunk in stream:
        choices = getattr(chunk, "choices", None) or []
        if not choices:
            continue
        choice = choices[0]
        delta = getattr(choice, "delta", None)
        piece = content_to_text(getattr(delta, "content", None)) if delta is not None else ""
        if not piece:
            message = getattr(choice, "message", None)
            piece = content_to_text(getattr(message, "content", None)) if message is not None else ""
        content.append(piece)
    return "".join(content)


def _build_client(api_key: Optional[str], base_url: str, timeout: float) -> AsyncOpenAI:
    return AsyncOpenAI(api_key=api_key, base_url=base_url, timeout=timeout, max_retries=0)


class StoryTextClient:
    """
    Writes one story per scenario with a streamed JSON-mode chat completion.

    Usage:
        client = StoryTextClient()
        story = await client.generate_story(scenario)
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        base_url: Optional[str] = None,
        temperature: Optional[float] = None,
        max_key_phrases: Optional[int] = None,
        timeout: Optional[float] = None,
        client: Optional[AsyncOpenAI] = None,
    ):
        self.api_key = api_key if api_key is not None else config.SILICONFLOW_API_KEY
        self.model = model if model is not None else config.SILICONFLOW_STORY_MODEL
        self.base_url = base_url or config.SILICONFLOW_BASE_URL
        self.temperature = temperature if temperature is not None else config.TEMPERATURE
        self.max_key_phrases = max_key_phrases or config.MAX_KEY_PHRASES
        self.timeout = timeout or config.REQUEST_TIMEOUT_SECONDS
        self._client = client

    def ensure_configured(self):
        if not self.api_key:
            raise ConfigurationError("Missing SILICONFLOW_API_KEY in environment variables")
        if not self.model:
            raise ConfigurationError("Missing SILICONFLOW_STORY_MODEL in environment variables")

    @property
    def client(self) -> AsyncOpenAI:
        if self._client is None:
            self.ensure_configured()
            self._client = _build_client(self.api_key, self.base_url, self.timeout)
        return self._client

    async def generate_story(self, scenario: ScenarioPayload) -> GeneratedStory:
        """
        Generate, parse and validate a story for a scenario.

        Raises:
            ConfigurationError: API key or model missing
            openai.APIError: HTTP or connection failure
            StoryParseError: output could not be turned into a story
        """
        self.ensure_configured()

        try:
            stream = await self.client.chat.completions.create(
                model=self.model,
                messages=build_story_messages(scenario, self.max_key_phrases),
                stream=True,
                temperature=self.temperature,
                response_format={"type": "json_object"},
                extra_body={"enable_thinking": False},
            )
        except openai.APIStatusError as e:
            logger.error(
                "Story generation request failed",
                status=e.status_code,
                request_id=e.request_id,
                model=self.model,
                error=str(e)[:500]
            )
            raise

        raw = await accumulate_stream_content(stream)
        return parse_story(raw, max_key_phrases=self.max_key_phrases)


class SpeechClient:
    """
    Narrates story text through the speech endpoint and returns MP3 bytes.

    If the endpoint rejects the voice, the request is repeated once with
    the fallback voice, or with no voice so the model default applies.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        voice: Optional[str] = None,
        fallback_voice: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        client: Optional[AsyncOpenAI] = None,
    ):
        self.api_key = api_key if api_key is not None else config.SILICONFLOW_API_KEY
        self.model = model if model is not None else config.SILICONFLOW_TTS_MODEL
        self.voice = voice if voice is not None else config.SILICONFLOW_TTS_VOICE
        self.fallback_voice = fallback_voice if fallback_voice is not None else config.SILICONFLOW_TTS_FALLBACK_VOICE
        self.base_url = base_url or config.SILICONFLOW_BASE_URL
        self.timeout = timeout or config.REQUEST_TIMEOUT_SECONDS
        self._client = client

    def ensure_configured(self):
        if not self.api_key:
            raise ConfigurationError("Missing SILICONFLOW_API_KEY in environment variables")
        if not self.model:
            raise ConfigurationError("Missing SILICONFLOW_TTS_MODEL in environment variables")

    @property
    def client(self) -> AsyncOpenAI:
        if self._client is None:
            self.ensure_configured()
            self._client = _build_client(self.api_key, self.base_url, self.timeout)
        return self._client

    @property
    def primary_voice(self) -> Optional[str]:
        # SiliconFlow voices are model-scoped, e.g. "fnlp/MOSS-TTSD-v0.5:alex";
        # only MOSS-TTSD has a known built-in default
        if self.voice:
            return self.voice
        if self.model and "MOSS-TTSD" in self.model:
            return f"{self.model}:alex"
        return None

    @property
    def alternate_voice(self) -> Optional[str]:
        """Voice for the one retry after a rejection; None means omit the voice."""
        if self.fallback_voice and self.fallback_voice != self.primary_voice:
            return self.fallback_voice
        return None

    async def _request(self, text: str, voice: Optional[str]) -> bytes:
        response = await self.client.audio.speech.create(
            model=self.model,
            voice=voice if voice else NOT_GIVEN,
            input=text,
            response_format="mp3",
        )
        return response.content

    async def synthesize(self, story_body: str) -> bytes:
        """
        Narrate a story body. Markdown is stripped before sending.

        Raises:
            ConfigurationError: API key or TTS model missing
            openai.APIError: HTTP or connection failure
        """
        self.ensure_configured()
        text = strip_markdown_for_tts(story_body)
        voice = self.primary_voice

        try:
            return await self._request(text, voice)
        except openai.BadRequestError as e:
            if voice is None or "invalid voice" not in str(e).lower():
                raise
            alternate = self.alternate_voice
            logger.warning(
                "TTS voice rejected, retrying once",
                voice=voice,
                fallback=alternate or "(model default)"
            )
            return await self._request(text, alternate)
