"""
Story output parsing.

Models asked for strict JSON still return "almost JSON" often enough to
matter: fenced code blocks, chatter around the object, raw newlines in
string values, trailing commas, bare keys. Each repair below is a small
pure function; parse_story_json() applies them in a fixed order and
validate_story() turns the result into a GeneratedStory.
"""

import json
import re
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from storyhub.utils.logging import story_logger as logger


RAW_PREVIEW_LOG_CHARS = 1200
RAW_PREVIEW_ERROR_CHARS = 200

KNOWN_KEYS = ("title", "bodyMarkdown", "keyPhrases", "phrase", "meaningEn", "meaningZh", "type")

_CODE_FENCE_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)\s*```", re.IGNORECASE)
_TRAILING_COMMA_RE = re.compile(r",\s*([}\]])")
_BARE_KEY_RE = re.compile(r"([,{\[]\s*)(" + "|".join(KNOWN_KEYS) + r")\s*:")

_CONTROL_ESCAPES = {
    "\n": "\\n",
    "\r": "\\r",
    "\t": "\\t",
    "\b": "\\b",
    "\f": "\\f",
}


class StoryParseError(Exception):
    """Model output could not be turned into a story."""

    def __init__(self, message: str, raw_preview: str = ""):
        super().__init__(message)
        self.raw_preview = raw_preview


class StoryValidationError(StoryParseError):
    """Output parsed as JSON but is missing required story fields."""
    pass


class KeyPhrase(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    phrase: str
    meaning_en: str = Field(alias="meaningEn")
    meaning_zh: Optional[str] = Field(default=None, alias="meaningZh")
    type: Optional[str] = None


class GeneratedStory(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    title: str
    body: str = Field(alias="bodyMarkdown")
    key_phrases: List[KeyPhrase] = Field(default_factory=list, alias="keyPhrases")


# =========================================================================
# Repair passes
# =========================================================================

def strip_code_fence(value: str) -> str:
    """Return the contents of the first ``` / ```json fence, or the trimmed input."""
    match = _CODE_FENCE_RE.search(value)
    if match and match.group(1):
        return match.group(1).strip()
    return value.strip()


def extract_first_json_object(value: str) -> Optional[str]:
    """
    Return the first balanced {...} block, ignoring braces inside string
    literals. None if there is no complete object.
    """
    start = value.find("{")
    if start < 0:
        return None

    depth = 0
    in_string = False
    escaped = False

    for index in range(start, len(value)):
        char = value[index]

        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue

        if char == '"':
            in_string = True
        elif char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                return value[start:index + 1]

    return None


def escape_control_chars_in_strings(value: str) -> str:
    """Escape raw control characters (newlines, tabs, ...) inside JSON string literals."""
    output = []
    in_string = False
    escaped = False

    for char in value:
        if not in_string:
            output.append(char)
            if char == '"':
                in_string = True
            continue

        if escaped:
            output.append(char)
            escaped = False
        elif char == "\\":
            output.append(char)
            escaped = True
        elif char == '"':
            output.append(char)
            in_string = False
        elif char in _CONTROL_ESCAPES:
            output.append(_CONTROL_ESCAPES[char])
        elif ord(char) < 0x20:
            output.append(f"\\u{ord(char):04x}")
        else:
            output.append(char)

    return "".join(output)


def remove_trailing_commas(value: str) -> str:
    """{"a": 1,} -> {"a": 1} and [1,] -> [1]"""
    return _TRAILING_COMMA_RE.sub(r"\1", value)


def quote_known_keys(value: str) -> str:
    """Quote the bare story keys a model sometimes emits: {title: ...} -> {"title": ...}"""
    return _BARE_KEY_RE.sub(r'\1"\2":', value)


def normalize_json_text(value: str) -> str:
    # Comma and key passes are context-free and also touch string values,
    # so they only run after a direct parse of every candidate has failed.
    return escape_control_chars_in_strings(quote_known_keys(remove_trailing_commas(value.strip())))


# =========================================================================
# Parsing
# =========================================================================

def _try_load_object(candidate: str) -> Optional[Dict[str, Any]]:
    try:
        parsed = json.loads(candidate)
    except json.JSONDecodeError:
        return None
    return parsed if isinstance(parsed, dict) else None


def parse_story_json(raw: str) -> Dict[str, Any]:
    """
    Parse the model's story object, repairing common formatting mistakes.

    Order: strip code fence -> direct parse -> first balanced object ->
    normalization passes -> parse again.

    Raises:
        StoryParseError: nothing parseable was found; the message carries
            a short preview of the raw output.
    """
    if not raw or not raw.strip():
        raise StoryParseError("No content in story generation response")

    stripped = strip_code_fence(raw)
    candidates: List[str] = []
    for candidate in (stripped, extract_first_json_object(stripped), extract_first_json_object(raw)):
        if candidate and candidate.strip() and candidate not in candidates:
            candidates.append(candidate)

    for candidate in candidates:
        parsed = _try_load_object(candidate)
        if parsed is not None:
            return parsed

    last_error = "no JSON object found"
    for candidate in candidates:
        normalized = normalize_json_text(candidate)
        try:
            parsed = json.loads(normalized)
        except json.JSONDecodeError as e:
            last_error = str(e)
            continue
        if isinstance(parsed, dict):
            return parsed
        last_error = f"expected a JSON object, got {type(parsed).__name__}"

    logger.error(
        "Failed to parse story JSON from model output",
        raw_preview=raw[:RAW_PREVIEW_LOG_CHARS]
    )
    preview = raw[:RAW_PREVIEW_ERROR_CHARS]
    raise StoryParseError(
        f"Failed to parse story JSON: {last_error}. Raw output begins: {preview!r}",
        raw_preview=preview
    )


def strip_emphasis(text: str) -> str:
    """Drop *emphasis* and _emphasis_ markers, keeping the words."""
    text = re.sub(r"\*([^*]+)\*", r"\1", text)
    return re.sub(r"_([^_]+)_", r"\1", text)


def strip_markdown_for_tts(text: str) -> str:
    """Plain narration text: no emphasis, no markdown symbols, at most one blank line."""
    text = re.sub(r"\*([^*]+)\*", r"\1", text)
    text = re.sub(r"[#*_`]", "", text)
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()


def _optional_text(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def validate_story(data: Dict[str, Any], max_key_phrases: int = 30) -> GeneratedStory:
    """
    Check required fields and build a GeneratedStory.

    Title and body must be non-empty strings and keyPhrases a list. Phrase
    entries without a phrase or English meaning are dropped; the rest are
    truncated to max_key_phrases.
    """
    title = data.get("title")
    body = data.get("bodyMarkdown")
    phrases = data.get("keyPhrases")

    if not isinstance(title, str) or not title.strip():
        raise StoryValidationError("Invalid story response structure: missing title")
    if not isinstance(body, str) or not body.strip():
        raise StoryValidationError("Invalid story response structure: missing bodyMarkdown")
    if not isinstance(phrases, list):
        raise StoryValidationError("Invalid story response structure: keyPhrases is not a list")

    key_phrases = []
    dropped = 0
    for item in phrases:
        if not isinstance(item, dict):
            dropped += 1
            continue
        phrase = _optional_text(item.get("phrase"))
        meaning_en = _optional_text(item.get("meaningEn"))
        if not phrase or not meaning_en:
            dropped += 1
            continue
        key_phrases.append(KeyPhrase(
            phrase=phrase,
            meaning_en=meaning_en,
            meaning_zh=_optional_text(item.get("meaningZh")),
            type=_optional_text(item.get("type")),
        ))

    if dropped:
        logger.warning("Dropped incomplete key phrases", dropped=dropped)

    return GeneratedStory(
        title=title.strip(),
        body=strip_emphasis(body.strip()),
        key_phrases=key_phrases[:max_key_phrases],
    )


def parse_story(raw: str, max_key_phrases: int = 30) -> GeneratedStory:
    return validate_story(parse_story_json(raw), max_key_phrases=max_key_phrases)
