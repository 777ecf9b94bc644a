import json

import pytest

from storyhub.storyteller.parsing import (
    StoryParseError,
    StoryValidationError,
    extract_first_json_object,
    parse_story,
    parse_story_json,
    strip_markdown_for_tts,
)


def story_json(**overrides):
    data = {
        "title": "Where Are My Keys?",
        "bodyMarkdown": "I'm digging around.\n\nThere they are.",
        "keyPhrases": [
            {"phrase": "digging around", "meaningEn": "dig around: search messily", "meaningZh": "翻找", "type": "phrasal verb"},
        ],
    }
    data.update(overrides)
    return json.dumps(data, ensure_ascii=False)


def test_parses_plain_json():
    story = parse_story(story_json())
    assert story.title == "Where Are My Keys?"
    assert story.body == "I'm digging around.\n\nThere they are."
    assert story.key_phrases[0].phrase == "digging around"
    assert story.key_phrases[0].meaning_zh == "翻找"


def test_strips_code_fence():
    raw = "```json\n" + story_json() + "\n```"
    assert parse_story(raw).title == "Where Are My Keys?"


def test_extracts_object_from_surrounding_chatter():
    raw = "Sure! Here is your story:\n" + story_json() + "\nHope you like it {really}."
    assert parse_story(raw).title == "Where Are My Keys?"


def test_extract_ignores_braces_inside_strings():
    raw = 'noise {"title": "a } tricky { title", "n": {"x": "\\"}"}} trailing }'
    assert extract_first_json_object(raw) == '{"title": "a } tricky { title", "n": {"x": "\\"}"}}'


def test_repairs_literal_newlines_in_strings():
    raw = '{"title": "Keys", "bodyMarkdown": "Line one.\n\nLine two.", "keyPhrases": []}'
    story = parse_story(raw)
    assert story.body == "Line one.\n\nLine two."


def test_repairs_trailing_commas():
    raw = '{"title": "Keys", "bodyMarkdown": "Body.", "keyPhrases": [{"phrase": "a", "meaningEn": "b",},],}'
    story = parse_story(raw)
    assert [p.phrase for p in story.key_phrases] == ["a"]


def test_repairs_unquoted_known_keys():
    raw = '{title: "Keys", bodyMarkdown: "Body.", keyPhrases: [{phrase: "a", meaningEn: "b"}]}'
    story = parse_story(raw)
    assert story.title == "Keys"
    assert story.key_phrases[0].meaning_en == "b"


def test_well_formed_body_is_not_rewritten_by_repairs():
    body = "Keys, phone, type: text ,] and {title: later,}"
    story = parse_story(story_json(bodyMarkdown=body))
    assert story.body == body


def test_unparseable_output_carries_preview():
    raw = "I'm sorry, I can't write that story right now. " * 20
    with pytest.raises(StoryParseError) as exc_info:
        parse_story_json(raw)
    assert "Raw output begins" in str(exc_info.value)
    assert len(exc_info.value.raw_preview) == 200
    assert raw.startswith(exc_info.value.raw_preview)


def test_empty_output_is_parse_error():
    with pytest.raises(StoryParseError):
        parse_story_json("   ")


@pytest.mark.parametrize("field", ["title", "bodyMarkdown"])
def test_missing_required_text_fails_validation(field):
    with pytest.raises(StoryValidationError):
        parse_story(story_json(**{field: "  "}))


def test_key_phrases_must_be_a_list():
    with pytest.raises(StoryValidationError):
        parse_story(story_json(keyPhrases="digging around"))


def test_empty_key_phrase_list_is_allowed():
    assert parse_story(story_json(keyPhrases=[])).key_phrases == []


def test_key_phrases_truncated_to_limit():
    phrases = [{"phrase": f"p{i}", "meaningEn": f"m{i}"} for i in range(40)]
    story = parse_story(story_json(keyPhrases=phrases), max_key_phrases=30)
    assert len(story.key_phrases) == 30
    assert story.key_phrases[-1].phrase == "p29"


def test_incomplete_key_phrases_are_dropped():
    phrases = [
        {"phrase": "kept", "meaningEn": "ok"},
        {"phrase": "no meaning"},
        {"meaningEn": "no phrase"},
        "not an object",
    ]
    story = parse_story(story_json(keyPhrases=phrases))
    assert [p.phrase for p in story.key_phrases] == ["kept"]


def test_emphasis_markers_removed_from_body():
    story = parse_story(story_json(bodyMarkdown="I *totally* forgot my _keys_ again."))
    assert story.body == "I totally forgot my keys again."


def test_strip_markdown_for_tts():
    text = "# Title\n\nI **really** need my `keys`.\n\n\n\nDone."
    assert strip_markdown_for_tts(text) == "Title\n\nI really need my keys.\n\nDone."


WELL_FORMED = '{"title": "Keys", "bodyMarkdown": "Line one.\\n\\nLine two.", "keyPhrases": [{"phrase": "dig around", "meaningEn": "search"}]}'


@pytest.mark.parametrize("raw", [
    "```json\n" + WELL_FORMED + "\n```",
    '{"title": "Keys", "bodyMarkdown": "Line one.\n\nLine two.", "keyPhrases": [{"phrase": "dig around", "meaningEn": "search"}]}',
    '{"title": "Keys", "bodyMarkdown": "Line one.\\n\\nLine two.", "keyPhrases": [{"phrase": "dig around", "meaningEn": "search"},],}',
    '{title: "Keys", bodyMarkdown: "Line one.\\n\\nLine two.", "keyPhrases": [{"phrase": "dig around", "meaningEn": "search"}]}',
])
def test_recoverable_output_matches_well_formed(raw):
    assert parse_story(raw) == parse_story(WELL_FORMED)
