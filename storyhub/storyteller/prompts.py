"""
Prompt templates for story generation.

The response contract is JSON-only so the chat endpoint can run in
json_object mode; parsing.py handles the cases where the model drifts.
"""

from storyhub.database.catalog import ScenarioPayload


SYSTEM_PROMPT = "You are a helpful assistant designed to output JSON only."


STORY_PROMPT_TEMPLATE = """Scenario: {seed_text}
Task:
Write a detailed, casual, realistic daily-life article in American spoken English for English learners.
The writing should feel like talking to a friend, a vlog narration, or inner monologue, NOT formal writing.

Context:

Scenario: {seed_text}

Place: {place_name}

Category: {category_name}

Tone & Style:

Very casual, natural American English

Sounds like real speech, not a textbook

Content Requirements:

Micro-actions: describe tiny movements and behaviors (hands, posture, facial expressions, walking, bending, touching objects, sounds)

Objects everywhere: everyday items (desk, bed, phone, cables, mug, drawer, chair, floor)

Spoken English focus: heavy use of phrasal verbs, casual idioms, filler expressions

Natural flow: no teaching tone, no explanations inside the story

Language Rules:

Use short to medium sentences

Use contractions (I'm, it's, gotta, kinda)

Avoid formal vocabulary

Avoid perfect grammar if it sounds unnatural

Length:

400-700 words

Formatting rules for the story body:

Paragraphs separated by blank lines

IMPORTANT: Do NOT use any markdown formatting in the story body.
- Do NOT wrap words or phrases in *asterisks* or _underscores_.
- Do NOT use **bold**, headings, lists, or code blocks.
- Output plain text only.

Key Phrases & Words rules (VERY IMPORTANT):

ALL phrases MUST appear exactly in the article text

Copy the phrase verbatim from the article (no rewriting)

If the phrase is a verb or phrasal verb, keep the exact form used
(e.g. "digging around", "muttered", "yanked it open")

Do NOT convert verbs to base form in the phrase field

ONLY list words or short phrases (NO full sentences)

After phrase generation, check that each phrase actually appears in the article

Focus on:

movement verbs

phrasal verbs

casual idioms

object names

spoken expressions

Key phrase explanation rules:

phrase: exact text from the article

meaningEn: explain the base / normal form and meaning

Example:
phrase: "digging around"
meaningEn: "dig around: to search messily or without order"

meaningZh: Chinese explanation of the base meaning

type: one of

movement

phrasal verb

idiom

object

spoken expression

Number of key phrases:

{min_phrases}-{max_phrases} (enough to cover the best phrases without risking output truncation)

Response format (STRICT):
You MUST respond with valid JSON only (no markdown, no extra text).
IMPORTANT: Within JSON string values, you MUST escape newlines as \\n (do not output raw line breaks inside a quoted string).
Use this exact structure:

{{
"title": "A short, engaging title (casual American English)",
"bodyMarkdown": "The full story text with paragraphs separated by blank lines.",
"keyPhrases": [
{{
"phrase": "",
"meaningEn": "",
"meaningZh": "",
"type": ""
}}
]
}}
"""


def build_story_prompt(scenario: ScenarioPayload, max_phrases: int = 30) -> str:
    """Build the user prompt for one scenario."""
    return STORY_PROMPT_TEMPLATE.format(
        seed_text=scenario.seed_text,
        place_name=scenario.place_name,
        category_name=scenario.category_name,
        min_phrases=max(1, max_phrases - 5),
        max_phrases=max_phrases,
    )


def build_story_messages(scenario: ScenarioPayload, max_phrases: int = 30) -> list[dict]:
    return [
        {"role": "system", "content": SYSTEM_PROMPT},
        {"role": "user", "content": build_story_prompt(scenario, max_phrases)},
    ]
