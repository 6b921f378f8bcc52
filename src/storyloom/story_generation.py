"""Story prompt construction and parsing of generated markdown stories."""

import logging
import math
import re
from typing import Dict, List, Sequence

from storyloom.chapters import extract_chapters
from storyloom.error_handling import ValidationError
from storyloom.models import GeneratedStory, TextGenerationParams


logger = logging.getLogger(__name__)

DEFAULT_TITLE = "A Magical Adventure"
WORDS_PER_MINUTE = 200

AGE_GROUP_GUIDANCE: Dict[str, Dict[str, str]] = {
    "3-5": {
        "instructions": (
            "Write a short story with simple sentences and very basic vocabulary suitable for "
            "children aged 3 to 5. Use repetition and simple rhymes. Focus on everyday situations, "
            "friendship and small discoveries."
        ),
        "vocabulary": "basic",
        "length": "very short (4-5 paragraphs)",
    },
    "6-8": {
        "instructions": (
            "Write a story with slightly richer sentences that remain accessible to children aged "
            "6 to 8. Include simple challenges for the characters and lessons about friendship and "
            "cooperation."
        ),
        "vocabulary": "intermediate",
        "length": "short (6-7 paragraphs)",
    },
    "9-12": {
        "instructions": (
            "Write a more elaborate story with character development and plot, suitable for "
            "children aged 9 to 12. It may explore overcoming challenges, self-discovery and friendship."
        ),
        "vocabulary": "advanced but still child-appropriate",
        "length": "medium (8-10 paragraphs)",
    },
}

SYSTEM_MESSAGE = "You are an award-winning author of children's stories."

_TITLE_PATTERN = re.compile(r"^#(?!#)[ \t]+(.+?)[ \t]*$", re.MULTILINE)
_SENTENCE_SPLIT = re.compile(r"[.!?]+")


def validate_story_request(characters: Sequence[str], theme: str, age_group: str) -> List[str]:
    """Normalised character list, or ValidationError for a malformed request."""
    names = [name.strip() for name in characters if name and name.strip()]
    if not names:
        raise ValidationError("At least one character is required")
    if not theme or not theme.strip():
        raise ValidationError("A story theme is required")
    if age_group not in AGE_GROUP_GUIDANCE:
        raise ValidationError(
            f"Unknown age group '{age_group}'; expected one of {', '.join(AGE_GROUP_GUIDANCE)}"
        )
    return names


def build_story_prompt(
    characters: Sequence[str],
    theme: str,
    age_group: str,
    child_name: str | None = None,
    text_only: bool = False,
) -> TextGenerationParams:
    names = validate_story_request(characters, theme, age_group)
    guidance = AGE_GROUP_GUIDANCE[age_group]

    personalization = (
        f'Use the name "{child_name}" for a main or supporting character in the story.' if child_name else ""
    )
    requirements = [
        'Split the story into 3-5 short chapters. Each chapter has its own title and starts with '
        'a markdown heading "## Chapter Name".',
        'Begin with a title formatted as "# Story Title" followed by a short introductory summary.',
    ]
    if not text_only:
        requirements.append(
            "End every chapter with a description for an illustration in the format:\n"
            "[IMAGE: detailed description of a scene illustrating this chapter, including characters and setting]"
        )
    numbered = "\n".join(f"{index}. {item}" for index, item in enumerate(requirements, 1))

    prompt = f"""{guidance['instructions']}

Write a {guidance['length']} story about "{theme.strip()}" featuring these characters: {', '.join(names)}.
{personalization}

The story must be educational, engaging and appropriate for the age group. Use {guidance['vocabulary']} vocabulary.
Do not include frightening, violent or otherwise inappropriate content.

IMPORTANT:
{numbered}

Answer in markdown, NOT JSON."""

    return TextGenerationParams(
        prompt=prompt,
        system_message=SYSTEM_MESSAGE,
        temperature=0.7,
        max_tokens=4000,
        format="markdown",
    )


def estimate_reading_time(content: str) -> int:
    words = len(content.split())
    return max(1, math.ceil(words / WORDS_PER_MINUTE))


def _summary(content: str, title_match: re.Match | None, theme: str) -> str:
    first_chapter = content.find("## ")
    if title_match and first_chapter > title_match.end():
        intro = content[title_match.end():first_chapter].strip()
        sentences = [sentence.strip() for sentence in _SENTENCE_SPLIT.split(intro) if sentence.strip()]
        if sentences:
            return ". ".join(sentences[:2]) + "."
    return f"A story about {theme}."


def parse_story(content: str, theme: str, text_only: bool = False) -> GeneratedStory:
    """Title, summary, reading time and chapters of a generated story."""
    title_match = _TITLE_PATTERN.search(content)
    title = title_match.group(1).strip() if title_match else DEFAULT_TITLE

    body = content
    if title_match and "## " not in content:
        # Keep the title line out of paragraph-bucketed chapters
        body = content[:title_match.start()] + content[title_match.end():]

    chapters = extract_chapters(body)
    if text_only:
        for chapter in chapters:
            chapter.image_prompt = None

    logger.debug(f"Parsed story \"{title}\" with {len(chapters)} chapter(s)")
    return GeneratedStory(
        title=title,
        content=content,
        summary=_summary(content, title_match, theme),
        reading_time_minutes=estimate_reading_time(content),
        chapters=chapters,
    )
