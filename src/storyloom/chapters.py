"""Split generated story text into chapters.

Markdown ``## `` headings are the primary structure. Without them the text is
bucketed by paragraph, which is a heuristic and not a guaranteed parse.
"""

import re
from typing import List

from storyloom.models import Chapter


CHAPTER_PATTERN = re.compile(r"^##(?!#)[ \t]+(.+?)[ \t]*$", re.MULTILINE)
IMAGE_MARKER_PATTERN = re.compile(r"\[(?:image|illustration|imagem):\s*([^\]]+)\]", re.IGNORECASE)
PARAGRAPH_SPLIT = re.compile(r"\n\s*\n")

FALLBACK_TITLES = ["Beginning", "Challenge", "Resolution"]
SINGLE_CHAPTER_TITLE = "The Story"


def _default_image_prompt(title: str, content: str, limit: int = 200) -> str:
    return f'Illustration for "{title}": {content[:limit].strip()}'


def _split_sections(content: str) -> List[Chapter]:
    headings = list(CHAPTER_PATTERN.finditer(content))
    chapters = []
    for index, heading in enumerate(headings):
        end = headings[index + 1].start() if index + 1 < len(headings) else len(content)
        title = heading.group(1).strip()
        body = content[heading.end():end].strip()
        if not title or not body:
            continue

        marker = IMAGE_MARKER_PATTERN.search(body)
        clean_body = IMAGE_MARKER_PATTERN.sub("", body).strip()
        if marker:
            image_prompt = f'Illustration for "{title}": {marker.group(1).strip()}'
        else:
            image_prompt = _default_image_prompt(title, clean_body)

        chapters.append(Chapter(title=title, content=clean_body, image_prompt=image_prompt))
    return chapters


def _bucket_paragraphs(paragraphs: List[str]) -> List[Chapter]:
    """Three chapters of near-equal paragraph counts, in order."""
    count = len(paragraphs)
    chapters = []
    for index, title in enumerate(FALLBACK_TITLES):
        start = index * count // len(FALLBACK_TITLES)
        end = (index + 1) * count // len(FALLBACK_TITLES)
        body = "\n\n".join(paragraphs[start:end])
        chapters.append(Chapter(title=title, content=body, image_prompt=_default_image_prompt(title, body, 150)))
    return chapters


def extract_chapters(content: str) -> List[Chapter]:
    """Chapters from ``## `` sections, falling back to paragraph buckets."""
    chapters = _split_sections(content)
    if chapters:
        return chapters

    paragraphs = [paragraph.strip() for paragraph in PARAGRAPH_SPLIT.split(content) if paragraph.strip()]
    if len(paragraphs) >= len(FALLBACK_TITLES):
        return _bucket_paragraphs(paragraphs)

    body = content.strip()
    return [Chapter(
        title=SINGLE_CHAPTER_TITLE,
        content=body,
        image_prompt=_default_image_prompt(SINGLE_CHAPTER_TITLE, body),
    )]
