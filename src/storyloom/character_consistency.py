"""Per-story character visual records kept consistent across chapter illustrations."""

from __future__ import annotations

import asyncio
import logging
import re
import unicodedata
from typing import Dict, Iterable, List

from pydantic import BaseModel

from storyloom.models import (
    ChapterAppearance,
    CharacterDescription,
    CharacterVisualUpdate,
    VisualAttributes,
)


logger = logging.getLogger(__name__)

MAX_PREVIOUS_IMAGES = 3

COLOR_TERMS = [
    "red", "blue", "green", "yellow", "orange", "purple", "pink", "brown",
    "black", "white", "gray", "grey", "golden", "silver", "violet", "turquoise",
]

CLOTHING_TERMS = [
    "hat", "cap", "dress", "shirt", "t-shirt", "pants", "trousers", "shorts",
    "skirt", "jacket", "coat", "cape", "cloak", "scarf", "boots", "shoes",
    "sneakers", "glasses", "crown", "backpack", "overalls", "sweater", "vest",
]

FEATURE_TERMS = [
    "curly hair", "straight hair", "long hair", "short hair", "braids", "ponytail",
    "freckles", "glasses", "beard", "moustache", "mustache", "wings", "tail",
    "horns", "whiskers", "fur", "feathers", "scales", "big eyes", "blue eyes",
    "green eyes", "brown eyes", "dimples", "missing tooth", "spots", "stripes",
]

CREATURE_TYPES = [
    "dragon", "unicorn", "fairy", "elf", "robot", "dinosaur", "mermaid", "wizard",
    "lion", "tiger", "bear", "wolf", "fox", "rabbit", "bunny", "owl", "cat", "dog",
]

# Stable palette for characters without a catalog entry
NAME_SEEDED_PALETTE = [
    "red", "blue", "green", "yellow", "purple", "orange", "pink", "brown", "teal", "golden",
]


class KnownCharacter(BaseModel):
    """A catalog entry describing a recurring character."""
    name: str
    description: str


def normalize_text(text: str) -> str:
    """Lowercase and strip diacritics."""
    decomposed = unicodedata.normalize("NFD", text.lower())
    return "".join(char for char in decomposed if unicodedata.category(char) != "Mn")


def _has_word(text: str, term: str) -> bool:
    return re.search(rf"(?<![\w-]){re.escape(term)}(?![\w-])", text) is not None


def extract_visual_attributes(description: str) -> VisualAttributes:
    """Infer colors, clothing and distinguishing features from free text."""
    text = normalize_text(description or "")

    colors = [color for color in COLOR_TERMS if _has_word(text, color)]
    clothing = [item for item in CLOTHING_TERMS if _has_word(text, item) or _has_word(text, f"{item}s")]

    features = [feature for feature in FEATURE_TERMS if _has_word(text, feature)]
    for color in COLOR_TERMS:
        hair_patterns = (
            rf"\b{color}[- ]haired\b",
            rf"\b{color} hair\b",
            rf"\bhair (?:of|the) colou?r(?: of)? {color}\b",
        )
        if any(re.search(pattern, text) for pattern in hair_patterns):
            feature = f"{color} hair"
            if feature not in features:
                features.append(feature)
    for creature in CREATURE_TYPES:
        if _has_word(text, creature):
            features.append(f"{creature} character")

    return VisualAttributes(
        colors=colors,
        clothing=", ".join(clothing),
        distinguishing_features=features,
    )


def generate_consistent_colors(name: str) -> List[str]:
    """Deterministic 2-3 color palette derived from the sum of the name's code points."""
    seed = sum(ord(char) for char in name)
    count = (seed % 2) + 2
    return [NAME_SEEDED_PALETTE[(seed + index * 7) % len(NAME_SEEDED_PALETTE)] for index in range(count)]


def merge_visual_attributes(old: VisualAttributes, new: VisualAttributes) -> VisualAttributes:
    """Merge new observations into a record without losing known traits.

    Colors are replaced only by a non-empty list, clothing only by a non-empty
    string, and features are unioned in first-seen order.
    """
    features = list(old.distinguishing_features)
    for feature in new.distinguishing_features:
        if feature not in features:
            features.append(feature)

    return VisualAttributes(
        colors=list(new.colors) if new.colors else list(old.colors),
        clothing=new.clothing or old.clothing,
        distinguishing_features=features,
    )


class CharacterConsistencyCache:
    """In-memory character records per story.

    Records are created on first reference and live for the lifetime of the
    process. All access to one story is serialised by a per-story lock.
    """

    def __init__(self, catalog: Iterable[KnownCharacter] = ()):
        self.catalog: List[KnownCharacter] = list(catalog)
        self._records: Dict[str, Dict[str, CharacterDescription]] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock(self, story_id: str) -> asyncio.Lock:
        if story_id not in self._locks:
            self._locks[story_id] = asyncio.Lock()
        return self._locks[story_id]

    def find_known_character(self, name: str) -> KnownCharacter | None:
        """Fuzzy catalog lookup: case and accent insensitive containment either way."""
        wanted = normalize_text(name).strip()
        if not wanted:
            return None
        for entry in self.catalog:
            known = normalize_text(entry.name)
            if known == wanted or known in wanted or wanted in known:
                return entry
        return None

    def _seed(self, name: str) -> CharacterDescription:
        known = self.find_known_character(name)
        if known is not None:
            attributes = extract_visual_attributes(known.description)
            if not attributes.colors:
                attributes.colors = generate_consistent_colors(name)
            logger.debug(f"Seeded {name} from catalog entry {known.name}")
            return CharacterDescription(name=name, appearance=known.description, visual_attributes=attributes)

        colors = generate_consistent_colors(name)
        return CharacterDescription(
            name=name,
            appearance=f"{name}, a friendly character with {' and '.join(colors)} colors",
            visual_attributes=VisualAttributes(colors=colors),
        )

    def _record(self, story_id: str, name: str) -> CharacterDescription:
        story = self._records.setdefault(story_id, {})
        key = normalize_text(name).strip()
        if key not in story:
            story[key] = self._seed(name)
        return story[key]

    async def get_character_descriptions(self, story_id: str, names: Iterable[str]) -> List[CharacterDescription]:
        """Records for ``names`` in ``story_id``, seeding unknown ones. Returns copies."""
        story_id = str(story_id)
        async with self._lock(story_id):
            return [
                self._record(story_id, name).model_copy(deep=True)
                for name in names
                if name and name.strip()
            ]

    async def update_character_visuals(self, story_id: str, updates: Iterable[CharacterVisualUpdate]) -> None:
        """Fold a new illustration into each character's record."""
        story_id = str(story_id)
        async with self._lock(story_id):
            for update in updates:
                record = self._record(story_id, update.name)
                self._apply(record, update)

    def _apply(self, record: CharacterDescription, update: CharacterVisualUpdate) -> None:
        if update.image_url:
            record.previous_images.append(update.image_url)
            del record.previous_images[:-MAX_PREVIOUS_IMAGES]

        if update.chapter_id is not None:
            appearance = ChapterAppearance(
                chapter_id=str(update.chapter_id),
                image_url=update.image_url,
                description=update.description,
            )
            for index, existing in enumerate(record.chapter_appearances):
                if existing.chapter_id == appearance.chapter_id:
                    record.chapter_appearances[index] = appearance
                    break
            else:
                record.chapter_appearances.append(appearance)

        if update.description:
            record.visual_attributes = merge_visual_attributes(
                record.visual_attributes, extract_visual_attributes(update.description)
            )

    def get_story_characters(self, story_id: str) -> List[CharacterDescription]:
        return [record.model_copy(deep=True) for record in self._records.get(str(story_id), {}).values()]

    async def clear_story(self, story_id: str) -> None:
        """Drop a story's records once any in-flight update has finished."""
        story_id = str(story_id)
        async with self._lock(story_id):
            self._records.pop(story_id, None)
