"""Prompt enhancement for children's book illustrations.

Raw chapter, character or scene text is scanned against fixed vocabularies and
combined with mood, age-group and style tables into a provider-ready prompt.
Every prompt carries the same negative clause so that providers without a
native negative prompt still receive it.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Dict, List, Sequence

from storyloom.character_consistency import normalize_text
from storyloom.models import CharacterDescription


logger = logging.getLogger(__name__)


KEYWORD_CATEGORIES: Dict[str, List[str]] = {
    "objects": [
        "animal", "tree", "forest", "house", "castle", "river", "sea", "mountain",
        "sky", "lake", "field", "city", "street", "park", "school", "bedroom", "room",
        "garden", "beach", "path", "bridge", "door", "window", "sun", "moon", "star",
        "cloud", "rain", "snow", "car", "bicycle", "boat", "train", "airplane",
        "toy", "book", "ball", "chair", "table", "bed", "hat", "food",
        "fruit", "water", "fire", "plant", "flower", "grass", "gift", "cake", "candy",
        "map", "treasure", "key", "lantern", "kite",
    ],
    "scenarios": [
        "farm", "backyard", "playground", "beach", "forest", "park",
        "school", "classroom", "library", "house", "bedroom", "kitchen", "garden",
        "shop", "restaurant", "circus", "zoo", "aquarium", "museum", "theater",
        "cinema", "hospital", "airport", "station", "street", "square", "meadow",
        "lake", "river", "cave", "mountain", "island", "ship", "submarine", "rocket",
        "castle", "palace", "cabin", "tent", "igloo", "pyramid", "tower", "jungle",
    ],
    "actions": [
        "run", "runs", "ran", "running", "jump", "jumped", "jumping", "swim", "swam",
        "swimming", "fly", "flew", "flying", "dance", "danced", "dancing", "sing", "sang",
        "singing", "shout", "shouted", "whisper", "whispered", "eat", "ate", "drink",
        "sleep", "slept", "sleeping", "wake", "woke", "dream", "dreamed", "hide", "hid",
        "hiding", "search", "searched", "find", "found", "look", "looked", "listen",
        "read", "write", "draw", "paint", "play", "played", "playing", "build", "built",
        "help", "helped", "save", "saved", "protect", "climb", "climbed", "explore",
        "explored", "fall", "fell",
    ],
    "emotions": [
        "joyful", "happy", "sad", "scared", "afraid", "surprised", "curious", "confused",
        "excited", "calm", "peaceful", "worried", "nervous", "brave", "shy", "proud",
        "embarrassed", "angry", "grumpy", "friendly", "caring", "loving", "jealous",
        "relieved", "hopeful",
    ],
    "colors": [
        "red", "blue", "green", "yellow", "orange", "purple", "pink", "brown",
        "black", "white", "gray", "golden", "silver", "colorful", "bright",
        "dark", "light", "transparent", "rainbow",
    ],
}

MOOD_KEYWORDS: Dict[str, List[str]] = {
    "happy": [
        "happy", "joyful", "fun", "smile", "smiled", "laugh", "laughed", "laughter",
        "game", "party", "celebrate", "gift", "cake", "candy", "friend", "friends", "family",
    ],
    "adventure": [
        "adventure", "explore", "explored", "discover", "discovered", "mysterious", "surprise",
        "forest", "cave", "map", "treasure", "hero", "magic", "challenge", "quest",
        "journey", "unknown", "wild", "courage", "brave",
    ],
    "calm": [
        "calm", "quiet", "silence", "peace", "peaceful", "gentle", "slow", "soft",
        "dream", "sleep", "rest", "relax", "night", "star", "stars", "moon",
        "cloud", "sky", "breathe", "garden", "flower",
    ],
    "exciting": [
        "exciting", "amazing", "incredible", "extraordinary", "astonishing", "impressive",
        "fast", "quick", "race", "competition", "win", "won", "champion", "cheer",
        "strong", "power", "energy", "fireworks", "brilliant",
    ],
}

MOOD_STYLES: Dict[str, Dict[str, str]] = {
    "happy": {
        "atmosphere": "a cheerful, sunny atmosphere",
        "palette": "vibrant, joyful colors",
        "lighting": "bright, warm lighting",
        "expressions": "smiling, lively characters",
    },
    "adventure": {
        "atmosphere": "a sense of adventure and discovery",
        "palette": "rich, contrasting colors",
        "lighting": "dramatic lighting with interesting shadows",
        "expressions": "characters showing wonder and determination",
    },
    "calm": {
        "atmosphere": "a peaceful, relaxing setting",
        "palette": "soft, harmonious tones",
        "lighting": "gentle, diffused light",
        "expressions": "characters with serene, relaxed expressions",
    },
    "exciting": {
        "atmosphere": "dynamic energy and movement",
        "palette": "intense, vivid colors",
        "lighting": "energetic lighting with sparkles and highlights",
        "expressions": "characters with animated, thrilled expressions",
    },
}

AGE_GROUP_STYLES: Dict[str, Dict[str, str]] = {
    "3-5": {
        "complexity": "extremely simple and clear composition with no distracting elements",
        "outlines": "thick, well-defined outlines",
        "colors": "bright, contrasting primary colors",
        "proportions": "rounded, exaggerated shapes with big-headed characters",
        "backgrounds": "simple backgrounds with few elements",
    },
    "6-8": {
        "complexity": "simple composition with a few interesting details",
        "outlines": "defined but not overly thick outlines",
        "colors": "a cheerful, varied palette",
        "proportions": "more balanced yet still stylized proportions",
        "backgrounds": "richer settings with visible secondary elements",
    },
    "9-12": {
        "complexity": "moderately detailed composition with depth",
        "outlines": "refined, varied linework",
        "colors": "sophisticated color schemes with subtle shading",
        "proportions": "more realistic but still stylized proportions",
        "backgrounds": "detailed settings that support the narrative",
    },
}

ILLUSTRATION_STYLES: Dict[str, Dict[str, str]] = {
    "cartoon": {
        "description": "children's cartoon style with clean outlines and vibrant colors",
        "inspirations": "in the spirit of family animated films",
    },
    "watercolor": {
        "description": "watercolor style with soft brushstrokes and gently blended colors",
        "inspirations": "like the picture books of Beatrix Potter or Quentin Blake",
    },
    "pencil": {
        "description": "pencil illustration with light strokes and subtle textures",
        "inspirations": "like the drawings of E.H. Shepard or Shaun Tan",
    },
    "digital": {
        "description": "modern digital illustration with crisp details and lighting effects",
        "inspirations": "like contemporary children's books and family video games",
    },
}

NEGATIVE_PROMPT_TERMS = [
    "text, words, letters, signatures, watermark",
    "inappropriate, frightening, violent or NSFW imagery",
    "photorealism, hyperrealism, adult proportions",
    "extra limbs, extra fingers, deformed hands, distorted faces",
    "overly complex elements, cluttered backgrounds",
    "photographic styles, overly realistic 3D rendering",
]

EXCLUDED_NAME_WORDS = {
    "The", "Then", "When", "Once", "One", "Suddenly", "Finally", "Now", "After", "Before",
    "Meanwhile", "However", "Day", "Night", "Morning", "Afternoon", "Evening", "Sun", "Moon",
    "God", "Chapter", "They", "She", "His", "Her", "But", "And", "With", "This", "That",
    "There", "What", "Where", "Why", "How", "Yes", "Not", "Soon", "Later", "Together",
    "Beginning", "Challenge", "Resolution", "Story", "Illustration",
}

PHYSICAL_DESCRIPTORS = [
    "tall", "short", "small", "big", "thin", "strong", "hair", "eyes", "face",
    "skin", "ears", "nose", "mouth", "teeth", "hand", "hands", "arm", "legs",
    "dress", "clothes", "hat", "wearing", "wore", "color", "colorful",
]

MAX_CHARACTERS_IN_PROMPT = 3
MAX_DETECTED_NAMES = 5

_SENTENCE_SPLIT = re.compile(r"[.!?]+")
_PROPER_NOUN = re.compile(r"\b[A-Z][a-zA-ZÀ-ÿ]{2,}\b")


@dataclass
class KeyElements:
    """Story elements found in a piece of text."""
    objects: List[str] = field(default_factory=list)
    scenarios: List[str] = field(default_factory=list)
    actions: List[str] = field(default_factory=list)
    emotions: List[str] = field(default_factory=list)
    colors: List[str] = field(default_factory=list)
    characters: List[str] = field(default_factory=list)


@dataclass
class EnhancedPrompt:
    prompt: str
    negative_prompt: str


def _contains_word(text: str, word: str) -> bool:
    return re.search(rf"\b{re.escape(word)}\b", text) is not None


def _count_word(text: str, word: str) -> int:
    return len(re.findall(rf"\b{re.escape(word)}\b", text))


class PromptEnhancer:
    """Builds enriched illustration prompts from story text."""

    def __init__(self, default_age_group: str = "6-8", default_style: str = "cartoon"):
        self.default_age_group = default_age_group
        self.default_style = default_style

    # Text analysis ---------------------------------------------------------

    def _proper_nouns(self, text: str) -> List[str]:
        """Capitalised tokens that are not sentence-initial, or that repeat."""
        found: List[str] = []
        for sentence in _SENTENCE_SPLIT.split(text):
            stripped = sentence.strip()
            for name in _PROPER_NOUN.findall(sentence):
                if name in found or name in EXCLUDED_NAME_WORDS:
                    continue
                if not stripped.startswith(name) or _count_word(text, name) > 1:
                    found.append(name)
        return found

    def extract_key_elements(self, text: str) -> KeyElements:
        normalized = normalize_text(text)
        elements = KeyElements(characters=self._proper_nouns(text))
        for category, keywords in KEYWORD_CATEGORIES.items():
            setattr(elements, category, [keyword for keyword in keywords if _contains_word(normalized, keyword)])
        return elements

    def detect_mood(self, text: str) -> str:
        """Highest scoring mood category; "happy" on a tie or when nothing matches."""
        normalized = normalize_text(text)
        scores = {
            mood: sum(_count_word(normalized, keyword) for keyword in keywords)
            for mood, keywords in MOOD_KEYWORDS.items()
        }
        best = max(scores.values())
        leaders = [mood for mood, score in scores.items() if score == best]

        mood = leaders[0] if best > 0 and len(leaders) == 1 else "happy"
        logger.debug(f"Detected mood {mood} (scores: {scores})")
        return mood

    def extract_character_names(self, text: str) -> List[str]:
        names = self._proper_nouns(text)[:MAX_DETECTED_NAMES]
        logger.debug(f"Detected characters: {', '.join(names) or 'none'}")
        return names

    def extract_character_description(self, character_name: str, text: str) -> str:
        """Up to three sentences about ``character_name``, most descriptive first."""
        sentences = [sentence.strip() for sentence in _SENTENCE_SPLIT.split(text) if sentence.strip()]
        relevant = [sentence for sentence in sentences if character_name in sentence]
        if not relevant:
            return f"A character named {character_name}"

        def _score(sentence: str) -> int:
            score = 5 if sentence.startswith(character_name) else 0
            lowered = sentence.lower()
            score += sum(2 for descriptor in PHYSICAL_DESCRIPTORS if _contains_word(lowered, descriptor))
            return score

        ranked = sorted(relevant, key=_score, reverse=True)[:3]
        return ". ".join(ranked) + "."

    # Prompt assembly -------------------------------------------------------

    def generate_negative_prompt(self) -> str:
        return ", ".join(NEGATIVE_PROMPT_TERMS)

    def _tables(self, age_group: str | None, style: str | None, mood: str | None):
        age_style = AGE_GROUP_STYLES.get(age_group or "", AGE_GROUP_STYLES[self.default_age_group])
        illustration = ILLUSTRATION_STYLES.get(style or "", ILLUSTRATION_STYLES[self.default_style])
        mood_style = MOOD_STYLES.get(mood or "", MOOD_STYLES["happy"])
        return age_style, illustration, mood_style

    def _character_clause(self, descriptions: Sequence[CharacterDescription], detected: List[str]) -> str:
        if descriptions:
            parts = []
            for character in descriptions[:MAX_CHARACTERS_IN_PROMPT]:
                attributes = character.visual_attributes
                details = ", ".join(attributes.colors)
                if attributes.clothing:
                    details += f", wearing {attributes.clothing}"
                if attributes.distinguishing_features:
                    details += f", with {', '.join(attributes.distinguishing_features)}"
                parts.append(f"{character.name} ({details.strip(', ')})" if details else character.name)
            return "; ".join(parts)
        if detected:
            return ", ".join(detected[:MAX_CHARACTERS_IN_PROMPT])
        return ""

    def _scene_direction(self, chapter_title: str, scene_direction: str | None) -> str:
        if not scene_direction:
            return ""
        header = f'Illustration for "{chapter_title}":'
        direction = scene_direction.strip()
        if direction.startswith(header):
            direction = direction[len(header):].strip()
        return direction.rstrip(". ")

    def _art_direction(self, age_style: Dict[str, str], illustration: Dict[str, str], mood_style: Dict[str, str]) -> str:
        return " ".join([
            f"Style: {illustration['description']}, {illustration['inspirations']}.",
            f"Composition: {age_style['complexity']},",
            f"{age_style['outlines']},",
            f"{age_style['colors']},",
            f"{age_style['proportions']},",
            f"{age_style['backgrounds']}.",
            f"{mood_style['lighting'].capitalize()} and {mood_style['palette']}.",
        ])

    def _finish(self, base: str, art_direction: str, age_group: str) -> EnhancedPrompt:
        negative = self.generate_negative_prompt()
        prompt = f"{base} {art_direction} Children's story for ages {age_group}. Avoid: {negative}"
        return EnhancedPrompt(prompt=prompt, negative_prompt=negative)

    def enhance_chapter_prompt(
        self,
        chapter_title: str,
        chapter_content: str,
        character_descriptions: Sequence[CharacterDescription] = (),
        age_group: str | None = None,
        style: str | None = None,
        mood: str | None = None,
        scene_direction: str | None = None,
    ) -> EnhancedPrompt:
        """Chapter illustration prompt.

        ``scene_direction`` is the chapter's own image prompt. Its leading
        ``Illustration for "<title>":`` header is dropped since the prompt opens
        with the title anyway.
        """
        age_group = age_group if age_group in AGE_GROUP_STYLES else self.default_age_group
        elements = self.extract_key_elements(chapter_content)
        age_style, illustration, mood_style = self._tables(age_group, style, mood)

        scenario = elements.scenarios[0] if elements.scenarios else "child-friendly setting"
        characters = self._character_clause(character_descriptions, elements.characters)
        objects = ", ".join(elements.objects[:3])
        direction = self._scene_direction(chapter_title, scene_direction)

        base = " ".join(part for part in [
            f'Illustration for "{chapter_title}".',
            f"Scene: {direction}." if direction else "",
            f"Scene showing {characters or 'friendly child characters'} in a {scenario}.",
            f"Including {objects}." if objects else "",
            f"{mood_style['atmosphere'].capitalize()} with {mood_style['expressions']}.",
            f"Main colors: {', '.join(elements.colors)}." if elements.colors else "",
        ] if part)

        logger.debug(f"Enhanced prompt built for chapter \"{chapter_title}\"")
        return self._finish(base, self._art_direction(age_style, illustration, mood_style), age_group)

    def enhance_character_prompt(
        self,
        character_name: str,
        character_description: str,
        age_group: str | None = None,
        style: str | None = None,
        mood: str | None = None,
    ) -> EnhancedPrompt:
        age_group = age_group if age_group in AGE_GROUP_STYLES else self.default_age_group
        elements = self.extract_key_elements(character_description)
        age_style, illustration, mood_style = self._tables(age_group, style, mood)
        emotion = elements.emotions[0] if elements.emotions else "happy"

        base = " ".join(part for part in [
            f"Portrait of a children's book character named {character_name}.",
            character_description[:200],
            f"The character looks {emotion}.",
            f"Main colors: {', '.join(elements.colors)}." if elements.colors else "",
            "Simple, fitting background.",
        ] if part)
        art_direction = " ".join([
            f"Style: {illustration['description']}, {illustration['inspirations']}.",
            f"Character with {age_style['proportions']},",
            f"{age_style['outlines']},",
            f"{age_style['colors']}.",
            f"{mood_style['lighting'].capitalize()} and {mood_style['palette']}.",
        ])
        return self._finish(base, art_direction, age_group)

    def enhance_scene_prompt(
        self,
        scene_description: str,
        character_descriptions: Sequence[CharacterDescription] = (),
        age_group: str | None = None,
        style: str | None = None,
        mood: str | None = None,
    ) -> EnhancedPrompt:
        age_group = age_group if age_group in AGE_GROUP_STYLES else self.default_age_group
        elements = self.extract_key_elements(scene_description)
        age_style, illustration, mood_style = self._tables(age_group, style, mood)

        scenario = elements.scenarios[0] if elements.scenarios else "fitting setting"
        characters = self._character_clause(character_descriptions, elements.characters)
        objects = ", ".join(elements.objects[:3])
        excerpt = scene_description[:100] + ("..." if len(scene_description) > 100 else "")

        base = " ".join(part for part in [
            f'Scene illustration: "{excerpt}"',
            f"Showing {characters or 'friendly child characters'} in a {scenario}.",
            f"Including {objects}." if objects else "",
            f"{mood_style['atmosphere'].capitalize()} with {mood_style['expressions']}.",
            f"Main colors: {', '.join(elements.colors)}." if elements.colors else "",
        ] if part)
        return self._finish(base, self._art_direction(age_style, illustration, mood_style), age_group)
