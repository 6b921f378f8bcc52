"""Tests for character visual consistency across chapters."""

import asyncio

import pytest

from storyloom.character_consistency import (
    CharacterConsistencyCache,
    KnownCharacter,
    extract_visual_attributes,
    generate_consistent_colors,
    merge_visual_attributes,
    normalize_text,
)
from storyloom.models import CharacterVisualUpdate, VisualAttributes


class TestVisualAttributes:
    """Test attribute extraction and merging."""

    def test_extracts_colors_clothing_and_features(self):
        attributes = extract_visual_attributes("A golden-haired girl with a blue scarf and glasses, and freckles")

        assert attributes.colors == ["blue"]
        assert attributes.clothing == "scarf, glasses"
        assert "golden hair" in attributes.distinguishing_features
        assert "freckles" in attributes.distinguishing_features

    def test_extraction_ignores_diacritics(self):
        attributes = extract_visual_attributes("Zoé wears a pürple cape")

        assert attributes.colors == ["purple"]
        assert attributes.clothing == "cape"

    def test_creatures_become_features(self):
        attributes = extract_visual_attributes("A small green dragon")
        assert "dragon character" in attributes.distinguishing_features

    def test_merge_keeps_known_traits(self):
        old = VisualAttributes(colors=["red"], clothing="cape", distinguishing_features=["freckles", "wings"])
        new = VisualAttributes(colors=[], clothing="", distinguishing_features=["wings", "tail"])

        merged = merge_visual_attributes(old, new)

        assert merged.colors == ["red"]
        assert merged.clothing == "cape"
        assert merged.distinguishing_features == ["freckles", "wings", "tail"]

    def test_merge_replaces_with_non_empty_values(self):
        old = VisualAttributes(colors=["red"], clothing="cape")
        new = VisualAttributes(colors=["blue", "white"], clothing="hat")

        merged = merge_visual_attributes(old, new)

        assert merged.colors == ["blue", "white"]
        assert merged.clothing == "hat"


class TestConsistentColors:
    """Test the name-seeded palette."""

    def test_same_name_same_palette(self):
        assert generate_consistent_colors("Leo") == generate_consistent_colors("Leo")

    def test_palette_derived_from_code_points(self):
        # "Leo" sums to 288 and "Mia" to 279
        assert generate_consistent_colors("Leo") == ["teal", "orange"]
        assert generate_consistent_colors("Mia") == ["golden", "pink", "yellow"]

    def test_normalize_text(self):
        assert normalize_text("ZOÉ Ñandú") == "zoe nandu"


class TestCharacterConsistencyCache:
    """Test per-story records."""

    @pytest.mark.asyncio
    async def test_unknown_character_is_seeded_from_name(self):
        cache = CharacterConsistencyCache()

        [leo] = await cache.get_character_descriptions("story-1", ["Leo"])

        assert leo.name == "Leo"
        assert leo.visual_attributes.colors == ["teal", "orange"]
        assert leo.previous_images == []

    @pytest.mark.asyncio
    async def test_catalog_match_is_fuzzy(self):
        cache = CharacterConsistencyCache([
            KnownCharacter(name="Zoe", description="A curious girl with curly hair and a yellow raincoat"),
        ])

        [zoe] = await cache.get_character_descriptions("story-1", ["ZOÉ"])

        assert zoe.appearance.startswith("A curious girl")
        assert zoe.visual_attributes.colors == ["yellow"]
        assert "curly hair" in zoe.visual_attributes.distinguishing_features
        assert cache.find_known_character("Captain Zoe").name == "Zoe"
        assert cache.find_known_character("Max") is None

    @pytest.mark.asyncio
    async def test_previous_images_keep_last_three(self):
        cache = CharacterConsistencyCache()
        for number in range(1, 5):
            await cache.update_character_visuals("story-1", [
                CharacterVisualUpdate(name="Leo", image_url=f"https://img.example/u{number}.png"),
            ])

        [leo] = await cache.get_character_descriptions("story-1", ["Leo"])

        assert leo.previous_images == [
            "https://img.example/u2.png",
            "https://img.example/u3.png",
            "https://img.example/u4.png",
        ]

    @pytest.mark.asyncio
    async def test_chapter_appearance_is_replaced_not_duplicated(self):
        cache = CharacterConsistencyCache()
        await cache.update_character_visuals("story-1", [
            CharacterVisualUpdate(name="Leo", image_url="https://img.example/a.png", chapter_id="1"),
        ])
        await cache.update_character_visuals("story-1", [
            CharacterVisualUpdate(name="Leo", image_url="https://img.example/b.png", chapter_id="1"),
            CharacterVisualUpdate(name="Leo", image_url="https://img.example/c.png", chapter_id="2"),
        ])

        [leo] = cache.get_story_characters("story-1")

        assert [(item.chapter_id, item.image_url) for item in leo.chapter_appearances] == [
            ("1", "https://img.example/b.png"),
            ("2", "https://img.example/c.png"),
        ]

    @pytest.mark.asyncio
    async def test_update_merges_description(self):
        cache = CharacterConsistencyCache()
        await cache.update_character_visuals("story-1", [
            CharacterVisualUpdate(name="Leo", image_url="https://img.example/a.png", description="Leo wore a red cape."),
        ])
        await cache.update_character_visuals("story-1", [
            CharacterVisualUpdate(name="Leo", image_url="https://img.example/b.png", description="Leo has freckles."),
        ])

        [leo] = await cache.get_character_descriptions("story-1", ["Leo"])

        assert leo.visual_attributes.colors == ["red"]
        assert leo.visual_attributes.clothing == "cape"
        assert leo.visual_attributes.distinguishing_features == ["freckles"]

    @pytest.mark.asyncio
    async def test_returned_records_are_copies(self):
        cache = CharacterConsistencyCache()
        [leo] = await cache.get_character_descriptions("story-1", ["Leo"])
        leo.previous_images.append("https://img.example/tampered.png")

        [again] = await cache.get_character_descriptions("story-1", ["Leo"])
        assert again.previous_images == []

    @pytest.mark.asyncio
    async def test_stories_are_isolated(self):
        cache = CharacterConsistencyCache()
        await cache.update_character_visuals("story-1", [
            CharacterVisualUpdate(name="Leo", image_url="https://img.example/a.png"),
        ])

        [other] = await cache.get_character_descriptions("story-2", ["Leo"])
        assert other.previous_images == []

        await cache.clear_story("story-1")
        assert cache.get_story_characters("story-1") == []

    @pytest.mark.asyncio
    async def test_clear_waits_for_in_flight_update(self):
        cache = CharacterConsistencyCache()
        await cache.update_character_visuals("story-1", [
            CharacterVisualUpdate(name="Leo", image_url="https://img.example/a.png"),
        ])
        lock = cache._lock("story-1")

        async with lock:
            clearing = asyncio.create_task(cache.clear_story("story-1"))
            await asyncio.sleep(0)
            assert not clearing.done()
            assert len(cache.get_story_characters("story-1")) == 1

        await clearing
        assert cache.get_story_characters("story-1") == []
        assert cache._lock("story-1") is lock

    @pytest.mark.asyncio
    async def test_concurrent_updates_are_all_applied(self):
        cache = CharacterConsistencyCache()
        await asyncio.gather(*(
            cache.update_character_visuals("story-1", [
                CharacterVisualUpdate(name="Leo", image_url=f"https://img.example/{n}.png", chapter_id=str(n)),
            ])
            for n in range(5)
        ))

        [leo] = cache.get_story_characters("story-1")
        assert len(leo.chapter_appearances) == 5
        assert len(leo.previous_images) == 3
