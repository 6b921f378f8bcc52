"""Story generation service: the entry point used by the CLI and the web API."""

import asyncio
import logging
from typing import Awaitable, Callable, Dict, List, Sequence

from storyloom.character_consistency import CharacterConsistencyCache, KnownCharacter
from storyloom.context import StoryloomContext, get_default_context
from storyloom.health import HealthMonitor
from storyloom.metrics import MetricsTracker
from storyloom.models import (
    AudioGenerationParams,
    AudioGenerationResult,
    ApiKeyUpdateResult,
    Chapter,
    CharacterVisualUpdate,
    GeneratedStory,
    HealthCheckResult,
    ImageGenerationParams,
    ImageGenerationResult,
    IllustrationJob,
    IllustrationOptions,
    ProviderReport,
    ProviderStatusEntry,
    TierLimits,
)
from storyloom.prompt_engineering import PromptEnhancer
from storyloom.providers import GenerationProvider, ProviderFactory
from storyloom.registry import ProviderRegistry
from storyloom.routing import ProviderRouter
from storyloom.story_generation import build_story_prompt, parse_story


logger = logging.getLogger(__name__)

ChapterCallback = Callable[[int, Chapter, ImageGenerationResult], Awaitable[None] | None]


def provider_state(provider: GenerationProvider) -> str:
    """Administrative state: online, offline, unconfigured or error."""
    if provider.requires_api_key and not provider.has_api_key():
        return "unconfigured"
    if provider.status.is_available:
        return "online"
    if provider.status.last_error:
        return "error"
    return "offline"


class StoryGenerationService:
    """Owns one registry, router, consistency cache and prompt enhancer.

    Construct it explicitly and pass it to callers; tests build it around
    fake providers.
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        router: ProviderRouter | None = None,
        character_cache: CharacterConsistencyCache | None = None,
        prompt_enhancer: PromptEnhancer | None = None,
        default_tier: str | None = None,
    ):
        self.registry = registry
        self.router = router or ProviderRouter(registry)
        self.character_cache = character_cache or CharacterConsistencyCache()
        self.prompt_enhancer = prompt_enhancer or PromptEnhancer()
        self.default_tier = default_tier or self.router.config.default_tier

        self._jobs: Dict[str, IllustrationJob] = {}
        self._job_chapters: Dict[str, List[Chapter]] = {}
        self._job_tasks: Dict[str, asyncio.Task] = {}

    @classmethod
    def from_context(
        cls,
        context: StoryloomContext | None = None,
        catalog: Sequence[KnownCharacter] = (),
    ) -> "StoryGenerationService":
        """Service with every known provider, keyed and configured from ``context``."""
        context = context or get_default_context()
        registry = ProviderRegistry(MetricsTracker(), HealthMonitor())
        for provider in ProviderFactory.create_all(context):
            registry.register(provider)

        router = ProviderRouter(
            registry,
            config=context.build_routing_config(),
            backup_image_url=context.backup_image_url,
        )
        return cls(
            registry,
            router=router,
            character_cache=CharacterConsistencyCache(catalog),
            default_tier=context.default_tier,
        )

    # Stories ---------------------------------------------------------------

    async def generate_story_text(
        self,
        characters: Sequence[str],
        theme: str,
        age_group: str,
        child_name: str | None = None,
        text_only: bool = False,
        tier: str | None = None,
    ) -> GeneratedStory:
        """Generate and parse a story. Routing errors propagate to the caller."""
        params = build_story_prompt(characters, theme, age_group, child_name, text_only)
        logger.info(f"Generating story about \"{theme}\" for ages {age_group}")

        result = await self.router.generate_text(params, tier or self.default_tier)
        story = parse_story(result.content, theme, text_only=text_only)
        logger.info(f"Story \"{story.title}\" generated by {result.provider} ({len(story.chapters)} chapters)")
        return story

    # Illustrations ---------------------------------------------------------

    async def generate_chapter_image(
        self,
        chapter_title: str,
        chapter_content: str,
        character_names: Sequence[str] | None = None,
        options: IllustrationOptions | None = None,
        tier: str | None = None,
        image_prompt: str | None = None,
    ) -> ImageGenerationResult:
        """Illustrate one chapter. Never raises.

        ``image_prompt`` is the chapter's scene direction, usually the
        ``[IMAGE: ...]`` marker parsed from the story text.
        """
        options = options or IllustrationOptions()
        if options.text_only:
            return await self.router.generate_image(ImageGenerationParams(text_only=True))

        try:
            if character_names is None:
                character_names = options.character_names or self.prompt_enhancer.extract_character_names(chapter_content)
            mood = options.mood or self.prompt_enhancer.detect_mood(chapter_content)

            descriptions = []
            if options.story_id:
                descriptions = await self.character_cache.get_character_descriptions(options.story_id, character_names)

            enhanced = self.prompt_enhancer.enhance_chapter_prompt(
                chapter_title,
                chapter_content,
                character_descriptions=descriptions,
                age_group=options.age_group,
                style=options.style,
                mood=mood,
                scene_direction=image_prompt,
            )
            params = ImageGenerationParams(
                prompt=enhanced.prompt,
                negative_prompt=enhanced.negative_prompt,
                style=options.style,
                mood=mood,
                age_group=options.age_group,
                provider=options.force_provider,
                character_descriptions=descriptions,
            )
        except Exception as exc:
            logger.error(f"Could not prepare illustration for \"{chapter_title}\"", exc_info=exc)
            return self.router.backup_result(chapter_title, [], {"prompt": str(exc)})

        result = await self.router.generate_image(params, tier or self.default_tier)

        if options.story_id and result.success and result.image_url and not result.is_backup:
            updates = [
                CharacterVisualUpdate(
                    name=name,
                    image_url=result.image_url,
                    description=self.prompt_enhancer.extract_character_description(name, chapter_content),
                    chapter_id=options.chapter_id,
                )
                for name in character_names
            ]
            try:
                await self.character_cache.update_character_visuals(options.story_id, updates)
            except Exception as exc:
                logger.error(f"Character consistency update failed for story {options.story_id}", exc_info=exc)

        return result

    async def generate_all_illustrations(
        self,
        story_id: str,
        chapters: List[Chapter],
        options: IllustrationOptions | None = None,
        tier: str | None = None,
        on_chapter: ChapterCallback | None = None,
    ) -> IllustrationJob:
        """Acknowledge immediately and illustrate ``chapters`` in the background.

        Chapters are illustrated one at a time and their ``image_url`` is set in
        place as each finishes.
        """
        story_id = str(story_id)
        options = options or IllustrationOptions()
        job = IllustrationJob(story_id=story_id, total_chapters=len(chapters))
        self._jobs[story_id] = job
        self._job_chapters[story_id] = chapters

        task = asyncio.get_running_loop().create_task(
            self._illustrate_chapters(job, chapters, options, tier, on_chapter)
        )
        self._job_tasks[story_id] = task
        task.add_done_callback(lambda _: self._job_tasks.pop(story_id, None))
        logger.info(f"Illustrating {len(chapters)} chapter(s) for story {story_id} in the background")
        return job.model_copy()

    async def _illustrate_chapters(
        self,
        job: IllustrationJob,
        chapters: List[Chapter],
        options: IllustrationOptions,
        tier: str | None,
        on_chapter: ChapterCallback | None,
    ) -> None:
        for index, chapter in enumerate(chapters):
            chapter_options = options.model_copy(update={
                "story_id": job.story_id,
                "chapter_id": str(index + 1),
            })
            result = await self.generate_chapter_image(
                chapter.title,
                chapter.content,
                options.character_names,
                chapter_options,
                tier,
                image_prompt=chapter.image_prompt,
            )
            chapter.image_url = result.image_url or None
            job.completed_chapters += 1
            if result.is_backup:
                job.backup_chapters += 1

            if on_chapter is not None:
                try:
                    outcome = on_chapter(index, chapter, result)
                    if asyncio.iscoroutine(outcome):
                        await outcome
                except Exception as exc:
                    logger.error(f"Chapter callback failed for story {job.story_id}", exc_info=exc)

        job.status = "completed"
        logger.info(
            f"Story {job.story_id}: {job.completed_chapters} chapter(s) illustrated, "
            f"{job.backup_chapters} with backup images"
        )

    def get_illustration_job(self, story_id: str) -> IllustrationJob | None:
        job = self._jobs.get(str(story_id))
        return job.model_copy() if job else None

    def get_job_chapters(self, story_id: str) -> List[Chapter]:
        return self._job_chapters.get(str(story_id), [])

    async def wait_for_illustrations(self, story_id: str) -> IllustrationJob | None:
        task = self._job_tasks.get(str(story_id))
        if task is not None:
            await task
        return self.get_illustration_job(story_id)

    # Audio -----------------------------------------------------------------

    async def generate_audio(self, text: str, voice: str | None = None, tier: str | None = None) -> AudioGenerationResult:
        """Narrate ``text``. Routing errors propagate to the caller."""
        result = await self.router.generate_audio(AudioGenerationParams(text=text, voice=voice), tier or self.default_tier)
        logger.info(f"Narration of {len(text)} characters generated by {result.provider}")
        return result

    # Providers -------------------------------------------------------------

    def get_providers_status(self) -> List[ProviderStatusEntry]:
        return [
            ProviderStatusEntry(
                id=provider.id,
                name=provider.name,
                status=provider_state(provider),
                models=list(provider.models),
                supports_styles=provider.supports_styles,
                message=provider.status.message,
            )
            for provider in self.registry
        ]

    def get_provider_report(self) -> List[ProviderReport]:
        return self.registry.status()

    def get_tier_limits(self) -> Dict[str, TierLimits]:
        return dict(self.router.config.tiers)

    def set_api_key(self, provider_id: str, api_key: str) -> ApiKeyUpdateResult:
        return self.registry.set_api_key(provider_id, api_key)

    async def check_all_providers_health(self) -> Dict[str, HealthCheckResult]:
        return await self.registry.health_monitor.check_all_providers_health()
