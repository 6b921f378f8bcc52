"""Test configuration: path setup and in-memory fake providers.

Ensures the `src` directory is on sys.path so the `storyloom` package
can be imported without installing the project in editable mode.
"""

import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from storyloom.models import (  # noqa: E402
    AudioGenerationParams,
    AudioGenerationResult,
    ImageGenerationParams,
    ImageGenerationResult,
    ProviderCapabilities,
    TextGenerationParams,
    TextGenerationResult,
)
from storyloom.providers import GenerationProvider  # noqa: E402


class FakeProvider(GenerationProvider):
    """Scriptable provider that records every call.

    ``image_outcomes``, ``text_outcomes`` and ``audio_outcomes`` are consumed in
    order; each entry is either a url, content or base64 string (success), None
    (failed result) or an exception instance (raised). When exhausted the last entry repeats.
    """

    requires_api_key = False

    def __init__(
        self,
        provider_id,
        text=False,
        image=False,
        healthy=True,
        image_outcomes=None,
        text_outcomes=None,
        health_error=None,
        audio=False,
        audio_outcomes=None,
    ):
        self.id = provider_id
        self.name = provider_id.title()
        self.capabilities = ProviderCapabilities(text_generation=text, image_generation=image, audio_generation=audio)
        self.models = [f"{provider_id}-model"]
        self.default_image_model = f"{provider_id}-model"
        super().__init__()
        self.healthy = healthy
        self.health_error = health_error
        self.image_outcomes = list(image_outcomes if image_outcomes is not None else [f"https://img.example/{provider_id}.png"])
        self.text_outcomes = list(text_outcomes if text_outcomes is not None else [f"text from {provider_id}"])
        self.audio_outcomes = list(audio_outcomes if audio_outcomes is not None else ["bXAz"])
        self.image_calls = []
        self.text_calls = []
        self.audio_calls = []
        self.health_checks = 0

    async def _probe(self):
        self.health_checks += 1
        if self.health_error is not None:
            raise self.health_error
        return self.healthy, "ok" if self.healthy else "down"

    def _next(self, outcomes):
        return outcomes.pop(0) if len(outcomes) > 1 else outcomes[0]

    async def generate_text(self, params: TextGenerationParams) -> TextGenerationResult:
        self.text_calls.append(params)
        outcome = self._next(self.text_outcomes)
        if isinstance(outcome, Exception):
            raise outcome
        return TextGenerationResult(content=outcome or "", provider=self.id)

    async def generate_image(self, params: ImageGenerationParams) -> ImageGenerationResult:
        self.image_calls.append(params)
        outcome = self._next(self.image_outcomes)
        if isinstance(outcome, Exception):
            raise outcome
        if outcome is None:
            return ImageGenerationResult(success=False, provider=self.id, error=f"{self.id} refused")
        return ImageGenerationResult(success=True, image_url=outcome, provider=self.id, model=params.model)

    async def generate_audio(self, params: AudioGenerationParams) -> AudioGenerationResult:
        self.audio_calls.append(params)
        outcome = self._next(self.audio_outcomes)
        if isinstance(outcome, Exception):
            raise outcome
        return AudioGenerationResult(audio_base64=outcome or "", provider=self.id, voice=params.voice)


@pytest.fixture
def make_provider():
    """Factory for fake providers."""
    return FakeProvider


STORY_MARKDOWN = """# The Lost Map

Leo and Mia find an old map in the attic. They decide to follow it.

## The Map
Leo unfolded the map on the floor while Mia smiled.
[IMAGE: Leo and Mia holding an old map in a cozy attic]

## The Forest
Together Leo and Mia explored the forest and found the treasure.
[IMAGE: Leo and Mia finding a treasure chest in a sunny forest]
"""


def build_service(providers, allowed=None, text_default="alpha", image_default="alpha"):
    """Service around ``providers`` with a single tier allowing them all."""
    from storyloom.models import RoutingConfig, TierLimits
    from storyloom.registry import ProviderRegistry
    from storyloom.routing import ProviderRouter
    from storyloom.service import StoryGenerationService

    registry = ProviderRegistry()
    for provider in providers:
        registry.register(provider)
    ids = [provider.id for provider in providers]
    config = RoutingConfig(
        default_providers={"text": text_default, "image": image_default, "audio": text_default},
        fallback_order={"text": ids, "image": ids, "audio": ids},
        tiers={"free": TierLimits(allowed_providers=allowed or ids, max_requests=10, max_tokens=4000)},
    )
    router = ProviderRouter(registry, config, backup_image_url="https://cdn.example/backup.png")
    return StoryGenerationService(registry, router=router)


@pytest.fixture
def make_service():
    """Factory for services built around fake providers."""
    return build_service


@pytest.fixture
def story_markdown():
    return STORY_MARKDOWN
