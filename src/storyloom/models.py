"""Data models for provider routing, story generation and chapter illustration."""

from __future__ import annotations

import json
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List

from pydantic import BaseModel, Field, model_validator


class Capability(str, Enum):
    """Generation capabilities a provider may declare."""
    TEXT = "text"
    IMAGE = "image"
    AUDIO = "audio"


class AgeGroup(str, Enum):
    """Reader age groups with dedicated writing and illustration guidance."""
    TODDLER = "3-5"
    EARLY_READER = "6-8"
    MIDDLE_GRADE = "9-12"


class IllustrationStyle(str, Enum):
    """Illustration styles with a prompt description table."""
    CARTOON = "cartoon"
    WATERCOLOR = "watercolor"
    PENCIL = "pencil"
    DIGITAL = "digital"


class Mood(str, Enum):
    """Atmosphere categories used for prompt enrichment."""
    HAPPY = "happy"
    ADVENTURE = "adventure"
    CALM = "calm"
    EXCITING = "exciting"


class ProviderCapabilities(BaseModel):
    """Static description of what a provider can generate."""
    text_generation: bool = Field(default=False, description="Provider can generate text")
    image_generation: bool = Field(default=False, description="Provider can generate images")
    audio_generation: bool = Field(default=False, description="Provider can generate audio")
    max_context_length: int | None = Field(default=None, description="Largest prompt context in tokens")
    languages_supported: List[str] = Field(default_factory=lambda: ["en"])

    def supports(self, capability: Capability) -> bool:
        return {
            Capability.TEXT: self.text_generation,
            Capability.IMAGE: self.image_generation,
            Capability.AUDIO: self.audio_generation,
        }[Capability(capability)]


class ProviderStatus(BaseModel):
    """Live status of a provider, refreshed by health checks."""
    is_available: bool = Field(default=False, description="Last health check succeeded")
    last_checked: datetime | None = Field(default=None, description="When the last health check finished")
    response_time_ms: float | None = Field(default=None, description="Latency of the last health probe")
    message: str = Field(default="Not checked yet")
    last_error: str | None = Field(default=None, description="Exception raised by the last probe, if any")


class HealthCheckResult(BaseModel):
    """Outcome of a single health probe."""
    is_healthy: bool
    response_time_ms: float = 0.0
    message: str = ""
    timestamp: datetime = Field(default_factory=datetime.now)


class KeyValidation(BaseModel):
    """Result of a provider-specific API key format check."""
    is_valid: bool
    message: str


class ApiKeyUpdateResult(BaseModel):
    """Returned by the registry when an API key is swapped."""
    success: bool
    message: str
    validation: KeyValidation


class MetricsSnapshot(BaseModel):
    """Counters reported for one provider."""
    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    success_rate: str = "N/A"
    last_used: datetime | None = None
    cooldown_until: datetime | None = None


class ProviderReport(BaseModel):
    """One row of the registry status listing."""
    id: str
    name: str
    is_available: bool
    capabilities: ProviderCapabilities
    metrics: MetricsSnapshot


class ProviderStatusEntry(BaseModel):
    """One row of the administrative provider listing."""
    id: str
    name: str
    status: str = Field(description="online | offline | unconfigured | error")
    models: List[str] = Field(default_factory=list)
    supports_styles: bool = False
    message: str = ""


class TextGenerationParams(BaseModel):
    """A text generation request."""
    prompt: str
    system_message: str | None = None
    max_tokens: int | None = None
    temperature: float = 0.7
    model: str | None = Field(default=None, description="Model override")
    provider: str | None = Field(default=None, description="Provider override")
    format: str | None = Field(default=None, description="Requested output format, e.g. markdown")


class TextGenerationResult(BaseModel):
    """Text produced by a provider."""
    content: str
    provider: str
    model: str | None = None
    usage: Dict[str, Any] = Field(default_factory=dict)


class AudioGenerationParams(BaseModel):
    """A text-to-speech request."""
    text: str
    voice: str | None = Field(default=None, description="Voice preset; the provider default when omitted")
    model: str | None = Field(default=None, description="Model override")
    provider: str | None = Field(default=None, description="Provider override")


class AudioGenerationResult(BaseModel):
    """Narration produced by a provider, as base64-encoded audio."""
    audio_base64: str
    mime_type: str = "audio/mpeg"
    provider: str
    model: str | None = None
    voice: str | None = None

    @property
    def data_url(self) -> str:
        return f"data:{self.mime_type};base64,{self.audio_base64}"


class VisualAttributes(BaseModel):
    """Visual traits inferred for a character."""
    colors: List[str] = Field(default_factory=list)
    clothing: str = ""
    distinguishing_features: List[str] = Field(default_factory=list)


class ChapterAppearance(BaseModel):
    """A character's appearance in one illustrated chapter."""
    chapter_id: str
    image_url: str
    description: str = ""


class CharacterDescription(BaseModel):
    """Accumulated visual record of one character within one story."""
    name: str
    appearance: str = ""
    visual_attributes: VisualAttributes = Field(default_factory=VisualAttributes)
    previous_images: List[str] = Field(default_factory=list)
    chapter_appearances: List[ChapterAppearance] = Field(default_factory=list)


class CharacterVisualUpdate(BaseModel):
    """A new illustration featuring a character."""
    name: str
    image_url: str
    description: str = ""
    chapter_id: str | None = None


class ImageGenerationParams(BaseModel):
    """An image generation request."""
    prompt: str = ""
    negative_prompt: str | None = None
    style: str | None = None
    mood: str | None = None
    age_group: str | None = None
    width: int | None = None
    height: int | None = None
    size: str | None = Field(default=None, description="WIDTHxHEIGHT shorthand")
    steps: int | None = None
    quality: str | None = None
    model: str | None = Field(default=None, description="Model override")
    provider: str | None = Field(default=None, description="Provider override")
    seed: int | None = None
    character_descriptions: List[CharacterDescription] = Field(default_factory=list)
    text_only: bool = False

    @model_validator(mode="after")
    def _expand_size(self) -> "ImageGenerationParams":
        if self.size and (self.width is None or self.height is None):
            try:
                width, height = (int(part) for part in self.size.lower().split("x", 1))
            except ValueError:
                return self
            self.width = self.width or width
            self.height = self.height or height
        return self


class ImageGenerationResult(BaseModel):
    """Outcome of an image request. The routing layer always returns success."""
    success: bool
    image_url: str = ""
    provider: str
    model: str | None = None
    is_backup: bool = False
    error: str | None = None
    attempted_providers: List[str] = Field(default_factory=list)
    prompt_used: str | None = None
    seed: int | None = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class TierLimits(BaseModel):
    """Access limits of a subscription tier."""
    allowed_providers: List[str]
    max_requests: int = Field(description="Advertised request allowance per billing period; reported, not enforced")
    max_tokens: int


def _default_tiers() -> Dict[str, TierLimits]:
    free = ["openai", "huggingface", "lexica"]
    plus = free + ["anthropic", "replicate", "stability"]
    family = plus + ["getimg", "runware"]
    return {
        "free": TierLimits(allowed_providers=free, max_requests=10, max_tokens=4000),
        "plus": TierLimits(allowed_providers=plus, max_requests=100, max_tokens=16000),
        "family": TierLimits(allowed_providers=family, max_requests=300, max_tokens=32000),
    }


def _default_fallbacks() -> Dict[str, List[str]]:
    return {
        Capability.TEXT.value: ["openai", "anthropic", "huggingface"],
        Capability.IMAGE.value: [
            "huggingface", "openai", "stability", "replicate", "getimg", "runware", "lexica",
        ],
        Capability.AUDIO.value: ["openai"],
    }


class RoutingConfig(BaseModel):
    """Provider selection policy. Mutable at runtime."""
    default_providers: Dict[str, str] = Field(
        default_factory=lambda: {
            Capability.TEXT.value: "openai",
            Capability.IMAGE.value: "huggingface",
            Capability.AUDIO.value: "openai",
        },
        description="Default provider id per capability",
    )
    pinned_image_provider: str | None = Field(default=None, description="Image provider always tried before the default")
    fallback_order: Dict[str, List[str]] = Field(default_factory=_default_fallbacks)
    tiers: Dict[str, TierLimits] = Field(default_factory=_default_tiers)
    default_tier: str = "free"

    def limits_for(self, tier: str | None) -> TierLimits:
        """Limits for ``tier``; unknown tiers resolve to the default tier."""
        if tier and tier in self.tiers:
            return self.tiers[tier]
        return self.tiers[self.default_tier]

    def default_for(self, capability: Capability) -> str | None:
        return self.default_providers.get(Capability(capability).value)

    def fallbacks_for(self, capability: Capability) -> List[str]:
        return list(self.fallback_order.get(Capability(capability).value, []))

    @classmethod
    def from_file(cls, path: str | Path) -> "RoutingConfig":
        """Load a routing config from a JSON document."""
        with open(path, "r", encoding="utf-8") as handle:
            return cls.model_validate(json.load(handle))


class Chapter(BaseModel):
    """A chapter derived from generated story text."""
    title: str
    content: str
    image_prompt: str | None = None
    image_url: str | None = None


class GeneratedStory(BaseModel):
    """A parsed story ready for illustration."""
    title: str
    content: str
    summary: str
    reading_time_minutes: int
    chapters: List[Chapter] = Field(default_factory=list)


class IllustrationOptions(BaseModel):
    """Options shared by chapter illustration requests."""
    style: str = IllustrationStyle.CARTOON.value
    mood: str | None = None
    age_group: str = AgeGroup.EARLY_READER.value
    story_id: str | None = None
    chapter_id: str | None = None
    force_provider: str | None = None
    text_only: bool = False
    character_names: List[str] | None = Field(
        default=None,
        description="Characters to keep consistent; detected from chapter text when omitted",
    )


class IllustrationJob(BaseModel):
    """Acknowledgement and progress of a background illustration run."""
    story_id: str
    status: str = "processing"
    total_chapters: int
    completed_chapters: int = 0
    backup_chapters: int = 0
