"""Provider selection and fallback for text, audio and image requests.

Text and audio requests may fail visibly: when no provider can serve them the
caller gets ``ProviderUnavailable`` or ``ExhaustedFallback``. Image requests
never raise; when every provider fails they resolve to a backup placeholder
result. Providers are always attempted one after another, never in parallel.
"""

import logging
from typing import Dict, List, Tuple

from storyloom.context import DEFAULT_BACKUP_IMAGE_URL
from storyloom.error_handling import (
    ErrorAnalyzer,
    ExhaustedFallback,
    ProviderUnavailable,
    ValidationError,
    format_provider_errors,
)
from storyloom.health import HealthMonitor
from storyloom.metrics import MetricsTracker
from storyloom.models import (
    AudioGenerationParams,
    AudioGenerationResult,
    Capability,
    ImageGenerationParams,
    ImageGenerationResult,
    RoutingConfig,
    TextGenerationParams,
    TextGenerationResult,
)
from storyloom.providers import GenerationProvider
from storyloom.registry import ProviderRegistry


logger = logging.getLogger(__name__)

NO_IMAGE_PROVIDER = "none"
BACKUP_PROVIDER = "backup"


class ProviderRouter:
    """Routes generation requests across the registered providers."""

    def __init__(
        self,
        registry: ProviderRegistry,
        config: RoutingConfig | None = None,
        backup_image_url: str = DEFAULT_BACKUP_IMAGE_URL,
    ):
        self.registry = registry
        self.config = config or RoutingConfig()
        self.backup_image_url = backup_image_url

    @property
    def metrics(self) -> MetricsTracker:
        return self.registry.metrics

    @property
    def health_monitor(self) -> HealthMonitor:
        return self.registry.health_monitor

    # Candidate selection ---------------------------------------------------

    def allowed_providers(self, tier: str | None) -> List[str]:
        return list(self.config.limits_for(tier).allowed_providers)

    def _allowed_capable(self, capability: Capability, tier: str | None) -> List[GenerationProvider]:
        allowed = set(self.allowed_providers(tier))
        return [provider for provider in self.registry.with_capability(capability) if provider.id in allowed]

    def admissible_providers(self, capability: Capability, tier: str | None) -> List[GenerationProvider]:
        """Providers that support ``capability``, are allowed on ``tier`` and are currently available."""
        return [
            provider for provider in self._allowed_capable(capability, tier)
            if provider.status.is_available
        ]

    def _success_score(self, provider: GenerationProvider) -> float:
        # Providers never attempted rank alongside perfect ones until they have history
        rate = self.metrics.success_rate(provider.id)
        return 1.0 if rate is None else rate

    def _record_failure(self, provider_id: str, error: Exception | str, errors: Dict[str, str]) -> None:
        self.metrics.record_failure(provider_id)
        category = ErrorAnalyzer.categorize_error(error)
        cooldown = ErrorAnalyzer.cooldown_seconds(category)
        if cooldown:
            self.metrics.mark_temporary_failure(provider_id, cooldown)
        errors[provider_id] = str(error)
        logger.warning(f"Provider {provider_id} failed ({category.value}): {error}")

    async def _sequential_candidates(
        self,
        capability: Capability,
        override: str | None,
        tier: str,
    ) -> Tuple[Dict[str, GenerationProvider], List[str]]:
        """Admissible providers and the order to try them: override, default, fallbacks."""
        candidates = self.admissible_providers(capability, tier)
        if not candidates:
            logger.info(f"No {capability.value} provider available; refreshing provider health")
            await self.health_monitor.check_all_providers_health()
            candidates = self.admissible_providers(capability, tier)
            if not candidates:
                raise ProviderUnavailable(capability.value, tier)

        admissible = {provider.id: provider for provider in candidates}
        order: List[str] = []
        if override in admissible:
            order.append(override)

        default = self.config.default_for(capability)
        primary = default if default in admissible else candidates[0].id
        if primary not in order:
            order.append(primary)

        for provider_id in self.config.fallbacks_for(capability):
            if provider_id in admissible and provider_id not in order:
                order.append(provider_id)
        return admissible, order

    # Text ------------------------------------------------------------------

    async def generate_text(self, params: TextGenerationParams, tier: str | None = None) -> TextGenerationResult:
        """Generate text with the tier's providers, falling back in configured order."""
        if not params.prompt or not params.prompt.strip():
            raise ValidationError("Text generation prompt must not be empty")

        tier = tier or self.config.default_tier
        limits = self.config.limits_for(tier)
        admissible, order = await self._sequential_candidates(Capability.TEXT, params.provider, tier)

        max_tokens = min(params.max_tokens or limits.max_tokens, limits.max_tokens)
        request = params.model_copy(update={"max_tokens": max_tokens})

        errors: Dict[str, str] = {}
        for provider_id in order:
            provider = admissible[provider_id]
            self.metrics.record_attempt(provider_id)
            try:
                result = await provider.generate_text(request)
            except Exception as exc:
                self._record_failure(provider_id, exc, errors)
                continue

            if not result.content or not result.content.strip():
                self._record_failure(provider_id, "Empty response", errors)
                continue

            self.metrics.record_success(provider_id)
            logger.info(f"Text generated by {provider_id}")
            return result

        raise ExhaustedFallback(Capability.TEXT.value, errors)

    # Audio -----------------------------------------------------------------

    async def generate_audio(self, params: AudioGenerationParams, tier: str | None = None) -> AudioGenerationResult:
        """Narrate text, with the same selection and failure semantics as text requests."""
        if not params.text or not params.text.strip():
            raise ValidationError("Audio generation text must not be empty")

        tier = tier or self.config.default_tier
        admissible, order = await self._sequential_candidates(Capability.AUDIO, params.provider, tier)

        errors: Dict[str, str] = {}
        for provider_id in order:
            self.metrics.record_attempt(provider_id)
            try:
                result = await admissible[provider_id].generate_audio(params)
            except Exception as exc:
                self._record_failure(provider_id, exc, errors)
                continue

            if not result.audio_base64:
                self._record_failure(provider_id, "Empty audio", errors)
                continue

            self.metrics.record_success(provider_id)
            logger.info(f"Audio generated by {provider_id}")
            return result

        raise ExhaustedFallback(Capability.AUDIO.value, errors)

    # Image -----------------------------------------------------------------

    async def generate_image(self, params: ImageGenerationParams, tier: str | None = None) -> ImageGenerationResult:
        """Generate an image. Always resolves to a successful result, possibly the backup."""
        if params.text_only:
            return ImageGenerationResult(success=True, image_url="", provider=NO_IMAGE_PROVIDER)

        tier = tier or self.config.default_tier
        attempted: List[str] = []
        errors: Dict[str, str] = {}

        try:
            await self.health_monitor.check_all_providers_health()
            candidates = self.admissible_providers(Capability.IMAGE, tier)

            if not candidates:
                logger.warning(f"No image provider admissible on tier '{tier}'; trying every allowed provider")
                result = await self._last_resort_sweep(params, tier, attempted, errors)
                if result is not None:
                    return result
                return self.backup_result(params.prompt, attempted, errors)

            for provider in self._image_priority(params, candidates, tier):
                result = await self._attempt_image(provider, params, attempted, errors)
                if result is not None:
                    return result

            result = await self._last_resort_sweep(params, tier, attempted, errors)
            if result is not None:
                return result
        except Exception as exc:
            logger.error("Image routing failed unexpectedly", exc_info=exc)
            errors.setdefault("router", str(exc))

        return self.backup_result(params.prompt, attempted, errors)

    def _image_priority(
        self,
        params: ImageGenerationParams,
        candidates: List[GenerationProvider],
        tier: str,
    ) -> List[GenerationProvider]:
        """Override, then pinned, then default, then the rest by success rate."""
        allowed = set(self.allowed_providers(tier))
        admissible_ids = {provider.id for provider in candidates}
        order: List[GenerationProvider] = []

        def _add(provider_id: str | None, require_available: bool) -> None:
            provider = self.registry.get(provider_id) if provider_id else None
            if provider is None or provider in order:
                return
            if provider.id not in allowed or not provider.supports(Capability.IMAGE):
                return
            if require_available and provider.id not in admissible_ids:
                return
            order.append(provider)

        _add(params.provider, require_available=False)
        _add(self.config.pinned_image_provider, require_available=False)
        _add(self.config.default_for(Capability.IMAGE), require_available=True)

        remaining = [provider for provider in candidates if provider not in order]
        remaining.sort(key=self._success_score, reverse=True)
        order.extend(remaining)
        return order

    async def _attempt_image(
        self,
        provider: GenerationProvider,
        params: ImageGenerationParams,
        attempted: List[str],
        errors: Dict[str, str],
    ) -> ImageGenerationResult | None:
        if provider.id in attempted:
            return None
        attempted.append(provider.id)
        self.metrics.record_attempt(provider.id)

        try:
            adapted = provider.adapt_image_params(params)
            result = await provider.generate_image(adapted)
        except Exception as exc:
            self._record_failure(provider.id, exc, errors)
            return None

        if not result.success or not result.image_url:
            self._record_failure(provider.id, result.error or "No image URL returned", errors)
            return None

        self.metrics.record_success(provider.id)
        logger.info(f"Image generated by {provider.id} after {len(attempted)} attempt(s)")
        return result.model_copy(update={
            "provider": provider.id,
            "is_backup": False,
            "attempted_providers": list(attempted),
            "prompt_used": result.prompt_used or adapted.prompt,
        })

    async def _last_resort_sweep(
        self,
        params: ImageGenerationParams,
        tier: str,
        attempted: List[str],
        errors: Dict[str, str],
    ) -> ImageGenerationResult | None:
        """Try every allowed image provider not yet attempted, ignoring recorded availability."""
        for provider in self._allowed_capable(Capability.IMAGE, tier):
            result = await self._attempt_image(provider, params, attempted, errors)
            if result is not None:
                return result
        return None

    def backup_result(self, prompt: str, attempted: List[str], errors: Dict[str, str]) -> ImageGenerationResult:
        """Placeholder result returned when no provider produced an image."""
        logger.warning(f"All image providers failed; returning backup image ({format_provider_errors(errors)})")
        return ImageGenerationResult(
            success=True,
            image_url=self.backup_image_url,
            provider=BACKUP_PROVIDER,
            is_backup=True,
            error=format_provider_errors(errors),
            attempted_providers=list(attempted),
            prompt_used=prompt,
        )
