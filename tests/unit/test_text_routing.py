"""Tests for text request routing."""

import pytest

from storyloom.error_handling import ExhaustedFallback, ProviderCallFailed, ProviderUnavailable, ValidationError
from storyloom.models import RoutingConfig, TextGenerationParams, TierLimits
from storyloom.registry import ProviderRegistry
from storyloom.routing import ProviderRouter


def build_router(providers, allowed=None, max_tokens=4000, default="alpha", fallbacks=None):
    registry = ProviderRegistry()
    for provider in providers:
        registry.register(provider)
    ids = [provider.id for provider in providers]
    config = RoutingConfig(
        default_providers={"text": default},
        fallback_order={"text": fallbacks if fallbacks is not None else ids},
        tiers={
            "free": TierLimits(allowed_providers=allowed or ids, max_requests=10, max_tokens=max_tokens),
            "plus": TierLimits(allowed_providers=ids, max_requests=100, max_tokens=16000),
        },
    )
    return ProviderRouter(registry, config)


class TestTextRouting:
    """Test candidate selection and fallback for text generation."""

    @pytest.mark.asyncio
    async def test_no_available_provider_raises(self, make_provider):
        router = build_router([make_provider("alpha", text=True, healthy=False)])

        with pytest.raises(ProviderUnavailable) as exc_info:
            await router.generate_text(TextGenerationParams(prompt="Write a story"))

        assert exc_info.value.capability == "text"

    @pytest.mark.asyncio
    async def test_image_only_providers_do_not_serve_text(self, make_provider):
        router = build_router([make_provider("alpha", image=True)])

        with pytest.raises(ProviderUnavailable):
            await router.generate_text(TextGenerationParams(prompt="Write a story"))

    @pytest.mark.asyncio
    async def test_health_is_refreshed_when_nothing_is_available(self, make_provider):
        alpha = make_provider("alpha", text=True)
        router = build_router([alpha])
        assert not alpha.status.is_available

        result = await router.generate_text(TextGenerationParams(prompt="Write a story"))

        assert alpha.health_checks == 1
        assert result.content == "text from alpha"
        assert router.metrics.success_rate("alpha") == 1.0

    @pytest.mark.asyncio
    async def test_falls_back_in_configured_order(self, make_provider):
        alpha = make_provider("alpha", text=True, text_outcomes=[ProviderCallFailed("alpha", "boom", 500)])
        beta = make_provider("beta", text=True, text_outcomes=[""])
        gamma = make_provider("gamma", text=True, text_outcomes=["Once upon a time"])
        router = build_router([gamma, beta, alpha], fallbacks=["alpha", "beta", "gamma"])

        result = await router.generate_text(TextGenerationParams(prompt="Write a story"))

        assert result.provider == "gamma"
        assert result.content == "Once upon a time"
        assert len(alpha.text_calls) == 1
        assert len(beta.text_calls) == 1
        assert router.metrics.format_success_rate("alpha") == "0.0%"
        assert router.metrics.format_success_rate("beta") == "0.0%"
        assert router.metrics.format_success_rate("gamma") == "100.0%"

    @pytest.mark.asyncio
    async def test_exhausted_fallback_lists_every_error(self, make_provider):
        alpha = make_provider("alpha", text=True, text_outcomes=[RuntimeError("alpha down")])
        beta = make_provider("beta", text=True, text_outcomes=[RuntimeError("beta down")])
        router = build_router([alpha, beta])

        with pytest.raises(ExhaustedFallback) as exc_info:
            await router.generate_text(TextGenerationParams(prompt="Write a story"))

        error = exc_info.value
        assert error.attempted_providers == ["alpha", "beta"]
        assert error.errors["alpha"] == "alpha down"
        assert "beta down" in str(error)

    @pytest.mark.asyncio
    async def test_tier_restricts_candidates(self, make_provider):
        alpha = make_provider("alpha", text=True, text_outcomes=[RuntimeError("alpha down")])
        beta = make_provider("beta", text=True)
        router = build_router([alpha, beta], allowed=["alpha"])

        with pytest.raises(ExhaustedFallback) as exc_info:
            await router.generate_text(TextGenerationParams(prompt="Write a story"), tier="free")

        assert exc_info.value.attempted_providers == ["alpha"]
        assert beta.text_calls == []

        result = await router.generate_text(TextGenerationParams(prompt="Write a story"), tier="plus")
        assert result.provider == "beta"

    @pytest.mark.asyncio
    async def test_unknown_tier_uses_default_tier(self, make_provider):
        alpha = make_provider("alpha", text=True)
        beta = make_provider("beta", text=True)
        router = build_router([alpha, beta], allowed=["beta"], default="beta")

        result = await router.generate_text(TextGenerationParams(prompt="Write a story"), tier="platinum")

        assert result.provider == "beta"
        assert alpha.text_calls == []

    @pytest.mark.asyncio
    async def test_override_is_tried_first(self, make_provider):
        alpha = make_provider("alpha", text=True)
        beta = make_provider("beta", text=True)
        router = build_router([alpha, beta])

        result = await router.generate_text(TextGenerationParams(prompt="Write", provider="beta"))

        assert result.provider == "beta"
        assert alpha.text_calls == []

    @pytest.mark.asyncio
    async def test_unavailable_default_falls_to_first_candidate(self, make_provider):
        alpha = make_provider("alpha", text=True, healthy=False)
        beta = make_provider("beta", text=True)
        router = build_router([alpha, beta], fallbacks=[])

        result = await router.generate_text(TextGenerationParams(prompt="Write"))

        assert result.provider == "beta"

    @pytest.mark.asyncio
    async def test_max_tokens_clamped_to_tier(self, make_provider):
        alpha = make_provider("alpha", text=True)
        router = build_router([alpha], max_tokens=1000)

        await router.generate_text(TextGenerationParams(prompt="Write", max_tokens=5000))
        await router.generate_text(TextGenerationParams(prompt="Write"))
        await router.generate_text(TextGenerationParams(prompt="Write", max_tokens=200))

        assert [call.max_tokens for call in alpha.text_calls] == [1000, 1000, 200]

    @pytest.mark.asyncio
    async def test_rate_limit_failure_sets_cooldown(self, make_provider):
        alpha = make_provider("alpha", text=True, text_outcomes=[ProviderCallFailed("alpha", "Rate limit reached", 429)])
        beta = make_provider("beta", text=True)
        router = build_router([alpha, beta])

        await router.generate_text(TextGenerationParams(prompt="Write"))

        assert router.metrics.is_cooling_down("alpha")
        assert not router.metrics.is_cooling_down("beta")

    @pytest.mark.asyncio
    async def test_empty_prompt_rejected(self, make_provider):
        router = build_router([make_provider("alpha", text=True)])

        with pytest.raises(ValidationError):
            await router.generate_text(TextGenerationParams(prompt="   "))
