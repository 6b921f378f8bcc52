"""Tests for the provider implementations."""

import base64
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from PIL import Image

from storyloom.context import StoryloomContext
from storyloom.error_handling import InvalidApiKeyFormat, ProviderCallFailed
from storyloom.models import AudioGenerationParams, Capability, ImageGenerationParams, TextGenerationParams
from storyloom.providers import (
    AnthropicProvider,
    GetImgProvider,
    HuggingFaceProvider,
    LexicaProvider,
    OpenAIProvider,
    ProviderFactory,
    ReplicateProvider,
    RunwareProvider,
    StabilityProvider,
)


OPENAI_KEY = "sk-test-0123456789abcdefghij"


def _mock_response(mock_session, method, status, payload=None):
    """Wire a patched aiohttp.ClientSession to return one response."""
    mock_response = AsyncMock()
    mock_response.status = status
    mock_response.json = AsyncMock(return_value=payload or {})

    mock_session.return_value.__aenter__ = AsyncMock(return_value=mock_session.return_value)
    getattr(mock_session.return_value, method).return_value.__aenter__ = AsyncMock(return_value=mock_response)
    getattr(mock_session.return_value, method).return_value.__aexit__ = AsyncMock(return_value=None)
    return mock_response


class TestApiKeyValidation:
    """Test provider-specific key format checks."""

    @pytest.mark.parametrize("provider_cls,key", [
        (OpenAIProvider, OPENAI_KEY),
        (AnthropicProvider, "sk-ant-REDACTED"),
        (HuggingFaceProvider, "hf_abcdefgh"),
        (ReplicateProvider, "r8_0123456789abcdefghij"),
        (GetImgProvider, "key-0123456789abcdefghij"),
        (RunwareProvider, "a" * 32),
    ])
    def test_accepts_well_formed_keys(self, provider_cls, key):
        assert provider_cls.validate_api_key(key).is_valid

    def test_rejects_wrong_prefix(self):
        validation = OpenAIProvider.validate_api_key("pk-0123456789abcdefghijk")
        assert not validation.is_valid
        assert "sk-" in validation.message

    def test_rejects_short_key(self):
        assert not OpenAIProvider.validate_api_key("sk-short").is_valid

    def test_rejects_empty_key(self):
        assert not HuggingFaceProvider.validate_api_key("   ").is_valid

    def test_lexica_needs_no_key(self):
        assert LexicaProvider.validate_api_key(None).is_valid

    def test_set_api_key_raises_on_bad_format(self):
        provider = OpenAIProvider()
        with pytest.raises(InvalidApiKeyFormat):
            provider.set_api_key("bad")
        assert not provider.has_api_key()

    def test_set_api_key_marks_status_pending(self):
        provider = OpenAIProvider()
        provider.set_api_key(OPENAI_KEY)

        assert provider.has_api_key()
        assert not provider.status.is_available
        assert "pending" in provider.status.message


class TestHealthChecks:
    """Test health probes and status updates."""

    @pytest.mark.asyncio
    async def test_missing_key_is_unhealthy_without_network(self):
        provider = OpenAIProvider()
        with patch('aiohttp.ClientSession') as mock_session:
            result = await provider.check_health()

        mock_session.assert_not_called()
        assert not result.is_healthy
        assert provider.status.message == "API key not configured"

    @pytest.mark.asyncio
    async def test_openai_models_probe_success(self):
        provider = OpenAIProvider(OPENAI_KEY)
        with patch('aiohttp.ClientSession') as mock_session:
            _mock_response(mock_session, "get", 200)
            result = await provider.check_health()

        assert result.is_healthy
        assert provider.status.is_available
        assert provider.status.last_checked is not None
        called_url = mock_session.return_value.get.call_args[0][0]
        assert called_url.endswith("/v1/models")

    @pytest.mark.asyncio
    async def test_rejected_key_is_unhealthy(self):
        provider = StabilityProvider("sk-stability-0123456789abc")
        with patch('aiohttp.ClientSession') as mock_session:
            _mock_response(mock_session, "get", 401)
            result = await provider.check_health()

        assert not result.is_healthy
        assert "401" in result.message
        assert provider.status.last_error is None

    @pytest.mark.asyncio
    async def test_probe_exception_records_error(self):
        provider = GetImgProvider("key-0123456789abcdefghij")
        with patch('aiohttp.ClientSession', side_effect=OSError("connection refused")):
            result = await provider.check_health()

        assert not result.is_healthy
        assert provider.status.last_error == "connection refused"

    @pytest.mark.asyncio
    async def test_runware_checks_key_presence_only(self):
        provider = RunwareProvider("a" * 32)
        with patch('aiohttp.ClientSession') as mock_session:
            result = await provider.check_health()

        mock_session.assert_not_called()
        assert result.is_healthy


class TestParameterAdaptation:
    """Test provider quirk handling."""

    def test_openai_drops_unsupported_fields_and_snaps_size(self):
        params = ImageGenerationParams(
            prompt="A fox", negative_prompt="text", seed=7, steps=40, width=1200, height=800, model="sdxl",
        )
        adapted = OpenAIProvider(OPENAI_KEY).adapt_image_params(params)

        assert adapted.model == "dall-e-3"
        assert adapted.negative_prompt is None
        assert adapted.seed is None
        assert adapted.steps is None
        assert adapted.size == "1792x1024"
        assert params.negative_prompt == "text"

    def test_huggingface_accepts_hub_models_and_snaps_dimensions(self):
        provider = HuggingFaceProvider("hf_abcdefgh")
        adapted = provider.adapt_image_params(
            ImageGenerationParams(prompt="A fox", model="org/custom-model", width=1001, steps=200)
        )

        assert adapted.model == "org/custom-model"
        assert adapted.width % 8 == 0
        assert adapted.height == 1024
        assert adapted.steps == 50

    def test_huggingface_replaces_foreign_model(self):
        adapted = HuggingFaceProvider().adapt_image_params(ImageGenerationParams(prompt="x", model="dall-e-3"))
        assert adapted.model == HuggingFaceProvider.default_image_model

    def test_stability_uses_sdxl_dimensions(self):
        adapted = StabilityProvider().adapt_image_params(
            ImageGenerationParams(prompt="x", width=1920, height=1080, steps=5)
        )
        assert (adapted.width, adapted.height) in StabilityProvider.SDXL_DIMENSIONS
        assert adapted.width > adapted.height
        assert adapted.steps == 10

    def test_getimg_limits_resolution(self):
        adapted = GetImgProvider().adapt_image_params(ImageGenerationParams(prompt="x", width=2048, height=300))
        assert adapted.width == 1024
        assert adapted.height == 256

    def test_replicate_schnell_caps_steps(self):
        adapted = ReplicateProvider().adapt_image_params(ImageGenerationParams(prompt="x", steps=30))
        assert adapted.model == "black-forest-labs/flux-schnell"
        assert adapted.steps == 4

    def test_lexica_keeps_only_prompt(self):
        adapted = LexicaProvider().adapt_image_params(
            ImageGenerationParams(prompt="p" * 300, width=512, height=512, style="cartoon", seed=1)
        )
        assert len(adapted.prompt) == 100
        assert adapted.width is None
        assert adapted.style is None
        assert adapted.seed is None


class TestOpenAIProvider:
    """Test OpenAI generation calls."""

    @pytest.mark.asyncio
    async def test_generate_image_success(self):
        provider = OpenAIProvider(OPENAI_KEY)
        params = provider.adapt_image_params(ImageGenerationParams(prompt="A brave fox"))
        with patch('aiohttp.ClientSession') as mock_session:
            _mock_response(mock_session, "post", 200, {
                "data": [{"url": "https://images.example/fox.png", "revised_prompt": "A brave red fox"}]
            })
            result = await provider.generate_image(params)

        assert result.success is True
        assert result.image_url == "https://images.example/fox.png"
        assert result.prompt_used == "A brave red fox"
        payload = mock_session.return_value.post.call_args.kwargs["json"]
        assert payload["size"] == "1024x1024"
        assert payload["n"] == 1

    @pytest.mark.asyncio
    async def test_generate_image_failure(self):
        provider = OpenAIProvider(OPENAI_KEY)
        with patch('aiohttp.ClientSession') as mock_session:
            _mock_response(mock_session, "post", 400, {"error": {"message": "Invalid prompt"}})
            result = await provider.generate_image(ImageGenerationParams(prompt="x"))

        assert result.success is False
        assert result.error == "Invalid prompt"
        assert result.metadata["status_code"] == 400

    @pytest.mark.asyncio
    async def test_generate_text(self):
        provider = OpenAIProvider(OPENAI_KEY)
        with patch('aiohttp.ClientSession') as mock_session:
            _mock_response(mock_session, "post", 200, {
                "choices": [{"message": {"content": "# Title"}}],
                "usage": {"total_tokens": 12},
            })
            result = await provider.generate_text(
                TextGenerationParams(prompt="Write", system_message="You write", max_tokens=100)
            )

        assert result.content == "# Title"
        assert result.usage == {"total_tokens": 12}
        payload = mock_session.return_value.post.call_args.kwargs["json"]
        assert payload["messages"][0]["role"] == "system"
        assert payload["max_tokens"] == 100

    @pytest.mark.asyncio
    async def test_generate_text_http_error_raises(self):
        provider = OpenAIProvider(OPENAI_KEY)
        with patch('aiohttp.ClientSession') as mock_session:
            _mock_response(mock_session, "post", 429, {"error": {"message": "Rate limit reached"}})
            with pytest.raises(ProviderCallFailed) as exc_info:
                await provider.generate_text(TextGenerationParams(prompt="Write"))

        assert exc_info.value.status_code == 429

    @pytest.mark.asyncio
    async def test_generate_audio(self):
        provider = OpenAIProvider(OPENAI_KEY)
        with patch('aiohttp.ClientSession') as mock_session:
            response = _mock_response(mock_session, "post", 200)
            response.read = AsyncMock(return_value=b"mp3-bytes")
            result = await provider.generate_audio(AudioGenerationParams(text="Once upon a time", voice="robot"))

        assert base64.b64decode(result.audio_base64) == b"mp3-bytes"
        assert result.data_url.startswith("data:audio/mpeg;base64,")
        assert mock_session.return_value.post.call_args.args[0] == "https://api.openai.com/v1/audio/speech"
        payload = mock_session.return_value.post.call_args.kwargs["json"]
        assert payload == {"model": "tts-1", "input": "Once upon a time", "voice": "shimmer", "response_format": "mp3"}

    @pytest.mark.asyncio
    async def test_generate_audio_truncates_long_text(self):
        provider = OpenAIProvider(OPENAI_KEY)
        with patch('aiohttp.ClientSession') as mock_session:
            response = _mock_response(mock_session, "post", 200)
            response.read = AsyncMock(return_value=b"mp3")
            await provider.generate_audio(AudioGenerationParams(text="a" * 1500, voice="nova"))

        payload = mock_session.return_value.post.call_args.kwargs["json"]
        assert payload["input"] == "a" * 1000 + "..."
        assert payload["voice"] == "nova"

    @pytest.mark.asyncio
    async def test_generate_audio_http_error_raises(self):
        provider = OpenAIProvider(OPENAI_KEY)
        with patch('aiohttp.ClientSession') as mock_session:
            _mock_response(mock_session, "post", 401, {"error": {"message": "Incorrect API key"}})
            with pytest.raises(ProviderCallFailed) as exc_info:
                await provider.generate_audio(AudioGenerationParams(text="Hello"))

        assert exc_info.value.status_code == 401

    @pytest.mark.asyncio
    async def test_image_only_provider_has_no_audio(self):
        with pytest.raises(ProviderCallFailed):
            await LexicaProvider().generate_audio(AudioGenerationParams(text="Hello"))


class TestOtherProviders:
    """Test the remaining backends with their transports mocked."""

    @pytest.mark.asyncio
    async def test_anthropic_uses_langchain_chat_model(self):
        llm = MagicMock()
        llm.ainvoke = AsyncMock(return_value=SimpleNamespace(content="Once upon a time", usage_metadata=None))
        with patch('storyloom.providers.init_chat_model', return_value=llm) as mock_init:
            result = await AnthropicProvider("sk-ant-REDACTED").generate_text(
                TextGenerationParams(prompt="Write", system_message="Be kind", max_tokens=500)
            )

        assert result.content == "Once upon a time"
        assert mock_init.call_args.kwargs["model_provider"] == "anthropic"
        messages = llm.ainvoke.call_args[0][0]
        assert len(messages) == 2

    @pytest.mark.asyncio
    async def test_huggingface_image_becomes_data_url(self):
        client = MagicMock()
        client.text_to_image.return_value = Image.new("RGB", (8, 8), "red")
        provider = HuggingFaceProvider("hf_abcdefgh")
        with patch('storyloom.providers.InferenceClient', return_value=client):
            result = await provider.generate_image(provider.adapt_image_params(ImageGenerationParams(prompt="A fox")))

        assert result.success
        assert result.image_url.startswith("data:image/png;base64,")
        assert client.text_to_image.call_args.kwargs["num_inference_steps"] == 30

    @pytest.mark.asyncio
    async def test_huggingface_paused_endpoint(self):
        client = MagicMock()
        client.text_to_image.side_effect = RuntimeError("503 Service Unavailable")
        with patch('storyloom.providers.InferenceClient', return_value=client):
            result = await HuggingFaceProvider("hf_abcdefgh").generate_image(ImageGenerationParams(prompt="x"))

        assert not result.success
        assert result.metadata["status_code"] == 503

    @pytest.mark.asyncio
    async def test_replicate_extracts_first_url(self):
        provider = ReplicateProvider("r8_0123456789abcdefghij")
        with patch('storyloom.providers.replicate.Client') as mock_client:
            mock_client.return_value.run.return_value = ["https://replicate.delivery/fox.png"]
            result = await provider.generate_image(provider.adapt_image_params(
                ImageGenerationParams(prompt="A fox", width=1600, height=900)
            ))

        assert result.image_url == "https://replicate.delivery/fox.png"
        payload = mock_client.return_value.run.call_args.kwargs["input"]
        assert payload["aspect_ratio"] == "16:9"

    def test_replicate_url_extraction_handles_nested_outputs(self):
        provider = ReplicateProvider()
        output = {"images": [SimpleNamespace(url="https://a.example/1.png"), "https://a.example/2.png"]}
        assert provider._extract_image_urls(output) == ["https://a.example/1.png", "https://a.example/2.png"]

    @pytest.mark.asyncio
    async def test_stability_artifact_to_data_url(self):
        encoded = base64.b64encode(b"png-bytes").decode()
        provider = StabilityProvider("sk-stability-0123456789abc")
        with patch('aiohttp.ClientSession') as mock_session:
            _mock_response(mock_session, "post", 200, {
                "artifacts": [{"base64": encoded, "seed": 42, "finishReason": "SUCCESS"}]
            })
            result = await provider.generate_image(provider.adapt_image_params(
                ImageGenerationParams(prompt="A fox", negative_prompt="text", style="cartoon")
            ))

        assert result.image_url == f"data:image/png;base64,{encoded}"
        assert result.seed == 42
        payload = mock_session.return_value.post.call_args.kwargs["json"]
        assert payload["text_prompts"][1]["weight"] == -1
        assert payload["style_preset"] == "comic-book"

    @pytest.mark.asyncio
    async def test_runware_reports_api_errors(self):
        provider = RunwareProvider("a" * 32)
        with patch('aiohttp.ClientSession') as mock_session:
            _mock_response(mock_session, "post", 200, {"errors": [{"message": "Invalid model"}]})
            result = await provider.generate_image(provider.adapt_image_params(ImageGenerationParams(prompt="x")))

        assert not result.success
        assert result.error == "Invalid model"

    @pytest.mark.asyncio
    async def test_lexica_returns_first_search_hit(self):
        provider = LexicaProvider()
        with patch('aiohttp.ClientSession') as mock_session:
            _mock_response(mock_session, "get", 200, {
                "images": [{"src": "https://lexica.example/1.jpg", "prompt": "a fox"}]
            })
            result = await provider.generate_image(ImageGenerationParams(prompt="a fox"))

        assert result.success
        assert result.image_url == "https://lexica.example/1.jpg"

    @pytest.mark.asyncio
    async def test_text_not_supported_by_image_only_provider(self):
        with pytest.raises(ProviderCallFailed):
            await LexicaProvider().generate_text(TextGenerationParams(prompt="x"))


class TestProviderFactory:
    """Test provider construction from configuration."""

    def test_create_all_builds_every_provider(self):
        providers = ProviderFactory.create_all(StoryloomContext(openai_api_key=OPENAI_KEY))

        ids = [provider.id for provider in providers]
        assert ids == ProviderFactory.get_available_providers()
        openai = next(provider for provider in providers if provider.id == "openai")
        assert openai.has_api_key()
        assert openai.supports(Capability.TEXT)
        assert openai.supports(Capability.IMAGE)

    def test_malformed_configured_key_is_ignored(self):
        provider = ProviderFactory.create_provider("anthropic", "not-a-key")
        assert not provider.has_api_key()

    def test_unknown_provider(self):
        with pytest.raises(ValueError):
            ProviderFactory.create_provider("midjourney")
