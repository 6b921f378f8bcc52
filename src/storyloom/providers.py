"""Generation providers: one pluggable class per third-party backend."""

from __future__ import annotations

import asyncio
import base64
import io
import logging
import time
import uuid
from abc import ABC
from collections.abc import Mapping, Sequence
from datetime import datetime
from typing import Any, Dict, List, Tuple, Type

import aiohttp
import replicate
from huggingface_hub import HfApi, InferenceClient
from huggingface_hub.utils import HfHubHTTPError
from langchain.chat_models import init_chat_model
from langchain_core.messages import HumanMessage, SystemMessage
from PIL import Image

from storyloom.context import StoryloomContext
from storyloom.error_handling import InvalidApiKeyFormat, ProviderCallFailed
from storyloom.models import (
    AudioGenerationParams,
    AudioGenerationResult,
    Capability,
    HealthCheckResult,
    ImageGenerationParams,
    ImageGenerationResult,
    KeyValidation,
    ProviderCapabilities,
    ProviderStatus,
    TextGenerationParams,
    TextGenerationResult,
)


logger = logging.getLogger(__name__)


def _snap(value: int | None, multiple: int, minimum: int, maximum: int, default: int) -> int:
    """Round ``value`` to a multiple inside [minimum, maximum]."""
    if value is None:
        value = default
    value = max(minimum, min(maximum, value))
    return max(minimum, (value // multiple) * multiple)


def _clamp(value: int | None, minimum: int, maximum: int, default: int) -> int:
    if value is None:
        return default
    return max(minimum, min(maximum, value))


def _png_data_url(data: bytes, mime: str = "image/png") -> str:
    return f"data:{mime};base64,{base64.b64encode(data).decode('utf-8')}"


async def _error_detail(response: Any) -> str:
    """Best-effort error message from a non-200 HTTP response."""
    try:
        body = await response.json(content_type=None)
    except (aiohttp.ContentTypeError, ValueError):
        body = await response.text()

    if isinstance(body, dict):
        error = body.get('error') or body.get('errors') or body.get('message') or body.get('detail')
        if isinstance(error, dict):
            return str(error.get('message', error))
        if isinstance(error, list) and error:
            first = error[0]
            return str(first.get('message', first)) if isinstance(first, dict) else str(first)
        if error:
            return str(error)
    return str(body)[:300]


class GenerationProvider(ABC):
    """Base class every backend implements.

    Subclasses declare static ``capabilities``, ``models`` and key rules, and
    override the generation coroutines they support. ``status`` is mutable and
    only written by health checks and key updates.
    """

    id: str = ""
    name: str = ""
    capabilities: ProviderCapabilities = ProviderCapabilities()
    models: List[str] = []
    supports_styles: bool = False

    requires_api_key: bool = True
    key_prefix: str | None = None
    min_key_length: int = 20

    default_text_model: str | None = None
    default_image_model: str | None = None
    # Request fields the backend cannot accept
    unsupported_image_fields: Tuple[str, ...] = ()

    def __init__(self, api_key: str | None = None, timeout: float | None = None):
        self._api_key = api_key or None
        self._timeout = timeout
        self.status = ProviderStatus(
            message="API key not configured" if self.requires_api_key and not self._api_key else "Not checked yet"
        )

    # Credentials ---------------------------------------------------------

    @property
    def api_key(self) -> str | None:
        return self._api_key

    def has_api_key(self) -> bool:
        return bool(self._api_key)

    @classmethod
    def validate_api_key(cls, api_key: str | None) -> KeyValidation:
        """Reject obviously malformed keys without contacting the backend."""
        if not cls.requires_api_key:
            return KeyValidation(is_valid=True, message=f"{cls.name} does not require an API key")
        key = (api_key or "").strip()
        if not key:
            return KeyValidation(is_valid=False, message="API key is empty")
        if cls.key_prefix and not key.startswith(cls.key_prefix):
            return KeyValidation(is_valid=False, message=f"{cls.name} keys start with '{cls.key_prefix}'")
        if len(key) < cls.min_key_length:
            return KeyValidation(
                is_valid=False,
                message=f"{cls.name} keys are at least {cls.min_key_length} characters long",
            )
        return KeyValidation(is_valid=True, message="API key format looks valid")

    def set_api_key(self, api_key: str) -> KeyValidation:
        validation = self.validate_api_key(api_key)
        if not validation.is_valid:
            raise InvalidApiKeyFormat(self.id, validation.message)
        self._api_key = api_key.strip()
        self.status = ProviderStatus(is_available=False, message="API key updated, health check pending")
        return validation

    def supports(self, capability: Capability) -> bool:
        return self.capabilities.supports(capability)

    # Health ----------------------------------------------------------------

    async def check_health(self) -> HealthCheckResult:
        """Probe the backend and update ``status``."""
        if self.requires_api_key and not self.has_api_key():
            return self.record_health(False, 0.0, "API key not configured")

        start = time.perf_counter()
        try:
            healthy, message = await self._probe()
        except Exception as exc:
            elapsed = (time.perf_counter() - start) * 1000
            logger.warning(f"Health probe for {self.id} raised: {exc}")
            return self.record_health(False, elapsed, f"Health check error: {exc}", error=str(exc))

        elapsed = (time.perf_counter() - start) * 1000
        return self.record_health(healthy, elapsed, message)

    async def _probe(self) -> Tuple[bool, str]:
        """Cheapest live call that proves the credentials work."""
        return True, "API key present"

    def record_health(
        self,
        healthy: bool,
        response_time_ms: float,
        message: str,
        error: str | None = None,
    ) -> HealthCheckResult:
        now = datetime.now()
        self.status = ProviderStatus(
            is_available=healthy,
            last_checked=now,
            response_time_ms=response_time_ms,
            message=message,
            last_error=error,
        )
        return HealthCheckResult(
            is_healthy=healthy,
            response_time_ms=response_time_ms,
            message=message,
            timestamp=now,
        )

    # Generation ------------------------------------------------------------

    async def generate_text(self, params: TextGenerationParams) -> TextGenerationResult:
        raise ProviderCallFailed(self.id, "text generation is not supported")

    async def generate_image(self, params: ImageGenerationParams) -> ImageGenerationResult:
        raise ProviderCallFailed(self.id, "image generation is not supported")

    async def generate_audio(self, params: AudioGenerationParams) -> AudioGenerationResult:
        raise ProviderCallFailed(self.id, "audio generation is not supported")

    def adapt_image_params(self, params: ImageGenerationParams) -> ImageGenerationParams:
        """Fit a generic image request to this backend's quirks."""
        adapted = params.model_copy(deep=True)
        adapted.provider = self.id
        if not adapted.model or not self._accepts_model(adapted.model):
            adapted.model = self.default_image_model

        dropped = [field for field in self.unsupported_image_fields if getattr(adapted, field) is not None]
        for field in dropped:
            setattr(adapted, field, None)
        if dropped:
            logger.debug(f"Dropping unsupported {self.id} parameters: {', '.join(dropped)}")

        return self._adapt(adapted)

    def _accepts_model(self, model: str) -> bool:
        return model in self.models

    def _adapt(self, params: ImageGenerationParams) -> ImageGenerationParams:
        return params

    def _failed(self, error: str, status_code: int | None = None, model: str | None = None) -> ImageGenerationResult:
        logger.warning(f"{self.name} image generation failed: {error}")
        metadata = {'status_code': status_code} if status_code is not None else {}
        return ImageGenerationResult(success=False, provider=self.id, model=model, error=error, metadata=metadata)

    # HTTP helpers ----------------------------------------------------------

    def _session_kwargs(self) -> Dict[str, Any]:
        if self._timeout:
            return {'timeout': aiohttp.ClientTimeout(total=self._timeout)}
        return {}

    async def _get_status(self, url: str, headers: Dict[str, str] | None = None, params: Dict[str, str] | None = None) -> int:
        async with aiohttp.ClientSession(**self._session_kwargs()) as session:
            async with session.get(url, headers=headers, params=params) as response:
                return response.status

    async def _post_json(self, url: str, payload: Any, headers: Dict[str, str]) -> Any:
        async with aiohttp.ClientSession(**self._session_kwargs()) as session:
            async with session.post(url, json=payload, headers=headers) as response:
                if response.status != 200:
                    raise ProviderCallFailed(self.id, await _error_detail(response), response.status)
                return await response.json()

    async def _get_json(self, url: str, headers: Dict[str, str] | None = None, params: Dict[str, str] | None = None) -> Any:
        async with aiohttp.ClientSession(**self._session_kwargs()) as session:
            async with session.get(url, headers=headers, params=params) as response:
                if response.status != 200:
                    raise ProviderCallFailed(self.id, await _error_detail(response), response.status)
                return await response.json()

    def _probe_outcome(self, status_code: int, healthy_message: str) -> Tuple[bool, str]:
        if status_code == 200:
            return True, healthy_message
        if status_code in (401, 403):
            return False, f"API key rejected (HTTP {status_code})"
        return False, f"Unexpected response (HTTP {status_code})"

    def __repr__(self) -> str:
        return f"<{type(self).__name__} id={self.id!r} available={self.status.is_available}>"


class OpenAIProvider(GenerationProvider):
    """OpenAI chat completions, DALL-E images and text-to-speech."""

    id = "openai"
    name = "OpenAI"
    capabilities = ProviderCapabilities(
        text_generation=True,
        image_generation=True,
        audio_generation=True,
        max_context_length=128000,
        languages_supported=["en", "pt", "es", "fr", "de"],
    )
    models = ["gpt-4o-mini", "gpt-4o", "dall-e-3", "dall-e-2"]
    supports_styles = True
    key_prefix = "sk-"
    min_key_length = 20
    default_text_model = "gpt-4o-mini"
    default_image_model = "dall-e-3"
    default_speech_model = "tts-1"
    default_voice = "shimmer"
    speech_voices = ("alloy", "echo", "fable", "onyx", "nova", "shimmer")
    max_speech_chars = 1000
    unsupported_image_fields = ("negative_prompt", "seed", "steps")

    base_url = "https://api.openai.com/v1"

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
        }

    async def _probe(self) -> Tuple[bool, str]:
        status_code = await self._get_status(f"{self.base_url}/models", headers=self._headers())
        return self._probe_outcome(status_code, "Models endpoint reachable")

    async def generate_text(self, params: TextGenerationParams) -> TextGenerationResult:
        model = params.model if params.model in self.models and not params.model.startswith("dall-e") else self.default_text_model
        messages = []
        if params.system_message:
            messages.append({"role": "system", "content": params.system_message})
        messages.append({"role": "user", "content": params.prompt})

        payload = {
            "model": model,
            "messages": messages,
            "temperature": params.temperature,
        }
        if params.max_tokens:
            payload["max_tokens"] = params.max_tokens

        data = await self._post_json(f"{self.base_url}/chat/completions", payload, self._headers())
        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as exc:
            raise ProviderCallFailed(self.id, f"Malformed completion response: {exc}")

        return TextGenerationResult(content=content or "", provider=self.id, model=model, usage=data.get("usage") or {})

    async def generate_audio(self, params: AudioGenerationParams) -> AudioGenerationResult:
        """Narrate ``params.text`` with the speech endpoint, returned as base64 mp3."""
        text = params.text.strip()
        if len(text) > self.max_speech_chars:
            text = text[:self.max_speech_chars] + "..."
        voice = params.voice if params.voice in self.speech_voices else self.default_voice
        model = params.model if params.model in ("tts-1", "tts-1-hd") else self.default_speech_model

        payload = {
            "model": model,
            "input": text,
            "voice": voice,
            "response_format": "mp3",
        }
        async with aiohttp.ClientSession(**self._session_kwargs()) as session:
            async with session.post(f"{self.base_url}/audio/speech", json=payload, headers=self._headers()) as response:
                if response.status != 200:
                    raise ProviderCallFailed(self.id, await _error_detail(response), response.status)
                audio = await response.read()

        if not audio:
            raise ProviderCallFailed(self.id, "Empty audio response")
        return AudioGenerationResult(
            audio_base64=base64.b64encode(audio).decode('utf-8'),
            provider=self.id,
            model=model,
            voice=voice,
        )

    def _adapt(self, params: ImageGenerationParams) -> ImageGenerationParams:
        if params.model not in ("dall-e-3", "dall-e-2"):
            params.model = self.default_image_model
        width, height = params.width or 1024, params.height or 1024

        if params.model == "dall-e-3":
            if width > height:
                params.width, params.height = 1792, 1024
            elif height > width:
                params.width, params.height = 1024, 1792
            else:
                params.width, params.height = 1024, 1024
            if params.quality not in ("standard", "hd"):
                params.quality = "standard"
            params.prompt = params.prompt[:4000]
        else:
            side = min((256, 512, 1024), key=lambda candidate: abs(candidate - max(width, height)))
            params.width = params.height = side
            params.quality = None
            params.prompt = params.prompt[:1000]

        params.size = f"{params.width}x{params.height}"
        return params

    async def generate_image(self, params: ImageGenerationParams) -> ImageGenerationResult:
        payload = {
            "model": params.model or self.default_image_model,
            "prompt": params.prompt,
            "n": 1,
            "size": params.size or "1024x1024",
        }
        if params.quality:
            payload["quality"] = params.quality

        async with aiohttp.ClientSession(**self._session_kwargs()) as session:
            async with session.post(f"{self.base_url}/images/generations", json=payload, headers=self._headers()) as response:
                if response.status != 200:
                    return self._failed(await _error_detail(response), response.status, payload["model"])
                data = await response.json()

        images = data.get("data") or []
        if not images or not images[0].get("url"):
            return self._failed("No image URL in response", model=payload["model"])

        return ImageGenerationResult(
            success=True,
            image_url=images[0]["url"],
            provider=self.id,
            model=payload["model"],
            prompt_used=images[0].get("revised_prompt") or params.prompt,
        )


class AnthropicProvider(GenerationProvider):
    """Claude models through LangChain."""

    id = "anthropic"
    name = "Anthropic"
    capabilities = ProviderCapabilities(
        text_generation=True,
        max_context_length=200000,
        languages_supported=["en", "pt", "es", "fr", "de"],
    )
    models = ["claude-3-5-sonnet-20241022", "claude-3-5-haiku-20241022"]
    key_prefix = "sk-ant-"
    min_key_length = 20
    default_text_model = "claude-3-5-sonnet-20241022"

    base_url = "https://api.anthropic.com/v1"
    api_version = "2023-06-01"

    async def _probe(self) -> Tuple[bool, str]:
        headers = {"x-api-key": self._api_key, "anthropic-version": self.api_version}
        status_code = await self._get_status(f"{self.base_url}/models", headers=headers)
        return self._probe_outcome(status_code, "Models endpoint reachable")

    async def generate_text(self, params: TextGenerationParams) -> TextGenerationResult:
        model = params.model if params.model in self.models else self.default_text_model
        llm = init_chat_model(
            model=model,
            model_provider="anthropic",
            api_key=self._api_key,
            temperature=params.temperature,
            max_tokens=params.max_tokens or 4000,
        )

        messages = []
        if params.system_message:
            messages.append(SystemMessage(content=params.system_message))
        messages.append(HumanMessage(content=params.prompt))

        try:
            response = await llm.ainvoke(messages)
        except Exception as exc:
            raise ProviderCallFailed(self.id, str(exc)) from exc

        content = response.content
        if isinstance(content, list):
            content = "".join(
                part.get("text", "") if isinstance(part, dict) else str(part) for part in content
            )
        usage = getattr(response, "usage_metadata", None) or {}
        return TextGenerationResult(content=content, provider=self.id, model=model, usage=dict(usage))


class HuggingFaceProvider(GenerationProvider):
    """HuggingFace Inference API for chat and text-to-image."""

    id = "huggingface"
    name = "HuggingFace"
    capabilities = ProviderCapabilities(
        text_generation=True,
        image_generation=True,
        max_context_length=8192,
    )
    models = [
        "stabilityai/stable-diffusion-xl-base-1.0",
        "black-forest-labs/FLUX.1-schnell",
        "meta-llama/Llama-3.1-8B-Instruct",
    ]
    supports_styles = True
    key_prefix = "hf_"
    min_key_length = 8
    default_text_model = "meta-llama/Llama-3.1-8B-Instruct"
    default_image_model = "stabilityai/stable-diffusion-xl-base-1.0"
    unsupported_image_fields = ("quality", "size")

    def _client(self, model: str) -> InferenceClient:
        return InferenceClient(model=model, token=self._api_key, timeout=self._timeout)

    async def _probe(self) -> Tuple[bool, str]:
        api = HfApi(token=self._api_key)
        try:
            identity = await asyncio.to_thread(api.whoami)
        except HfHubHTTPError as exc:
            return False, f"Token rejected: {exc}"
        return True, f"Authenticated as {identity.get('name', 'unknown')}"

    async def generate_text(self, params: TextGenerationParams) -> TextGenerationResult:
        model = params.model if params.model and "/" in params.model else self.default_text_model
        messages = []
        if params.system_message:
            messages.append({"role": "system", "content": params.system_message})
        messages.append({"role": "user", "content": params.prompt})

        try:
            output = await asyncio.to_thread(
                self._client(model).chat_completion,
                messages=messages,
                max_tokens=params.max_tokens or 2048,
                temperature=params.temperature,
            )
        except Exception as exc:
            raise ProviderCallFailed(self.id, str(exc)) from exc

        content = output.choices[0].message.content or ""
        return TextGenerationResult(content=content, provider=self.id, model=model)

    def _accepts_model(self, model: str) -> bool:
        # Any hub repo id; bare names belong to other backends
        return "/" in model

    def _adapt(self, params: ImageGenerationParams) -> ImageGenerationParams:
        params.width = _snap(params.width, 8, 256, 1536, 1024)
        params.height = _snap(params.height, 8, 256, 1536, 1024)
        params.steps = _clamp(params.steps, 1, 50, 30)
        return params

    async def generate_image(self, params: ImageGenerationParams) -> ImageGenerationResult:
        model = params.model or self.default_image_model
        call_kwargs: Dict[str, Any] = {
            'width': params.width,
            'height': params.height,
            'num_inference_steps': params.steps,
        }
        if params.negative_prompt:
            call_kwargs['negative_prompt'] = params.negative_prompt
        if params.seed is not None:
            call_kwargs['seed'] = params.seed

        try:
            image = await asyncio.to_thread(
                self._client(model).text_to_image,
                params.prompt,
                model=model,
                **call_kwargs,
            )
        except Exception as exc:
            logger.error("HuggingFace image generation failed", exc_info=exc)
            error_message = str(exc)
            if "paused" in error_message.lower() or "503" in error_message:
                return self._failed(f"HuggingFace model is loading or paused: {exc}", 503, model)
            return self._failed(f"HuggingFace image generation failed: {exc}", 502, model)

        if isinstance(image, (bytes, bytearray)):
            image = Image.open(io.BytesIO(image))

        buffer = io.BytesIO()
        try:
            image.save(buffer, format='PNG')
        except (OSError, ValueError, AttributeError) as exc:
            return self._failed(f"Could not encode HuggingFace image output: {exc}", 502, model)

        return ImageGenerationResult(
            success=True,
            image_url=_png_data_url(buffer.getvalue()),
            provider=self.id,
            model=model,
            prompt_used=params.prompt,
            seed=params.seed,
        )


class ReplicateProvider(GenerationProvider):
    """Replicate-hosted image models."""

    id = "replicate"
    name = "Replicate"
    capabilities = ProviderCapabilities(image_generation=True)
    models = ["black-forest-labs/flux-schnell", "black-forest-labs/flux-dev"]
    key_prefix = "r8_"
    min_key_length = 20
    default_image_model = "black-forest-labs/flux-schnell"
    unsupported_image_fields = ("negative_prompt", "quality", "size", "style")

    base_url = "https://api.replicate.com/v1"

    ASPECT_RATIOS = {"1:1": 1.0, "16:9": 16 / 9, "9:16": 9 / 16, "4:3": 4 / 3, "3:4": 3 / 4}

    async def _probe(self) -> Tuple[bool, str]:
        headers = {"Authorization": f"Bearer {self._api_key}"}
        status_code = await self._get_status(f"{self.base_url}/models", headers=headers)
        return self._probe_outcome(status_code, "Models endpoint reachable")

    def _adapt(self, params: ImageGenerationParams) -> ImageGenerationParams:
        max_steps = 4 if params.model.endswith("schnell") else 50
        params.steps = _clamp(params.steps, 1, max_steps, max_steps)
        return params

    def _aspect_ratio(self, width: int | None, height: int | None) -> str:
        if not width or not height:
            return "1:1"
        ratio = width / height
        return min(self.ASPECT_RATIOS, key=lambda name: abs(self.ASPECT_RATIOS[name] - ratio))

    def _extract_image_urls(self, output: Any) -> List[str]:
        """Normalise Replicate outputs into a list of URLs."""
        urls: List[str] = []

        def _append(candidate: Any) -> None:
            if isinstance(candidate, str) and candidate and candidate not in urls:
                urls.append(candidate)

        if output is None:
            return urls

        if isinstance(output, str):
            if output.startswith(("http://", "https://", "data:")):
                _append(output)
            return urls

        potential_url = getattr(output, "url", None)
        if callable(potential_url):
            potential_url = potential_url()
        _append(potential_url)
        if urls:
            return urls

        if isinstance(output, Mapping):
            for value in output.values():
                for candidate in self._extract_image_urls(value):
                    _append(candidate)
            return urls

        if isinstance(output, Sequence) and not isinstance(output, (bytes, bytearray)):
            for item in output:
                for candidate in self._extract_image_urls(item):
                    _append(candidate)

        return urls

    async def generate_image(self, params: ImageGenerationParams) -> ImageGenerationResult:
        model = params.model or self.default_image_model
        payload: Dict[str, Any] = {
            "prompt": params.prompt,
            "aspect_ratio": self._aspect_ratio(params.width, params.height),
            "num_outputs": 1,
            "num_inference_steps": params.steps,
            "output_format": "png",
        }
        if params.seed is not None:
            payload["seed"] = params.seed

        client = replicate.Client(api_token=self._api_key)
        loop = asyncio.get_running_loop()

        def _call_model() -> Any:
            return client.run(model, input=payload)

        try:
            output = await loop.run_in_executor(None, _call_model)
        except Exception as exc:
            return self._failed(f"Replicate generation failed: {exc}", 502, model)

        image_urls = self._extract_image_urls(output)
        if not image_urls:
            return self._failed("Replicate returned no image URLs", 502, model)

        return ImageGenerationResult(
            success=True,
            image_url=image_urls[0],
            provider=self.id,
            model=model,
            prompt_used=params.prompt,
            seed=params.seed,
        )


class StabilityProvider(GenerationProvider):
    """Stability AI REST v1 text-to-image."""

    id = "stability"
    name = "Stability AI"
    capabilities = ProviderCapabilities(image_generation=True)
    models = ["stable-diffusion-xl-1024-v1-0", "stable-diffusion-v1-6"]
    supports_styles = True
    key_prefix = "sk-"
    min_key_length = 20
    default_image_model = "stable-diffusion-xl-1024-v1-0"
    unsupported_image_fields = ("quality", "size")

    base_url = "https://api.stability.ai/v1"

    SDXL_DIMENSIONS = [
        (1024, 1024), (1152, 896), (1216, 832), (1344, 768), (1536, 640),
        (640, 1536), (768, 1344), (832, 1216), (896, 1152),
    ]
    STYLE_PRESETS = {
        "cartoon": "comic-book",
        "pencil": "line-art",
        "digital": "digital-art",
        "watercolor": "fantasy-art",
    }

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    async def _probe(self) -> Tuple[bool, str]:
        status_code = await self._get_status(f"{self.base_url}/engines/list", headers=self._headers())
        return self._probe_outcome(status_code, "Engines list reachable")

    def _adapt(self, params: ImageGenerationParams) -> ImageGenerationParams:
        width, height = params.width or 1024, params.height or 1024
        if params.model == "stable-diffusion-xl-1024-v1-0":
            ratio = width / height
            params.width, params.height = min(
                self.SDXL_DIMENSIONS, key=lambda dims: abs(dims[0] / dims[1] - ratio)
            )
        else:
            params.width = _snap(width, 64, 320, 1536, 512)
            params.height = _snap(height, 64, 320, 1536, 512)
        params.steps = _clamp(params.steps, 10, 50, 30)
        return params

    async def generate_image(self, params: ImageGenerationParams) -> ImageGenerationResult:
        engine = params.model or self.default_image_model
        text_prompts = [{"text": params.prompt[:2000], "weight": 1}]
        if params.negative_prompt:
            text_prompts.append({"text": params.negative_prompt[:2000], "weight": -1})

        payload: Dict[str, Any] = {
            "text_prompts": text_prompts,
            "cfg_scale": 7,
            "width": params.width,
            "height": params.height,
            "steps": params.steps,
            "samples": 1,
        }
        if params.seed is not None:
            payload["seed"] = params.seed
        preset = self.STYLE_PRESETS.get(params.style or "")
        if preset:
            payload["style_preset"] = preset

        try:
            data = await self._post_json(
                f"{self.base_url}/generation/{engine}/text-to-image", payload, self._headers()
            )
        except ProviderCallFailed as exc:
            return self._failed(str(exc), exc.status_code, engine)

        artifacts = [item for item in data.get("artifacts", []) if item.get("finishReason") != "ERROR"]
        if not artifacts or not artifacts[0].get("base64"):
            return self._failed("No image artifact in response", model=engine)

        return ImageGenerationResult(
            success=True,
            image_url=_png_data_url(base64.b64decode(artifacts[0]["base64"])),
            provider=self.id,
            model=engine,
            prompt_used=params.prompt,
            seed=artifacts[0].get("seed"),
        )


class GetImgProvider(GenerationProvider):
    """GetImg.ai stable diffusion endpoint."""

    id = "getimg"
    name = "GetImg"
    capabilities = ProviderCapabilities(image_generation=True)
    models = ["stable-diffusion-v1-5", "realistic-vision-v5-1", "dark-sushi-mix-v2-25"]
    key_prefix = "key-"
    min_key_length = 20
    default_image_model = "stable-diffusion-v1-5"
    unsupported_image_fields = ("quality", "size", "style")

    base_url = "https://api.getimg.ai/v1"

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
        }

    async def _probe(self) -> Tuple[bool, str]:
        status_code = await self._get_status(f"{self.base_url}/account/balance", headers=self._headers())
        return self._probe_outcome(status_code, "Account balance reachable")

    def _adapt(self, params: ImageGenerationParams) -> ImageGenerationParams:
        params.width = _snap(params.width, 64, 256, 1024, 512)
        params.height = _snap(params.height, 64, 256, 1024, 512)
        params.steps = _clamp(params.steps, 1, 100, 25)
        params.prompt = params.prompt[:2048]
        return params

    async def generate_image(self, params: ImageGenerationParams) -> ImageGenerationResult:
        model = params.model or self.default_image_model
        payload: Dict[str, Any] = {
            "model": model,
            "prompt": params.prompt,
            "width": params.width,
            "height": params.height,
            "steps": params.steps,
            "output_format": "png",
        }
        if params.negative_prompt:
            payload["negative_prompt"] = params.negative_prompt[:2048]
        if params.seed is not None:
            payload["seed"] = params.seed

        try:
            data = await self._post_json(
                f"{self.base_url}/stable-diffusion/text-to-image", payload, self._headers()
            )
        except ProviderCallFailed as exc:
            return self._failed(str(exc), exc.status_code, model)

        if not data.get("image"):
            return self._failed("No image in response", model=model)

        return ImageGenerationResult(
            success=True,
            image_url=_png_data_url(base64.b64decode(data["image"])),
            provider=self.id,
            model=model,
            prompt_used=params.prompt,
            seed=data.get("seed"),
        )


class RunwareProvider(GenerationProvider):
    """Runware task API. No cheap authenticated endpoint exists, so health only checks the key."""

    id = "runware"
    name = "Runware"
    capabilities = ProviderCapabilities(image_generation=True)
    models = ["runware:100@1", "runware:101@1"]
    min_key_length = 32
    default_image_model = "runware:100@1"
    unsupported_image_fields = ("quality", "size", "style")

    base_url = "https://api.runware.ai/v1"

    async def _probe(self) -> Tuple[bool, str]:
        return True, "API key present (not verified against the backend)"

    def _adapt(self, params: ImageGenerationParams) -> ImageGenerationParams:
        params.width = _snap(params.width, 64, 128, 2048, 1024)
        params.height = _snap(params.height, 64, 128, 2048, 1024)
        params.steps = _clamp(params.steps, 1, 100, 20)
        return params

    async def generate_image(self, params: ImageGenerationParams) -> ImageGenerationResult:
        model = params.model or self.default_image_model
        inference: Dict[str, Any] = {
            "taskType": "imageInference",
            "taskUUID": str(uuid.uuid4()),
            "positivePrompt": params.prompt,
            "model": model,
            "width": params.width,
            "height": params.height,
            "steps": params.steps,
            "numberResults": 1,
            "outputType": "URL",
        }
        if params.negative_prompt:
            inference["negativePrompt"] = params.negative_prompt
        if params.seed is not None:
            inference["seed"] = params.seed

        tasks = [{"taskType": "authentication", "apiKey": self._api_key}, inference]
        try:
            data = await self._post_json(self.base_url, tasks, {"Content-Type": "application/json"})
        except ProviderCallFailed as exc:
            return self._failed(str(exc), exc.status_code, model)

        if data.get("errors"):
            return self._failed(str(data["errors"][0].get("message", data["errors"][0])), model=model)

        images = [item for item in data.get("data", []) if item.get("imageURL")]
        if not images:
            return self._failed("No image URL in response", model=model)

        return ImageGenerationResult(
            success=True,
            image_url=images[0]["imageURL"],
            provider=self.id,
            model=model,
            prompt_used=params.prompt,
            seed=images[0].get("seed"),
        )


class LexicaProvider(GenerationProvider):
    """Lexica search: returns an existing image matching the prompt. Keyless."""

    id = "lexica"
    name = "Lexica"
    capabilities = ProviderCapabilities(image_generation=True)
    models = ["lexica-search"]
    requires_api_key = False
    min_key_length = 0
    default_image_model = "lexica-search"
    unsupported_image_fields = (
        "negative_prompt", "quality", "size", "style", "seed", "steps", "width", "height",
    )

    search_url = "https://lexica.art/api/v1/search"

    async def _probe(self) -> Tuple[bool, str]:
        status_code = await self._get_status(self.search_url, params={"q": "storybook"})
        return self._probe_outcome(status_code, "Search endpoint reachable")

    def _adapt(self, params: ImageGenerationParams) -> ImageGenerationParams:
        params.prompt = params.prompt[:100]
        return params

    async def generate_image(self, params: ImageGenerationParams) -> ImageGenerationResult:
        try:
            data = await self._get_json(self.search_url, params={"q": params.prompt})
        except ProviderCallFailed as exc:
            return self._failed(str(exc), exc.status_code, self.default_image_model)

        images = [item for item in data.get("images", []) if item.get("src")]
        if not images:
            return self._failed("No matching images found", model=self.default_image_model)

        return ImageGenerationResult(
            success=True,
            image_url=images[0]["src"],
            provider=self.id,
            model=self.default_image_model,
            prompt_used=images[0].get("prompt") or params.prompt,
        )


PROVIDER_CLASSES: Dict[str, Type[GenerationProvider]] = {
    cls.id: cls
    for cls in (
        OpenAIProvider,
        AnthropicProvider,
        HuggingFaceProvider,
        ReplicateProvider,
        StabilityProvider,
        GetImgProvider,
        RunwareProvider,
        LexicaProvider,
    )
}


class ProviderFactory:
    """Factory for creating generation providers."""

    @staticmethod
    def create_provider(provider_id: str, api_key: str | None = None, timeout: float | None = None) -> GenerationProvider:
        """Create a provider instance by id."""
        try:
            provider_cls = PROVIDER_CLASSES[provider_id]
        except KeyError:
            raise ValueError(f"Unknown provider: {provider_id}") from None

        if api_key and provider_cls.requires_api_key:
            validation = provider_cls.validate_api_key(api_key)
            if not validation.is_valid:
                logger.error(f"Ignoring configured {provider_id} key: {validation.message}")
                api_key = None
        return provider_cls(api_key=api_key, timeout=timeout)

    @staticmethod
    def create_all(context: StoryloomContext) -> List[GenerationProvider]:
        """One instance of every known provider, keyed from ``context``."""
        keys = context.api_keys()
        return [
            ProviderFactory.create_provider(provider_id, keys.get(provider_id), context.request_timeout)
            for provider_id in PROVIDER_CLASSES
        ]

    @staticmethod
    def get_available_providers() -> List[str]:
        return list(PROVIDER_CLASSES)
