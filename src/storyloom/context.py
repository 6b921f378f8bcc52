"""Runtime context for the story generation service."""

import os

from pydantic import BaseModel, Field

from storyloom.models import Capability, RoutingConfig


DEFAULT_BACKUP_IMAGE_URL = "https://cdn.pixabay.com/photo/2016/04/15/20/28/cartoon-1332054_960_720.png"

API_KEY_ENV_VARS = {
    "openai": "OPENAI_API_KEY",
    "anthropic": "ANTHROPIC_API_KEY",
    "huggingface": "HUGGINGFACE_API_KEY",
    "replicate": "REPLICATE_API_TOKEN",
    "stability": "STABILITY_API_KEY",
    "getimg": "GETIMG_API_KEY",
    "runware": "RUNWARE_API_KEY",
}


class StoryloomContext(BaseModel):
    """Runtime configuration: credentials, routing defaults and diagnostics."""

    # API Configuration
    openai_api_key: str | None = Field(default=None, description="OpenAI API key for chat and image models")
    anthropic_api_key: str | None = Field(default=None, description="Anthropic API key for Claude")
    huggingface_api_key: str | None = Field(default=None, description="HuggingFace token for inference")
    replicate_api_token: str | None = Field(default=None, description="Replicate API token")
    stability_api_key: str | None = Field(default=None, description="Stability AI API key")
    getimg_api_key: str | None = Field(default=None, description="GetImg API key")
    runware_api_key: str | None = Field(default=None, description="Runware API key")

    # Routing
    default_tier: str = Field(default="free", description="Tier used when the caller does not supply one")
    default_text_provider: str | None = Field(default=None, description="Overrides the routing default for text")
    default_image_provider: str | None = Field(default=None, description="Overrides the routing default for images")
    pinned_image_provider: str | None = Field(default=None, description="Image provider always tried first")
    routing_config_path: str | None = Field(default=None, description="JSON file with a full routing config")
    backup_image_url: str = Field(default=DEFAULT_BACKUP_IMAGE_URL, description="Placeholder returned when every image provider fails")

    # Transport
    request_timeout: float | None = Field(default=None, description="Per-request timeout in seconds for HTTP providers")

    log_level: str = Field(default="INFO")

    model_config = {"extra": "allow"}

    def api_keys(self) -> dict:
        """Configured credentials keyed by provider id."""
        return {
            "openai": self.openai_api_key,
            "anthropic": self.anthropic_api_key,
            "huggingface": self.huggingface_api_key,
            "replicate": self.replicate_api_token,
            "stability": self.stability_api_key,
            "getimg": self.getimg_api_key,
            "runware": self.runware_api_key,
        }

    def build_routing_config(self) -> RoutingConfig:
        """Routing config from the optional JSON file, with context overrides applied."""
        if self.routing_config_path:
            config = RoutingConfig.from_file(self.routing_config_path)
        else:
            config = RoutingConfig()

        if self.default_text_provider:
            config.default_providers[Capability.TEXT.value] = self.default_text_provider
        if self.default_image_provider:
            config.default_providers[Capability.IMAGE.value] = self.default_image_provider
        if self.pinned_image_provider:
            config.pinned_image_provider = self.pinned_image_provider
        if self.default_tier in config.tiers:
            config.default_tier = self.default_tier
        return config


def get_default_context() -> StoryloomContext:
    """Get default context with environment variables."""
    timeout = os.getenv('STORYLOOM_REQUEST_TIMEOUT')

    return StoryloomContext(
        openai_api_key=os.getenv('OPENAI_API_KEY'),
        anthropic_api_key=os.getenv('ANTHROPIC_API_KEY'),
        huggingface_api_key=os.getenv('HUGGINGFACE_API_KEY'),
        replicate_api_token=os.getenv('REPLICATE_API_TOKEN'),
        stability_api_key=os.getenv('STABILITY_API_KEY'),
        getimg_api_key=os.getenv('GETIMG_API_KEY'),
        runware_api_key=os.getenv('RUNWARE_API_KEY'),
        default_tier=os.getenv('STORYLOOM_DEFAULT_TIER', 'free'),
        default_text_provider=os.getenv('STORYLOOM_TEXT_PROVIDER'),
        default_image_provider=os.getenv('STORYLOOM_IMAGE_PROVIDER'),
        pinned_image_provider=os.getenv('STORYLOOM_PINNED_IMAGE_PROVIDER'),
        routing_config_path=os.getenv('STORYLOOM_ROUTING_CONFIG'),
        backup_image_url=os.getenv('STORYLOOM_BACKUP_IMAGE_URL', DEFAULT_BACKUP_IMAGE_URL),
        request_timeout=float(timeout) if timeout else None,
        log_level=os.getenv('STORYLOOM_LOG_LEVEL', 'INFO'),
    )
