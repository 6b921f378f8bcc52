"""Provider registry: capability lookup, API key swaps and status listing."""

import logging
from typing import Dict, Iterator, List

from storyloom.error_handling import InvalidApiKeyFormat
from storyloom.health import HealthMonitor
from storyloom.metrics import MetricsTracker
from storyloom.models import ApiKeyUpdateResult, Capability, KeyValidation, ProviderReport
from storyloom.providers import GenerationProvider


logger = logging.getLogger(__name__)


class ProviderRegistry:
    """Owns the provider instances of one service, keyed by id in registration order."""

    def __init__(self, metrics: MetricsTracker | None = None, health_monitor: HealthMonitor | None = None):
        self._providers: Dict[str, GenerationProvider] = {}
        self.metrics = metrics or MetricsTracker()
        self.health_monitor = health_monitor or HealthMonitor()
        self.health_monitor.attach(self)

    def __iter__(self) -> Iterator[GenerationProvider]:
        return iter(list(self._providers.values()))

    def __len__(self) -> int:
        return len(self._providers)

    def __contains__(self, provider_id: str) -> bool:
        return provider_id in self._providers

    def register(self, provider: GenerationProvider) -> None:
        if not provider.id:
            raise ValueError(f"{type(provider).__name__} has no provider id")
        if provider.id in self._providers:
            logger.warning(f"Replacing registered provider {provider.id}")
        self._providers[provider.id] = provider
        logger.debug(f"Registered provider {provider.id} ({provider.name})")

    def get(self, provider_id: str) -> GenerationProvider | None:
        return self._providers.get(provider_id)

    def ids(self) -> List[str]:
        return list(self._providers)

    def with_capability(self, capability: Capability) -> List[GenerationProvider]:
        return [provider for provider in self if provider.supports(capability)]

    def set_api_key(self, provider_id: str, api_key: str) -> ApiKeyUpdateResult:
        """Swap a provider's key after a format check, then re-probe it in the background."""
        provider = self.get(provider_id)
        if provider is None:
            return ApiKeyUpdateResult(
                success=False,
                message=f"Unknown provider: {provider_id}",
                validation=KeyValidation(is_valid=False, message="Provider not registered"),
            )

        try:
            validation = provider.set_api_key(api_key)
        except InvalidApiKeyFormat as exc:
            logger.warning(str(exc))
            return ApiKeyUpdateResult(
                success=False,
                message=str(exc),
                validation=provider.validate_api_key(api_key),
            )

        self.health_monitor.schedule_health_check(provider)
        logger.info(f"API key updated for {provider_id}")
        return ApiKeyUpdateResult(
            success=True,
            message=f"API key for {provider.name} updated; health check scheduled",
            validation=validation,
        )

    def status(self) -> List[ProviderReport]:
        self.metrics.sweep_cooldowns()
        return [
            ProviderReport(
                id=provider.id,
                name=provider.name,
                is_available=provider.status.is_available,
                capabilities=provider.capabilities,
                metrics=self.metrics.snapshot(provider.id),
            )
            for provider in self
        ]
