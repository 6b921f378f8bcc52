"""Concurrent health monitoring of registered providers."""

import asyncio
import logging
import time
from typing import Dict, Iterable, Set

from storyloom.models import HealthCheckResult
from storyloom.providers import GenerationProvider


logger = logging.getLogger(__name__)


class HealthMonitor:
    """Runs provider health probes and keeps their status current."""

    def __init__(self, providers: Iterable[GenerationProvider] | None = None):
        self._providers = providers
        self._pending: Set[asyncio.Task] = set()

    def attach(self, providers: Iterable[GenerationProvider]) -> None:
        self._providers = providers

    async def check_health(self, provider: GenerationProvider) -> HealthCheckResult:
        """Probe one provider. Exceptions mark it unhealthy instead of propagating."""
        start = time.perf_counter()
        try:
            return await provider.check_health()
        except Exception as exc:
            elapsed = (time.perf_counter() - start) * 1000
            logger.error(f"Health check for {provider.id} failed: {exc}", exc_info=exc)
            return provider.record_health(False, elapsed, f"Health check error: {exc}", error=str(exc))

    async def check_all_providers_health(self) -> Dict[str, HealthCheckResult]:
        """Probe every provider concurrently and wait for all of them."""
        providers = list(self._providers or [])
        results = await asyncio.gather(*(self.check_health(provider) for provider in providers))
        report = {provider.id: result for provider, result in zip(providers, results)}

        healthy = [provider_id for provider_id, result in report.items() if result.is_healthy]
        unhealthy = [provider_id for provider_id, result in report.items() if not result.is_healthy]
        logger.info(
            f"Provider health: {len(healthy)} healthy ({', '.join(healthy) or 'none'}), "
            f"{len(unhealthy)} unhealthy ({', '.join(unhealthy) or 'none'})"
        )
        return report

    def schedule_health_check(self, provider: GenerationProvider) -> asyncio.Task | None:
        """Start a background probe without waiting for it.

        Returns None when called outside a running event loop; the provider is
        then checked by the next sweep.
        """
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug(f"No running event loop; deferring health check for {provider.id}")
            return None

        task = loop.create_task(self.check_health(provider))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def wait_pending(self) -> None:
        """Wait for background probes started by ``schedule_health_check``."""
        if self._pending:
            await asyncio.gather(*list(self._pending))
