"""Per-provider attempt counters and temporary cooldowns."""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, List

from storyloom.models import MetricsSnapshot


logger = logging.getLogger(__name__)


@dataclass
class ProviderMetrics:
    """Attempt counters for one provider."""
    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    last_used: datetime | None = None
    cooldown_until: datetime | None = None

    @property
    def success_rate(self) -> float | None:
        if self.total_requests == 0:
            return None
        return self.successful_requests / self.total_requests


class MetricsTracker:
    """Tracks success/total counts per provider.

    ``record_attempt`` must be called before every provider call and
    ``record_success`` only once the result has been validated, so that
    ``success / total`` reflects delivered output rather than raw responses.
    """

    def __init__(self):
        self._metrics: Dict[str, ProviderMetrics] = {}

    def _entry(self, provider_id: str) -> ProviderMetrics:
        if provider_id not in self._metrics:
            self._metrics[provider_id] = ProviderMetrics()
        return self._metrics[provider_id]

    def record_attempt(self, provider_id: str) -> None:
        entry = self._entry(provider_id)
        entry.total_requests += 1
        entry.last_used = datetime.now()

    def record_success(self, provider_id: str) -> None:
        self._entry(provider_id).successful_requests += 1

    def record_failure(self, provider_id: str) -> None:
        self._entry(provider_id).failed_requests += 1

    def total(self, provider_id: str) -> int:
        return self._entry(provider_id).total_requests

    def success_rate(self, provider_id: str) -> float | None:
        """Success ratio in [0, 1], or None when the provider was never attempted."""
        return self._entry(provider_id).success_rate

    def format_success_rate(self, provider_id: str) -> str:
        rate = self.success_rate(provider_id)
        if rate is None:
            return "N/A"
        return f"{rate * 100:.1f}%"

    def mark_temporary_failure(self, provider_id: str, seconds: float) -> None:
        """Put a provider on cooldown. Reported in status listings only."""
        until = datetime.now() + timedelta(seconds=seconds)
        self._entry(provider_id).cooldown_until = until
        logger.info(f"Provider {provider_id} cooling down until {until.isoformat(timespec='seconds')}")

    def is_cooling_down(self, provider_id: str) -> bool:
        until = self._entry(provider_id).cooldown_until
        return until is not None and until > datetime.now()

    def sweep_cooldowns(self) -> List[str]:
        """Clear expired cooldowns and return the ids that were released."""
        now = datetime.now()
        released = []
        for provider_id, entry in self._metrics.items():
            if entry.cooldown_until is not None and entry.cooldown_until <= now:
                entry.cooldown_until = None
                released.append(provider_id)
        if released:
            logger.debug(f"Cooldown expired for: {', '.join(released)}")
        return released

    def snapshot(self, provider_id: str) -> MetricsSnapshot:
        entry = self._entry(provider_id)
        return MetricsSnapshot(
            total_requests=entry.total_requests,
            successful_requests=entry.successful_requests,
            failed_requests=entry.failed_requests,
            success_rate=self.format_success_rate(provider_id),
            last_used=entry.last_used,
            cooldown_until=entry.cooldown_until,
        )

    def reset(self, provider_id: str | None = None) -> None:
        if provider_id is None:
            self._metrics.clear()
        else:
            self._metrics.pop(provider_id, None)
