"""Error taxonomy and failure categorisation for provider routing."""

import asyncio
import logging
from enum import Enum
from typing import Dict, List


logger = logging.getLogger(__name__)


class StoryloomError(Exception):
    """Base class for errors raised by the generation service."""


class ProviderUnavailable(StoryloomError):
    """No admissible provider exists for a capability and tier."""

    def __init__(self, capability: str, tier: str | None = None):
        self.capability = capability
        self.tier = tier
        message = f"No available provider for {capability} generation"
        if tier:
            message += f" on tier '{tier}'"
        super().__init__(message)


class ProviderCallFailed(StoryloomError):
    """A specific backend failed: transport, authentication, rate limit or bad output."""

    def __init__(self, provider_id: str, message: str, status_code: int | None = None):
        self.provider_id = provider_id
        self.status_code = status_code
        detail = f"{provider_id}: {message}"
        if status_code is not None:
            detail += f" (HTTP {status_code})"
        super().__init__(detail)


class InvalidApiKeyFormat(StoryloomError):
    """An API key was rejected before contacting the backend."""

    def __init__(self, provider_id: str, message: str):
        self.provider_id = provider_id
        super().__init__(f"Invalid API key for {provider_id}: {message}")


class ValidationError(StoryloomError):
    """A request was malformed."""


class ExhaustedFallback(StoryloomError):
    """Every candidate provider was attempted and failed."""

    def __init__(self, capability: str, errors: Dict[str, str]):
        self.capability = capability
        self.errors = dict(errors)
        self.attempted_providers: List[str] = list(errors)
        super().__init__(
            f"All {capability} providers failed: {format_provider_errors(self.errors)}"
        )


def format_provider_errors(errors: Dict[str, str]) -> str:
    """Aggregate per-provider messages into one diagnostic string."""
    if not errors:
        return "no provider attempted"
    return "; ".join(f"{provider_id}: {message}" for provider_id, message in errors.items())


class ErrorCategory(str, Enum):
    """Error category types."""
    API_ERROR = "api_error"
    RATE_LIMIT = "rate_limit"
    TIMEOUT = "timeout"
    PROCESSING_ERROR = "processing_error"
    VALIDATION_ERROR = "validation_error"
    NETWORK_ERROR = "network_error"
    AUTHENTICATION_ERROR = "authentication_error"
    QUOTA_EXCEEDED = "quota_exceeded"
    MODEL_ERROR = "model_error"


class ErrorAnalyzer:
    """Classifies provider failures for logging and cooldown decisions."""

    ERROR_PATTERNS = {
        ErrorCategory.RATE_LIMIT: [
            'rate limit', 'too many requests', 'requests per minute',
            'rate_limit_exceeded', 'throttled', '429'
        ],
        ErrorCategory.TIMEOUT: [
            'timeout', 'timed out', 'read timeout', 'request timeout'
        ],
        ErrorCategory.NETWORK_ERROR: [
            'connection error', 'network error', 'connection refused',
            'connection reset', 'cannot connect', 'dns', 'unreachable'
        ],
        ErrorCategory.AUTHENTICATION_ERROR: [
            'authentication', 'unauthorized', 'invalid api key', 'forbidden',
            '401', '403', 'access denied', 'invalid token'
        ],
        ErrorCategory.QUOTA_EXCEEDED: [
            'quota', 'limit exceeded', 'usage limit', 'billing',
            'insufficient funds', 'credits'
        ],
        ErrorCategory.MODEL_ERROR: [
            'model not found', 'invalid model', 'model unavailable', 'is currently loading',
            'content policy', 'safety filter', 'inappropriate content'
        ]
    }

    # Categories that put a provider on a temporary cooldown, in seconds
    COOLDOWNS = {
        ErrorCategory.RATE_LIMIT: 60.0,
        ErrorCategory.QUOTA_EXCEEDED: 300.0,
    }

    @classmethod
    def categorize_error(cls, error: Exception | str) -> ErrorCategory:
        """Categorize an error based on its type and message."""
        error_text = str(error).lower()

        for category, patterns in cls.ERROR_PATTERNS.items():
            for pattern in patterns:
                if pattern in error_text:
                    return category

        if isinstance(error, str):
            return ErrorCategory.API_ERROR
        if isinstance(error, (asyncio.TimeoutError, TimeoutError)):
            return ErrorCategory.TIMEOUT
        if isinstance(error, (ConnectionError, OSError)):
            return ErrorCategory.NETWORK_ERROR
        if isinstance(error, (ValueError, ValidationError)):
            return ErrorCategory.VALIDATION_ERROR
        if isinstance(error, ProviderCallFailed):
            return ErrorCategory.API_ERROR
        return ErrorCategory.PROCESSING_ERROR

    @classmethod
    def cooldown_seconds(cls, category: ErrorCategory) -> float | None:
        """Cooldown to apply after a failure of ``category``, if any."""
        return cls.COOLDOWNS.get(category)
