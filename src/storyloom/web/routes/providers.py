"""API routes for provider status and configuration."""

import logging
from typing import Dict, List

from fastapi import APIRouter, Depends, HTTPException, status

from storyloom.models import ApiKeyUpdateResult, HealthCheckResult, ProviderReport, ProviderStatusEntry, TierLimits
from storyloom.service import StoryGenerationService
from storyloom.web.dependencies import get_service
from storyloom.web.models.web_models import ApiKeyRequest


logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/status", response_model=List[ProviderStatusEntry])
async def get_providers_status(service: StoryGenerationService = Depends(get_service)):
    """Administrative provider listing."""
    return service.get_providers_status()


@router.get("/report", response_model=List[ProviderReport])
async def get_provider_report(service: StoryGenerationService = Depends(get_service)):
    """Availability, capabilities and metrics per provider."""
    return service.get_provider_report()


@router.get("/tiers", response_model=Dict[str, TierLimits])
async def get_tier_limits(service: StoryGenerationService = Depends(get_service)):
    """Providers, request allowance and token limit of each subscription tier."""
    return service.get_tier_limits()


@router.post("/health-check", response_model=Dict[str, HealthCheckResult])
async def run_health_check(service: StoryGenerationService = Depends(get_service)):
    return await service.check_all_providers_health()


@router.post("/{provider_id}/api-key", response_model=ApiKeyUpdateResult)
async def set_provider_api_key(
    provider_id: str,
    request: ApiKeyRequest,
    service: StoryGenerationService = Depends(get_service),
):
    """Swap a provider's API key; the provider is re-checked in the background."""
    if service.registry.get(provider_id) is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Unknown provider: {provider_id}",
        )

    result = service.set_api_key(provider_id, request.api_key)
    if not result.success:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=result.message)
    return result
