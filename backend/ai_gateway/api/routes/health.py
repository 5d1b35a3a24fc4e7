"""Health check endpoint."""

from fastapi import APIRouter

from ai_gateway.api.dependencies import Gateway
from ai_gateway.api.response import success_response
from ai_gateway.llm.providers import configured_providers

router = APIRouter(tags=["System"])


@router.get("/health")
async def health_check(gateway: Gateway) -> dict:
    """Return system health status and the provider catalog in priority order."""
    return success_response(
        {
            "status": "ok",
            "configured_providers": configured_providers(gateway.providers),
            "providers": [
                {
                    "name": p.name,
                    "priority": p.descriptor.priority,
                    "enabled": p.descriptor.enabled,
                    "configured": p.is_configured(),
                    "rate_limit_per_minute": p.descriptor.rate_limit_per_minute,
                    "cost_per_token": p.descriptor.cost_per_token,
                }
                for p in gateway.orchestrator.providers
            ],
        }
    )
