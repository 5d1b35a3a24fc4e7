"""Cache administration endpoints."""

from fastapi import APIRouter

from ai_gateway.api.dependencies import Gateway
from ai_gateway.api.response import success_response

router = APIRouter(prefix="/ai/cache", tags=["Cache"])


@router.get("/stats")
async def cache_stats(gateway: Gateway) -> dict:
    """Aggregate statistics over live cache entries."""
    stats = await gateway.cache.get_stats()
    return success_response(stats.to_dict())


@router.delete("/keys/{cache_key}")
async def invalidate_key(cache_key: str, gateway: Gateway) -> dict:
    """Delete every entry stored under a cache key."""
    deleted = await gateway.cache.invalidate(cache_key)
    return success_response({"deleted": deleted})


@router.delete("/functions/{function_name}")
async def invalidate_function(function_name: str, gateway: Gateway) -> dict:
    """Delete every entry owned by a function."""
    deleted = await gateway.cache.invalidate_by_function(function_name)
    return success_response({"deleted": deleted})


@router.post("/cleanup")
async def cleanup(gateway: Gateway) -> dict:
    """Delete expired entries now instead of waiting for the periodic sweep."""
    deleted = await gateway.cache.cleanup()
    return success_response({"deleted": deleted})
