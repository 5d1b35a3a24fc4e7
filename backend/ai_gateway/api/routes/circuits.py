"""Circuit breaker status endpoint."""

from fastapi import APIRouter

from ai_gateway.api.dependencies import Gateway
from ai_gateway.api.response import success_response

router = APIRouter(prefix="/ai/circuits", tags=["Circuits"])


@router.get("/{operation}")
async def circuit_status(operation: str, gateway: Gateway) -> dict:
    """Read-only snapshot of one operation's circuit."""
    status = await gateway.breaker(operation).get_status()
    return success_response(status)
