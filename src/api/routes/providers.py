"""Provider status and mode routing.

Endpoints:
    GET /v1/providers           Availability of each provider adapter
    GET /v1/providers/routing   Mode -> provider priority table
"""

from fastapi import APIRouter

from src.executor.runtime import get_dispatcher
from src.llm.factory import MODE_ROUTING

router = APIRouter(prefix="/providers", tags=["providers"])


@router.get("")
async def list_providers():
    """Which providers have credentials configured. Never calls out."""
    adapters = get_dispatcher().adapters
    providers = [
        {
            "name": name,
            "available": adapter.is_available(),
            "model": getattr(adapter, "model_id", None),
        }
        for name, adapter in adapters.items()
    ]
    return {
        "providers": providers,
        "available_count": sum(1 for p in providers if p["available"]),
    }


@router.get("/routing")
async def get_routing():
    return {mode.value: providers for mode, providers in MODE_ROUTING.items()}
