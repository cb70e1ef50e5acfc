"""Health check route. Bypasses authentication and the access guard."""

from fastapi import APIRouter, Request

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check(request: Request):
    engine = getattr(request.app.state, "engine", None)
    return {
        "status": "ok",
        "database_configured": engine is not None,
        "cache_backend": engine.cache.backend if engine else None,
        "invalidation_bus_running": engine.invalidation_bus.running if engine else False,
    }
