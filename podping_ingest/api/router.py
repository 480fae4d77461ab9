from fastapi import APIRouter

from podping_ingest.api.routes import captures, health, podcasts, podpings, sync

api_router = APIRouter()
api_router.include_router(health.router, tags=["health"])
api_router.include_router(sync.router, prefix="/sync", tags=["sync"])
api_router.include_router(captures.router, prefix="/captures", tags=["captures"])
api_router.include_router(podcasts.router, prefix="/podcasts", tags=["podcasts"])
api_router.include_router(podpings.router, prefix="/podpings", tags=["podpings"])
