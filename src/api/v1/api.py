from fastapi import APIRouter

from .health import router as health_router
from .streams import router as streams_router


api_router = APIRouter()

api_router.include_router(health_router, tags=["health"])
api_router.include_router(streams_router)
