from typing import Annotated

from fastapi import APIRouter, Depends

from core.config import Settings, get_settings
from schemas.api import ApiResponse


router = APIRouter()


@router.get("/health", response_model=ApiResponse[dict[str, str]])
def health_check(
    settings: Annotated[Settings, Depends(get_settings)],
) -> ApiResponse[dict[str, str]]:
    """Health check endpoint for monitoring and load balancer health checks."""
    return ApiResponse(
        success=True,
        data={
            "status": "healthy",
            "message": f"{settings.APP_NAME} API is running",
            "checkpoint_store": "upstash" if settings.upstash_configured else "memory",
        },
        message="Health check successful",
    )
