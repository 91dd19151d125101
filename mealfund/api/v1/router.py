"""
API v1 Router - Main Entry Point
Aggregates all v1 API endpoints for the settlement service
"""

from fastapi import APIRouter

from mealfund.api.v1 import admin, deliveries, public_feed, webhooks

router = APIRouter(
    responses={
        400: {"description": "Bad Request"},
        401: {"description": "Unauthorized"},
        403: {"description": "Forbidden"},
        404: {"description": "Not Found"},
        422: {"description": "Validation Error"},
        500: {"description": "Internal Server Error"},
    }
)

router.include_router(deliveries.router)
router.include_router(public_feed.router)
router.include_router(webhooks.router)
router.include_router(admin.router)

__all__ = ["router"]
