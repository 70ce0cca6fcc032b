"""API route registration."""

from fastapi import APIRouter
from .activities import router as activities_router
from .submissions import router as submissions_router


def register_all_routes(api_router: APIRouter):
    """Include all route modules on the main API router."""
    api_router.include_router(activities_router)
    api_router.include_router(submissions_router)
