from fastapi import APIRouter

from curator.api.routes import content_jobs, health, relationship_jobs

api_router = APIRouter()
api_router.include_router(health.router, tags=["health"])
api_router.include_router(content_jobs.router, prefix="/content-jobs", tags=["content"])
api_router.include_router(relationship_jobs.router, prefix="/relationship-jobs", tags=["relationships"])
api_router.include_router(relationship_jobs.related_router, prefix="/relationships", tags=["relationships"])
