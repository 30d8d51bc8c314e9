from fastapi import APIRouter

from radar.api.routes import automation, health, jobs

api_router = APIRouter()
api_router.include_router(health.router, tags=["health"])
api_router.include_router(automation.router, prefix="/automation", tags=["automation"])
api_router.include_router(jobs.router, prefix="/jobs", tags=["queue"])
