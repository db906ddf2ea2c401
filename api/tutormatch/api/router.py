from fastapi import APIRouter

from tutormatch.api.routes import applications, health, notifications, postings, withdrawals

api_router = APIRouter()
api_router.include_router(health.router, tags=["health"])
api_router.include_router(postings.router, prefix="/postings", tags=["postings"])
api_router.include_router(applications.router, prefix="/applications", tags=["matching"])
api_router.include_router(withdrawals.router, tags=["withdrawals"])
api_router.include_router(notifications.router, prefix="/notifications", tags=["admin"])
