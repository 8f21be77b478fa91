from fastapi import APIRouter

from fieldconfig.api.v1.routers import fields, health

api_router = APIRouter()
api_router.include_router(health.router)
api_router.include_router(fields.router)

__all__ = ["api_router"]
