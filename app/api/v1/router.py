from fastapi import APIRouter

from app.api.v1.gateway import router as gateway_router

api_v1_router = APIRouter(prefix="/api/v1")
api_v1_router.include_router(gateway_router)
