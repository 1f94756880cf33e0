from fastapi import APIRouter

from app.api.routes import certificates, health

api_router = APIRouter()
api_router.include_router(health.router, tags=["health"])
api_router.include_router(certificates.router, prefix="/certificates", tags=["certificates"])
