from fastapi import APIRouter

from app.api.routes import health, prototypes

api_router = APIRouter()

api_router.include_router(health.router, tags=["health"])
api_router.include_router(prototypes.router, prefix="/prototypes", tags=["prototypes"])
