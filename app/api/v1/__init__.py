"""V1 API router aggregation."""

from fastapi import APIRouter

from app.api.v1.bots import router as bots_router
from app.api.v1.chat import public_router as public_chat_router
from app.api.v1.chat import router as chat_router
from app.api.v1.sources import router as sources_router

v1_router = APIRouter(prefix="/v1")
v1_router.include_router(bots_router)
v1_router.include_router(sources_router)
v1_router.include_router(chat_router)
v1_router.include_router(public_chat_router)
