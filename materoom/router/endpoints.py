"""
API Router - all endpoints.
"""
from fastapi import APIRouter
from materoom.router.api.v1 import chat, users

api_router = APIRouter(prefix="/api/v1")

api_router.include_router(
    users.router,
    prefix="/users",
    tags=["Users"],
)

api_router.include_router(
    chat.router,
    prefix="/chat",
    tags=["Chat"],
)
