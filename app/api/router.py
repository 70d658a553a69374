from fastapi import APIRouter

from app.api.v1.routes import conversations, health, inbound, queue

api_router = APIRouter()
api_router.include_router(health.router, prefix="/v1", tags=["health"])
api_router.include_router(inbound.router, prefix="/v1/workspaces", tags=["inbound"])
api_router.include_router(
    conversations.router, prefix="/v1/workspaces", tags=["conversations"]
)
api_router.include_router(queue.router, prefix="/v1/workspaces", tags=["queue"])
