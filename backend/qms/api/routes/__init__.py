"""API routes."""

from fastapi import APIRouter

from qms.api.routes import queue, tokens

api_router = APIRouter()

api_router.include_router(tokens.router, prefix="/tokens", tags=["tokens"])
api_router.include_router(queue.router, prefix="/queue", tags=["queue"])
