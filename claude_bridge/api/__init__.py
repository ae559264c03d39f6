"""
API routes for the Claude Bridge admin server.
"""

from fastapi import APIRouter

from claude_bridge.api import containers, health, logs

# Create main API router
api_router = APIRouter(prefix="/api")

api_router.include_router(health.router, tags=["health"])
api_router.include_router(containers.router, tags=["containers"])
api_router.include_router(logs.router, tags=["logs"])
