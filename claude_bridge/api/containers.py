"""
Container inspection endpoints.

Read-only: lifecycle actions go through the admin chat commands so that
they are audited alongside the conversation.
"""

import logging

from fastapi import APIRouter, HTTPException, Request

from claude_bridge.lib.errors import ContainerError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/containers")


@router.get("")
async def list_containers(request: Request):
    """List all managed containers."""
    executor = request.app.state.bridge.executor
    try:
        containers = await executor.list_containers()
    except ContainerError as e:
        logger.error(f"Container listing failed: {e}")
        raise HTTPException(status_code=503, detail="Container engine unavailable")
    return {"containers": [c.model_dump() for c in containers]}


@router.get("/{identity}")
async def container_status(request: Request, identity: str):
    """Status, resource usage and disk usage of one identity's container."""
    executor = request.app.state.bridge.executor
    status = await executor.get_container_status(identity)
    return status.model_dump()
