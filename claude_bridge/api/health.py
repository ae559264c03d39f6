"""
Health check endpoints.
"""

import time
from typing import Any

from fastapi import APIRouter, Query, Request

from claude_bridge import __version__

router = APIRouter()

# Server start time for uptime calculation
_start_time = time.time()


@router.get("/health")
async def health_check(
    request: Request,
    detailed: bool = Query(False, description="Include detailed information"),
) -> dict[str, Any]:
    """
    Health check endpoint.

    Returns basic status, or detailed info if requested.
    """
    basic = {
        "status": "ok",
        "timestamp": int(time.time() * 1000),
        "version": __version__,
    }
    if not detailed:
        return basic

    bridge = request.app.state.bridge
    connector = bridge.connector
    return {
        **basic,
        "uptime_seconds": int(time.time() - _start_time),
        "docker_available": await bridge.containers.is_available(),
        "connector": connector.status if connector else None,
        "busy_identities": len(await bridge.executor.guard.active()),
        "friends": await bridge.database.count_friends(),
    }
