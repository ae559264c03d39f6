"""
Recent server log entries from the in-memory buffer.
"""

from typing import Optional

from fastapi import APIRouter, Query

from claude_bridge.lib.logger import get_log_buffer

router = APIRouter()


@router.get("/logs")
async def recent_logs(
    limit: int = Query(100, ge=1, le=1000),
    level: Optional[str] = Query(None, description="Minimum level to include"),
    identity: Optional[str] = Query(None, description="Only entries about this chat identity"),
):
    buffer = get_log_buffer()
    return {
        "logs": buffer.get_recent(limit=limit, level=level, identity=identity),
        "identities": buffer.identities(),
    }
