import logging
import time
from typing import Any

from fastapi import APIRouter, HTTPException, Request, status

from disburser.api.deps import ClientSourceDep, DbCheckDep, EventBusDep, SchedulerDep

logger = logging.getLogger(__name__)

router = APIRouter()

@router.get("/status")
async def system_status(
    request: Request,
    scheduler: SchedulerDep,
    client_source: ClientSourceDep,
    events: EventBusDep,
    db_check: DbCheckDep,
) -> dict[str, Any]:
    try:
        scheduler_status = await scheduler.get_status()
        client_stats = await client_source.client_stats()
        db_connected = await db_check()
    except Exception as e:
        logger.error(f"Failed to get system status: {e}")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail={"success": False, "error": str(e)})

    return {
        "success": True,
        "system": {
            "database": "connected" if db_connected else "disconnected",
            "scheduler": "running" if scheduler_status["enabled"] else "stopped",
            "uptime_seconds": round(time.monotonic() - request.app.state.started_at, 1),
            "event_subscribers": events.subscriber_count,
            "token": request.app.state.tokens.token_info(),
        },
        "scheduler": scheduler_status,
        "clients": client_stats,
    }
