from typing import Any, Optional

from fastapi import APIRouter, HTTPException, status
from pydantic import BaseModel

from disburser.api.deps import SchedulerDep
from disburser.domain.errors import SchedulerAlreadyRunningError, SettingsValidationError

router = APIRouter()

class SchedulerSettingsIn(BaseModel):
    # Ranges are checked by SchedulerSettings.validate()
    interval_hours: Optional[int] = None
    batch_size: Optional[int] = None
    include_inactive: Optional[bool] = None

@router.post("/start")
async def start_scheduler(scheduler: SchedulerDep, body: Optional[SchedulerSettingsIn] = None) -> dict[str, Any]:
    body = body or SchedulerSettingsIn()
    try:
        schedule = await scheduler.start(**body.model_dump())
    except SchedulerAlreadyRunningError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail={"success": False, "error": str(e)})
    except SettingsValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail={"success": False, "error": str(e)})

    return {
        "success": True,
        "message": f"Scheduler started - runs every {schedule['settings']['interval_hours']} hours",
        **schedule,
    }

@router.post("/stop")
async def stop_scheduler(scheduler: SchedulerDep) -> dict[str, Any]:
    settings = await scheduler.stop()
    return {"success": True, "message": "Scheduler stopped", "settings": settings}

@router.post("/settings")
async def update_settings(body: SchedulerSettingsIn, scheduler: SchedulerDep) -> dict[str, Any]:
    try:
        schedule = await scheduler.update_settings(**body.model_dump())
    except SettingsValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail={"success": False, "error": str(e)})
    return {"success": True, "message": "Settings updated", **schedule}

@router.get("/status")
async def scheduler_status(scheduler: SchedulerDep) -> dict[str, Any]:
    return {"success": True, **(await scheduler.get_status())}
