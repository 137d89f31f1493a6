from datetime import datetime
from typing import Any, Optional

from fastapi import APIRouter, HTTPException, Query, status
from pydantic import BaseModel, ConfigDict

from disburser.api.deps import JobStoreDep, SchedulerDep
from disburser.domain.errors import JobAlreadyRunningError, JobNotFoundError, SettingsValidationError
from disburser.domain.states import JobStatus

router = APIRouter()

class ManualJobRequest(BaseModel):
    batch_size: Optional[int] = None
    include_inactive: Optional[bool] = None

class JobResponse(BaseModel):
    job_id: str
    status: JobStatus
    total_clients: int
    batch_size: int
    include_inactive: bool
    processed_clients: int
    successful_requests: int
    failed_requests: int
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    error_message: Optional[str] = None
    server_stats: Optional[dict[str, Any]] = None
    model_config = ConfigDict(from_attributes=True)

@router.post("/manual", status_code=status.HTTP_202_ACCEPTED)
async def run_manual_job(scheduler: SchedulerDep, body: Optional[ManualJobRequest] = None) -> dict[str, Any]:
    body = body or ManualJobRequest()
    try:
        job = scheduler.launch_manual(batch_size=body.batch_size, include_inactive=body.include_inactive)
    except JobAlreadyRunningError as e:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"success": False, "error": str(e), "running_job_id": e.job_id},
        )
    except SettingsValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail={"success": False, "error": str(e)})

    return {"success": True, "message": "Manual job started", "job": job.to_dict()}

@router.post("/stop-all")
async def stop_all_jobs(scheduler: SchedulerDep) -> dict[str, Any]:
    stopped = await scheduler.stop_all()
    return {"success": True, "message": "All jobs stopped", "stopped_jobs": stopped}

@router.get("/history")
async def job_history(
    job_store: JobStoreDep,
    limit: int = Query(default=10, ge=1, le=100),
) -> dict[str, Any]:
    jobs = await job_store.list_recent_jobs(limit)
    return {
        "success": True,
        "jobs": [JobResponse.model_validate(job).model_dump(mode="json") for job in jobs],
    }

@router.get("/{job_id}")
async def get_job(job_id: str, job_store: JobStoreDep) -> dict[str, Any]:
    job = await job_store.get_job(job_id)
    if job is None:
        error = JobNotFoundError(job_id)
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail={"success": False, "error": str(error)})
    return {"success": True, "job": JobResponse.model_validate(job).model_dump(mode="json")}
