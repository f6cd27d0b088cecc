from fastapi import APIRouter, HTTPException, Query, Request
from pydantic import BaseModel, Field, ValidationError
from typing import Any, Dict, List, Optional
import logging

from slidebatch.models.job import JobStatus
from slidebatch.services.orchestrator import BatchOrchestrator, get_orchestrator
from slidebatch.services.processors import ProcessorRegistry, UnknownProcessorError, default_processor_registry

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/batch", tags=["batch"])


class TaskRequest(BaseModel):
    id: str
    payload: Any = None
    priority: Optional[int] = None


class BatchJobCreateRequest(BaseModel):
    """Request model for creating a batch job."""
    type: str = Field(min_length=1)
    tasks: List[TaskRequest]
    config: Optional[Dict[str, Any]] = None


def _orchestrator() -> BatchOrchestrator:
    orchestrator = get_orchestrator()
    if orchestrator is None:
        raise HTTPException(status_code=503, detail="Batch orchestrator not available")
    return orchestrator


def _processors(request: Request) -> ProcessorRegistry:
    registry = getattr(request.app.state, "processors", None)
    if registry is None:
        registry = default_processor_registry()
        request.app.state.processors = registry
    return registry


@router.post("/jobs")
async def create_batch_job(job_request: BatchJobCreateRequest, request: Request):
    """Create a batch job and start processing it"""
    orchestrator = _orchestrator()
    try:
        processor = _processors(request).get(job_request.type)
    except UnknownProcessorError:
        raise HTTPException(status_code=400, detail=f"No processor registered for job type '{job_request.type}'")

    tasks = [task.model_dump(exclude_none=True) for task in job_request.tasks]
    try:
        job_id = await orchestrator.create_job(job_request.type, tasks, processor, job_request.config)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=f"Invalid job config: {e.errors(include_url=False)}")
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    logger.info(f"Created batch job: {job_id} with {len(tasks)} task(s)")
    return {
        "job_id": job_id,
        "status": "created",
        "message": f"Batch job created with {len(tasks)} task(s)"
    }


@router.get("/jobs")
async def list_batch_jobs(
    status: Optional[JobStatus] = None,
    type: Optional[str] = None,
    limit: Optional[int] = Query(default=None, ge=1),
    offset: int = Query(default=0, ge=0),
):
    """List batch jobs, newest first"""
    jobs = _orchestrator().list_jobs(status=status, job_type=type, limit=limit, offset=offset)
    return {"jobs": [job.summary() for job in jobs], "count": len(jobs)}


@router.get("/jobs/{job_id}")
async def get_batch_job(job_id: str, include_tasks: bool = False):
    """Get job status, progress and metrics"""
    job = _orchestrator().get_job_status(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")
    if include_tasks:
        return job.model_dump(mode="json")
    return job.summary()


@router.post("/jobs/{job_id}/pause")
async def pause_batch_job(job_id: str):
    orchestrator = _orchestrator()
    job = orchestrator.get_job_status(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")
    if not await orchestrator.pause_job(job_id):
        raise HTTPException(status_code=409, detail=f"Job cannot be paused while {job.status.value}")
    return {"job_id": job_id, "status": job.status.value}


@router.post("/jobs/{job_id}/resume")
async def resume_batch_job(job_id: str):
    orchestrator = _orchestrator()
    job = orchestrator.get_job_status(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")
    if not await orchestrator.resume_job(job_id):
        raise HTTPException(status_code=409, detail=f"Job cannot be resumed while {job.status.value}")
    return {"job_id": job_id, "status": job.status.value}


@router.delete("/jobs/{job_id}")
async def cancel_batch_job(job_id: str):
    """Cancel a job; tasks not yet dispatched are skipped"""
    orchestrator = _orchestrator()
    job = orchestrator.get_job_status(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")
    if not await orchestrator.cancel_job(job_id):
        raise HTTPException(status_code=409, detail=f"Job already {job.status.value}")

    logger.info(f"Cancelled batch job: {job_id}")
    return {
        "job_id": job_id,
        "status": job.status.value,
        "skipped": job.progress.skipped,
        "message": "Job cancelled"
    }


@router.get("/jobs/{job_id}/report")
async def get_batch_job_report(job_id: str):
    report = _orchestrator().generate_performance_report(job_id)
    if report is None:
        raise HTTPException(status_code=404, detail="Job not found")
    return report.model_dump(mode="json")


@router.get("/metrics")
async def get_batch_metrics():
    return _orchestrator().get_system_metrics().model_dump(mode="json")


@router.get("/processors")
async def list_processors(request: Request):
    return {"types": _processors(request).types()}
