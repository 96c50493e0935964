"""Administrative control surface for the job queues."""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from chatdesk.database import get_db
from chatdesk.dependencies import get_queue_manager, require_admin_token
from chatdesk.schemas.queue import CleanRequest, JobResponse, QueueActionResponse, TestJobRequest
from chatdesk.services.health_service import get_system_health, requeue_stale_messages
from chatdesk.services.queue_service import TEST_JOB_TYPE, JobQueueManager, QueueNotFoundError

router = APIRouter(prefix="/admin", tags=["admin"], dependencies=[Depends(require_admin_token)])


def _not_found(exc: QueueNotFoundError) -> HTTPException:
    return HTTPException(status_code=404, detail=str(exc))


@router.get("/queues/status")
def get_all_queue_status(queue_manager: JobQueueManager = Depends(get_queue_manager)):
    return {"queues": queue_manager.status_all()}


@router.get("/queues/metrics")
def get_queue_metrics(queue_manager: JobQueueManager = Depends(get_queue_manager)):
    return queue_manager.metrics()


@router.get("/queues/health")
def get_queue_health(queue_manager: JobQueueManager = Depends(get_queue_manager)):
    health = queue_manager.health_check()
    return JSONResponse(status_code=200 if health["healthy"] else 503, content=health)


@router.post("/queues/pause-all", response_model=QueueActionResponse)
def pause_all_queues(queue_manager: JobQueueManager = Depends(get_queue_manager)):
    return QueueActionResponse(success=True, queues=queue_manager.pause_all(), message="All queues paused")


@router.post("/queues/resume-all", response_model=QueueActionResponse)
def resume_all_queues(queue_manager: JobQueueManager = Depends(get_queue_manager)):
    return QueueActionResponse(success=True, queues=queue_manager.resume_all(), message="All queues resumed")


@router.post("/queues/clean-all")
def clean_all_queues(request: CleanRequest, queue_manager: JobQueueManager = Depends(get_queue_manager)):
    try:
        removed = queue_manager.clean_all(request.state, request.older_than_ms)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return {"success": True, "state": request.state, "removed": removed}


@router.get("/queues/{queue_name}/status")
def get_queue_status(queue_name: str, queue_manager: JobQueueManager = Depends(get_queue_manager)):
    try:
        return queue_manager.status(queue_name)
    except QueueNotFoundError as exc:
        raise _not_found(exc)


@router.get("/queues/{queue_name}/jobs")
def list_queue_jobs(
    queue_name: str,
    state: Optional[str] = Query(default=None),
    limit: int = Query(default=20, ge=1, le=200),
    queue_manager: JobQueueManager = Depends(get_queue_manager),
):
    try:
        return {"queue": queue_name, "jobs": queue_manager.list_jobs(queue_name, state, limit)}
    except QueueNotFoundError as exc:
        raise _not_found(exc)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))


@router.post("/queues/{queue_name}/pause", response_model=QueueActionResponse)
def pause_queue(queue_name: str, queue_manager: JobQueueManager = Depends(get_queue_manager)):
    try:
        queue_manager.pause(queue_name)
    except QueueNotFoundError as exc:
        raise _not_found(exc)
    return QueueActionResponse(success=True, queues=[queue_name], message=f"Queue {queue_name} paused")


@router.post("/queues/{queue_name}/resume", response_model=QueueActionResponse)
def resume_queue(queue_name: str, queue_manager: JobQueueManager = Depends(get_queue_manager)):
    try:
        queue_manager.resume(queue_name)
    except QueueNotFoundError as exc:
        raise _not_found(exc)
    return QueueActionResponse(success=True, queues=[queue_name], message=f"Queue {queue_name} resumed")


@router.post("/queues/{queue_name}/clean")
def clean_queue(queue_name: str, request: CleanRequest, queue_manager: JobQueueManager = Depends(get_queue_manager)):
    try:
        removed = queue_manager.clean(queue_name, request.state, request.older_than_ms)
    except QueueNotFoundError as exc:
        raise _not_found(exc)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return {"success": True, "queue": queue_name, "state": request.state, "removed": removed}


@router.post("/queues/{queue_name}/test-job", response_model=JobResponse)
def add_test_job(
    queue_name: str,
    request: TestJobRequest,
    queue_manager: JobQueueManager = Depends(get_queue_manager),
):
    try:
        job = queue_manager.add_job(queue_name, TEST_JOB_TYPE, request.payload, delay_seconds=request.delay_seconds)
    except QueueNotFoundError as exc:
        raise _not_found(exc)
    return JobResponse(
        id=str(job.id),
        queue=job.queue_name,
        type=job.job_type,
        state=job.state,
        attempts=job.attempts,
        max_attempts=job.max_attempts,
    )


@router.get("/health")
def admin_health(db: Session = Depends(get_db), queue_manager: JobQueueManager = Depends(get_queue_manager)):
    return get_system_health(db, queue_manager)


@router.post("/heal")
def heal_stale_messages(
    older_than_minutes: int = Query(default=10, ge=1),
    db: Session = Depends(get_db),
    queue_manager: JobQueueManager = Depends(get_queue_manager),
):
    return requeue_stale_messages(db, queue_manager, older_than_minutes=older_than_minutes)
