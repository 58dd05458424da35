import logging

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from app.db.session import get_db
from app.models.enums import JobStatus
from app.models.job import InvalidJobTransition
from app.models.user import User
from app.routers.deps import get_current_user, get_optional_user
from app.schemas.job import JobStatusResponse
from app.services.job_status import find_job, get_job_status
from app.services.storage import get_storage

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/jobs", tags=["jobs"])


@router.get("/{job_id}/status", response_model=JobStatusResponse)
def job_status(
    job_id: str,
    db: Session = Depends(get_db),
    current_user: User | None = Depends(get_optional_user),
) -> JobStatusResponse:
    result = get_job_status(db, job_id, current_user.id if current_user else None)
    if result.status == JobStatus.NOT_FOUND:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found")
    if result.status == JobStatus.UNAUTHORIZED:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not allowed to view this job")
    return result


@router.post("/{job_id}/cancel", response_model=JobStatusResponse)
def cancel_job(
    job_id: str,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> JobStatusResponse:
    job = find_job(db, job_id)
    if job is None or job.user_id != current_user.id:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found")
    was_pending = job.status == JobStatus.PENDING
    try:
        job.cancel()
    except InvalidJobTransition as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    db.commit()
    logger.info("job_cancelled", extra={"job_id": job.id, "user_id": current_user.id})

    # A running job still needs its input; the worker discards it when it notices the cancel.
    if was_pending:
        storage = get_storage()
        for file_key in job.input_file_keys:
            storage.delete(file_key)
    return get_job_status(db, job.id, current_user.id)
