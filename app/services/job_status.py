import uuid

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.models.enums import JobStatus
from app.models.job import Job
from app.schemas.job import JobStatusResponse


def _sentinel(job_id: str, status: JobStatus) -> JobStatusResponse:
    return JobStatusResponse(job_id=job_id, status=int(status), status_name=status.label)


def _parse_job_id(job_id: str) -> str | None:
    try:
        return str(uuid.UUID(job_id))
    except (ValueError, AttributeError, TypeError):
        return None


def find_job(db: Session, job_id: str) -> Job | None:
    normalized = _parse_job_id(job_id)
    if normalized is None:
        return None
    return db.scalar(select(Job).where(Job.id == normalized, Job.deleted_at.is_(None)))


def get_job_status(db: Session, job_id: str, user_id: str | None) -> JobStatusResponse:
    """Status snapshot for a poller.

    Never raises for lookups: unknown ids give the NOT_FOUND sentinel and jobs
    owned by someone else give UNAUTHORIZED.
    """
    job = find_job(db, job_id)
    if job is None:
        return _sentinel(job_id, JobStatus.NOT_FOUND)
    if job.user_id is None or job.user_id != user_id:
        return _sentinel(job_id, JobStatus.UNAUTHORIZED)

    return JobStatusResponse(
        job_id=job.id,
        status=int(job.status),
        status_name=job.status.label,
        tool_type=job.tool_type.name.lower(),
        progress_percentage=job.progress_percentage,
        output_file_key=job.output_file_key,
        download_url=job.signed_download_url,
        error_message=job.error_message,
        started_at=job.started_at,
        completed_at=job.completed_at,
        signed_url_expires_at=job.signed_url_expires_at,
    )
