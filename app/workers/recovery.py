"""Requeues jobs whose worker went away mid-attempt.

A worker that dies while holding a message leaves its job in PROCESSING with
no live delivery behind it. Running jobs touch ``updated_at`` whenever they
report progress, so a job that has been quiet for longer than
``job_stale_after_seconds`` is handed back to the outbox as its next attempt,
or failed when no attempts are left.
"""

import logging
from datetime import datetime, timedelta

from sqlalchemy import exists, select
from sqlalchemy.orm import Session

from app.core.config import get_settings
from app.db.session import session_scope
from app.models.common import utcnow
from app.models.enums import JobStatus
from app.models.job import Job
from app.models.outbox import OutboxEntry
from app.services.enqueue import queue_for
from app.services.storage import FileStorage, get_storage
from app.workers.celery_app import celery_app
from app.workers.dispatcher import dispatch_entry
from app.workers.retry import RetryPolicy
from app.workers.runner import discard_inputs

logger = logging.getLogger(__name__)


def find_stale_jobs(db: Session, now: datetime, limit: int = 100) -> list[Job]:
    cutoff = now - timedelta(seconds=get_settings().job_stale_after_seconds)
    queued = exists().where(OutboxEntry.job_id == Job.id)
    return list(
        db.scalars(
            select(Job)
            .where(
                Job.status == JobStatus.PROCESSING,
                Job.updated_at < cutoff,
                Job.deleted_at.is_(None),
                ~queued,
            )
            .order_by(Job.updated_at)
            .limit(limit)
        )
    )


def recover_stale_jobs(
    db: Session,
    now: datetime | None = None,
    policy: RetryPolicy | None = None,
    storage: FileStorage | None = None,
) -> int:
    now = now or utcnow()
    policy = policy or RetryPolicy.from_settings(get_settings())
    storage = storage or get_storage()

    requeued: list[OutboxEntry] = []
    for job in find_stale_jobs(db, now):
        if job.attempts > policy.max_retries:
            job.fail(f"Job stopped responding after {job.attempts} attempts")
            db.commit()
            discard_inputs(storage, job)
            logger.error("stale_job_failed", extra={"job_id": job.id, "attempts": job.attempts})
            continue
        entry = OutboxEntry(job_id=job.id, queue=queue_for(job.tool_type), retries=job.attempts)
        job.updated_at = now
        db.add(entry)
        db.commit()
        requeued.append(entry)
        logger.warning("stale_job_requeued", extra={"job_id": job.id, "attempts": job.attempts, "queue": entry.queue})

    for entry in requeued:
        dispatch_entry(db, entry)
    return len(requeued)


@celery_app.task(name="app.workers.recovery.requeue_stale_jobs")
def requeue_stale_jobs() -> int:
    with session_scope() as db:
        return recover_stale_jobs(db)
