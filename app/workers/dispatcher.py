"""Publishes enqueue intents from the job outbox to Celery.

An intent is written in the same transaction as its job, so a job can never
exist without a way to reach the queue. A dispatcher first leases the entry
with a conditional update; only the holder of the lease publishes, and the
entry is removed once the broker has accepted the message. Failed publishes
release the lease and are retried by the periodic ``dispatch_outbox`` task
until the attempt budget runs out.
"""

import logging
from datetime import datetime, timedelta

from sqlalchemy import delete, or_, select, update
from sqlalchemy.orm import Session

from app.core.config import get_settings
from app.db.session import session_scope
from app.models.common import utcnow
from app.models.outbox import OutboxEntry
from app.workers.celery_app import celery_app
from app.workers.tasks import process_job

logger = logging.getLogger(__name__)


def _claimable(now: datetime):
    return or_(OutboxEntry.claimed_until.is_(None), OutboxEntry.claimed_until < now)


def claim_entry(db: Session, entry_id: str, now: datetime | None = None) -> bool:
    now = now or utcnow()
    lease = timedelta(seconds=get_settings().outbox_claim_seconds)
    result = db.execute(
        update(OutboxEntry)
        .where(OutboxEntry.id == entry_id, _claimable(now))
        .values(claimed_until=now + lease)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount == 1


def dispatch_entry(db: Session, entry: OutboxEntry) -> bool:
    entry_id = entry.id
    job_id = entry.job_id
    queue = entry.queue
    retries = entry.retries or 0
    if not claim_entry(db, entry_id):
        logger.info("job_dispatch_skipped", extra={"job_id": job_id, "entry_id": entry_id})
        return False
    try:
        process_job.apply_async(args=[job_id], queue=queue, retries=retries)
    except Exception as exc:  # noqa: BLE001
        _record_failed_dispatch(db, entry_id, exc)
        return False
    db.execute(delete(OutboxEntry).where(OutboxEntry.id == entry_id).execution_options(synchronize_session=False))
    db.commit()
    logger.info("job_dispatched", extra={"job_id": job_id, "queue": queue, "retries": retries})
    return True


def _record_failed_dispatch(db: Session, entry_id: str, exc: Exception) -> None:
    settings = get_settings()
    entry = db.get(OutboxEntry, entry_id)
    if entry is None:
        return
    entry.dispatch_attempts = (entry.dispatch_attempts or 0) + 1
    entry.last_error = str(exc)[:1000]
    entry.claimed_until = None
    logger.warning(
        "job_dispatch_failed",
        extra={"job_id": entry.job_id, "queue": entry.queue, "attempts": entry.dispatch_attempts, "error": str(exc)},
    )
    if entry.dispatch_attempts >= settings.outbox_max_dispatch_attempts:
        job = entry.job
        if job is not None and not job.is_terminal:
            job.fail(f"Job could not be queued after {entry.dispatch_attempts} attempts: {entry.last_error}")
        db.delete(entry)
        logger.error("job_dispatch_abandoned", extra={"job_id": entry.job_id})
    db.commit()


def dispatch_pending(db: Session, limit: int = 100) -> int:
    entry_ids = db.scalars(
        select(OutboxEntry.id).where(_claimable(utcnow())).order_by(OutboxEntry.created_at).limit(limit)
    ).all()
    dispatched = 0
    for entry_id in entry_ids:
        entry = db.get(OutboxEntry, entry_id)
        if entry is not None and dispatch_entry(db, entry):
            dispatched += 1
    return dispatched


@celery_app.task(name="app.workers.dispatcher.dispatch_outbox")
def dispatch_outbox() -> int:
    with session_scope() as db:
        return dispatch_pending(db)
