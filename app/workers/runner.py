"""Executes one attempt of a queued job.

The runner owns the job lifecycle around a processor: it moves the job to
PROCESSING, stages the input in a scratch directory, stores the artifact and
its signed link, and records usage. Failures are classified by the retry
policy; only the final attempt marks the job FAILED so pollers never see a
failed job come back to life.
"""

import logging
import shutil
import time
from datetime import timedelta
from pathlib import Path
from tempfile import TemporaryDirectory

from sqlalchemy import update
from sqlalchemy.orm import Session

from app.core.config import Settings, get_settings
from app.db.session import session_scope
from app.models.common import utcnow
from app.models.enums import JobStatus
from app.models.job import Job
from app.services.processors import get_processor
from app.services.processors.base import ProcessorContext
from app.services.processors.errors import PermanentJobError
from app.services.storage import FileStorage, get_storage
from app.services.usage import record_usage
from app.workers.retry import RetryPolicy

logger = logging.getLogger(__name__)

_CLAIMABLE = (JobStatus.PENDING, JobStatus.PROCESSING)


class RetryJob(Exception):
    """Signals that the current attempt failed and another one should be scheduled."""

    def __init__(self, cause: BaseException, countdown: int) -> None:
        super().__init__(str(cause))
        self.cause = cause
        self.countdown = countdown


def run_job(
    job_id: str,
    retries: int = 0,
    policy: RetryPolicy | None = None,
    storage: FileStorage | None = None,
) -> JobStatus | None:
    settings = get_settings()
    policy = policy or RetryPolicy.from_settings(settings)
    storage = storage or get_storage()

    with session_scope() as db:
        job = db.get(Job, job_id)
        if job is None:
            logger.warning("job_missing", extra={"job_id": job_id})
            return None
        if job.is_terminal:
            logger.info("job_already_terminal", extra={"job_id": job_id, "status": job.status.label})
            return job.status

        if not claim_job(db, job, retries):
            logger.info("job_delivery_skipped", extra={"job_id": job_id, "attempt": retries + 1})
            return None
        logger.info("job_started", extra={"job_id": job_id, "tool": job.tool_type.name, "attempt": retries + 1})

        try:
            _execute(db, job, storage, settings)
        except Exception as exc:
            db.rollback()
            job = db.get(Job, job_id)
            if job is None or job.status == JobStatus.CANCELLED:
                logger.info("job_cancelled_during_processing", extra={"job_id": job_id})
                if job is not None:
                    discard_inputs(storage, job)
                return JobStatus.CANCELLED
            if policy.is_final_attempt(retries, exc):
                job.fail(str(exc) or exc.__class__.__name__)
                db.commit()
                logger.exception(
                    "job_failed",
                    extra={"job_id": job_id, "attempt": retries + 1, "error": str(exc)},
                )
                discard_inputs(storage, job)
                raise
            countdown = policy.delay_for(retries)
            logger.warning(
                "job_retry_scheduled",
                extra={"job_id": job_id, "attempt": retries + 1, "countdown": countdown, "error": str(exc)},
            )
            raise RetryJob(exc, countdown) from exc

        if job.is_terminal:
            discard_inputs(storage, job)
        return job.status


def claim_job(db: Session, job: Job, delivery: int) -> bool:
    """Move ``job`` to PROCESSING on behalf of delivery number ``delivery``.

    The update only matches while the stored attempt count equals the number
    of earlier deliveries, so when a message is delivered twice exactly one
    copy gets to run the attempt.
    """
    job_id = job.id
    seen = job.attempts or 0
    if seen != delivery or job.is_terminal:
        return False
    job.start()
    values = {"status": job.status, "attempts": job.attempts, "started_at": job.started_at}
    db.expire(job)
    result = db.execute(
        update(Job)
        .where(Job.id == job_id, Job.attempts == seen, Job.status.in_(_CLAIMABLE))
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount == 1


def _execute(db: Session, job: Job, storage: FileStorage, settings: Settings) -> None:
    processor = get_processor(job.tool_type)
    options = job.options

    def report_progress(percentage: int) -> None:
        job.update_progress(percentage)
        db.commit()

    with TemporaryDirectory(prefix=f"job-{job.id}-") as scratch:
        workdir = Path(scratch)
        input_path = _stage_input(storage, job, workdir)
        context = ProcessorContext(
            job=job,
            options=options,
            storage=storage,
            settings=settings,
            workdir=workdir,
            input_path=input_path,
            report_progress=report_progress,
        )
        started = time.monotonic()
        result = processor(context)
        processing_time_ms = int((time.monotonic() - started) * 1000)
        input_size = getattr(options, "original_size", 0) or (input_path.stat().st_size if input_path else 0)

        folder = f"{job.tool_type.storage_folder}/{job.user_id or 'anonymous'}"
        with result.output_path.open("rb") as handle:
            output_key = storage.upload(handle, result.file_name, result.content_type, folder=folder)

    db.refresh(job)
    if job.status == JobStatus.CANCELLED:
        # Cancelled while running; the artifact has no owner to hand it to.
        storage.delete(output_key)
        logger.info("job_cancelled_during_processing", extra={"job_id": job.id})
        return

    now = utcnow()
    ttl = timedelta(hours=settings.presigned_url_ttl_hours)
    url = storage.generate_presigned_url(output_key, ttl, now=now)
    job.complete(output_key, url, now + ttl)
    record_usage(
        db,
        user_id=job.user_id,
        tool_type=job.tool_type,
        file_size_bytes=input_size,
        processing_time_ms=processing_time_ms,
        tokens_used=result.tokens_used,
        job_id=job.id,
        metadata=result.metadata,
    )
    db.commit()
    logger.info(
        "job_completed",
        extra={"job_id": job.id, "output_file_key": output_key, "processing_time_ms": processing_time_ms},
    )


def _stage_input(storage: FileStorage, job: Job, workdir: Path) -> Path | None:
    if not job.input_file_key:
        return None
    target = workdir / f"input{Path(job.input_file_key).suffix}"
    try:
        with storage.download(job.input_file_key) as source, target.open("wb") as handle:
            shutil.copyfileobj(source, handle, length=1024 * 1024)
    except FileNotFoundError as exc:
        raise PermanentJobError(f"Input file not found: {job.input_file_key}") from exc
    return target


def discard_inputs(storage: FileStorage, job: Job) -> None:
    for file_key in job.input_file_keys:
        try:
            storage.delete(file_key)
        except OSError as exc:
            logger.warning("input_cleanup_failed", extra={"job_id": job.id, "file_key": file_key, "error": str(exc)})
