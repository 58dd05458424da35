import logging

from pydantic import BaseModel
from sqlalchemy.orm import Session

from app.models.enums import ToolType
from app.models.job import Job
from app.models.outbox import OutboxEntry
from app.models.user import User
from app.schemas.options import PdfMergeOptions
from app.services.storage import FileStorage
from app.services.subscriptions import has_required_tier, required_tier_for
from app.services.validation import StagedUpload
from app.workers.celery_app import QUEUE_BACKGROUND, QUEUE_CRITICAL, QUEUE_DEFAULT
from app.workers.dispatcher import dispatch_entry

logger = logging.getLogger(__name__)

JOB_QUEUES: dict[ToolType, str] = {
    ToolType.VIDEO_COMPRESS: QUEUE_BACKGROUND,
    ToolType.DOC_TO_PDF: QUEUE_DEFAULT,
    ToolType.IMAGE_REMOVE_BACKGROUND: QUEUE_CRITICAL,
    ToolType.AI_SUMMARIZE: QUEUE_DEFAULT,
    ToolType.PDF_MERGE: QUEUE_DEFAULT,
}


class EntitlementDenied(Exception):
    def __init__(self, job_id: str, message: str) -> None:
        super().__init__(message)
        self.job_id = job_id
        self.message = message


def queue_for(tool_type: ToolType) -> str:
    return JOB_QUEUES.get(tool_type, QUEUE_DEFAULT)


def entitlement_message(tool_type: ToolType) -> str:
    tier = required_tier_for(tool_type)
    label = tool_type.name.replace("_", " ").lower()
    return f"The {label} tool requires a {tier.name.title()} subscription or higher."


def submit_job(
    db: Session,
    storage: FileStorage,
    user: User,
    tool_type: ToolType,
    options: BaseModel,
    uploads: list[StagedUpload],
) -> Job:
    """Persist a PENDING job for ``uploads`` and hand it to the queue.

    The job row and its outbox entry commit together. If that commit fails the
    uploaded blobs are removed again, so nothing is left behind that no job
    points at. Raises ``EntitlementDenied`` after recording a FAILED job when
    the caller's subscription does not cover the tool.
    """
    if user is None:
        raise ValueError("Background jobs need an owner")
    user_id = user.id
    if not has_required_tier(user, tool_type):
        message = entitlement_message(tool_type)
        job = Job(tool_type, user_id=user_id, options=options)
        job.fail(message)
        db.add(job)
        db.commit()
        logger.info(
            "job_entitlement_denied",
            extra={"job_id": job.id, "user_id": user_id, "tool": tool_type.name, "required_tier": required_tier_for(tool_type).name},
        )
        raise EntitlementDenied(job.id, message)

    folder = f"{tool_type.storage_folder}/temp/{user_id}"
    file_keys: list[str] = []
    try:
        for upload in uploads:
            file_keys.append(storage.upload(upload.stream, upload.file_name, upload.content_type, folder=folder))
        if isinstance(options, PdfMergeOptions):
            options = options.model_copy(update={"input_file_keys": file_keys})
        job = Job(tool_type, user_id=user_id, input_file_key=file_keys[0] if file_keys else None, options=options)
        entry = OutboxEntry(job_id=job.id, queue=queue_for(tool_type))
        db.add_all([job, entry])
        db.commit()
    except Exception:
        db.rollback()
        for file_key in file_keys:
            storage.delete(file_key)
        logger.exception("job_enqueue_failed", extra={"user_id": user_id, "tool": tool_type.name})
        raise
    finally:
        for upload in uploads:
            upload.stream.close()

    logger.info("job_created", extra={"job_id": job.id, "tool": tool_type.name, "queue": entry.queue})
    dispatch_entry(db, entry)
    return job

