from app.core.config import get_settings
from app.workers.celery_app import celery_app
from app.workers.retry import RetryPolicy
from app.workers.runner import RetryJob, run_job


@celery_app.task(bind=True, name="app.workers.tasks.process_job", max_retries=None)
def process_job(self, job_id: str) -> str | None:
    policy = RetryPolicy.from_settings(get_settings())
    try:
        status = run_job(job_id, retries=self.request.retries, policy=policy)
    except RetryJob as signal:
        raise self.retry(exc=signal.cause, countdown=signal.countdown)
    return status.label if status is not None else None
