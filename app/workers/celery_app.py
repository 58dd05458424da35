from celery import Celery
from kombu import Queue

from app.core.config import get_settings

settings = get_settings()

QUEUE_CRITICAL = "critical"
QUEUE_DEFAULT = "default"
QUEUE_BACKGROUND = "background"
QUEUES = (QUEUE_CRITICAL, QUEUE_DEFAULT, QUEUE_BACKGROUND)

celery_app = Celery(
    "toolbox",
    broker=settings.get_celery_broker_url(),
    backend=settings.get_celery_result_backend(),
    include=["app.workers.tasks", "app.workers.dispatcher", "app.workers.recovery"],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_queues=[Queue(name) for name in QUEUES],
    task_default_queue=QUEUE_DEFAULT,
    # A job message is only removed from the broker table once the task returns.
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    worker_prefetch_multiplier=1,
    task_always_eager=settings.celery_task_always_eager,
    task_eager_propagates=False,
)

celery_app.conf.beat_schedule = {
    "dispatch-job-outbox": {
        "task": "app.workers.dispatcher.dispatch_outbox",
        "schedule": float(settings.outbox_dispatch_interval_seconds),
    },
    "requeue-stale-jobs": {
        "task": "app.workers.recovery.requeue_stale_jobs",
        "schedule": float(settings.stale_job_check_interval_seconds),
    },
}
