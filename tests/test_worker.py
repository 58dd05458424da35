from datetime import timedelta
from pathlib import Path

import pytest
from sqlalchemy.exc import OperationalError

from app.core.config import get_settings
from app.db.session import SessionLocal, session_scope
from app.models.common import utcnow
from app.models.enums import JobStatus, ToolType
from app.models.job import Job
from app.models.outbox import OutboxEntry
from app.models.usage import UsageRecord
from app.models.user import User
from app.schemas.options import SummarizeOptions, VideoCompressOptions
from app.services.enqueue import submit_job
from app.services.processors import PROCESSORS
from app.services.processors.base import ProcessorResult
from app.services.processors.errors import PermanentJobError, TransientJobError
from app.services.validation import stage_text
from app.workers.dispatcher import claim_entry, dispatch_entry, dispatch_pending
from app.workers.recovery import recover_stale_jobs
from app.workers.retry import RetryPolicy
from app.workers.run import build_worker_argv, default_concurrency
from app.workers.runner import RetryJob, claim_job, run_job
from app.workers.tasks import process_job
from conftest import register_and_login


def _queued_job(db, storage, user_id=None) -> tuple[str, str]:
    key = storage.upload_bytes(b"input-bytes", "in.mp4", "video/mp4", folder="video/temp/worker-tests")
    job = Job(
        ToolType.VIDEO_COMPRESS,
        user_id=user_id,
        input_file_key=key,
        options=VideoCompressOptions(original_file_name="in.mp4", original_size=11),
    )
    db.add(job)
    db.commit()
    return job.id, key


def _reload(db, job_id) -> Job:
    db.expire_all()
    return db.get(Job, job_id)


def _succeeding_processor(ctx):
    output = ctx.workdir / "out.mp4"
    output.write_bytes(b"done")
    ctx.report_progress(50)
    return ProcessorResult(output_path=output, file_name="in_compressed.mp4", content_type="video/mp4")


def test_retry_exhaustion_fails_after_four_attempts(db, storage, monkeypatch):
    calls = []

    def _always_transient(ctx):
        calls.append(ctx.job.attempts)
        # Intermediate attempts must not publish FAILED.
        assert ctx.job.status == JobStatus.PROCESSING
        raise TransientJobError("encoder busy")

    monkeypatch.setitem(PROCESSORS, ToolType.VIDEO_COMPRESS, _always_transient)
    job_id, input_key = _queued_job(db, storage)

    result = process_job.apply(args=[job_id])

    assert result.failed()
    assert len(calls) == 4
    job = _reload(db, job_id)
    assert job.status == JobStatus.FAILED
    assert job.attempts == 4
    assert job.error_message == "encoder busy"
    assert not storage.exists(input_key)


def test_permanent_error_is_attempted_once(db, storage, monkeypatch):
    calls = []

    def _corrupt(ctx):
        calls.append(1)
        raise PermanentJobError("moov atom not found")

    monkeypatch.setitem(PROCESSORS, ToolType.VIDEO_COMPRESS, _corrupt)
    job_id, _ = _queued_job(db, storage)

    result = process_job.apply(args=[job_id])

    assert result.failed()
    assert calls == [1]
    job = _reload(db, job_id)
    assert job.status == JobStatus.FAILED
    assert job.attempts == 1


def test_transient_error_then_success(db, storage, monkeypatch):
    attempts = []

    def _flaky(ctx):
        attempts.append(1)
        if len(attempts) == 1:
            raise TransientJobError("network blip")
        return _succeeding_processor(ctx)

    monkeypatch.setitem(PROCESSORS, ToolType.VIDEO_COMPRESS, _flaky)
    job_id, input_key = _queued_job(db, storage)

    result = process_job.apply(args=[job_id])

    assert result.successful()
    job = _reload(db, job_id)
    assert job.status == JobStatus.COMPLETED
    assert job.attempts == 2
    assert job.error_message is None
    assert job.output_file_key.startswith("video/anonymous/")
    assert storage.exists(job.output_file_key)
    assert not storage.exists(input_key)


def test_input_is_kept_between_attempts(db, storage, monkeypatch):
    def _transient(ctx):
        raise TransientJobError("x")

    monkeypatch.setitem(PROCESSORS, ToolType.VIDEO_COMPRESS, _transient)
    job_id, input_key = _queued_job(db, storage)

    with pytest.raises(RetryJob) as info:
        run_job(job_id, retries=0, policy=RetryPolicy(max_retries=3, delays=(60, 120, 300)))

    assert info.value.countdown == 60
    assert storage.exists(input_key)
    assert _reload(db, job_id).status == JobStatus.PROCESSING


def test_retry_delays_follow_policy():
    policy = RetryPolicy(max_retries=3, delays=(60, 120, 300))
    assert [policy.delay_for(n) for n in range(4)] == [60, 120, 300, 300]
    assert policy.is_final_attempt(3, TransientJobError("x"))
    assert not policy.is_final_attempt(2, TransientJobError("x"))
    assert policy.is_final_attempt(0, PermanentJobError("x"))


def test_worker_argv_carries_pool_size_and_queues():
    argv = build_worker_argv(12, ["critical", "default"], "DEBUG")
    assert argv[0] == "worker"
    assert "--concurrency=12" in argv
    assert "--queues=critical,default" in argv
    assert "--prefetch-multiplier=1" in argv
    assert default_concurrency() % 5 == 0


def test_usage_is_recorded_for_owned_jobs(client, db, storage, monkeypatch):
    headers = register_and_login(client)
    user_id = client.get("/auth/me", headers=headers).json()["id"]
    monkeypatch.setitem(PROCESSORS, ToolType.VIDEO_COMPRESS, _succeeding_processor)
    job_id, _ = _queued_job(db, storage, user_id=user_id)

    run_job(job_id)

    record = db.query(UsageRecord).filter(UsageRecord.job_id == job_id).one()
    assert record.user_id == user_id
    assert record.tool_type == ToolType.VIDEO_COMPRESS
    assert record.file_size_bytes == 11


def test_missing_job_is_ignored():
    assert run_job("8d7e2c44-0000-4000-8000-000000000000") is None


def test_cancelled_job_is_skipped(db, storage, monkeypatch):
    calls = []
    monkeypatch.setitem(PROCESSORS, ToolType.VIDEO_COMPRESS, lambda ctx: calls.append(1))
    job_id, _ = _queued_job(db, storage)
    job = db.get(Job, job_id)
    job.cancel()
    db.commit()

    assert run_job(job_id) == JobStatus.CANCELLED
    assert calls == []


def test_cancel_pending_job_discards_input(client, db, storage):
    headers = register_and_login(client)
    user_id = client.get("/auth/me", headers=headers).json()["id"]
    job_id, input_key = _queued_job(db, storage, user_id=user_id)

    resp = client.post(f"/jobs/{job_id}/cancel", headers=headers)

    assert resp.status_code == 200
    assert resp.json()["status_name"] == "cancelled"
    assert not storage.exists(input_key)


class _FakeTask:
    def __init__(self, error: Exception | None = None) -> None:
        self.error = error
        self.sent = []

    def apply_async(self, args, queue, retries=0):
        if self.error is not None:
            raise self.error
        self.sent.append((args, queue, retries))


def _job_with_outbox(db, queue="background") -> tuple[str, str]:
    job = Job(ToolType.VIDEO_COMPRESS, options=VideoCompressOptions())
    entry = OutboxEntry(job_id=job.id, queue=queue)
    db.add_all([job, entry])
    db.commit()
    return job.id, entry.id


def test_dispatch_publishes_and_removes_entry(db, monkeypatch):
    fake = _FakeTask()
    monkeypatch.setattr("app.workers.dispatcher.process_job", fake)
    job_id, _ = _job_with_outbox(db)

    assert dispatch_pending(db) == 1
    assert fake.sent == [([job_id], "background", 0)]
    assert db.query(OutboxEntry).count() == 0
    assert _reload(db, job_id).status == JobStatus.PENDING


def test_exhausted_dispatch_fails_job(db, monkeypatch):
    monkeypatch.setattr("app.workers.dispatcher.process_job", _FakeTask(ConnectionError("broker down")))
    job_id, entry_id = _job_with_outbox(db)
    max_attempts = get_settings().outbox_max_dispatch_attempts

    for _ in range(max_attempts - 1):
        entry = db.get(OutboxEntry, entry_id)
        assert dispatch_entry(db, entry) is False
    entry = db.get(OutboxEntry, entry_id)
    assert entry.dispatch_attempts == max_attempts - 1
    assert entry.last_error == "broker down"
    assert _reload(db, job_id).status == JobStatus.PENDING

    assert dispatch_entry(db, db.get(OutboxEntry, entry_id)) is False
    job = _reload(db, job_id)
    assert job.status == JobStatus.FAILED
    assert "could not be queued" in job.error_message
    assert db.get(OutboxEntry, entry_id) is None


def test_entry_loaded_by_two_dispatchers_is_published_once(db, monkeypatch):
    fake = _FakeTask()
    monkeypatch.setattr("app.workers.dispatcher.process_job", fake)
    job_id, entry_id = _job_with_outbox(db)

    other = SessionLocal()
    try:
        first = db.get(OutboxEntry, entry_id)
        second = other.get(OutboxEntry, entry_id)
        assert dispatch_entry(db, first) is True
        assert dispatch_entry(other, second) is False
    finally:
        other.close()

    assert fake.sent == [([job_id], "background", 0)]


def test_leased_entry_is_left_to_its_holder(db, monkeypatch):
    fake = _FakeTask()
    monkeypatch.setattr("app.workers.dispatcher.process_job", fake)
    _, entry_id = _job_with_outbox(db)

    assert claim_entry(db, entry_id) is True
    assert dispatch_pending(db) == 0
    assert fake.sent == []

    later = utcnow() + timedelta(seconds=get_settings().outbox_claim_seconds + 1)
    assert claim_entry(db, entry_id, now=later) is True


def test_failed_publish_releases_lease(db, monkeypatch):
    monkeypatch.setattr("app.workers.dispatcher.process_job", _FakeTask(ConnectionError("broker down")))
    _, entry_id = _job_with_outbox(db)

    assert dispatch_entry(db, db.get(OutboxEntry, entry_id)) is False
    db.expire_all()
    assert db.get(OutboxEntry, entry_id).claimed_until is None


def test_job_is_claimed_by_one_delivery(db, storage):
    job_id, _ = _queued_job(db, storage)
    other = SessionLocal()
    try:
        first = db.get(Job, job_id)
        second = other.get(Job, job_id)
        assert claim_job(db, first, delivery=0) is True
        assert claim_job(other, second, delivery=0) is False
    finally:
        other.close()

    job = _reload(db, job_id)
    assert job.status == JobStatus.PROCESSING
    assert job.attempts == 1


def test_duplicate_delivery_skips_running_attempt(db, storage, monkeypatch):
    calls = []
    monkeypatch.setitem(PROCESSORS, ToolType.VIDEO_COMPRESS, lambda ctx: calls.append(1))
    job_id, _ = _queued_job(db, storage)
    job = db.get(Job, job_id)
    job.start()
    db.commit()

    assert run_job(job_id, retries=0) is None
    assert calls == []
    job = _reload(db, job_id)
    assert job.status == JobStatus.PROCESSING
    assert job.attempts == 1


def _stall(db, job_id, attempts, age=timedelta(hours=2)):
    job = db.get(Job, job_id)
    job.status = JobStatus.PROCESSING
    job.attempts = attempts
    job.updated_at = utcnow() - age
    db.commit()


def test_stale_job_is_requeued_as_next_attempt(db, storage, monkeypatch):
    fake = _FakeTask()
    monkeypatch.setattr("app.workers.dispatcher.process_job", fake)
    job_id, input_key = _queued_job(db, storage)
    _stall(db, job_id, attempts=1)

    assert recover_stale_jobs(db) == 1

    assert fake.sent == [([job_id], "background", 1)]
    assert db.query(OutboxEntry).count() == 0
    assert storage.exists(input_key)
    # Requeueing refreshes the heartbeat, so the next sweep leaves it alone.
    assert recover_stale_jobs(db) == 0


def test_requeued_stale_job_completes(db, storage, monkeypatch):
    monkeypatch.setitem(PROCESSORS, ToolType.VIDEO_COMPRESS, _succeeding_processor)
    job_id, _ = _queued_job(db, storage)
    _stall(db, job_id, attempts=1)

    recover_stale_jobs(db)

    job = _reload(db, job_id)
    assert job.status == JobStatus.COMPLETED
    assert job.attempts == 2


def test_stale_job_without_attempts_left_fails(db, storage, monkeypatch):
    fake = _FakeTask()
    monkeypatch.setattr("app.workers.dispatcher.process_job", fake)
    job_id, input_key = _queued_job(db, storage)
    _stall(db, job_id, attempts=4)

    assert recover_stale_jobs(db, policy=RetryPolicy(max_retries=3)) == 0

    job = _reload(db, job_id)
    assert job.status == JobStatus.FAILED
    assert "stopped responding after 4 attempts" in job.error_message
    assert not storage.exists(input_key)
    assert fake.sent == []


def test_recently_active_job_is_not_requeued(db, storage, monkeypatch):
    fake = _FakeTask()
    monkeypatch.setattr("app.workers.dispatcher.process_job", fake)
    job_id, _ = _queued_job(db, storage)
    _stall(db, job_id, attempts=1, age=timedelta(minutes=1))

    assert recover_stale_jobs(db) == 0
    assert fake.sent == []


def test_commit_failure_removes_uploads_and_outbox(client, db, storage, monkeypatch):
    headers = register_and_login(client)
    user = db.get(User, client.get("/auth/me", headers=headers).json()["id"])

    def _broken_commit():
        raise OperationalError("INSERT", {}, Exception("database is locked"))

    monkeypatch.setattr(db, "commit", _broken_commit)
    with pytest.raises(OperationalError):
        submit_job(db, storage, user, ToolType.AI_SUMMARIZE, SummarizeOptions(), [stage_text("Some text.")])

    temp_dir = Path(storage.root) / "ai" / "summaries" / "temp" / user.id
    assert not temp_dir.exists() or not any(temp_dir.rglob("*.*"))
    assert db.query(OutboxEntry).count() == 0
    assert db.query(Job).count() == 0


def test_cancel_during_processing_discards_output(db, storage, monkeypatch):
    uploaded = []
    original_upload = storage.upload

    def _recording_upload(*args, **kwargs):
        key = original_upload(*args, **kwargs)
        uploaded.append(key)
        return key

    def _cancelled_midway(ctx):
        with session_scope() as other:
            other.get(Job, ctx.job.id).cancel()
            other.commit()
        return _succeeding_processor(ctx)

    monkeypatch.setattr(storage, "upload", _recording_upload)
    monkeypatch.setitem(PROCESSORS, ToolType.VIDEO_COMPRESS, _cancelled_midway)
    job_id, input_key = _queued_job(db, storage)

    assert run_job(job_id, storage=storage) == JobStatus.CANCELLED

    job = _reload(db, job_id)
    assert job.status == JobStatus.CANCELLED
    assert job.output_file_key is None
    assert len(uploaded) == 1
    assert not storage.exists(uploaded[0])
    assert not storage.exists(input_key)
