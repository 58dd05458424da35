from datetime import timedelta

import pytest

from app.models.common import utcnow
from app.models.enums import JobStatus, ToolType
from app.models.job import InvalidJobTransition, Job
from app.schemas.options import PdfMergeOptions, VideoCompressOptions, load_options


def _job() -> Job:
    return Job(ToolType.VIDEO_COMPRESS, user_id="user-1", input_file_key="video/temp/user-1/in.mp4", options=VideoCompressOptions())


def test_new_job_is_pending_with_id():
    job = _job()
    assert job.id
    assert job.status == JobStatus.PENDING
    assert job.progress_percentage == 0
    assert job.attempts == 0
    assert job.parameters["tool"] == "video_compress"


def test_complete_requires_output_and_url():
    job = _job()
    job.start()
    with pytest.raises(ValueError):
        job.complete("", "http://example/x", utcnow())
    with pytest.raises(ValueError):
        job.complete("video/out.mp4", "", utcnow())

    expires = utcnow() + timedelta(hours=24)
    job.complete("video/out.mp4", "http://example/x", expires)
    assert job.status == JobStatus.COMPLETED
    assert job.progress_percentage == 100
    assert job.signed_url_expires_at == expires
    assert job.completed_at is not None


def test_fail_records_message_and_clears_output():
    job = _job()
    job.start()
    job.fail("ffmpeg exploded")
    assert job.status == JobStatus.FAILED
    assert job.error_message == "ffmpeg exploded"
    assert job.output_file_key is None
    assert job.signed_download_url is None


def test_terminal_jobs_reject_transitions():
    job = _job()
    job.start()
    job.fail("nope")
    with pytest.raises(InvalidJobTransition):
        job.start()
    with pytest.raises(InvalidJobTransition):
        job.cancel()


def test_redelivered_job_can_restart_processing():
    job = _job()
    job.start()
    first_start = job.started_at
    job.start()
    assert job.status == JobStatus.PROCESSING
    assert job.attempts == 2
    assert job.started_at == first_start


def test_progress_is_clamped_and_monotonic():
    job = _job()
    job.update_progress(150)
    assert job.progress_percentage == 100

    job = _job()
    job.update_progress(-5)
    assert job.progress_percentage == 0
    job.update_progress(40)
    job.update_progress(20)
    assert job.progress_percentage == 40


def test_options_round_trip_through_parameters():
    job = Job(
        ToolType.VIDEO_COMPRESS,
        options=VideoCompressOptions(quality=15, codec="libx265", max_width=1280),
    )
    options = job.options
    assert isinstance(options, VideoCompressOptions)
    assert options.crf == 18
    assert options.codec == "libx265"
    assert options.max_width == 1280


def test_legacy_parameter_keys_are_accepted():
    options = load_options({"Quality": 30, "Preset": "SLOW", "MaxHeight": 720}, VideoCompressOptions)
    assert options.quality == 30
    assert options.crf == 28
    assert options.preset == "slow"
    assert options.max_height == 720


def test_input_file_keys_cover_merge_parts():
    job = Job(
        ToolType.PDF_MERGE,
        input_file_key="a.pdf",
        options=PdfMergeOptions(input_file_keys=["a.pdf", "b.pdf"]),
    )
    assert job.input_file_keys == ["a.pdf", "b.pdf"]
