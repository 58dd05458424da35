import uuid
from datetime import timedelta
from pathlib import Path
from urllib.parse import urlsplit

from jose import jwt

from app.core.config import get_settings
from app.main import SlidingWindowLimiter
from app.models.enums import ToolType
from app.models.job import Job
from app.schemas.options import VideoCompressOptions
from conftest import register_and_login


def _submit_video(client, headers=None, **form):
    data = {"quality": "15", "preset": "fast", "codec": "libx264", **form}
    return client.post(
        "/tools/video/compress",
        headers=headers or {},
        files={"file": ("holiday clip.mp4", b"\x00\x00\x00\x18ftypmp42fake-video", "video/mp4")},
        data=data,
    )


def _relative(url: str) -> str:
    parts = urlsplit(url)
    return f"{parts.path}?{parts.query}"


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


def test_register_rejects_duplicate_email(client):
    register_and_login(client)
    again = client.post("/auth/register", json={"email": "user@example.com", "password": "secret123"})
    assert again.status_code == 409


def test_login_returns_expiring_access_token(client):
    client.post("/auth/register", json={"email": "user@example.com", "password": "secret123"})
    resp = client.post("/auth/login", json={"email": "USER@example.com", "password": "secret123"})
    assert resp.status_code == 200
    assert resp.json()["expires_in"] == get_settings().access_token_expire_minutes * 60
    assert client.post("/auth/login", json={"email": "user@example.com", "password": "wrong-pass"}).status_code == 401


def test_token_without_access_type_is_rejected(client, auth_headers):
    user_id = client.get("/auth/me", headers=auth_headers).json()["id"]
    settings = get_settings()
    token = jwt.encode({"sub": user_id}, settings.jwt_secret, algorithm=settings.jwt_algorithm)
    assert client.get("/auth/me", headers={"Authorization": f"Bearer {token}"}).status_code == 401


def test_rate_limiter_reports_wait():
    limiter = SlidingWindowLimiter(limit=2, window_seconds=60)
    assert limiter.retry_after("a", now=0) is None
    assert limiter.retry_after("a", now=1) is None
    assert limiter.retry_after("a", now=10) == 50
    assert limiter.retry_after("b", now=10) is None
    assert limiter.retry_after("a", now=60.5) is None


def test_async_video_flow_completes_and_discards_temp_input(client, auth_headers, fake_ffmpeg, storage):
    user_id = client.get("/auth/me", headers=auth_headers).json()["id"]

    submit = _submit_video(client, auth_headers)
    assert submit.status_code == 200, submit.text
    body = submit.json()
    assert body["status"] == "pending"
    job_id = body["job_id"]

    status_resp = client.get(f"/jobs/{job_id}/status", headers=auth_headers)
    assert status_resp.status_code == 200
    job = status_resp.json()
    assert job["status_name"] == "completed"
    assert job["progress_percentage"] == 100
    assert job["output_file_key"].startswith(f"video/{user_id}/")
    assert job["download_url"]
    assert job["error_message"] is None

    command = fake_ffmpeg[0]
    assert command[command.index("-crf") + 1] == "18"
    assert command[command.index("-preset") + 1] == "fast"

    temp_dir = Path(storage.root) / "video" / "temp" / user_id
    assert not temp_dir.exists() or not any(temp_dir.iterdir())

    download = client.get(_relative(job["download_url"]))
    assert download.status_code == 200
    assert download.content == b"compressed-video"
    assert "attachment" in download.headers["content-disposition"]


def test_status_unknown_job_is_404(client, auth_headers):
    assert client.get(f"/jobs/{uuid.uuid4()}/status", headers=auth_headers).status_code == 404
    assert client.get("/jobs/not-a-job-id/status", headers=auth_headers).status_code == 404


def test_status_of_foreign_job_is_401(client, fake_ffmpeg):
    owner = register_and_login(client, "owner@example.com")
    stranger = register_and_login(client, "stranger@example.com")
    job_id = _submit_video(client, owner).json()["job_id"]

    assert client.get(f"/jobs/{job_id}/status", headers=stranger).status_code == 401
    assert client.get(f"/jobs/{job_id}/status").status_code == 401
    assert client.get(f"/jobs/{job_id}/status", headers=owner).status_code == 200


def test_background_tools_require_sign_in(client, db, fake_ffmpeg):
    assert _submit_video(client).status_code == 401
    assert client.post("/tools/ai/summarize", data={"text": "Summarize me."}).status_code == 401
    resp = client.post(
        "/tools/convert/doc-to-pdf",
        files={"file": ("notes.docx", b"PK\x03\x04fake-docx", "application/octet-stream")},
    )
    assert resp.status_code == 401
    assert db.query(Job).count() == 0
    assert not fake_ffmpeg


def test_job_without_owner_is_not_visible(client, db):
    job = Job(ToolType.VIDEO_COMPRESS, options=VideoCompressOptions())
    db.add(job)
    db.commit()

    assert client.get(f"/jobs/{job.id}/status").status_code == 401


def test_video_rejects_bad_extension_before_creating_job(client, auth_headers, db):
    resp = client.post(
        "/tools/video/compress",
        headers=auth_headers,
        files={"file": ("notes.txt", b"hello", "text/plain")},
    )
    assert resp.status_code == 400
    assert db.query(Job).count() == 0


def test_video_rejects_unknown_codec(client, auth_headers):
    resp = _submit_video(client, auth_headers, codec="h263")
    assert resp.status_code == 400
    assert "Codec" in resp.json()["detail"]


def test_cancel_completed_job_conflicts(client, auth_headers, fake_ffmpeg):
    job_id = _submit_video(client, auth_headers).json()["job_id"]
    resp = client.post(f"/jobs/{job_id}/cancel", headers=auth_headers)
    assert resp.status_code == 409


def test_cancel_requires_owner(client, fake_ffmpeg):
    owner = register_and_login(client, "owner@example.com")
    stranger = register_and_login(client, "stranger@example.com")
    job_id = _submit_video(client, owner).json()["job_id"]
    assert client.post(f"/jobs/{job_id}/cancel", headers=stranger).status_code == 404


def test_download_rejects_tampered_and_missing_tokens(client, storage):
    key = storage.upload_bytes(b"data", "report.txt", "text/plain", folder="misc")
    url = storage.generate_presigned_url(key, timedelta(hours=1))
    good = client.get(_relative(url))
    assert good.status_code == 200
    assert good.content == b"data"

    other_key = storage.upload_bytes(b"other", "other.txt", "text/plain", folder="misc")
    forged = _relative(url).replace(key, other_key)
    assert client.get(forged).status_code == 400
    assert client.get(f"/files/download/{key}").status_code == 400


def test_download_of_deleted_file_is_404(client, storage):
    key = storage.upload_bytes(b"data", "gone.txt", "text/plain", folder="misc")
    url = storage.generate_presigned_url(key, timedelta(hours=1))
    storage.delete(key)
    assert client.get(_relative(url)).status_code == 404
