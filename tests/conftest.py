import os
import subprocess
import tempfile
from io import BytesIO
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

os.environ["DATABASE_URL"] = "sqlite:///./test.db"
os.environ["AUTO_CREATE_TABLES"] = "true"
os.environ["STORAGE_DIR"] = tempfile.mkdtemp(prefix="toolbox-storage-")
os.environ["PUBLIC_BASE_URL"] = "http://testserver"
os.environ["DOWNLOAD_SIGNING_SECRET"] = "test-signing-secret"
os.environ["JWT_SECRET"] = "test-jwt-secret"
os.environ["CELERY_TASK_ALWAYS_EAGER"] = "true"
os.environ["RATE_LIMIT_PER_MINUTE"] = "10000"
os.environ["OPENAI_API_KEY"] = ""
os.environ["REMOVEBG_API_KEY"] = ""

from PyPDF2 import PdfWriter

from app.db.base import Base
from app.db.session import SessionLocal, engine
from app.main import create_app
from app.services.storage import get_storage


@pytest.fixture(autouse=True)
def reset_db():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)
    engine.dispose()
    path = Path("test.db")
    if path.exists():
        path.unlink()


@pytest.fixture()
def client():
    app = create_app()
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture()
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def storage():
    return get_storage()


def register_and_login(client, email: str = "user@example.com", password: str = "secret123") -> dict:
    register = client.post("/auth/register", json={"email": email, "password": password})
    assert register.status_code == 201, register.text
    login = client.post("/auth/login", json={"email": email, "password": password})
    assert login.status_code == 200
    return {"Authorization": f"Bearer {login.json()['access_token']}"}


@pytest.fixture()
def auth_headers(client):
    return register_and_login(client)


@pytest.fixture()
def fake_ffmpeg(monkeypatch):
    """Replace the FFmpeg subprocess with one that writes a small output file."""
    calls = []

    def _run(command, **kwargs):
        calls.append(command)
        Path(command[-1]).write_bytes(b"compressed-video")
        return subprocess.CompletedProcess(command, 0, stdout="", stderr="")

    monkeypatch.setattr("app.services.processors.video.subprocess.run", _run)
    return calls


def make_pdf(pages: int = 1) -> bytes:
    writer = PdfWriter()
    for _ in range(pages):
        writer.add_blank_page(width=72, height=72)
    buffer = BytesIO()
    writer.write(buffer)
    return buffer.getvalue()
