import re
from datetime import datetime, timedelta, timezone
from io import BytesIO
from urllib.parse import parse_qs, urlsplit

import pytest

from app.services.storage import LocalFileStorage, generate_file_key


@pytest.fixture()
def local_storage(tmp_path):
    return LocalFileStorage(tmp_path / "blobs", "http://files.test", "secret")


def _query(url: str) -> dict:
    return {key: values[0] for key, values in parse_qs(urlsplit(url).query).items()}


def test_file_key_layout():
    now = datetime(2024, 5, 1, 13, 45, 10, tzinfo=timezone.utc)
    key = generate_file_key("My Report#1.PDF", folder="pdf/merged/", now=now)
    assert re.fullmatch(r"pdf/merged/20240501134510_[0-9a-f]{8}_My_Report_1\.pdf", key)


def test_upload_download_and_metadata(local_storage):
    key = local_storage.upload(BytesIO(b"hello"), "notes.txt", "text/plain", folder="docs/user-1")
    assert key.startswith("docs/user-1/")
    assert local_storage.exists(key)
    with local_storage.download(key) as handle:
        assert handle.read() == b"hello"
    metadata = local_storage.get_metadata(key)
    assert metadata.size_bytes == 5
    assert metadata.content_type == "text/plain"


def test_copy_and_delete(local_storage):
    key = local_storage.upload_bytes(b"abc", "a.bin", "application/octet-stream")
    local_storage.copy(key, "copies/a.bin")
    assert local_storage.exists("copies/a.bin")
    local_storage.delete(key)
    assert not local_storage.exists(key)
    with pytest.raises(FileNotFoundError):
        local_storage.download(key)


def test_keys_outside_root_are_rejected(local_storage):
    with pytest.raises(FileNotFoundError):
        local_storage.download("../../etc/passwd")
    assert not local_storage.exists("../outside.txt")


def test_presigned_url_binds_key_and_expiry(local_storage):
    now = datetime(2024, 1, 1, tzinfo=timezone.utc)
    url = local_storage.generate_presigned_url("video/u/out.mp4", timedelta(hours=24), now=now)
    assert url.startswith("http://files.test/files/download/video/u/out.mp4?")
    params = _query(url)
    expires = int(params["expires"])
    assert expires == int((now + timedelta(hours=24)).timestamp())

    token = params["token"]
    assert local_storage.validate_token("video/u/out.mp4", token, expires, now=now)
    assert not local_storage.validate_token("video/u/other.mp4", token, expires, now=now)
    assert not local_storage.validate_token("video/u/out.mp4", token, expires + 1, now=now)
    assert not local_storage.validate_token("video/u/out.mp4", token, expires, now=now + timedelta(hours=25))
    assert not local_storage.validate_token("video/u/out.mp4", None, expires, now=now)


def test_tokens_depend_on_secret(tmp_path):
    first = LocalFileStorage(tmp_path / "a", "http://files.test", "secret-a")
    second = LocalFileStorage(tmp_path / "b", "http://files.test", "secret-b")
    url = first.generate_presigned_url("k.txt", timedelta(minutes=5))
    params = _query(url)
    assert not second.validate_token("k.txt", params["token"], int(params["expires"]))
