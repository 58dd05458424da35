import base64
import hashlib
import hmac
import logging
import mimetypes
import re
import shutil
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from io import BytesIO
from pathlib import Path
from typing import BinaryIO
from urllib.parse import quote, urlencode

from app.core.config import get_settings

logger = logging.getLogger(__name__)

_UNSAFE_NAME_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


@dataclass(slots=True)
class FileMetadata:
    key: str
    file_name: str
    content_type: str
    size_bytes: int
    modified_at: datetime


def guess_content_type(file_name: str) -> str:
    content_type, _ = mimetypes.guess_type(file_name)
    return content_type or "application/octet-stream"


def sanitize_file_name(name: str) -> str:
    cleaned = _UNSAFE_NAME_CHARS.sub("_", name.replace(" ", "_")).strip("._")
    return cleaned[:80] or "file"


def generate_file_key(file_name: str, folder: str | None = None, now: datetime | None = None) -> str:
    stamp = (now or datetime.now(timezone.utc)).strftime("%Y%m%d%H%M%S")
    path = Path(file_name or "file")
    key = f"{stamp}_{uuid.uuid4().hex[:8]}_{sanitize_file_name(path.stem)}{path.suffix.lower()}"
    if folder:
        return f"{folder.strip('/')}/{key}"
    return key


def sign_file_key(file_key: str, expires: int, secret: str) -> str:
    digest = hmac.new(secret.encode("utf-8"), f"{file_key}:{expires}".encode("utf-8"), hashlib.sha256).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


class FileStorage(ABC):
    """Key-based blob store with HMAC-signed download links.

    Backends only differ in how bytes move; link signing and validation live
    here so every backend produces links the download endpoint can verify
    without a database lookup.
    """

    def __init__(self, base_url: str, signing_secret: str) -> None:
        self.base_url = base_url.rstrip("/")
        self.signing_secret = signing_secret

    @abstractmethod
    def upload(self, stream: BinaryIO, file_name: str, content_type: str, folder: str | None = None) -> str: ...

    @abstractmethod
    def download(self, file_key: str) -> BinaryIO: ...

    @abstractmethod
    def delete(self, file_key: str) -> None: ...

    @abstractmethod
    def exists(self, file_key: str) -> bool: ...

    @abstractmethod
    def copy(self, source_key: str, destination_key: str) -> None: ...

    @abstractmethod
    def get_metadata(self, file_key: str) -> FileMetadata: ...

    def upload_bytes(self, data: bytes, file_name: str, content_type: str, folder: str | None = None) -> str:
        return self.upload(BytesIO(data), file_name, content_type, folder)

    def generate_presigned_url(self, file_key: str, expiration: timedelta, now: datetime | None = None) -> str:
        expires_at = (now or datetime.now(timezone.utc)) + expiration
        expires = int(expires_at.timestamp())
        token = sign_file_key(file_key, expires, self.signing_secret)
        query = urlencode({"token": token, "expires": expires})
        return f"{self.base_url}/files/download/{quote(file_key, safe='/')}?{query}"

    def validate_token(self, file_key: str, token: str | None, expires: int | None, now: datetime | None = None) -> bool:
        if not token or expires is None:
            return False
        current = int((now or datetime.now(timezone.utc)).timestamp())
        if current > expires:
            return False
        expected = sign_file_key(file_key, expires, self.signing_secret)
        return hmac.compare_digest(expected, token)


class LocalFileStorage(FileStorage):
    def __init__(self, root: str | Path, base_url: str, signing_secret: str) -> None:
        super().__init__(base_url, signing_secret)
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)

    def _path_for(self, file_key: str) -> Path:
        normalized = file_key.replace("\\", "/").lstrip("/")
        candidate = (self.root / normalized).resolve()
        if candidate != self.root and self.root not in candidate.parents:
            raise FileNotFoundError(f"File not found: {file_key}")
        return candidate

    def upload(self, stream: BinaryIO, file_name: str, content_type: str, folder: str | None = None) -> str:
        file_key = generate_file_key(file_name, folder)
        target = self._path_for(file_key)
        target.parent.mkdir(parents=True, exist_ok=True)
        with target.open("wb") as handle:
            shutil.copyfileobj(stream, handle, length=1024 * 1024)
        logger.info("file_uploaded", extra={"file_key": file_key, "content_type": content_type})
        return file_key

    def download(self, file_key: str) -> BinaryIO:
        path = self._path_for(file_key)
        if not path.is_file():
            logger.warning("file_missing", extra={"file_key": file_key})
            raise FileNotFoundError(f"File not found: {file_key}")
        return path.open("rb")

    def delete(self, file_key: str) -> None:
        path = self._path_for(file_key)
        if path.is_file():
            path.unlink(missing_ok=True)
            logger.info("file_deleted", extra={"file_key": file_key})

    def exists(self, file_key: str) -> bool:
        try:
            return self._path_for(file_key).is_file()
        except FileNotFoundError:
            return False

    def copy(self, source_key: str, destination_key: str) -> None:
        source = self._path_for(source_key)
        if not source.is_file():
            raise FileNotFoundError(f"Source file not found: {source_key}")
        destination = self._path_for(destination_key)
        destination.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(source, destination)

    def get_metadata(self, file_key: str) -> FileMetadata:
        path = self._path_for(file_key)
        if not path.is_file():
            raise FileNotFoundError(f"File not found: {file_key}")
        stat = path.stat()
        return FileMetadata(
            key=file_key,
            file_name=path.name,
            content_type=guess_content_type(path.name),
            size_bytes=stat.st_size,
            modified_at=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
        )


@lru_cache(maxsize=1)
def get_storage() -> FileStorage:
    settings = get_settings()
    return LocalFileStorage(settings.storage_dir, settings.public_base_url, settings.download_signing_secret)
