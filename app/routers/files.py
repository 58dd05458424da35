import logging
from collections.abc import Iterator
from pathlib import PurePosixPath
from typing import BinaryIO
from urllib.parse import quote

from fastapi import APIRouter, HTTPException, Query, status
from fastapi.responses import StreamingResponse

from app.services.storage import get_storage

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/files", tags=["files"])


def _iter_file(handle: BinaryIO, chunk_size: int = 1024 * 1024) -> Iterator[bytes]:
    with handle:
        while True:
            chunk = handle.read(chunk_size)
            if not chunk:
                break
            yield chunk


def _content_disposition(file_name: str) -> str:
    return f"attachment; filename*=UTF-8''{quote(file_name)}"


@router.get("/download/{file_key:path}")
def download_file(
    file_key: str,
    token: str | None = Query(default=None),
    expires: int | None = Query(default=None),
) -> StreamingResponse:
    storage = get_storage()
    if not token or expires is None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing download token")
    if not storage.validate_token(file_key, token, expires):
        logger.info("download_token_rejected", extra={"file_key": file_key})
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid or expired download link")

    try:
        metadata = storage.get_metadata(file_key)
        stream = storage.download(file_key)
    except FileNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="File not found") from exc

    return StreamingResponse(
        _iter_file(stream),
        media_type=metadata.content_type,
        headers={
            "Content-Disposition": _content_disposition(PurePosixPath(file_key).name),
            "Content-Length": str(metadata.size_bytes),
        },
    )
