from dataclasses import dataclass
from pathlib import Path
from tempfile import SpooledTemporaryFile

from fastapi import HTTPException, UploadFile, status

from app.core.config import Settings

GENERIC_CONTENT_TYPES = {"application/octet-stream", "binary/octet-stream"}

VIDEO_EXTENSIONS = {".mp4", ".mov", ".avi", ".mkv", ".webm", ".m4v"}
DOCUMENT_EXTENSIONS = {".doc", ".docx", ".odt", ".rtf", ".txt", ".xls", ".xlsx", ".ods", ".csv", ".ppt", ".pptx", ".odp"}
IMAGE_EXTENSIONS = {".jpg", ".jpeg", ".png", ".webp", ".gif", ".bmp"}
PDF_EXTENSIONS = {".pdf"}
TEXT_EXTENSIONS = {".txt", ".md", ".pdf"}
SPREADSHEET_EXTENSIONS = {".xlsx", ".xlsm", ".csv"}

CONTENT_TYPE_PREFIXES = {
    "video": ("video/",),
    "image": ("image/",),
    "pdf": ("application/pdf", "application/x-pdf"),
    "document": ("application/", "text/"),
    "text": ("text/", "application/pdf"),
    "spreadsheet": ("application/", "text/"),
}


@dataclass(slots=True)
class StagedUpload:
    stream: SpooledTemporaryFile
    file_name: str
    content_type: str
    size_bytes: int


def upload_limits(kind: str, settings: Settings) -> tuple[set[str], int]:
    limits = {
        "video": (VIDEO_EXTENSIONS, settings.max_video_size_mb),
        "document": (DOCUMENT_EXTENSIONS, settings.max_document_size_mb),
        "image": (IMAGE_EXTENSIONS, settings.max_image_size_mb),
        "pdf": (PDF_EXTENSIONS, settings.max_pdf_size_mb),
        "text": (TEXT_EXTENSIONS, settings.max_document_size_mb),
        "spreadsheet": (SPREADSHEET_EXTENSIONS, settings.max_spreadsheet_size_mb),
    }
    return limits[kind]


def check_file_type(file: UploadFile, kind: str, extensions: set[str]) -> str:
    ext = Path(file.filename or "").suffix.lower()
    if ext not in extensions:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Invalid file extension {ext or '(none)'}. Allowed: {', '.join(sorted(extensions))}",
        )
    content_type = (file.content_type or "application/octet-stream").lower()
    if content_type not in GENERIC_CONTENT_TYPES and not content_type.startswith(CONTENT_TYPE_PREFIXES[kind]):
        raise HTTPException(
            status_code=status.HTTP_415_UNSUPPORTED_MEDIA_TYPE, detail=f"Invalid content type: {file.content_type}"
        )
    return content_type


async def stage_upload(file: UploadFile, kind: str, settings: Settings, max_size_mb: int | None = None) -> StagedUpload:
    extensions, limit_mb = upload_limits(kind, settings)
    content_type = check_file_type(file, kind, extensions)
    if max_size_mb is not None:
        limit_mb = max_size_mb
    max_bytes = limit_mb * 1024 * 1024

    staged = SpooledTemporaryFile(max_size=8 * 1024 * 1024)
    total = 0
    while True:
        chunk = await file.read(1024 * 1024)
        if not chunk:
            break
        total += len(chunk)
        if total > max_bytes:
            staged.close()
            raise HTTPException(
                status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
                detail=f"File exceeds max size of {limit_mb} MB",
            )
        staged.write(chunk)
    await file.close()
    if total == 0:
        staged.close()
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="File is empty")
    staged.seek(0)
    return StagedUpload(stream=staged, file_name=file.filename or "upload", content_type=content_type, size_bytes=total)


def stage_text(text: str, file_name: str = "text.txt") -> StagedUpload:
    data = text.encode("utf-8")
    staged = SpooledTemporaryFile(max_size=8 * 1024 * 1024)
    staged.write(data)
    staged.seek(0)
    return StagedUpload(stream=staged, file_name=file_name, content_type="text/plain", size_bytes=len(data))
