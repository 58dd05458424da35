import logging
import time
from datetime import timedelta

from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile, status
from PIL import Image, UnidentifiedImageError
from pydantic import BaseModel, ValidationError
from PyPDF2.errors import PdfReadError
from sqlalchemy.orm import Session

from app.core.config import get_settings
from app.db.session import get_db
from app.models.enums import ToolType
from app.models.user import User
from app.routers.deps import get_current_user, get_optional_user
from app.schemas.job import JobSubmitResponse
from app.schemas.options import (
    DocToPdfOptions,
    PdfMergeOptions,
    RemoveBackgroundOptions,
    SummarizeOptions,
    VideoCompressOptions,
)
from app.schemas.tools import (
    ExcelCleanOptions,
    ExcelCleanResponse,
    FormatJsonRequest,
    FormatJsonResponse,
    GenerateRegexRequest,
    GenerateRegexResponse,
    ImageCompressResponse,
    PdfMergeResponse,
    PdfSplitResponse,
)
from app.services.enqueue import EntitlementDenied, submit_job
from app.services.processors.pdf import merge_pdf_streams, split_pdf_stream
from app.services.spreadsheets import SpreadsheetError, clean_spreadsheet
from app.services.storage import get_storage
from app.services.sync_tools import compress_image, format_json, generate_regex
from app.services.usage import record_usage
from app.services.validation import StagedUpload, stage_text, stage_upload

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/tools", tags=["tools"])


def _build_options(model: type[BaseModel], **values) -> BaseModel:
    try:
        return model.model_validate({key: value for key, value in values.items() if value is not None})
    except ValidationError as exc:
        detail = "; ".join(f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}" for err in exc.errors())
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=detail) from exc


def _submit(
    db: Session,
    user: User,
    tool_type: ToolType,
    options: BaseModel,
    uploads: list[StagedUpload],
) -> JobSubmitResponse:
    try:
        job = submit_job(db, get_storage(), user, tool_type, options, uploads)
    except EntitlementDenied as exc:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"message": exc.message, "job_id": exc.job_id},
        ) from exc
    return JobSubmitResponse(job_id=job.id)


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


@router.post("/video/compress", response_model=JobSubmitResponse, status_code=status.HTTP_200_OK)
async def compress_video(
    file: UploadFile = File(...),
    quality: int = Form(23),
    preset: str = Form("medium"),
    codec: str = Form("libx264"),
    max_width: int | None = Form(None),
    max_height: int | None = Form(None),
    bitrate_kbps: int | None = Form(None),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> JobSubmitResponse:
    settings = get_settings()
    staged = await stage_upload(file, "video", settings)
    options = _build_options(
        VideoCompressOptions,
        original_file_name=staged.file_name,
        original_size=staged.size_bytes,
        quality=quality,
        preset=preset,
        codec=codec,
        max_width=max_width,
        max_height=max_height,
        bitrate_kbps=bitrate_kbps,
    )
    return _submit(db, current_user, ToolType.VIDEO_COMPRESS, options, [staged])


@router.post("/convert/doc-to-pdf", response_model=JobSubmitResponse, status_code=status.HTTP_200_OK)
async def convert_doc_to_pdf(
    file: UploadFile = File(...),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> JobSubmitResponse:
    staged = await stage_upload(file, "document", get_settings())
    options = _build_options(
        DocToPdfOptions,
        original_file_name=staged.file_name,
        original_size=staged.size_bytes,
        content_type=staged.content_type,
    )
    return _submit(db, current_user, ToolType.DOC_TO_PDF, options, [staged])


@router.post("/image/remove-background", response_model=JobSubmitResponse, status_code=status.HTTP_200_OK)
async def remove_background(
    file: UploadFile = File(...),
    transparent: bool = Form(True),
    background_color: str | None = Form(None),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> JobSubmitResponse:
    options = _build_options(RemoveBackgroundOptions, transparent=transparent, background_color=background_color)
    staged = await stage_upload(file, "image", get_settings())
    options = options.model_copy(update={"original_file_name": staged.file_name, "original_size": staged.size_bytes})
    return _submit(db, current_user, ToolType.IMAGE_REMOVE_BACKGROUND, options, [staged])


@router.post("/ai/summarize", response_model=JobSubmitResponse, status_code=status.HTTP_200_OK)
async def summarize(
    file: UploadFile | None = File(None),
    text: str | None = Form(None),
    max_length: int = Form(200),
    tone: str | None = Form(None),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> JobSubmitResponse:
    settings = get_settings()
    options = _build_options(SummarizeOptions, max_length=max_length, tone=tone)
    if file is not None:
        staged = await stage_upload(file, "text", settings)
    elif text and text.strip():
        if len(text) > settings.max_text_chars:
            raise HTTPException(
                status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
                detail=f"Text exceeds {settings.max_text_chars} characters",
            )
        staged = stage_text(text)
    else:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Provide a file or text to summarize")
    options = options.model_copy(update={"original_file_name": staged.file_name, "original_size": staged.size_bytes})
    return _submit(db, current_user, ToolType.AI_SUMMARIZE, options, [staged])


@router.post("/pdf/merge", response_model=PdfMergeResponse | JobSubmitResponse)
async def merge_pdfs(
    files: list[UploadFile] = File(...),
    db: Session = Depends(get_db),
    current_user: User | None = Depends(get_optional_user),
) -> PdfMergeResponse | JobSubmitResponse:
    settings = get_settings()
    if len(files) < 2:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="At least 2 PDF files are required")
    if len(files) > settings.pdf_merge_max_files:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"At most {settings.pdf_merge_max_files} PDF files can be merged",
        )

    staged = [await stage_upload(file, "pdf", settings, max_size_mb=settings.pdf_merge_max_part_size_mb) for file in files]
    total_size = sum(item.size_bytes for item in staged)

    if total_size > settings.pdf_merge_sync_threshold_mb * 1024 * 1024:
        if current_user is None:
            for item in staged:
                item.stream.close()
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Sign in to merge PDFs larger than "
                f"{settings.pdf_merge_sync_threshold_mb} MB in the background",
            )
        options = PdfMergeOptions(original_file_name="merged.pdf", original_size=total_size)
        return _submit(db, current_user, ToolType.PDF_MERGE, options, staged)

    started = time.monotonic()
    try:
        merged, page_count = merge_pdf_streams(item.stream for item in staged)
    except PdfReadError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Could not read PDF: {exc}") from exc
    finally:
        for item in staged:
            item.stream.close()

    storage = get_storage()
    owner = current_user.id if current_user else "anonymous"
    file_key = storage.upload_bytes(merged, "merged.pdf", "application/pdf", folder=f"{ToolType.PDF_MERGE.storage_folder}/{owner}")
    download_url = storage.generate_presigned_url(file_key, timedelta(hours=settings.presigned_url_ttl_hours))
    record_usage(
        db,
        user_id=current_user.id if current_user else None,
        tool_type=ToolType.PDF_MERGE,
        file_size_bytes=total_size,
        processing_time_ms=_elapsed_ms(started),
        metadata={"file_count": len(staged), "page_count": page_count},
    )
    db.commit()
    logger.info("pdf_merged_sync", extra={"file_key": file_key, "file_count": len(staged), "page_count": page_count})
    return PdfMergeResponse(
        file_key=file_key,
        download_url=download_url,
        file_name="merged.pdf",
        content_type="application/pdf",
        size_bytes=len(merged),
        file_count=len(staged),
        page_count=page_count,
    )


@router.post("/pdf/split", response_model=PdfSplitResponse)
async def split_pdf(
    file: UploadFile = File(...),
    pages: str = Form("all"),
    db: Session = Depends(get_db),
    current_user: User | None = Depends(get_optional_user),
) -> PdfSplitResponse:
    settings = get_settings()
    staged = await stage_upload(file, "pdf", settings, max_size_mb=settings.pdf_split_max_size_mb)

    started = time.monotonic()
    try:
        with staged.stream:
            archive, page_count, files_created = split_pdf_stream(staged.stream, pages)
    except PdfReadError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Could not read PDF: {exc}") from exc
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc

    storage = get_storage()
    owner = current_user.id if current_user else "anonymous"
    file_key = storage.upload_bytes(archive, "split.zip", "application/zip", folder=f"{ToolType.PDF_SPLIT.storage_folder}/{owner}")
    download_url = storage.generate_presigned_url(file_key, timedelta(hours=settings.presigned_url_ttl_hours))
    record_usage(
        db,
        user_id=current_user.id if current_user else None,
        tool_type=ToolType.PDF_SPLIT,
        file_size_bytes=staged.size_bytes,
        processing_time_ms=_elapsed_ms(started),
        metadata={"page_count": page_count, "files_created": files_created, "pages": pages},
    )
    db.commit()
    logger.info("pdf_split", extra={"file_key": file_key, "page_count": page_count, "files_created": files_created})
    return PdfSplitResponse(
        file_key=file_key,
        download_url=download_url,
        file_name="split.zip",
        content_type="application/zip",
        size_bytes=len(archive),
        page_count=page_count,
        files_created=files_created,
    )


@router.post("/excel/clean", response_model=ExcelCleanResponse)
async def clean_excel(
    file: UploadFile = File(...),
    remove_empty_rows: bool = Form(True),
    remove_empty_columns: bool = Form(True),
    trim_whitespace: bool = Form(True),
    remove_duplicates: bool = Form(False),
    standardize_formats: bool = Form(True),
    output_format: str | None = Form(None),
    db: Session = Depends(get_db),
    current_user: User | None = Depends(get_optional_user),
) -> ExcelCleanResponse:
    settings = get_settings()
    options = _build_options(
        ExcelCleanOptions,
        remove_empty_rows=remove_empty_rows,
        remove_empty_columns=remove_empty_columns,
        trim_whitespace=trim_whitespace,
        remove_duplicates=remove_duplicates,
        standardize_formats=standardize_formats,
        output_format=output_format.strip().lower() if output_format else None,
    )
    staged = await stage_upload(file, "spreadsheet", settings)
    with staged.stream:
        data = staged.stream.read()

    started = time.monotonic()
    try:
        result = clean_spreadsheet(
            data,
            staged.file_name,
            staged.content_type,
            remove_empty_rows_enabled=options.remove_empty_rows,
            remove_empty_columns_enabled=options.remove_empty_columns,
            trim_whitespace_enabled=options.trim_whitespace,
            remove_duplicates_enabled=options.remove_duplicates,
            standardize_formats_enabled=options.standardize_formats,
            output_format=options.output_format,
        )
    except SpreadsheetError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc

    storage = get_storage()
    owner = current_user.id if current_user else "anonymous"
    file_name = f"cleaned{result.extension}"
    file_key = storage.upload_bytes(
        result.data, file_name, result.content_type, folder=f"{ToolType.EXCEL_CLEAN.storage_folder}/{owner}"
    )
    download_url = storage.generate_presigned_url(file_key, timedelta(hours=settings.presigned_url_ttl_hours))
    record_usage(
        db,
        user_id=current_user.id if current_user else None,
        tool_type=ToolType.EXCEL_CLEAN,
        file_size_bytes=staged.size_bytes,
        processing_time_ms=_elapsed_ms(started),
        metadata={"rows_removed": result.rows_removed, "columns_removed": result.columns_removed},
    )
    db.commit()
    return ExcelCleanResponse(
        file_key=file_key,
        download_url=download_url,
        file_name=file_name,
        content_type=result.content_type,
        size_bytes=len(result.data),
        original_size_bytes=staged.size_bytes,
        rows_removed=result.rows_removed,
        columns_removed=result.columns_removed,
        duplicates_removed=result.duplicates_removed,
        row_count=result.row_count,
        column_count=result.column_count,
    )


@router.post("/image/compress", response_model=ImageCompressResponse)
async def compress_image_sync(
    file: UploadFile = File(...),
    quality: int = Form(80, ge=1, le=100),
    target_format: str | None = Form(None),
    max_width: int | None = Form(None, gt=0),
    max_height: int | None = Form(None, gt=0),
    db: Session = Depends(get_db),
    current_user: User | None = Depends(get_optional_user),
) -> ImageCompressResponse:
    settings = get_settings()
    staged = await stage_upload(file, "image", settings)
    with staged.stream:
        data = staged.stream.read()

    started = time.monotonic()
    try:
        result = compress_image(data, quality, target_format, max_width, max_height, staged.content_type)
    except UnidentifiedImageError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="File is not a readable image") from exc
    except Image.DecompressionBombError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Image dimensions are too large") from exc
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc

    storage = get_storage()
    owner = current_user.id if current_user else "anonymous"
    file_name = f"compressed{result.extension}"
    file_key = storage.upload_bytes(
        result.data, file_name, result.content_type, folder=f"{ToolType.IMAGE_COMPRESS.storage_folder}/{owner}"
    )
    download_url = storage.generate_presigned_url(file_key, timedelta(hours=settings.presigned_url_ttl_hours))
    ratio = (1 - len(result.data) / staged.size_bytes) * 100 if staged.size_bytes else 0.0
    record_usage(
        db,
        user_id=current_user.id if current_user else None,
        tool_type=ToolType.IMAGE_COMPRESS,
        file_size_bytes=staged.size_bytes,
        processing_time_ms=_elapsed_ms(started),
        metadata={"compressed_size": len(result.data), "format": result.content_type},
    )
    db.commit()
    return ImageCompressResponse(
        file_key=file_key,
        download_url=download_url,
        file_name=file_name,
        content_type=result.content_type,
        size_bytes=len(result.data),
        original_size_bytes=staged.size_bytes,
        compression_ratio=round(ratio, 2),
        width=result.width,
        height=result.height,
    )


@router.post("/json/format", response_model=FormatJsonResponse)
def format_json_text(
    payload: FormatJsonRequest,
    db: Session = Depends(get_db),
    current_user: User | None = Depends(get_optional_user),
) -> FormatJsonResponse:
    started = time.monotonic()
    try:
        formatted = format_json(payload.json_text, payload.indent, payload.indent_size)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    if current_user is not None:
        record_usage(
            db,
            user_id=current_user.id,
            tool_type=ToolType.JSON_FORMAT,
            file_size_bytes=len(payload.json_text),
            processing_time_ms=_elapsed_ms(started),
        )
        db.commit()
    return FormatJsonResponse(formatted_json=formatted)


@router.post("/regex/generate", response_model=GenerateRegexResponse)
def generate_regex_pattern(
    payload: GenerateRegexRequest,
    db: Session = Depends(get_db),
    current_user: User | None = Depends(get_optional_user),
) -> GenerateRegexResponse:
    started = time.monotonic()
    result = generate_regex(payload.description, payload.sample_text, payload.examples)
    if current_user is not None:
        record_usage(
            db,
            user_id=current_user.id,
            tool_type=ToolType.REGEX_GENERATE,
            file_size_bytes=len(payload.description),
            processing_time_ms=_elapsed_ms(started),
        )
        db.commit()
    logger.info("regex_generated", extra={"pattern": result.pattern, "test_count": len(result.tests)})
    return GenerateRegexResponse.model_validate(result)
