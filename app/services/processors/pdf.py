import logging
import re
import shutil
from collections.abc import Iterable
from io import BytesIO
from typing import BinaryIO
from zipfile import ZIP_DEFLATED, ZipFile

from PyPDF2 import PdfReader, PdfWriter
from PyPDF2.errors import PdfReadError

from app.models.enums import ToolType
from app.schemas.options import PdfMergeOptions
from app.services.processors.base import ProcessorContext, ProcessorResult
from app.services.processors.errors import PermanentJobError
from app.services.processors.registry import register

logger = logging.getLogger(__name__)


def merge_pdf_streams(streams: Iterable[BinaryIO]) -> tuple[bytes, int]:
    """Concatenate PDFs in order and return ``(pdf_bytes, page_count)``.

    Raises ``PdfReadError`` for unreadable or encrypted input.
    """
    writer = PdfWriter()
    for index, stream in enumerate(streams, start=1):
        reader = PdfReader(stream, strict=False)
        if reader.is_encrypted:
            raise PdfReadError(f"File {index} is encrypted")
        for page in reader.pages:
            writer.add_page(page)
    page_count = len(writer.pages)
    if page_count == 0:
        raise PdfReadError("Merged document has no pages")
    buffer = BytesIO()
    writer.write(buffer)
    return buffer.getvalue(), page_count


PAGE_LIST_PATTERN = re.compile(r"^\d+(-\d+)?(,\d+(-\d+)?)*$")


def parse_page_ranges(pages: str, total_pages: int) -> list[tuple[int, int]]:
    """Turn ``"1-3,5"`` or ``"all"`` into sorted 1-based inclusive page ranges.

    Bounds are clamped to the document. A range that still ends up empty, like
    ``"9-12"`` for a five page file, raises ``ValueError``.
    """
    cleaned = re.sub(r"\s+", "", pages or "")
    if cleaned.lower() == "all":
        return [(1, total_pages)]
    if not PAGE_LIST_PATTERN.match(cleaned):
        raise ValueError("Invalid pages value. Use a format like '1-5,10,15-20' or 'all'")

    ranges = []
    for part in cleaned.split(","):
        if "-" in part:
            start_text, end_text = part.split("-")
            start, end = max(1, int(start_text)), min(int(end_text), total_pages)
        else:
            start = end = min(max(int(part), 1), total_pages)
        if start > end:
            raise ValueError(f"Page range {part} is outside the document ({total_pages} pages)")
        ranges.append((start, end))
    return sorted(ranges)


def split_pdf_stream(stream: BinaryIO, pages: str) -> tuple[bytes, int, int]:
    """Split a PDF into one document per page range, zipped.

    Returns ``(zip_bytes, page_count, files_created)``. Raises ``PdfReadError``
    for unreadable or encrypted input and ``ValueError`` for a bad page list.
    """
    reader = PdfReader(stream, strict=False)
    if reader.is_encrypted:
        raise PdfReadError("File is encrypted")
    total_pages = len(reader.pages)
    if total_pages == 0:
        raise PdfReadError("Document has no pages")

    ranges = parse_page_ranges(pages, total_pages)
    archive_buffer = BytesIO()
    with ZipFile(archive_buffer, "w", compression=ZIP_DEFLATED) as archive:
        for start, end in ranges:
            writer = PdfWriter()
            for index in range(start - 1, end):
                writer.add_page(reader.pages[index])
            part = BytesIO()
            writer.write(part)
            archive.writestr(f"page_{start}-{end}.pdf", part.getvalue())
    return archive_buffer.getvalue(), total_pages, len(ranges)


@register(ToolType.PDF_MERGE)
def merge_pdfs(ctx: ProcessorContext) -> ProcessorResult:
    options = ctx.options
    if not isinstance(options, PdfMergeOptions):
        raise PermanentJobError("PDF merge job carries the wrong options type")
    if len(options.input_file_keys) < 2:
        raise PermanentJobError("At least 2 PDF files are required for merging")

    local_paths = []
    for index, file_key in enumerate(options.input_file_keys):
        target = ctx.workdir / f"part_{index:03d}.pdf"
        with ctx.storage.download(file_key) as source, target.open("wb") as handle:
            shutil.copyfileobj(source, handle)
        local_paths.append(target)
    ctx.report_progress(40)

    handles = [path.open("rb") for path in local_paths]
    try:
        merged, page_count = merge_pdf_streams(handles)
    finally:
        for handle in handles:
            handle.close()
    ctx.report_progress(90)

    output_path = ctx.workdir / f"merged_{ctx.job.id}.pdf"
    output_path.write_bytes(merged)
    logger.info("pdf_merged", extra={"job_id": ctx.job.id, "file_count": len(local_paths), "page_count": page_count})
    return ProcessorResult(
        output_path=output_path,
        file_name="merged.pdf",
        content_type="application/pdf",
        metadata={"file_count": len(local_paths), "page_count": page_count},
    )
