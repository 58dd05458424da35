import logging
import subprocess
from pathlib import Path

from app.models.enums import ToolType
from app.schemas.options import DocToPdfOptions
from app.services.processors.base import ProcessorContext, ProcessorResult, stderr_tail
from app.services.processors.errors import JobProcessingError, PermanentJobError, TransientJobError
from app.services.processors.registry import register

logger = logging.getLogger(__name__)

SUPPORTED_DOCUMENT_EXTENSIONS = {
    ".doc", ".docx", ".odt", ".rtf", ".txt",
    ".xls", ".xlsx", ".ods", ".csv",
    ".ppt", ".pptx", ".odp",
}


def build_soffice_command(binary: str, input_path: Path, output_dir: Path, profile_dir: Path) -> list[str]:
    return [
        binary,
        f"-env:UserInstallation={profile_dir.resolve().as_uri()}",
        "--headless",
        "--norestore",
        "--convert-to",
        "pdf",
        "--outdir",
        str(output_dir),
        str(input_path),
    ]


@register(ToolType.DOC_TO_PDF)
def convert_document(ctx: ProcessorContext) -> ProcessorResult:
    options = ctx.options
    if not isinstance(options, DocToPdfOptions):
        raise PermanentJobError("Document conversion job carries the wrong options type")
    if ctx.input_path is None:
        raise PermanentJobError("Input file key is missing")

    extension = Path(options.original_file_name or ctx.input_path.name).suffix.lower()
    if extension not in SUPPORTED_DOCUMENT_EXTENSIONS:
        raise PermanentJobError(
            f"Unsupported file format: {extension or 'unknown'}. "
            f"Supported: {', '.join(sorted(SUPPORTED_DOCUMENT_EXTENSIONS))}"
        )

    output_dir = ctx.workdir / "pdf"
    output_dir.mkdir(exist_ok=True)
    # One LibreOffice profile per job; concurrent conversions cannot share one.
    profile_dir = ctx.workdir / "lo-profile"
    command = build_soffice_command(ctx.settings.soffice_binary, ctx.input_path, output_dir, profile_dir)
    timeout = ctx.settings.document_conversion_timeout_seconds
    ctx.report_progress(20)
    try:
        completed = subprocess.run(command, capture_output=True, text=True, timeout=timeout, check=False)
    except subprocess.TimeoutExpired as exc:
        raise TransientJobError(f"Document conversion timed out after {timeout} seconds") from exc
    except FileNotFoundError as exc:
        raise TransientJobError(f"LibreOffice executable not found: {command[0]}") from exc

    output_path = output_dir / f"{ctx.input_path.stem}.pdf"
    if completed.returncode != 0 or not output_path.is_file():
        raise JobProcessingError(
            f"Document conversion failed (exit code {completed.returncode}): {stderr_tail(completed.stderr)}"
        )
    ctx.report_progress(90)
    logger.info("document_converted", extra={"job_id": ctx.job.id, "source_extension": extension})

    stem = Path(options.original_file_name or "document").stem
    return ProcessorResult(
        output_path=output_path,
        file_name=f"{stem}.pdf",
        content_type="application/pdf",
        metadata={"source_extension": extension, "original_size": options.original_size},
    )
