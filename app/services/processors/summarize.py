import logging
from pathlib import Path

import openai
from PyPDF2 import PdfReader

from app.models.enums import ToolType
from app.schemas.options import SummarizeOptions
from app.services.llm.openai_client import SummarizerNotConfigured, summarize_text
from app.services.processors.base import ProcessorContext, ProcessorResult
from app.services.processors.errors import PermanentJobError, TransientJobError
from app.services.processors.registry import register

logger = logging.getLogger(__name__)

_TRANSIENT_OPENAI_ERRORS = (
    openai.APIConnectionError,
    openai.APITimeoutError,
    openai.RateLimitError,
    openai.InternalServerError,
)
_PERMANENT_OPENAI_ERRORS = (
    openai.AuthenticationError,
    openai.BadRequestError,
    openai.PermissionDeniedError,
)


def extract_text(path: Path) -> str:
    if path.suffix.lower() == ".pdf":
        reader = PdfReader(str(path))
        return "\n".join(page.extract_text() or "" for page in reader.pages)
    return path.read_text(encoding="utf-8", errors="replace")


@register(ToolType.AI_SUMMARIZE)
def summarize_document(ctx: ProcessorContext) -> ProcessorResult:
    options = ctx.options
    if not isinstance(options, SummarizeOptions):
        raise PermanentJobError("Summarize job carries the wrong options type")
    if ctx.input_path is None:
        raise PermanentJobError("Input file key is missing")

    text = extract_text(ctx.input_path).strip()
    if not text:
        raise PermanentJobError("No text found to summarize")
    if len(text) > ctx.settings.max_text_chars:
        text = text[: ctx.settings.max_text_chars]
    ctx.report_progress(20)

    try:
        summary, tokens_used = summarize_text(text, options.max_length, options.tone)
    except SummarizerNotConfigured as exc:
        raise PermanentJobError(str(exc)) from exc
    except _TRANSIENT_OPENAI_ERRORS as exc:
        raise TransientJobError(f"Summarization service unavailable: {exc}") from exc
    except _PERMANENT_OPENAI_ERRORS as exc:
        raise PermanentJobError(f"Summarization request rejected: {exc}") from exc
    if not summary:
        raise TransientJobError("Summarization returned an empty result")
    ctx.report_progress(90)

    output_path = ctx.workdir / f"summary_{ctx.job.id}.txt"
    output_path.write_text(summary + "\n", encoding="utf-8")
    logger.info("document_summarized", extra={"job_id": ctx.job.id, "tokens_used": tokens_used})

    stem = Path(options.original_file_name or "document").stem
    return ProcessorResult(
        output_path=output_path,
        file_name=f"{stem}_summary.txt",
        content_type="text/plain",
        tokens_used=tokens_used,
        metadata={"input_chars": len(text), "summary_words": len(summary.split())},
    )
