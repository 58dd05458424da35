from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

from app.core.config import Settings
from app.models.job import Job
from app.schemas.options import JobOptions
from app.services.storage import FileStorage


@dataclass(slots=True)
class ProcessorContext:
    job: Job
    options: JobOptions
    storage: FileStorage
    settings: Settings
    workdir: Path
    input_path: Path | None
    report_progress: Callable[[int], None]


@dataclass(slots=True)
class ProcessorResult:
    output_path: Path
    file_name: str
    content_type: str
    tokens_used: int = 0
    metadata: dict = field(default_factory=dict)


Processor = Callable[[ProcessorContext], ProcessorResult]


def stderr_tail(stderr: str | bytes | None, limit: int = 800) -> str:
    if not stderr:
        return ""
    if isinstance(stderr, bytes):
        stderr = stderr.decode("utf-8", errors="replace")
    return stderr.strip()[-limit:]
