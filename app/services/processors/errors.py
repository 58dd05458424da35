from PIL import Image, UnidentifiedImageError
from pydantic import ValidationError
from PyPDF2.errors import PdfReadError

from app.models.job import InvalidJobTransition


class JobProcessingError(Exception):
    """Failure raised by a processor; ``retryable`` drives the queue's retry decision."""

    retryable = True


class TransientJobError(JobProcessingError):
    retryable = True


class PermanentJobError(JobProcessingError):
    retryable = False


_PERMANENT_TYPES: tuple[type[BaseException], ...] = (
    PermanentJobError,
    ValidationError,
    InvalidJobTransition,
    UnidentifiedImageError,
    Image.DecompressionBombError,
    PdfReadError,
)


def is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, JobProcessingError):
        return exc.retryable
    # Unknown failures (I/O, network, timeouts) are treated as transient.
    return not isinstance(exc, _PERMANENT_TYPES)
