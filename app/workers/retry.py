from dataclasses import dataclass

from app.core.config import Settings
from app.services.processors.errors import is_retryable


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    max_retries: int = 3
    delays: tuple[int, ...] = (60, 120, 300)

    @classmethod
    def from_settings(cls, settings: Settings) -> "RetryPolicy":
        return cls(max_retries=settings.job_max_retries, delays=tuple(settings.job_retry_delays_seconds))

    def delay_for(self, retries: int) -> int:
        if not self.delays:
            return 0
        return self.delays[min(retries, len(self.delays) - 1)]

    def is_final_attempt(self, retries: int, exc: BaseException) -> bool:
        return not is_retryable(exc) or retries >= self.max_retries
