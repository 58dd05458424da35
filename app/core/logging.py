import logging


class RedactionFilter(logging.Filter):
    """Mask credentials and signed links passed as structured log fields."""

    BLOCKED_KEYS = {"token", "password", "signed_download_url", "download_url", "api_key"}

    def filter(self, record: logging.LogRecord) -> bool:
        for key in self.BLOCKED_KEYS:
            if hasattr(record, key):
                setattr(record, key, "[REDACTED]")
        return True


def configure_logging(level: int = logging.INFO) -> None:
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    # Records from child loggers only pass through handler filters.
    for handler in logging.getLogger().handlers:
        if not any(isinstance(existing, RedactionFilter) for existing in handler.filters):
            handler.addFilter(RedactionFilter())
