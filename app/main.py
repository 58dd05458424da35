import logging
import math
import time
from collections import defaultdict, deque

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.core.config import get_settings
from app.core.logging import configure_logging
from app.db.base import Base
from app.db.session import engine
from app.routers import auth, files, jobs, tools

logger = logging.getLogger(__name__)

RATE_WINDOW_SECONDS = 60.0


class SlidingWindowLimiter:
    """Per-client request counter over a sliding one-minute window."""

    def __init__(self, limit: int, window_seconds: float = RATE_WINDOW_SECONDS) -> None:
        self.limit = limit
        self.window_seconds = window_seconds
        self._requests: dict[str, deque[float]] = defaultdict(deque)

    def retry_after(self, client: str, now: float | None = None) -> int | None:
        """Record a request; return seconds to wait when the client is over the limit."""
        now = time.monotonic() if now is None else now
        window = self._requests[client]
        while window and window[0] <= now - self.window_seconds:
            window.popleft()
        if len(window) >= self.limit:
            return max(1, math.ceil(window[0] + self.window_seconds - now))
        window.append(now)
        return None


def create_app() -> FastAPI:
    settings = get_settings()
    configure_logging()
    app = FastAPI(title=settings.app_name, debug=settings.debug)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    limiter = SlidingWindowLimiter(settings.rate_limit_per_minute)

    @app.middleware("http")
    async def throttle(request: Request, call_next):
        client = request.client.host if request.client else "unknown"
        wait = limiter.retry_after(client)
        if wait is not None:
            logger.warning("rate_limited", extra={"client": client, "path": request.url.path})
            return JSONResponse(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                content={"detail": "Rate limit exceeded"},
                headers={"Retry-After": str(wait)},
            )
        return await call_next(request)

    for module in (auth, tools, jobs, files):
        app.include_router(module.router)

    @app.on_event("startup")
    def create_tables() -> None:
        if settings.auto_create_tables:
            Base.metadata.create_all(bind=engine)

    @app.get("/health")
    def health() -> dict:
        return {"status": "ok"}

    return app


app = create_app()
