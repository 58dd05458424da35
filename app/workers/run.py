"""Worker entrypoint: ``python -m app.workers.run [--concurrency N] [--queues a,b]``."""

import argparse
import logging
import os

from app.core.config import get_settings
from app.core.logging import configure_logging
from app.workers.celery_app import QUEUES, celery_app

logger = logging.getLogger(__name__)


def default_concurrency() -> int:
    return 5 * (os.cpu_count() or 1)


def build_worker_argv(concurrency: int, queues: list[str], loglevel: str = "INFO") -> list[str]:
    return [
        "worker",
        f"--concurrency={concurrency}",
        f"--queues={','.join(queues)}",
        f"--loglevel={loglevel}",
        "--prefetch-multiplier=1",
    ]


def main(argv: list[str] | None = None) -> None:
    settings = get_settings()
    parser = argparse.ArgumentParser(description="Run the job worker pool.")
    parser.add_argument("--concurrency", type=int, default=settings.worker_concurrency or default_concurrency())
    parser.add_argument("--queues", default=",".join(QUEUES))
    parser.add_argument("--loglevel", default="INFO")
    args = parser.parse_args(argv)

    configure_logging()
    queues = [name.strip() for name in args.queues.split(",") if name.strip()]
    logger.info("worker_starting", extra={"concurrency": args.concurrency, "queues": queues})
    celery_app.worker_main(build_worker_argv(args.concurrency, queues, args.loglevel))


if __name__ == "__main__":
    main()
