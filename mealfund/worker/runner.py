"""
Priority-scoring worker entry point.

    python -m mealfund.worker.runner            # long-running
    python -m mealfund.worker.runner --burst    # drain the queue and exit (cron)
"""

import argparse

import structlog
from redis import Redis
from rq import Worker

from mealfund.config import settings
from mealfund.observability.logging import setup_logging

logger = structlog.get_logger(__name__)


def build_worker(conn: Redis) -> Worker:
    return Worker(
        queues=[settings.QUEUE_NAME],
        connection=conn,
        name=f"scoring-worker-{settings.APP_VERSION}",
    )


def main(argv=None) -> None:
    parser = argparse.ArgumentParser(description="Run the priority-scoring worker")
    parser.add_argument("--burst", action="store_true", help="exit once the queue is empty")
    args = parser.parse_args(argv)

    setup_logging(component="worker")

    conn = Redis.from_url(settings.REDIS_URL)
    worker = build_worker(conn)

    logger.info("worker_starting", queue=settings.QUEUE_NAME, worker=worker.name, burst=args.burst)
    worker.work(burst=args.burst, with_scheduler=False)
    logger.info("worker_stopped", worker=worker.name)


if __name__ == "__main__":
    main()
