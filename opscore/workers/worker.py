"""
Background worker using RQ (Redis Queue).
"""
from redis import Redis
from rq import Worker, Queue

from opscore.core.config import settings
from opscore.core.logging import setup_logging, get_logger
from opscore.workers.jobs import setup_scheduled_jobs

setup_logging()
logger = get_logger(__name__)


def run_worker(with_scheduler: bool = True):
    """Start the RQ worker; registers the outbox schedule first."""
    redis_conn = Redis.from_url(settings.REDIS_URL)

    if with_scheduler:
        setup_scheduled_jobs()

    worker = Worker(
        queues=[
            Queue("high", connection=redis_conn),
            Queue("default", connection=redis_conn),
            Queue("low", connection=redis_conn),
        ],
        connection=redis_conn,
        name="opscore-worker",
    )
    logger.info("Starting opscore worker...")
    worker.work()


if __name__ == "__main__":
    run_worker()
