"""
Background job definitions.
"""
from datetime import datetime, timezone

from redis import Redis
from rq import Queue
from rq_scheduler import Scheduler

from opscore.core.config import settings
from opscore.core.logging import get_logger

logger = get_logger(__name__)


def get_queue(name: str = "default") -> Queue:
    """Get RQ queue."""
    redis_conn = Redis.from_url(settings.REDIS_URL)
    return Queue(name, connection=redis_conn)


def get_scheduler() -> Scheduler:
    """Get RQ scheduler."""
    redis_conn = Redis.from_url(settings.REDIS_URL)
    return Scheduler(connection=redis_conn)


# ============= JOB FUNCTIONS =============

def dispatch_outbox_job(limit: int = None):
    """Run one notification outbox pass."""
    from opscore.db.session import get_db_context
    from opscore.services.outbox import run_batch

    with get_db_context() as db:
        summary = run_batch(db, limit=limit)
    logger.info(
        f"Outbox pass: processed={summary['processed']} sent={summary['sent']} "
        f"failed={summary['failed']} reclaimed={summary['reclaimed']}"
    )
    return summary


# ============= QUEUE HELPERS =============

def enqueue_outbox_dispatch(limit: int = None):
    """Queue an immediate outbox pass."""
    queue = get_queue("high")
    return queue.enqueue(dispatch_outbox_job, limit)


def setup_scheduled_jobs():
    """Register the periodic outbox dispatcher."""
    scheduler = get_scheduler()

    for job in scheduler.get_jobs():
        if job.func_name.endswith("dispatch_outbox_job"):
            scheduler.cancel(job)

    scheduler.schedule(
        scheduled_time=datetime.now(timezone.utc),
        func=dispatch_outbox_job,
        interval=settings.OUTBOX_DISPATCH_INTERVAL_SECONDS,
        repeat=None,
    )

    logger.info(
        f"Scheduled outbox dispatch every {settings.OUTBOX_DISPATCH_INTERVAL_SECONDS}s"
    )
