"""
Notification outbox dispatcher.

One pass:
0. reclaim rows whose processing lease expired (counts as a failed attempt)
1. select due queued email rows, oldest id first
2. claim each row with a compare-and-swap queued -> processing (committed)
3. validate, deliver, then mark sent or reschedule/fail
"""
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import func, update
from sqlalchemy.orm import Session

from opscore.core.config import settings
from opscore.core.exceptions import DeliveryError, ValidationError
from opscore.core.logging import get_logger
from opscore.db.models import NotificationOutbox, OutboxStatus, utcnow
from opscore.services.email_provider import (
    DryRunEmailProvider, EmailProvider, get_email_provider,
)

logger = get_logger(__name__)

LEASE_EXPIRED_ERROR = "lease expired"


def _reschedule_values(attempts: int, max_attempts: int, now: datetime, error: str) -> dict:
    """Row values after a failed attempt."""
    values = {
        "attempts": attempts,
        "error": error[:2000],
        "locked_at": None,
        "locked_by": None,
    }
    if attempts >= max_attempts:
        values["status"] = OutboxStatus.FAILED.value
    else:
        values["status"] = OutboxStatus.QUEUED.value
        values["next_attempt_at"] = now + timedelta(minutes=settings.OUTBOX_RETRY_MINUTES)
    return values


def reclaim_expired_leases(db: Session, max_attempts: int, now: Optional[datetime] = None) -> int:
    now = now or utcnow()
    cutoff = now - timedelta(seconds=settings.OUTBOX_LEASE_SECONDS)
    stale = (
        db.query(NotificationOutbox)
        .filter(
            NotificationOutbox.status == OutboxStatus.PROCESSING.value,
            NotificationOutbox.locked_at < cutoff,
        )
        .order_by(NotificationOutbox.id)
        .all()
    )

    reclaimed = 0
    for row in stale:
        values = _reschedule_values((row.attempts or 0) + 1, max_attempts, now, LEASE_EXPIRED_ERROR)
        result = db.execute(
            update(NotificationOutbox)
            .where(
                NotificationOutbox.id == row.id,
                NotificationOutbox.status == OutboxStatus.PROCESSING.value,
                NotificationOutbox.locked_at < cutoff,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            reclaimed += 1
            logger.warning(
                f"Outbox {row.id}: lease held by {row.locked_by} expired, "
                f"now {values['status']} (attempt {values['attempts']})"
            )
    db.commit()
    return reclaimed


def _claim(db: Session, row_id: int, worker_id: str, now: datetime) -> bool:
    result = db.execute(
        update(NotificationOutbox)
        .where(
            NotificationOutbox.id == row_id,
            NotificationOutbox.status == OutboxStatus.QUEUED.value,
        )
        .values(status=OutboxStatus.PROCESSING.value, locked_at=now, locked_by=worker_id)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount == 1


def _deliver(row: NotificationOutbox, provider: EmailProvider) -> None:
    if not row.to_email:
        raise ValidationError("Missing to_email")
    if not row.subject:
        raise ValidationError("Missing subject")
    provider.send(row.to_email, row.subject, row.body or "")


def run_batch(
    db: Session,
    limit: Optional[int] = None,
    max_attempts: Optional[int] = None,
    provider: Optional[EmailProvider] = None,
    worker_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> dict:
    """Process one batch of due emails and return the pass summary.

    A failure of one message never aborts the pass.
    """
    limit = settings.OUTBOX_MAX_BATCH if limit is None else limit
    max_attempts = settings.OUTBOX_MAX_ATTEMPTS if max_attempts is None else max_attempts
    if limit < 1 or max_attempts < 1:
        raise ValidationError(
            "Batch limit and max attempts must be at least 1",
            details={"limit": limit, "max_attempts": max_attempts},
        )
    provider = provider or get_email_provider()
    worker_id = worker_id or settings.OUTBOX_WORKER_ID
    now = now or utcnow()
    dry_run = isinstance(provider, DryRunEmailProvider)

    reclaimed = reclaim_expired_leases(db, max_attempts, now)

    due_ids = [
        row_id for (row_id,) in (
            db.query(NotificationOutbox.id)
            .filter(
                NotificationOutbox.channel == "email",
                NotificationOutbox.status == OutboxStatus.QUEUED.value,
                NotificationOutbox.next_attempt_at <= now,
            )
            .order_by(NotificationOutbox.id)
            .limit(limit)
            .all()
        )
    ]

    processed = sent = failed = 0
    for row_id in due_ids:
        if not _claim(db, row_id, worker_id, now):
            logger.info(f"Outbox {row_id}: already claimed elsewhere, skipping")
            continue
        processed += 1

        row = db.get(NotificationOutbox, row_id)
        db.refresh(row)
        try:
            _deliver(row, provider)
        except (DeliveryError, ValidationError) as e:
            error = e.message
        except Exception as e:
            logger.exception(f"Outbox {row_id}: unexpected provider error")
            error = f"{type(e).__name__}: {e}"
        else:
            error = None

        if error is None:
            row.status = OutboxStatus.SENT.value
            row.sent_at = now
            row.error = None
            row.locked_at = None
            row.locked_by = None
            sent += 1
            logger.info(f"Outbox {row_id}: sent to {row.to_email}")
        else:
            values = _reschedule_values((row.attempts or 0) + 1, max_attempts, now, error)
            for key, value in values.items():
                setattr(row, key, value)
            failed += 1
            logger.warning(
                f"Outbox {row_id}: attempt {row.attempts}/{max_attempts} failed ({error}); "
                f"status {row.status}"
            )
        db.commit()

    summary = {
        "processed": processed,
        "sent": sent,
        "failed": failed,
        "reclaimed": reclaimed,
        "dry_run": dry_run,
        "batch_limit": limit,
    }
    logger.info(f"Outbox pass complete: {summary}")
    return summary


def outbox_summary(db: Session, company_id: int) -> dict:
    """Row counts by status for one company."""
    counts = dict(
        db.query(NotificationOutbox.status, func.count(NotificationOutbox.id))
        .filter(NotificationOutbox.company_id == company_id)
        .group_by(NotificationOutbox.status)
        .all()
    )
    return {status.value: counts.get(status.value, 0) for status in OutboxStatus}
