"""
Outbox writers for workflow notifications.

Rows are added to the caller's transaction; delivery happens later in the
dispatcher.
"""
from typing import Optional

from sqlalchemy.orm import Session

from opscore.core.logging import get_logger
from opscore.db.models import (
    Department, NotificationOutbox, OutboxStatus, Request, RequestStep, User, utcnow,
)

logger = get_logger(__name__)

PRIORITY_LABELS = {1: "Low", 2: "Medium", 3: "High", 4: "Critical"}


def priority_label(priority: Optional[int]) -> str:
    return PRIORITY_LABELS.get(priority, str(priority) if priority is not None else "-")


def enqueue_email(
    db: Session,
    *,
    company_id: int,
    to_email: Optional[str],
    subject: Optional[str],
    body: str,
    request_id: Optional[int] = None,
) -> NotificationOutbox:
    row = NotificationOutbox(
        company_id=company_id,
        channel="email",
        to_email=to_email,
        subject=subject,
        body=body,
        status=OutboxStatus.QUEUED.value,
        attempts=0,
        next_attempt_at=utcnow(),
        request_id=request_id,
    )
    db.add(row)
    return row


def _recipient(db: Session, user_id: Optional[int]) -> Optional[User]:
    if user_id is None:
        return None
    user = db.get(User, user_id)
    if user is None or not user.is_active or not user.email:
        return None
    return user


def notify_step_assigned(db: Session, request: Request, step: RequestStep) -> Optional[NotificationOutbox]:
    user = _recipient(db, step.assigned_to)
    if user is None:
        return None
    department = db.get(Department, step.department_id)
    body = (
        f"Hello {user.full_name or user.email},\n\n"
        f"You have been assigned step {step.step_no} of request {request.reference_code}.\n\n"
        f"Title: {request.title}\n"
        f"Department: {department.name if department else step.department_id}\n"
        f"Priority: {priority_label(request.priority)}\n"
    )
    if step.due_at:
        body += f"Due: {step.due_at:%Y-%m-%d %H:%M} UTC\n"
    if step.return_reason is None and step.related_step_id is not None:
        body += "\nThis step was returned for rework.\n"
    return enqueue_email(
        db,
        company_id=request.company_id,
        to_email=user.email,
        subject=f"[{request.reference_code}] Assigned to you: {request.title}",
        body=body,
        request_id=request.id,
    )


def notify_request_finished(db: Session, request: Request, outcome: str, reason: Optional[str] = None):
    user = _recipient(db, request.requester_id)
    if user is None:
        return None
    body = (
        f"Hello {user.full_name or user.email},\n\n"
        f"Your request {request.reference_code} ({request.title}) was {outcome}.\n"
    )
    if reason:
        body += f"\nReason: {reason}\n"
    return enqueue_email(
        db,
        company_id=request.company_id,
        to_email=user.email,
        subject=f"[{request.reference_code}] Request {outcome}",
        body=body,
        request_id=request.id,
    )
