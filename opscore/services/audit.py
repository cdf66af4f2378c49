"""
Audit trail and request event timeline.

Every mutation appends an AuditLog row holding JSON snapshots of the row
before and after the change. Request-scoped mutations also append a
RequestEvent, which is what the UI timeline renders.
"""
import enum
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

from sqlalchemy.orm import Session

from opscore.core.exceptions import (
    AuthorizationError, ConflictError, NotFoundError, ValidationError,
)
from opscore.core.logging import audit_logger, get_logger
from opscore.core.rbac import Action, CallerContext, can_act_on
from opscore.db.models import (
    AuditAction, AuditLog, Request, RequestEvent, ensure_aware, utcnow,
)
from opscore.services.step_states import inherit_request_deadline

logger = get_logger(__name__)

EVENTS_DEFAULT_LIMIT = 100

# Columns of `requests` an audit rollback may write back.
# Workflow-owned columns (status, current step, closure) are never restored.
RESTORABLE_REQUEST_FIELDS = (
    "title",
    "description",
    "priority",
    "due_at",
    "amount",
    "currency",
    "cost_center",
    "project_code",
    "external_ref",
    "category",
    "risk_level",
)


# ============= SNAPSHOTS =============

def to_json_value(value: Any) -> Any:
    """Normalize a column value to the form stored in audit snapshots."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return ensure_aware(value).astimezone(timezone.utc).isoformat()
    if isinstance(value, Decimal):
        return str(value.quantize(Decimal("0.01")))
    if isinstance(value, enum.Enum):
        return value.value
    return value


def snapshot(obj) -> dict:
    """Column-name -> JSON value for an ORM instance."""
    return {
        column.key: to_json_value(getattr(obj, column.key))
        for column in obj.__table__.columns
    }


def _from_json_value(field: str, value: Any) -> Any:
    if value is None:
        return None
    if field == "due_at":
        return ensure_aware(datetime.fromisoformat(value))
    if field == "amount":
        try:
            return Decimal(str(value))
        except InvalidOperation:
            raise ValidationError(f"Audit snapshot holds an invalid amount: {value!r}")
    if field == "priority":
        return int(value)
    return value


# ============= WRITERS =============

def record_audit(
    db: Session,
    *,
    company_id: int,
    table_name: str,
    action: AuditAction,
    record_pk: Any,
    old_data: Optional[dict] = None,
    new_data: Optional[dict] = None,
    changed_by: Optional[int] = None,
    request_id: Optional[int] = None,
    step_id: Optional[int] = None,
) -> AuditLog:
    """Append an audit row (never updated or deleted afterwards)."""
    entry = AuditLog(
        company_id=company_id,
        table_name=table_name,
        action=AuditAction(action).value,
        record_pk=str(record_pk) if record_pk is not None else None,
        request_id=request_id,
        step_id=step_id,
        old_data=old_data,
        new_data=new_data,
        changed_by=changed_by,
        changed_at=utcnow(),
    )
    db.add(entry)

    audit_logger.log(
        action=f"{table_name}.{entry.action}",
        user_id=changed_by,
        company_id=company_id,
        entity_type=table_name,
        entity_id=int(record_pk) if isinstance(record_pk, int) else None,
        request_id=request_id,
        step_id=step_id,
    )
    return entry


def record_event(
    db: Session,
    request: Request,
    event_type: str,
    message: str,
    *,
    created_by: Optional[int] = None,
    step_id: Optional[int] = None,
    meta: Optional[dict] = None,
) -> RequestEvent:
    event = RequestEvent(
        request_id=request.id,
        step_id=step_id,
        company_id=request.company_id,
        event_type=event_type,
        message=message,
        created_by=created_by,
        created_at=utcnow(),
        meta_data=meta or {},
    )
    db.add(event)
    return event


# ============= READERS =============

def list_events(db: Session, request_id: int, limit: int = EVENTS_DEFAULT_LIMIT) -> list[RequestEvent]:
    """Latest events first, capped at `limit`."""
    return (
        db.query(RequestEvent)
        .filter(RequestEvent.request_id == request_id)
        .order_by(RequestEvent.created_at.desc(), RequestEvent.id.desc())
        .limit(limit)
        .all()
    )


def list_audit_logs(
    db: Session,
    caller: CallerContext,
    table_name: Optional[str] = None,
    limit: int = 100,
    offset: int = 0,
) -> list[AuditLog]:
    """Audit entries visible to the caller.

    admin/ceo read the whole company; everyone else reads entries of
    requests they can see.
    """
    from opscore.services.visibility import visible_requests_query

    query = db.query(AuditLog).filter(AuditLog.company_id == caller.company_id)
    if not caller.is_company_wide:
        visible_ids = visible_requests_query(db, caller).with_entities(Request.id)
        query = query.filter(AuditLog.request_id.in_(visible_ids.statement))
    if table_name:
        query = query.filter(AuditLog.table_name == table_name)

    limit = max(1, min(limit, 500))
    return (
        query.order_by(AuditLog.changed_at.desc(), AuditLog.id.desc())
        .offset(max(offset, 0))
        .limit(limit)
        .all()
    )


# ============= ROLLBACK =============

def rollback_audit(db: Session, caller: CallerContext, audit_id: int) -> Request:
    """Restore the pre-change values of a `requests` UPDATE.

    Only restorable fields are written, and only when each field changed by
    the entry still holds the entry's new value. Anything else is a conflict.
    """
    if not can_act_on(caller, None, Action.ADMINISTER):
        raise AuthorizationError("Only company admins can roll back audit entries")

    entry = db.get(AuditLog, audit_id)
    if entry is None or entry.company_id != caller.company_id:
        raise NotFoundError("AuditLog", audit_id)

    if entry.table_name != Request.__tablename__ or entry.action != AuditAction.UPDATE.value:
        raise ConflictError(
            f"Only requests UPDATE entries can be rolled back "
            f"(entry is {entry.table_name} {entry.action})"
        )

    old_data = entry.old_data or {}
    new_data = entry.new_data or {}
    changed = [
        field for field in RESTORABLE_REQUEST_FIELDS
        if old_data.get(field) != new_data.get(field)
    ]
    if not changed:
        raise ValidationError("Audit entry has no restorable changes")

    request = db.get(Request, int(entry.record_pk))
    if request is None or request.company_id != caller.company_id:
        raise ConflictError(f"Request {entry.record_pk} no longer exists")

    drifted = [
        field for field in changed
        if to_json_value(getattr(request, field)) != new_data.get(field)
    ]
    if drifted:
        raise ConflictError(
            "Request was modified after this audit entry; rollback refused",
            details={"fields": drifted},
        )

    before = snapshot(request)
    for field in changed:
        setattr(request, field, _from_json_value(field, old_data.get(field)))
    request.updated_at = utcnow()
    db.flush()
    if "due_at" in changed:
        inherit_request_deadline(request)
        db.flush()

    record_audit(
        db,
        company_id=request.company_id,
        table_name=Request.__tablename__,
        action=AuditAction.UPDATE,
        record_pk=request.id,
        old_data=before,
        new_data=snapshot(request),
        changed_by=caller.user_id,
        request_id=request.id,
    )
    record_event(
        db,
        request,
        "rollback",
        f"Rolled back changes to {', '.join(changed)}",
        created_by=caller.user_id,
        meta={"audit_id": entry.id, "fields": changed},
    )
    logger.info(f"Audit entry {entry.id} rolled back on request {request.id}")
    return request
