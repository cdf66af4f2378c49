"""
Request workflow commands.

Every command:
1. loads the step/request inside the caller's company (missing -> NotFoundError)
2. checks department-scoped authorization
3. checks that the step is the request's current step and in an allowed status
4. applies the status change with a compare-and-swap UPDATE
5. refreshes the request's current-step caches
6. appends audit rows, a timeline event and any outbox emails

Commands flush but never commit; the caller owns the transaction.
"""
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Iterable, Optional

from sqlalchemy import func, update
from sqlalchemy.orm import Session

from opscore.core.config import settings
from opscore.core.exceptions import (
    AuthorizationError, InvalidStateError, NotFoundError, ValidationError,
)
from opscore.core.logging import get_logger
from opscore.core.rbac import Action, CallerContext, can_act_on, require
from opscore.db.models import (
    ApprovalMode, AuditAction, Department, DepartmentRequestTypeSetting, Membership,
    Request, RequestAttachment, RequestComment, RequestStatus, RequestStep, RequestType,
    StepStatus, utcnow,
)
from opscore.services import notifications
from opscore.services.audit import (
    RESTORABLE_REQUEST_FIELDS, record_audit, record_event, snapshot,
)
from opscore.services.step_states import (
    ACTIVE_STATUSES, SUSPENDED_STATUSES, active_values, inherit_request_deadline,
    validate_transition,
)
from opscore.services.visibility import get_visible_request

logger = get_logger(__name__)

MIN_REASON_LENGTH = 3
METADATA_FIELDS = (
    "amount", "currency", "cost_center", "project_code",
    "external_ref", "category", "risk_level",
)


# ============= DERIVED STATE =============

def current_step(db: Session, request: Request) -> Optional[RequestStep]:
    """Highest-numbered active step of an open request."""
    if request.request_status != RequestStatus.OPEN.value:
        return None
    return (
        db.query(RequestStep)
        .filter(
            RequestStep.request_id == request.id,
            RequestStep.status.in_(active_values()),
        )
        .order_by(RequestStep.step_no.desc())
        .first()
    )


def derive_workflow_status(request: Request, step: Optional[RequestStep]) -> str:
    if request.request_status != RequestStatus.OPEN.value or step is None:
        return request.request_status
    if step.status == StepStatus.QUEUED.value and step.assigned_to is None:
        return "awaiting_assignment"
    return step.status


def sync_current_step(db: Session, request: Request) -> Optional[RequestStep]:
    """Refresh current_step_id / workflow_status in the open transaction."""
    db.flush()
    step = current_step(db, request)
    request.current_step_id = step.id if step is not None else None
    request.workflow_status = derive_workflow_status(request, step)
    request.updated_at = utcnow()
    db.flush()
    return step


def next_step_no(db: Session, request_id: int) -> int:
    highest = (
        db.query(func.max(RequestStep.step_no))
        .filter(RequestStep.request_id == request_id)
        .scalar()
    )
    return (highest or 0) + 1


# ============= LOOKUPS & GUARDS =============

def _is_postgres(db: Session) -> bool:
    return db.get_bind().dialect.name == "postgresql"


def _load_step(db: Session, caller: CallerContext, step_id: int) -> RequestStep:
    query = db.query(RequestStep).filter(
        RequestStep.id == step_id,
        RequestStep.company_id == caller.company_id,
    )
    if _is_postgres(db):
        query = query.with_for_update()
    step = query.first()
    if step is None:
        raise NotFoundError("RequestStep", step_id)
    return step


def _department(db: Session, company_id: int, department_id: Optional[int], label: str = "Department") -> Department:
    department = db.get(Department, department_id) if department_id is not None else None
    if department is None or department.company_id != company_id:
        raise ValidationError(f"{label} {department_id} does not exist in this company")
    return department


def _ensure_current(db: Session, step: RequestStep) -> Request:
    request = db.get(Request, step.request_id)
    if request.request_status != RequestStatus.OPEN.value:
        raise InvalidStateError(
            f"Request {request.reference_code} is {request.request_status}; no further transitions"
        )
    current = current_step(db, request)
    if current is None or current.id != step.id:
        raise InvalidStateError(
            f"Step {step.step_no} is not the current step of request {request.reference_code}"
        )
    return request


def _ensure_status(step: RequestStep, expected: Iterable[StepStatus], new_status: StepStatus, verb: str) -> None:
    expected = list(expected)
    current = StepStatus(step.status)
    if current not in expected:
        message = (
            f"Cannot {verb} step {step.id}: status is {current.value}, "
            f"expected {' or '.join(s.value for s in expected)}"
        )
        logger.warning(f"Blocked transition: {message}")
        raise InvalidStateError(
            message,
            details={"current_status": current.value, "requested_status": new_status.value},
        )
    if current != new_status:
        validate_transition(current, new_status)


def _ensure_member(db: Session, company_id: int, department_id: int, user_id: int) -> None:
    membership = (
        db.query(Membership)
        .filter(
            Membership.company_id == company_id,
            Membership.user_id == user_id,
            Membership.department_id == department_id,
        )
        .first()
    )
    if membership is None:
        raise ValidationError(
            f"User {user_id} is not a member of department {department_id}",
            details={"user_id": user_id, "department_id": department_id},
        )


def _require_assignee_or_manager(db: Session, caller: CallerContext, step: RequestStep, verb: str) -> None:
    if step.assigned_to == caller.user_id:
        return
    if can_act_on(caller, db.get(Department, step.department_id), Action.MANAGE):
        return
    raise AuthorizationError(f"Only the assignee or a department manager can {verb} this step")


def _require_assignee(caller: CallerContext, step: RequestStep, verb: str) -> None:
    if step.assigned_to is None or step.assigned_to != caller.user_id:
        raise AuthorizationError(f"Only the current assignee can {verb} this step")


def _clean_reason(value: Optional[str], label: str = "Reason") -> str:
    text = (value or "").strip()
    if len(text) < MIN_REASON_LENGTH:
        raise ValidationError(f"{label} must be at least {MIN_REASON_LENGTH} characters")
    return text


def _check_priority(priority) -> int:
    if isinstance(priority, bool) or not isinstance(priority, int) or not 1 <= priority <= 4:
        raise ValidationError("Priority must be an integer between 1 and 4")
    return priority


def _to_amount(value) -> Optional[Decimal]:
    if value is None:
        return None
    try:
        return Decimal(str(value))
    except InvalidOperation:
        raise ValidationError(f"Invalid amount: {value!r}")


def _cas(
    db: Session,
    step: RequestStep,
    expected: Iterable[StepStatus],
    new_status: Optional[StepStatus] = None,
    **values,
) -> None:
    """Compare-and-swap update of one step; zero rows means a lost race."""
    expected_values = [StepStatus(s).value for s in expected]
    if new_status is not None:
        values["status"] = new_status.value
        values["status_changed_at"] = utcnow()
    result = db.execute(
        update(RequestStep)
        .where(RequestStep.id == step.id, RequestStep.status.in_(expected_values))
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        logger.warning(f"Step {step.id} changed concurrently; expected {expected_values}")
        raise InvalidStateError(
            f"Step {step.id} was modified concurrently; reload and retry",
            details={"expected": expected_values},
        )
    db.refresh(step)


def _audit_step(db: Session, caller_id: Optional[int], step: RequestStep, before: Optional[dict]) -> None:
    record_audit(
        db,
        company_id=step.company_id,
        table_name=RequestStep.__tablename__,
        action=AuditAction.UPDATE if before is not None else AuditAction.INSERT,
        record_pk=step.id,
        old_data=before,
        new_data=snapshot(step),
        changed_by=caller_id,
        request_id=step.request_id,
        step_id=step.id,
    )


def _audit_request(db: Session, caller_id: Optional[int], request: Request, before: Optional[dict]) -> None:
    after = snapshot(request)
    if before == after:
        return
    record_audit(
        db,
        company_id=request.company_id,
        table_name=Request.__tablename__,
        action=AuditAction.UPDATE if before is not None else AuditAction.INSERT,
        record_pk=request.id,
        old_data=before,
        new_data=after,
        changed_by=caller_id,
        request_id=request.id,
    )


def _new_step(
    db: Session,
    request: Request,
    *,
    from_department_id: Optional[int],
    department_id: int,
    assigned_to: Optional[int],
    created_by: Optional[int],
    related_step_id: Optional[int] = None,
) -> RequestStep:
    step = RequestStep(
        request_id=request.id,
        company_id=request.company_id,
        step_no=next_step_no(db, request.id),
        from_department_id=from_department_id,
        department_id=department_id,
        assigned_to=assigned_to,
        status=StepStatus.QUEUED.value,
        created_by=created_by,
        created_at=utcnow(),
        status_changed_at=utcnow(),
        due_at=request.due_at,
        related_step_id=related_step_id,
    )
    db.add(step)
    db.flush()
    _audit_step(db, created_by, step, None)
    return step


# ============= COMMANDS =============

def create_request(
    db: Session,
    caller: CallerContext,
    *,
    title: str,
    request_type_id: int,
    department_id: int,
    description: Optional[str] = None,
    priority: Optional[int] = None,
    assigned_to: Optional[int] = None,
    due_at: Optional[datetime] = None,
    **metadata,
) -> Request:
    """Create a request and its first step in the target department."""
    title = (title or "").strip()
    if not title:
        raise ValidationError("Title is required")

    unknown = set(metadata) - set(METADATA_FIELDS)
    if unknown:
        raise ValidationError(f"Unknown request fields: {', '.join(sorted(unknown))}")

    request_type = db.get(RequestType, request_type_id)
    if request_type is None or request_type.company_id != caller.company_id:
        raise ValidationError(f"Request type {request_type_id} does not exist in this company")
    if not request_type.active:
        raise ValidationError(f"Request type '{request_type.name}' is inactive")

    department = _department(db, caller.company_id, department_id)
    if not can_act_on(caller, department, Action.SUBMIT):
        raise ValidationError(
            f"Department '{department.name}' does not accept requests from your department"
        )

    priority = _check_priority(priority if priority is not None else request_type.default_priority)

    if assigned_to is not None:
        require(caller, department, Action.PREASSIGN)
        _ensure_member(db, caller.company_id, department.id, assigned_to)

    if "amount" in metadata:
        metadata["amount"] = _to_amount(metadata["amount"])

    now = utcnow()
    request = Request(
        company_id=caller.company_id,
        title=title,
        description=description,
        request_type_id=request_type.id,
        priority=priority,
        requester_id=caller.user_id,
        origin_department_id=caller.department_id,
        request_status=RequestStatus.OPEN.value,
        due_at=due_at,
        created_at=now,
        updated_at=now,
        **metadata,
    )
    db.add(request)
    db.flush()
    request.reference_code = f"REQ-{now.year}-{request.id:06d}"

    step = _new_step(
        db,
        request,
        from_department_id=None,
        department_id=department.id,
        assigned_to=assigned_to,
        created_by=caller.user_id,
    )
    sync_current_step(db, request)
    _audit_request(db, caller.user_id, request, None)

    record_event(
        db, request, "created", f"Request created for {department.name}",
        created_by=caller.user_id, step_id=step.id,
        meta={"department_id": department.id, "priority": priority},
    )
    if assigned_to is not None:
        record_event(
            db, request, "assigned", f"Step 1 pre-assigned to user {assigned_to}",
            created_by=caller.user_id, step_id=step.id, meta={"assigned_to": assigned_to},
        )
        notifications.notify_step_assigned(db, request, step)

    logger.info(f"Request {request.reference_code} created by user {caller.user_id}")
    return request


def assign_step(db: Session, caller: CallerContext, step_id: int, assignee_id: int) -> RequestStep:
    step = _load_step(db, caller, step_id)
    require(caller, db.get(Department, step.department_id), Action.MANAGE)
    request = _ensure_current(db, step)

    expected = (StepStatus.QUEUED, StepStatus.IN_PROGRESS)
    _ensure_status(step, expected, StepStatus(step.status), "assign")
    _ensure_member(db, step.company_id, step.department_id, assignee_id)

    before = snapshot(step)
    before_request = snapshot(request)
    _cas(db, step, expected, assigned_to=assignee_id)
    sync_current_step(db, request)

    _audit_step(db, caller.user_id, step, before)
    _audit_request(db, caller.user_id, request, before_request)
    record_event(
        db, request, "assigned", f"Step {step.step_no} assigned to user {assignee_id}",
        created_by=caller.user_id, step_id=step.id,
        meta={"assigned_to": assignee_id, "previous": before.get("assigned_to")},
    )
    notifications.notify_step_assigned(db, request, step)
    logger.info(f"Step {step.id} assigned to {assignee_id} by {caller.user_id}")
    return step


def start_step(db: Session, caller: CallerContext, step_id: int) -> RequestStep:
    step = _load_step(db, caller, step_id)
    _require_assignee(caller, step, "start")
    request = _ensure_current(db, step)
    _ensure_status(step, (StepStatus.QUEUED,), StepStatus.IN_PROGRESS, "start")

    before = snapshot(step)
    before_request = snapshot(request)
    _cas(db, step, (StepStatus.QUEUED,), StepStatus.IN_PROGRESS, started_at=utcnow())
    sync_current_step(db, request)

    _audit_step(db, caller.user_id, step, before)
    _audit_request(db, caller.user_id, request, before_request)
    record_event(
        db, request, "started", f"Step {step.step_no} started",
        created_by=caller.user_id, step_id=step.id,
    )
    logger.info(f"Step {step.id} started by {caller.user_id}")
    return step


def complete_step(
    db: Session,
    caller: CallerContext,
    step_id: int,
    notes: Optional[str] = None,
) -> RequestStep:
    """Mark the step done; auto-approve when the department's rule says so."""
    step = _load_step(db, caller, step_id)
    _require_assignee(caller, step, "complete")
    request = _ensure_current(db, step)

    expected = (StepStatus.QUEUED, StepStatus.IN_PROGRESS)
    _ensure_status(step, expected, StepStatus.DONE_PENDING_APPROVAL, "complete")

    before = snapshot(step)
    before_request = snapshot(request)
    _cas(
        db, step, expected, StepStatus.DONE_PENDING_APPROVAL,
        completed_at=utcnow(),
        completion_notes=(notes or "").strip() or None,
    )
    sync_current_step(db, request)

    _audit_step(db, caller.user_id, step, before)
    _audit_request(db, caller.user_id, request, before_request)
    record_event(
        db, request, "completed", f"Step {step.step_no} completed, awaiting approval",
        created_by=caller.user_id, step_id=step.id,
    )

    rule = (
        db.query(DepartmentRequestTypeSetting)
        .filter(
            DepartmentRequestTypeSetting.department_id == step.department_id,
            DepartmentRequestTypeSetting.request_type_id == request.request_type_id,
        )
        .first()
    )
    if rule is not None and rule.approval_mode == ApprovalMode.AUTO.value:
        if rule.default_next_department_id is not None:
            next_department = _department(
                db, request.company_id, rule.default_next_department_id, "Next department"
            )
            _approve(db, caller, step, request, next_department, None, None, auto=True)
        elif rule.auto_close:
            _approve(db, caller, step, request, None, None, None, auto=True)
        else:
            logger.info(f"Step {step.id} auto-approval skipped: no next department and auto_close off")

    logger.info(f"Step {step.id} completed by {caller.user_id}")
    return step


def approve_step(
    db: Session,
    caller: CallerContext,
    step_id: int,
    next_department_id: Optional[int] = None,
    next_assignee_id: Optional[int] = None,
    notes: Optional[str] = None,
) -> RequestStep:
    """Approve a completed step, then forward it or close the request."""
    step = _load_step(db, caller, step_id)
    require(caller, db.get(Department, step.department_id), Action.MANAGE)
    request = _ensure_current(db, step)
    _ensure_status(step, (StepStatus.DONE_PENDING_APPROVAL,), StepStatus.APPROVED, "approve")

    next_department = None
    if next_department_id is not None:
        next_department = _department(db, request.company_id, next_department_id, "Next department")
    if next_assignee_id is not None:
        if next_department is None:
            raise ValidationError("A next assignee requires a next department")
        require(caller, next_department, Action.PREASSIGN)
        _ensure_member(db, request.company_id, next_department.id, next_assignee_id)

    _approve(db, caller, step, request, next_department, next_assignee_id, notes, auto=False)
    return step


def _approve(
    db: Session,
    caller: CallerContext,
    step: RequestStep,
    request: Request,
    next_department: Optional[Department],
    next_assignee_id: Optional[int],
    notes: Optional[str],
    auto: bool,
) -> Optional[RequestStep]:
    before_step = snapshot(step)
    before_request = snapshot(request)

    _cas(
        db, step, (StepStatus.DONE_PENDING_APPROVAL,), StepStatus.APPROVED,
        approved_at=utcnow(),
        approved_by=None if auto else caller.user_id,
        approval_notes=(notes or "").strip() or None,
        auto_approved=auto,
    )
    _audit_step(db, None if auto else caller.user_id, step, before_step)
    actor = None if auto else caller.user_id
    label = "auto-approved" if auto else "approved"

    new_step = None
    if next_department is not None:
        new_step = _new_step(
            db,
            request,
            from_department_id=step.department_id,
            department_id=next_department.id,
            assigned_to=next_assignee_id,
            created_by=actor,
        )
        sync_current_step(db, request)
        record_event(
            db, request, "approved",
            f"Step {step.step_no} {label}; forwarded to {next_department.name}",
            created_by=actor, step_id=step.id,
            meta={"auto": auto, "next_step_id": new_step.id, "next_department_id": next_department.id},
        )
        if next_assignee_id is not None:
            notifications.notify_step_assigned(db, request, new_step)
    else:
        request.request_status = RequestStatus.CLOSED.value
        request.closed_at = utcnow()
        sync_current_step(db, request)
        record_event(
            db, request, "closed", f"Step {step.step_no} {label}; request closed",
            created_by=actor, step_id=step.id, meta={"auto": auto},
        )
        notifications.notify_request_finished(db, request, "closed")

    _audit_request(db, actor, request, before_request)
    logger.info(
        f"Step {step.id} {label}"
        + (f", forwarded to department {next_department.id}" if next_department else ", request closed")
    )
    return new_step


def return_step(
    db: Session,
    caller: CallerContext,
    step_id: int,
    reason: str,
    assignee_id: Optional[int] = None,
) -> RequestStep:
    """Send the work back to the department it came from. Returns the new step."""
    reason = _clean_reason(reason)

    step = _load_step(db, caller, step_id)
    require(caller, db.get(Department, step.department_id), Action.MANAGE)
    request = _ensure_current(db, step)

    expected = (StepStatus.QUEUED, StepStatus.IN_PROGRESS, StepStatus.DONE_PENDING_APPROVAL)
    _ensure_status(step, expected, StepStatus.RETURNED, "return")
    if step.from_department_id is None:
        raise InvalidStateError(f"Step {step.step_no} has no previous department to return to")

    target = db.get(Department, step.from_department_id)
    if assignee_id is not None:
        require(caller, target, Action.PREASSIGN)
        _ensure_member(db, request.company_id, target.id, assignee_id)

    before_step = snapshot(step)
    before_request = snapshot(request)
    _cas(db, step, expected, StepStatus.RETURNED, returned_at=utcnow(), return_reason=reason)
    _audit_step(db, caller.user_id, step, before_step)

    related = (
        db.query(RequestStep)
        .filter(
            RequestStep.request_id == request.id,
            RequestStep.department_id == target.id,
            RequestStep.step_no < step.step_no,
        )
        .order_by(RequestStep.step_no.desc())
        .first()
    )
    new_step = _new_step(
        db,
        request,
        from_department_id=step.department_id,
        department_id=target.id,
        assigned_to=assignee_id,
        created_by=caller.user_id,
        related_step_id=related.id if related is not None else None,
    )
    sync_current_step(db, request)
    _audit_request(db, caller.user_id, request, before_request)

    record_event(
        db, request, "returned",
        f"Step {step.step_no} returned to {target.name}: {reason}",
        created_by=caller.user_id, step_id=step.id,
        meta={"new_step_id": new_step.id, "to_department_id": target.id, "reason": reason},
    )
    if assignee_id is not None:
        notifications.notify_step_assigned(db, request, new_step)

    logger.info(f"Step {step.id} returned to department {target.id} as step {new_step.step_no}")
    return new_step


def reject_step(db: Session, caller: CallerContext, step_id: int, reason: str) -> RequestStep:
    """Reject a completed step; the whole request ends as rejected."""
    reason = _clean_reason(reason)

    step = _load_step(db, caller, step_id)
    require(caller, db.get(Department, step.department_id), Action.MANAGE)
    request = _ensure_current(db, step)
    _ensure_status(step, (StepStatus.DONE_PENDING_APPROVAL,), StepStatus.REJECTED, "reject")

    before_step = snapshot(step)
    before_request = snapshot(request)
    _cas(
        db, step, (StepStatus.DONE_PENDING_APPROVAL,), StepStatus.REJECTED,
        approved_by=caller.user_id, approval_notes=reason,
    )
    _audit_step(db, caller.user_id, step, before_step)

    request.request_status = RequestStatus.REJECTED.value
    request.closed_at = utcnow()
    sync_current_step(db, request)
    _audit_request(db, caller.user_id, request, before_request)

    record_event(
        db, request, "rejected", f"Step {step.step_no} rejected: {reason}",
        created_by=caller.user_id, step_id=step.id, meta={"reason": reason},
    )
    notifications.notify_request_finished(db, request, "rejected", reason)
    logger.info(f"Request {request.id} rejected at step {step.id} by {caller.user_id}")
    return step


def _suspend(db: Session, caller: CallerContext, step_id: int, notes: str, target: StepStatus) -> RequestStep:
    notes = _clean_reason(notes, "Notes")
    step = _load_step(db, caller, step_id)
    verb = "put on hold" if target == StepStatus.ON_HOLD else "request info on"
    _require_assignee_or_manager(db, caller, step, verb)
    request = _ensure_current(db, step)

    expected = (StepStatus.QUEUED, StepStatus.IN_PROGRESS)
    _ensure_status(step, expected, target, verb)

    before = snapshot(step)
    before_request = snapshot(request)
    _cas(db, step, expected, target, resume_status=step.status, status_notes=notes)
    sync_current_step(db, request)

    _audit_step(db, caller.user_id, step, before)
    _audit_request(db, caller.user_id, request, before_request)
    record_event(
        db, request, target.value, f"Step {step.step_no} {target.value.replace('_', ' ')}: {notes}",
        created_by=caller.user_id, step_id=step.id,
        meta={"resume_status": before["status"], "notes": notes},
    )
    logger.info(f"Step {step.id} -> {target.value} by {caller.user_id}")
    return step


def set_on_hold(db: Session, caller: CallerContext, step_id: int, notes: str) -> RequestStep:
    return _suspend(db, caller, step_id, notes, StepStatus.ON_HOLD)


def set_info_required(db: Session, caller: CallerContext, step_id: int, notes: str) -> RequestStep:
    return _suspend(db, caller, step_id, notes, StepStatus.INFO_REQUIRED)


def resume_step(db: Session, caller: CallerContext, step_id: int, notes: Optional[str] = None) -> RequestStep:
    """Leave on_hold / info_required for the status stored when suspending."""
    step = _load_step(db, caller, step_id)
    _require_assignee_or_manager(db, caller, step, "resume")
    request = _ensure_current(db, step)

    target = StepStatus(step.resume_status or StepStatus.QUEUED.value)
    _ensure_status(step, SUSPENDED_STATUSES, target, "resume")

    before = snapshot(step)
    before_request = snapshot(request)
    _cas(
        db, step, SUSPENDED_STATUSES, target,
        resume_status=None,
        status_notes=(notes or "").strip() or None,
    )
    sync_current_step(db, request)

    _audit_step(db, caller.user_id, step, before)
    _audit_request(db, caller.user_id, request, before_request)
    record_event(
        db, request, "resumed", f"Step {step.step_no} resumed ({target.value})",
        created_by=caller.user_id, step_id=step.id, meta={"from": before["status"]},
    )
    return step


def update_request_details(db: Session, caller: CallerContext, request_id: int, **changes) -> Request:
    """Edit descriptive fields of an open request (audited, roll-back-able)."""
    request = db.get(Request, request_id)
    if request is None or request.company_id != caller.company_id:
        raise NotFoundError("Request", request_id)

    unknown = set(changes) - set(RESTORABLE_REQUEST_FIELDS)
    if unknown:
        raise ValidationError(f"Fields cannot be edited: {', '.join(sorted(unknown))}")

    if request.request_status != RequestStatus.OPEN.value:
        raise InvalidStateError(f"Request {request.reference_code} is {request.request_status}")

    allowed = request.requester_id == caller.user_id or caller.is_company_wide
    if not allowed:
        step = current_step(db, request)
        allowed = step is not None and can_act_on(
            caller, db.get(Department, step.department_id), Action.MANAGE
        )
    if not allowed:
        raise AuthorizationError("Only the requester or a manager of the current department can edit this request")

    if "title" in changes:
        changes["title"] = (changes["title"] or "").strip()
        if not changes["title"]:
            raise ValidationError("Title is required")
    if "priority" in changes:
        changes["priority"] = _check_priority(changes["priority"])
    if "amount" in changes:
        changes["amount"] = _to_amount(changes["amount"])

    before = snapshot(request)
    for field, value in changes.items():
        setattr(request, field, value)
    after = snapshot(request)

    changed = [f for f in RESTORABLE_REQUEST_FIELDS if before.get(f) != after.get(f)]
    if not changed:
        return request

    request.updated_at = utcnow()
    db.flush()
    if "due_at" in changed:
        inherit_request_deadline(request)
        db.flush()

    _audit_request(db, caller.user_id, request, before)
    record_event(
        db, request, "updated", f"Updated {', '.join(changed)}",
        created_by=caller.user_id, meta={"fields": changed},
    )
    return request


def add_comment(
    db: Session,
    caller: CallerContext,
    request_id: int,
    body: str,
    step_id: Optional[int] = None,
) -> RequestComment:
    request = get_visible_request(db, caller, request_id)
    body = (body or "").strip()
    if not body:
        raise ValidationError("Comment body is required")
    if step_id is not None:
        step = db.get(RequestStep, step_id)
        if step is None or step.request_id != request.id:
            raise ValidationError(f"Step {step_id} does not belong to request {request.id}")

    comment = RequestComment(
        request_id=request.id,
        step_id=step_id,
        company_id=request.company_id,
        user_id=caller.user_id,
        body=body,
        created_at=utcnow(),
    )
    db.add(comment)
    db.flush()

    record_audit(
        db,
        company_id=request.company_id,
        table_name=RequestComment.__tablename__,
        action=AuditAction.INSERT,
        record_pk=comment.id,
        new_data=snapshot(comment),
        changed_by=caller.user_id,
        request_id=request.id,
        step_id=step_id,
    )
    record_event(
        db, request, "comment", body[:200],
        created_by=caller.user_id, step_id=step_id, meta={"comment_id": comment.id},
    )
    return comment


def add_attachment(
    db: Session,
    caller: CallerContext,
    request_id: int,
    *,
    storage_path: str,
    file_name: str,
    storage_bucket: Optional[str] = None,
    mime_type: Optional[str] = None,
    byte_size: Optional[int] = None,
    step_id: Optional[int] = None,
) -> RequestAttachment:
    """Record metadata for an object already uploaded to the object store."""
    request = get_visible_request(db, caller, request_id)
    storage_path = (storage_path or "").strip()
    file_name = (file_name or "").strip()
    if not storage_path or not file_name:
        raise ValidationError("storage_path and file_name are required")
    if byte_size is not None and byte_size < 0:
        raise ValidationError("byte_size cannot be negative")
    if step_id is not None:
        step = db.get(RequestStep, step_id)
        if step is None or step.request_id != request.id:
            raise ValidationError(f"Step {step_id} does not belong to request {request.id}")

    attachment = RequestAttachment(
        request_id=request.id,
        step_id=step_id,
        company_id=request.company_id,
        uploaded_by=caller.user_id,
        storage_bucket=storage_bucket or settings.STORAGE_BUCKET,
        storage_path=storage_path,
        file_name=file_name,
        mime_type=mime_type,
        byte_size=byte_size,
        created_at=utcnow(),
    )
    db.add(attachment)
    db.flush()

    record_audit(
        db,
        company_id=request.company_id,
        table_name=RequestAttachment.__tablename__,
        action=AuditAction.INSERT,
        record_pk=attachment.id,
        new_data=snapshot(attachment),
        changed_by=caller.user_id,
        request_id=request.id,
        step_id=step_id,
    )
    record_event(
        db, request, "attachment", f"Attached {file_name}",
        created_by=caller.user_id, step_id=step_id, meta={"attachment_id": attachment.id},
    )
    return attachment


def attachment_download_url(db: Session, caller: CallerContext, attachment_id: int, storage=None) -> str:
    attachment = db.get(RequestAttachment, attachment_id)
    if attachment is None or attachment.company_id != caller.company_id:
        raise NotFoundError("RequestAttachment", attachment_id)
    get_visible_request(db, caller, attachment.request_id)

    if storage is None:
        from opscore.services.storage import get_storage_client
        storage = get_storage_client()
    return storage.create_signed_url(
        attachment.storage_bucket,
        attachment.storage_path,
        settings.SIGNED_URL_EXPIRY_SECONDS,
    )
