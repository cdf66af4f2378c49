"""
Read-only KPI and SLA projections.

All functions are pure over committed rows and an injectable `now`, so the
dashboard numbers can be reproduced in tests.
"""
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.orm import Session

from opscore.core.exceptions import AuthorizationError, ValidationError
from opscore.core.rbac import CallerContext, Role
from opscore.db.models import (
    Department, Membership, Request, RequestStatus, RequestStep, RequestType, StepStatus,
    User, ensure_aware, utcnow,
)
from opscore.services.step_states import active_values
from opscore.services.visibility import visible_requests_query

SCOPE_PERSONAL = "personal"
SCOPE_DEPARTMENT = "department"
SCOPE_COMPANY = "company"

CYCLE_WINDOW_DAYS = 30


def _hours(delta: timedelta) -> float:
    return round(delta.total_seconds() / 3600.0, 2)


def _open_current_steps(db: Session, company_id: int):
    """(request, current step) pairs for every open request of a company."""
    return (
        db.query(Request, RequestStep)
        .join(RequestStep, RequestStep.id == Request.current_step_id)
        .filter(
            Request.company_id == company_id,
            Request.request_status == RequestStatus.OPEN.value,
            RequestStep.status.in_(active_values()),
        )
        .all()
    )


def _step_due(request: Request, step: RequestStep) -> Optional[datetime]:
    return ensure_aware(step.due_at or request.due_at)


# ============= CURRENT REQUESTS =============

def current_requests(
    db: Session,
    caller: CallerContext,
    now: Optional[datetime] = None,
    request_status: Optional[str] = None,
    limit: int = 100,
    offset: int = 0,
) -> list[dict]:
    """Requests visible to the caller, flattened with their current step."""
    now = now or utcnow()
    query = visible_requests_query(db, caller)
    if request_status:
        query = query.filter(Request.request_status == request_status)
    requests = (
        query.order_by(Request.created_at.desc(), Request.id.desc())
        .offset(max(offset, 0))
        .limit(max(1, min(limit, 500)))
        .all()
    )

    step_ids = [r.current_step_id for r in requests if r.current_step_id]
    steps = {
        s.id: s for s in db.query(RequestStep).filter(RequestStep.id.in_(step_ids)).all()
    } if step_ids else {}
    type_names = dict(db.query(RequestType.id, RequestType.name).filter(
        RequestType.company_id == caller.company_id
    ).all())

    rows = []
    for request in requests:
        step = steps.get(request.current_step_id)
        request_age = now - ensure_aware(request.created_at)
        row = {
            "id": request.id,
            "reference_code": request.reference_code,
            "title": request.title,
            "request_type_id": request.request_type_id,
            "request_type_name": type_names.get(request.request_type_id),
            "priority": request.priority,
            "request_status": request.request_status,
            "workflow_status": request.workflow_status,
            "requester_id": request.requester_id,
            "origin_department_id": request.origin_department_id,
            "due_at": ensure_aware(request.due_at),
            "created_at": ensure_aware(request.created_at),
            "closed_at": ensure_aware(request.closed_at),
            "request_age_hours": _hours(request_age),
            "request_age_days": round(request_age.total_seconds() / 86400.0, 2),
            "current_step_id": None,
            "current_step_no": None,
            "current_department_id": None,
            "current_assigned_to": None,
            "current_step_status": None,
            "current_step_age_hours": None,
            "current_step_age_days": None,
        }
        if step is not None:
            step_age = now - ensure_aware(step.created_at)
            row.update({
                "current_step_id": step.id,
                "current_step_no": step.step_no,
                "current_department_id": step.department_id,
                "current_assigned_to": step.assigned_to,
                "current_step_status": step.status,
                "current_step_age_hours": _hours(step_age),
                "current_step_age_days": round(step_age.total_seconds() / 86400.0, 2),
            })
        rows.append(row)
    return rows


# ============= SLA =============

def sla_open_steps(db: Session, caller: CallerContext, now: Optional[datetime] = None) -> list[dict]:
    """Current steps with deadline data; overdue first, then nearest due."""
    now = now or utcnow()
    rows = []
    for request, step in _open_current_steps(db, caller.company_id):
        if caller.role == Role.MANAGER and step.department_id != caller.department_id:
            continue
        if caller.role == Role.EMPLOYEE and step.assigned_to != caller.user_id:
            continue

        due = _step_due(request, step)
        hours_to_due = _hours(due - now) if due is not None else None
        rows.append({
            "request_id": request.id,
            "reference_code": request.reference_code,
            "title": request.title,
            "priority": request.priority,
            "step_id": step.id,
            "step_no": step.step_no,
            "department_id": step.department_id,
            "assigned_to": step.assigned_to,
            "status": step.status,
            "due_at": due,
            "hours_to_due": hours_to_due,
            "is_overdue": due is not None and due < now,
            "step_age_hours": _hours(now - ensure_aware(step.created_at)),
        })

    rows.sort(key=lambda r: (
        not r["is_overdue"],
        r["hours_to_due"] is None,
        r["hours_to_due"] if r["hours_to_due"] is not None else 0.0,
        r["step_id"],
    ))
    return rows


# ============= WORKLOAD =============

def department_workload(db: Session, caller: CallerContext, now: Optional[datetime] = None) -> list[dict]:
    """Per department member: open and in-progress step counts, mean open age."""
    now = now or utcnow()

    members = (
        db.query(Membership, User, Department)
        .join(User, User.id == Membership.user_id)
        .join(Department, Department.id == Membership.department_id)
        .filter(Membership.company_id == caller.company_id)
    )
    if caller.role == Role.MANAGER:
        members = members.filter(Membership.department_id == caller.department_id)
    elif caller.role == Role.EMPLOYEE:
        members = members.filter(Membership.user_id == caller.user_id)
    elif not caller.is_company_wide:
        return []

    open_steps = (
        db.query(RequestStep)
        .join(Request, Request.id == RequestStep.request_id)
        .filter(
            RequestStep.company_id == caller.company_id,
            RequestStep.status.in_(active_values()),
            RequestStep.assigned_to.isnot(None),
            Request.request_status == RequestStatus.OPEN.value,
        )
        .all()
    )
    by_assignee: dict[tuple[int, int], list[RequestStep]] = {}
    for step in open_steps:
        by_assignee.setdefault((step.assigned_to, step.department_id), []).append(step)

    rows = []
    for membership, user, department in members.order_by(Department.name, User.full_name).all():
        steps = by_assignee.get((user.id, department.id), [])
        ages = [(now - ensure_aware(s.created_at)).total_seconds() / 3600.0 for s in steps]
        rows.append({
            "department_id": department.id,
            "department_name": department.name,
            "user_id": user.id,
            "full_name": user.full_name,
            "role": membership.role,
            "open_steps": len(steps),
            "in_progress_steps": sum(1 for s in steps if s.status == StepStatus.IN_PROGRESS.value),
            "avg_step_age_hours": round(sum(ages) / len(ages), 2) if ages else None,
        })
    return rows


# ============= DASHBOARD =============

def default_scope(caller: CallerContext) -> str:
    if caller.is_company_wide:
        return SCOPE_COMPANY
    if caller.role == Role.MANAGER:
        return SCOPE_DEPARTMENT
    return SCOPE_PERSONAL


def _check_scope(caller: CallerContext, scope: str, department_id: Optional[int]) -> Optional[int]:
    if scope not in (SCOPE_PERSONAL, SCOPE_DEPARTMENT, SCOPE_COMPANY):
        raise ValidationError(f"Unknown KPI scope '{scope}'")
    if scope == SCOPE_COMPANY and not caller.is_company_wide:
        raise AuthorizationError("Company KPIs require the admin or ceo role")
    if scope == SCOPE_DEPARTMENT:
        if caller.is_company_wide:
            if department_id is None:
                raise ValidationError("department_id is required for department scope")
            return department_id
        if caller.role != Role.MANAGER:
            raise AuthorizationError("Department KPIs require the manager role")
        if department_id is not None and department_id != caller.department_id:
            raise AuthorizationError("Managers can only view their own department")
        return caller.department_id
    return None


def dashboard_kpis(
    db: Session,
    caller: CallerContext,
    scope: Optional[str] = None,
    department_id: Optional[int] = None,
    now: Optional[datetime] = None,
) -> dict:
    now = now or utcnow()
    scope = scope or default_scope(caller)
    department_id = _check_scope(caller, scope, department_id)

    def in_scope(step: RequestStep) -> bool:
        if scope == SCOPE_PERSONAL:
            return step.assigned_to == caller.user_id
        if scope == SCOPE_DEPARTMENT:
            return step.department_id == department_id
        return True

    pairs = _open_current_steps(db, caller.company_id)
    scoped = [(r, s) for r, s in pairs if in_scope(s)]

    def count(status: StepStatus) -> int:
        return sum(1 for _, s in scoped if s.status == status.value)

    overdue = 0
    for request, step in scoped:
        due = _step_due(request, step)
        if due is not None and due < now:
            overdue += 1

    window_start = now - timedelta(days=CYCLE_WINDOW_DAYS)
    completed = (
        db.query(RequestStep)
        .filter(
            RequestStep.company_id == caller.company_id,
            RequestStep.completed_at.isnot(None),
        )
        .all()
    )
    cycle_hours = [
        (ensure_aware(s.completed_at) - ensure_aware(s.created_at)).total_seconds() / 3600.0
        for s in completed
        if in_scope(s) and ensure_aware(s.completed_at) >= window_start
    ]

    return {
        "scope": scope,
        "department_id": department_id,
        "active": len(scoped),
        "overdue": overdue,
        "pending_approval": count(StepStatus.DONE_PENDING_APPROVAL),
        "unassigned": sum(1 for _, s in scoped if s.assigned_to is None),
        "on_hold": count(StepStatus.ON_HOLD),
        "info_required": count(StepStatus.INFO_REQUIRED),
        "my_open": sum(1 for _, s in pairs if s.assigned_to == caller.user_id),
        "avg_cycle_hours_30d": round(sum(cycle_hours) / len(cycle_hours), 2) if cycle_hours else None,
    }
