"""
Row-level visibility filters.

One rule per projection, all derived from the caller's membership:
- admin/ceo: the whole company
- manager: requests touching their department, or requested by them
- employee: requests they requested or were ever assigned a step of
"""
from sqlalchemy import or_
from sqlalchemy.orm import Query, Session

from opscore.core.exceptions import NotFoundError
from opscore.core.rbac import CallerContext, Role
from opscore.db.models import Request, RequestStep


def visible_requests_query(db: Session, caller: CallerContext) -> Query:
    query = db.query(Request).filter(Request.company_id == caller.company_id)

    if caller.is_company_wide:
        return query

    if caller.role == Role.MANAGER:
        in_department = (
            db.query(RequestStep.id)
            .filter(
                RequestStep.request_id == Request.id,
                RequestStep.department_id == caller.department_id,
            )
            .exists()
        )
        return query.filter(or_(Request.requester_id == caller.user_id, in_department))

    if caller.role == Role.EMPLOYEE:
        assigned = (
            db.query(RequestStep.id)
            .filter(
                RequestStep.request_id == Request.id,
                RequestStep.assigned_to == caller.user_id,
            )
            .exists()
        )
        return query.filter(or_(Request.requester_id == caller.user_id, assigned))

    return query.filter(Request.id.is_(None))


def can_view_request(db: Session, caller: CallerContext, request: Request) -> bool:
    if request.company_id != caller.company_id:
        return False
    return (
        visible_requests_query(db, caller)
        .filter(Request.id == request.id)
        .first()
        is not None
    )


def get_visible_request(db: Session, caller: CallerContext, request_id: int) -> Request:
    """Load a request the caller may read; invisible rows look missing."""
    request = db.get(Request, request_id)
    if request is None or not can_view_request(db, caller, request):
        raise NotFoundError("Request", request_id)
    return request
