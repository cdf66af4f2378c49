"""
Company administration: memberships, request types and automation rules.

Every operation requires the ADMINISTER action (company admin) and is
written to the audit log.
"""
from typing import Optional

from sqlalchemy.orm import Session

from opscore.core.exceptions import (
    AuthorizationError, ConflictError, NotFoundError, ValidationError,
)
from opscore.core.logging import get_logger
from opscore.core.rbac import Action, CallerContext, COMPANY_WIDE_ROLES, Role, can_act_on
from opscore.db.models import (
    ApprovalMode, AuditAction, Department, DepartmentRequestTypeSetting, Membership,
    RequestType, User, utcnow,
)
from opscore.services.audit import record_audit, snapshot
from opscore.services import outbox

logger = get_logger(__name__)


def _require_admin(caller: CallerContext) -> None:
    if not can_act_on(caller, None, Action.ADMINISTER):
        raise AuthorizationError("Company admin role required")


def _audit(db: Session, caller_id: Optional[int], company_id: int, obj, before: Optional[dict]) -> None:
    record_audit(
        db,
        company_id=company_id,
        table_name=obj.__tablename__,
        action=AuditAction.UPDATE if before is not None else AuditAction.INSERT,
        record_pk=obj.id,
        old_data=before,
        new_data=snapshot(obj),
        changed_by=caller_id,
    )


# ============= MEMBERSHIPS =============

def validate_membership_department(
    db: Session, company_id: int, role: Role, department_id: Optional[int]
) -> Optional[int]:
    """admin/ceo carry no department; employee/manager need one in the company."""
    if role in COMPANY_WIDE_ROLES:
        if department_id is not None:
            raise ValidationError(f"Role '{role.value}' cannot be tied to a department")
        return None
    if department_id is None:
        raise ValidationError(f"Role '{role.value}' requires a department")
    department = db.get(Department, department_id)
    if department is None or department.company_id != company_id:
        raise ValidationError(f"Department {department_id} does not exist in this company")
    return department.id


def apply_membership(
    db: Session,
    changed_by: Optional[int],
    company_id: int,
    user: User,
    role: Role,
    department_id: Optional[int],
) -> Membership:
    """Upsert one membership, guarding the company's last admin."""
    role = Role(role)
    department_id = validate_membership_department(db, company_id, role, department_id)

    membership = (
        db.query(Membership)
        .filter(Membership.company_id == company_id, Membership.user_id == user.id)
        .first()
    )
    if membership is not None and membership.role == Role.ADMIN.value and role != Role.ADMIN:
        other_admins = (
            db.query(Membership)
            .filter(
                Membership.company_id == company_id,
                Membership.role == Role.ADMIN.value,
                Membership.user_id != user.id,
            )
            .count()
        )
        if other_admins == 0:
            raise ConflictError("Cannot remove the last admin of the company")

    before = snapshot(membership) if membership is not None else None
    if membership is None:
        membership = Membership(company_id=company_id, user_id=user.id, created_at=utcnow())
        db.add(membership)
    membership.role = role.value
    membership.department_id = department_id
    if user.active_company_id is None:
        user.active_company_id = company_id
    db.flush()

    _audit(db, changed_by, company_id, membership, before)
    return membership


def set_user_role(
    db: Session,
    caller: CallerContext,
    user_id: int,
    role: Role,
    department_id: Optional[int] = None,
) -> Membership:
    _require_admin(caller)
    user = db.get(User, user_id)
    if user is None:
        raise NotFoundError("User", user_id)
    membership = apply_membership(db, caller.user_id, caller.company_id, user, role, department_id)
    logger.info(f"User {user_id} set to {membership.role} in company {caller.company_id}")
    return membership


# ============= REQUEST TYPES =============

def upsert_request_type(
    db: Session,
    caller: CallerContext,
    name: str,
    description: Optional[str] = None,
    default_priority: int = 3,
    active: bool = True,
    request_type_id: Optional[int] = None,
) -> RequestType:
    _require_admin(caller)
    name = (name or "").strip()
    if not name:
        raise ValidationError("Request type name is required")
    if isinstance(default_priority, bool) or not isinstance(default_priority, int) \
            or not 1 <= default_priority <= 4:
        raise ValidationError("default_priority must be between 1 and 4")

    duplicate = (
        db.query(RequestType)
        .filter(RequestType.company_id == caller.company_id, RequestType.name == name)
        .first()
    )

    if request_type_id is not None:
        request_type = db.get(RequestType, request_type_id)
        if request_type is None or request_type.company_id != caller.company_id:
            raise NotFoundError("RequestType", request_type_id)
        if duplicate is not None and duplicate.id != request_type.id:
            raise ConflictError(f"Request type '{name}' already exists")
        before = snapshot(request_type)
    else:
        if duplicate is not None:
            raise ConflictError(f"Request type '{name}' already exists")
        request_type = RequestType(company_id=caller.company_id, created_at=utcnow())
        db.add(request_type)
        before = None

    request_type.name = name
    request_type.description = description
    request_type.default_priority = default_priority
    request_type.active = active
    db.flush()

    _audit(db, caller.user_id, caller.company_id, request_type, before)
    return request_type


# ============= AUTOMATION RULES =============

def set_department_request_type_setting(
    db: Session,
    caller: CallerContext,
    department_id: int,
    request_type_id: int,
    approval_mode: ApprovalMode = ApprovalMode.MANUAL,
    auto_close: bool = True,
    default_next_department_id: Optional[int] = None,
) -> DepartmentRequestTypeSetting:
    _require_admin(caller)
    approval_mode = ApprovalMode(approval_mode)

    department = db.get(Department, department_id)
    if department is None or department.company_id != caller.company_id:
        raise NotFoundError("Department", department_id)
    request_type = db.get(RequestType, request_type_id)
    if request_type is None or request_type.company_id != caller.company_id:
        raise NotFoundError("RequestType", request_type_id)

    if default_next_department_id is not None:
        if default_next_department_id == department.id:
            raise ValidationError("The next department must differ from the department itself")
        next_department = db.get(Department, default_next_department_id)
        if next_department is None or next_department.company_id != caller.company_id:
            raise ValidationError(
                f"Department {default_next_department_id} does not exist in this company"
            )

    setting = (
        db.query(DepartmentRequestTypeSetting)
        .filter(
            DepartmentRequestTypeSetting.department_id == department.id,
            DepartmentRequestTypeSetting.request_type_id == request_type.id,
        )
        .first()
    )
    before = snapshot(setting) if setting is not None else None
    if setting is None:
        setting = DepartmentRequestTypeSetting(
            company_id=caller.company_id,
            department_id=department.id,
            request_type_id=request_type.id,
        )
        db.add(setting)

    setting.approval_mode = approval_mode.value
    setting.auto_close = auto_close
    setting.default_next_department_id = default_next_department_id
    setting.updated_at = utcnow()
    db.flush()

    _audit(db, caller.user_id, caller.company_id, setting, before)
    logger.info(
        f"Automation for department {department.id} / type {request_type.id}: "
        f"{approval_mode.value}, next={default_next_department_id}, auto_close={auto_close}"
    )
    return setting


# ============= OUTBOX =============

def outbox_summary(db: Session, caller: CallerContext) -> dict:
    _require_admin(caller)
    return outbox.outbox_summary(db, caller.company_id)
