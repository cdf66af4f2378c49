"""
System administration across tenants.

Callers hold the global `is_system_admin` flag; route dependencies check it
and every function here re-checks it. Changes are audited under the
affected company.
"""
from typing import Optional

from sqlalchemy.orm import Session

from opscore.core.exceptions import (
    AuthorizationError, ConflictError, NotFoundError, ValidationError,
)
from opscore.core.logging import audit_logger, get_logger
from opscore.core.rbac import CallerContext, Role, resolve_membership
from opscore.db.models import (
    AuditAction, Company, Department, Membership, User, utcnow,
)
from opscore.services.admin import apply_membership
from opscore.services.audit import record_audit, snapshot

logger = get_logger(__name__)

DEFAULT_DEPARTMENT_NAME = "General"
PLACEHOLDER_EMAIL_PREFIX = "placeholder-admin+"


def is_placeholder_email(email: Optional[str]) -> bool:
    return bool(email) and email.lower().startswith(PLACEHOLDER_EMAIL_PREFIX)


def _require_system_admin(caller: CallerContext) -> None:
    if not caller.is_system_admin:
        raise AuthorizationError("System administrator access required")


def _company(db: Session, company_id: int) -> Company:
    company = db.get(Company, company_id)
    if company is None:
        raise NotFoundError("Company", company_id)
    return company


def _user(db: Session, user_id: int) -> User:
    user = db.get(User, user_id)
    if user is None:
        raise NotFoundError("User", user_id)
    return user


def whoami(db: Session, user_id: int) -> dict:
    user = _user(db, user_id)
    membership = resolve_membership(db, user)
    return {
        "user_id": user.id,
        "email": user.email,
        "full_name": user.full_name,
        "job_title": user.job_title,
        "is_active": user.is_active,
        "is_system_admin": bool(user.is_system_admin),
        "active_company_id": user.active_company_id,
        "company_id": membership.company_id if membership else None,
        "role": membership.role if membership else None,
        "department_id": membership.department_id if membership else None,
    }


def create_company(
    db: Session,
    caller: CallerContext,
    name: str,
    make_me_admin: bool = True,
    create_default_department: bool = True,
    default_department_name: str = DEFAULT_DEPARTMENT_NAME,
    switch_my_profile_company: bool = True,
) -> Company:
    _require_system_admin(caller)
    name = (name or "").strip()
    if len(name) < 2:
        raise ValidationError("Company name must be at least 2 characters")
    if db.query(Company).filter(Company.name == name).first() is not None:
        raise ConflictError(f"Company '{name}' already exists")

    company = Company(name=name, created_at=utcnow())
    db.add(company)
    db.flush()
    record_audit(
        db, company_id=company.id, table_name=Company.__tablename__, action=AuditAction.INSERT,
        record_pk=company.id, new_data=snapshot(company), changed_by=caller.user_id,
    )

    if create_default_department:
        create_department(db, caller, company.id, default_department_name or DEFAULT_DEPARTMENT_NAME)

    me = _user(db, caller.user_id)
    if make_me_admin:
        apply_membership(db, caller.user_id, company.id, me, Role.ADMIN, None)
    if switch_my_profile_company:
        me.active_company_id = company.id
    db.flush()

    logger.info(f"Company {company.id} '{name}' created by system admin {caller.user_id}")
    return company


def create_department(
    db: Session,
    caller: CallerContext,
    company_id: int,
    name: str,
    code: Optional[str] = None,
    accepts_external_requests: bool = True,
) -> Department:
    _require_system_admin(caller)
    company = _company(db, company_id)
    name = (name or "").strip()
    if not name:
        raise ValidationError("Department name is required")
    exists = (
        db.query(Department)
        .filter(Department.company_id == company.id, Department.name == name)
        .first()
    )
    if exists is not None:
        raise ConflictError(f"Department '{name}' already exists in this company")

    department = Department(
        company_id=company.id,
        name=name,
        code=(code or "").strip() or None,
        accepts_external_requests=accepts_external_requests,
        created_at=utcnow(),
    )
    db.add(department)
    db.flush()
    record_audit(
        db, company_id=company.id, table_name=Department.__tablename__, action=AuditAction.INSERT,
        record_pk=department.id, new_data=snapshot(department), changed_by=caller.user_id,
    )
    return department


def list_users(db: Session, caller: CallerContext, company_id: int) -> list[dict]:
    _require_system_admin(caller)
    _company(db, company_id)
    rows = (
        db.query(User, Membership, Department)
        .join(Membership, Membership.user_id == User.id)
        .outerjoin(Department, Department.id == Membership.department_id)
        .filter(Membership.company_id == company_id)
        .order_by(User.full_name, User.email)
        .all()
    )
    return [
        {
            "user_id": user.id,
            "email": user.email,
            "full_name": user.full_name,
            "is_active": user.is_active,
            "membership_role": membership.role,
            "department_id": membership.department_id,
            "department_name": department.name if department else None,
            "is_placeholder": is_placeholder_email(user.email),
        }
        for user, membership, department in rows
    ]


def set_membership_role(
    db: Session,
    caller: CallerContext,
    company_id: int,
    user_id: int,
    role: Role,
    department_id: Optional[int] = None,
) -> Membership:
    _require_system_admin(caller)
    _company(db, company_id)
    return apply_membership(db, caller.user_id, company_id, _user(db, user_id), role, department_id)


def set_profile_active(db: Session, caller: CallerContext, user_id: int, is_active: bool) -> User:
    _require_system_admin(caller)
    user = _user(db, user_id)
    if user.id == caller.user_id and not is_active:
        raise ValidationError("System admins cannot deactivate themselves")

    before = snapshot(user)
    user.is_active = is_active
    user.updated_at = utcnow()
    db.flush()

    membership = resolve_membership(db, user)
    company_id = user.active_company_id or (membership.company_id if membership else None)
    if company_id is not None:
        record_audit(
            db, company_id=company_id, table_name=User.__tablename__, action=AuditAction.UPDATE,
            record_pk=user.id, old_data=before, new_data=snapshot(user), changed_by=caller.user_id,
        )
    else:
        audit_logger.log("users.UPDATE", user_id=caller.user_id, entity_type="users", entity_id=user.id,
                         details={"is_active": is_active})
    return user


def move_user_to_company(
    db: Session,
    caller: CallerContext,
    user_id: int,
    target_company_id: int,
    role: Role,
    department_id: Optional[int] = None,
    keep_active: bool = True,
) -> Membership:
    """Replace every membership of the user with one in the target company."""
    _require_system_admin(caller)
    company = _company(db, target_company_id)
    user = _user(db, user_id)

    others = (
        db.query(Membership)
        .filter(Membership.user_id == user.id, Membership.company_id != company.id)
        .all()
    )
    for membership in others:
        if membership.role == Role.ADMIN.value:
            remaining = (
                db.query(Membership)
                .filter(
                    Membership.company_id == membership.company_id,
                    Membership.role == Role.ADMIN.value,
                    Membership.user_id != user.id,
                )
                .count()
            )
            if remaining == 0:
                raise ConflictError(
                    f"User is the last admin of company {membership.company_id}; assign another admin first"
                )
        record_audit(
            db, company_id=membership.company_id, table_name=Membership.__tablename__,
            action=AuditAction.DELETE, record_pk=membership.id, old_data=snapshot(membership),
            changed_by=caller.user_id,
        )
        db.delete(membership)
    db.flush()

    user.active_company_id = company.id
    membership = apply_membership(db, caller.user_id, company.id, user, role, department_id)
    user.is_active = bool(keep_active)
    user.updated_at = utcnow()
    db.flush()

    logger.info(f"User {user.id} moved to company {company.id} as {membership.role}")
    return membership


def ensure_placeholder_admin(
    db: Session,
    caller: CallerContext,
    company_id: int,
    full_name: str = "Placeholder Admin",
) -> Optional[tuple[User, bool]]:
    """Make sure a company without a real admin/ceo has a placeholder admin.

    Returns None when a real active admin or ceo exists, otherwise
    (placeholder user, created).
    """
    _require_system_admin(caller)
    company = _company(db, company_id)

    leaders = (
        db.query(User, Membership)
        .join(Membership, Membership.user_id == User.id)
        .filter(
            Membership.company_id == company.id,
            Membership.role.in_([Role.ADMIN.value, Role.CEO.value]),
        )
        .all()
    )
    if any(user.is_active and not is_placeholder_email(user.email) for user, _ in leaders):
        return None

    for user, _ in leaders:
        if is_placeholder_email(user.email):
            return user, False

    user = User(
        email=f"{PLACEHOLDER_EMAIL_PREFIX}{company.id}@placeholder.invalid",
        full_name=(full_name or "").strip() or "Placeholder Admin",
        is_active=True,
        is_system_admin=False,
        active_company_id=company.id,
    )
    db.add(user)
    db.flush()
    apply_membership(db, caller.user_id, company.id, user, Role.ADMIN, None)
    logger.info(f"Placeholder admin {user.id} created for company {company.id}")
    return user, True
