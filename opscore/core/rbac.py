"""
Role-Based Access Control (RBAC): caller context and the department-scoped
authorization predicate shared by commands and read projections.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from fastapi import Depends, HTTPException, status
from sqlalchemy.orm import Session

from opscore.core.exceptions import AuthorizationError
from opscore.core.security import get_current_user_id
from opscore.db.models import Department, Membership, MembershipRole as Role, User
from opscore.db.session import get_db


class Action(str, Enum):
    VIEW = "view"
    SUBMIT = "submit"
    MANAGE = "manage"
    PREASSIGN = "preassign"
    ADMINISTER = "administer"


# Roles that act on every department of their company
COMPANY_WIDE_ROLES = frozenset({Role.ADMIN, Role.CEO})


@dataclass(frozen=True)
class CallerContext:
    """Authenticated caller as re-loaded from the database for one command."""
    user_id: int
    company_id: Optional[int]
    role: Optional[Role]
    department_id: Optional[int]
    is_system_admin: bool = False
    email: Optional[str] = None
    full_name: Optional[str] = None

    @property
    def is_company_wide(self) -> bool:
        return self.role in COMPANY_WIDE_ROLES

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN


def can_act_on(caller: CallerContext, department: Optional[Department], action: Action) -> bool:
    """Single authorization predicate.

    | role     | MANAGE/PREASSIGN | SUBMIT                        | ADMINISTER |
    |----------|------------------|-------------------------------|------------|
    | employee | never            | own dept or accepts external  | no         |
    | manager  | own department   | own dept or accepts external  | no         |
    | ceo      | any in company   | any                           | no         |
    | admin    | any in company   | any                           | yes        |
    """
    if caller.role is None or caller.company_id is None:
        return False

    if action == Action.ADMINISTER:
        return caller.role == Role.ADMIN

    if department is None or department.company_id != caller.company_id:
        return False

    if caller.is_company_wide:
        return True

    own = caller.department_id is not None and department.id == caller.department_id

    if action == Action.VIEW:
        return own
    if action == Action.SUBMIT:
        return own or bool(department.accepts_external_requests)
    if action in (Action.MANAGE, Action.PREASSIGN):
        return caller.role == Role.MANAGER and own
    return False


def require(caller: CallerContext, department: Optional[Department], action: Action) -> None:
    if not can_act_on(caller, department, action):
        dept = department.id if department is not None else None
        raise AuthorizationError(
            f"Role '{caller.role.value if caller.role else None}' may not {action.value} "
            f"in department {dept}"
        )


def resolve_membership(db: Session, user: User) -> Optional[Membership]:
    """Membership in the user's active company, else their only membership."""
    if user.active_company_id is not None:
        membership = (
            db.query(Membership)
            .filter(Membership.user_id == user.id, Membership.company_id == user.active_company_id)
            .first()
        )
        if membership is not None:
            return membership
    memberships = db.query(Membership).filter(Membership.user_id == user.id).all()
    if len(memberships) == 1:
        return memberships[0]
    return None


def load_caller_context(db: Session, user_id: int) -> CallerContext:
    """Re-validate the caller against the database. Token claims are never trusted."""
    user = db.get(User, user_id)
    if user is None or not user.is_active:
        raise AuthorizationError("User is unknown or inactive")

    membership = resolve_membership(db, user)
    return CallerContext(
        user_id=user.id,
        company_id=membership.company_id if membership else None,
        role=Role(membership.role) if membership else None,
        department_id=membership.department_id if membership else None,
        is_system_admin=bool(user.is_system_admin),
        email=user.email,
        full_name=user.full_name,
    )


# ============= FastAPI dependencies =============

async def get_identity(
    user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db),
) -> CallerContext:
    """Caller context without requiring a company membership."""
    return load_caller_context(db, user_id)


async def get_caller_context(
    caller: CallerContext = Depends(get_identity),
) -> CallerContext:
    """Caller context with a company membership (every tenant-scoped route)."""
    if caller.company_id is None or caller.role is None:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="No company membership for this user",
        )
    return caller


class RBACChecker:
    """Dependency for checking company-level roles."""

    def __init__(self, *roles: Role):
        self.roles = frozenset(roles)

    async def __call__(self, caller: CallerContext = Depends(get_caller_context)) -> CallerContext:
        if caller.role not in self.roles:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Insufficient permissions. Required: {', '.join(sorted(r.value for r in self.roles))}",
            )
        return caller


require_admin = RBACChecker(Role.ADMIN)


async def require_system_admin(caller: CallerContext = Depends(get_identity)) -> CallerContext:
    if not caller.is_system_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="System administrator access required",
        )
    return caller
