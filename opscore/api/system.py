"""
System administration API routes (cross-tenant) and the caller identity.
"""
from typing import List, Optional
from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, field_validator
from sqlalchemy.orm import Session

from opscore.api.admin import MembershipResponse
from opscore.core.rbac import CallerContext, Role, get_identity, require_system_admin
from opscore.db.session import get_db
from opscore.services import system_admin

router = APIRouter(prefix="/api", tags=["System"])


def _valid_role(v: str) -> str:
    valid_roles = [r.value for r in Role]
    if v.lower() not in valid_roles:
        raise ValueError(f'Role must be one of: {", ".join(valid_roles)}')
    return v.lower()


# ============= SCHEMAS =============

class WhoAmIResponse(BaseModel):
    user_id: int
    email: str
    full_name: Optional[str]
    job_title: Optional[str]
    is_active: bool
    is_system_admin: bool
    active_company_id: Optional[int]
    company_id: Optional[int]
    role: Optional[str]
    department_id: Optional[int]


class CompanyCreate(BaseModel):
    name: str
    make_me_admin: bool = True
    create_default_department: bool = True
    default_department_name: str = system_admin.DEFAULT_DEPARTMENT_NAME
    switch_my_profile_company: bool = True


class CompanyResponse(BaseModel):
    id: int
    name: str

    class Config:
        from_attributes = True


class DepartmentCreate(BaseModel):
    name: str
    code: Optional[str] = None
    accepts_external_requests: bool = True


class DepartmentResponse(BaseModel):
    id: int
    company_id: int
    name: str
    code: Optional[str]
    accepts_external_requests: bool

    class Config:
        from_attributes = True


class SysUserRow(BaseModel):
    user_id: int
    email: str
    full_name: Optional[str]
    is_active: bool
    membership_role: str
    department_id: Optional[int]
    department_name: Optional[str]
    is_placeholder: bool


class MembershipUpdate(BaseModel):
    role: str
    department_id: Optional[int] = None

    @field_validator('role')
    @classmethod
    def validate_role(cls, v: str) -> str:
        return _valid_role(v)


class ProfileActiveUpdate(BaseModel):
    is_active: bool


class MoveUserRequest(BaseModel):
    target_company_id: int
    role: str
    department_id: Optional[int] = None
    keep_active: bool = True

    @field_validator('role')
    @classmethod
    def validate_role(cls, v: str) -> str:
        return _valid_role(v)


class PlaceholderRequest(BaseModel):
    full_name: str = "Placeholder Admin"


class PlaceholderResponse(BaseModel):
    user_id: Optional[int]
    created: bool
    message: str


# ============= ROUTES =============

@router.get("/whoami", response_model=WhoAmIResponse)
async def whoami(
    caller: CallerContext = Depends(get_identity),
    db: Session = Depends(get_db),
):
    return system_admin.whoami(db, caller.user_id)


@router.post("/sys/companies", response_model=CompanyResponse, status_code=status.HTTP_201_CREATED)
async def create_company(
    payload: CompanyCreate,
    caller: CallerContext = Depends(require_system_admin),
    db: Session = Depends(get_db),
):
    company = system_admin.create_company(db, caller, **payload.model_dump())
    db.commit()
    db.refresh(company)
    return company


@router.post(
    "/sys/companies/{company_id}/departments",
    response_model=DepartmentResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_department(
    company_id: int,
    payload: DepartmentCreate,
    caller: CallerContext = Depends(require_system_admin),
    db: Session = Depends(get_db),
):
    department = system_admin.create_department(db, caller, company_id, **payload.model_dump())
    db.commit()
    db.refresh(department)
    return department


@router.get("/sys/companies/{company_id}/users", response_model=List[SysUserRow])
async def list_company_users(
    company_id: int,
    caller: CallerContext = Depends(require_system_admin),
    db: Session = Depends(get_db),
):
    return system_admin.list_users(db, caller, company_id)


@router.put("/sys/companies/{company_id}/users/{user_id}/membership", response_model=MembershipResponse)
async def set_membership_role(
    company_id: int,
    user_id: int,
    payload: MembershipUpdate,
    caller: CallerContext = Depends(require_system_admin),
    db: Session = Depends(get_db),
):
    membership = system_admin.set_membership_role(
        db, caller, company_id, user_id, Role(payload.role), payload.department_id
    )
    db.commit()
    db.refresh(membership)
    return membership


@router.put("/sys/users/{user_id}/active")
async def set_profile_active(
    user_id: int,
    payload: ProfileActiveUpdate,
    caller: CallerContext = Depends(require_system_admin),
    db: Session = Depends(get_db),
):
    user = system_admin.set_profile_active(db, caller, user_id, payload.is_active)
    db.commit()
    return {"user_id": user.id, "is_active": user.is_active}


@router.post("/sys/users/{user_id}/move", response_model=MembershipResponse)
async def move_user(
    user_id: int,
    payload: MoveUserRequest,
    caller: CallerContext = Depends(require_system_admin),
    db: Session = Depends(get_db),
):
    membership = system_admin.move_user_to_company(
        db, caller, user_id,
        target_company_id=payload.target_company_id,
        role=Role(payload.role),
        department_id=payload.department_id,
        keep_active=payload.keep_active,
    )
    db.commit()
    db.refresh(membership)
    return membership


@router.post("/sys/companies/{company_id}/placeholder-admin", response_model=PlaceholderResponse)
async def ensure_placeholder_admin(
    company_id: int,
    payload: Optional[PlaceholderRequest] = None,
    caller: CallerContext = Depends(require_system_admin),
    db: Session = Depends(get_db),
):
    payload = payload or PlaceholderRequest()
    result = system_admin.ensure_placeholder_admin(db, caller, company_id, payload.full_name)
    db.commit()
    if result is None:
        return PlaceholderResponse(
            user_id=None, created=False,
            message="A real active admin or ceo already exists. Placeholder not created.",
        )
    user, created = result
    return PlaceholderResponse(
        user_id=user.id, created=created,
        message="Placeholder admin created." if created else "Placeholder admin already exists.",
    )
