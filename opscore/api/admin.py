"""
Admin API routes - company memberships, request types, automation rules
and the notification outbox. Requires the company ADMIN role.
"""
from typing import Optional
from datetime import datetime
from fastapi import APIRouter, Depends
from pydantic import BaseModel, field_validator
from sqlalchemy.orm import Session

from opscore.core.rbac import CallerContext, Role, require_admin
from opscore.db.models import ApprovalMode
from opscore.db.session import get_db
from opscore.services import admin as admin_service
from opscore.services.outbox import run_batch

router = APIRouter(prefix="/api/admin", tags=["Admin"])


# ============= SCHEMAS =============

class RoleUpdate(BaseModel):
    role: str
    department_id: Optional[int] = None

    @field_validator('role')
    @classmethod
    def validate_role(cls, v: str) -> str:
        valid_roles = [r.value for r in Role]
        if v.lower() not in valid_roles:
            raise ValueError(f'Role must be one of: {", ".join(valid_roles)}')
        return v.lower()


class MembershipResponse(BaseModel):
    id: int
    company_id: int
    user_id: int
    role: str
    department_id: Optional[int]

    class Config:
        from_attributes = True


class RequestTypeUpsert(BaseModel):
    id: Optional[int] = None
    name: str
    description: Optional[str] = None
    default_priority: int = 3
    active: bool = True


class RequestTypeResponse(BaseModel):
    id: int
    name: str
    description: Optional[str]
    default_priority: int
    active: bool

    class Config:
        from_attributes = True


class AutomationSettingUpdate(BaseModel):
    approval_mode: str = ApprovalMode.MANUAL.value
    auto_close: bool = True
    default_next_department_id: Optional[int] = None

    @field_validator('approval_mode')
    @classmethod
    def validate_mode(cls, v: str) -> str:
        valid = [m.value for m in ApprovalMode]
        if v not in valid:
            raise ValueError(f'approval_mode must be one of: {", ".join(valid)}')
        return v


class AutomationSettingResponse(BaseModel):
    id: int
    department_id: int
    request_type_id: int
    approval_mode: str
    auto_close: bool
    default_next_department_id: Optional[int]
    updated_at: Optional[datetime]

    class Config:
        from_attributes = True


class OutboxRunRequest(BaseModel):
    limit: Optional[int] = None
    max_attempts: Optional[int] = None


class OutboxRunResponse(BaseModel):
    processed: int
    sent: int
    failed: int
    reclaimed: int
    dry_run: bool
    batch_limit: int


# ============= MEMBERSHIP ROUTES =============

@router.put("/users/{user_id}/role", response_model=MembershipResponse)
async def set_user_role(
    user_id: int,
    payload: RoleUpdate,
    caller: CallerContext = Depends(require_admin),
    db: Session = Depends(get_db),
):
    """admin/ceo take no department; employee/manager require one."""
    membership = admin_service.set_user_role(
        db, caller, user_id, Role(payload.role), payload.department_id
    )
    db.commit()
    db.refresh(membership)
    return membership


# ============= REQUEST TYPE ROUTES =============

@router.put("/request-types", response_model=RequestTypeResponse)
async def upsert_request_type(
    payload: RequestTypeUpsert,
    caller: CallerContext = Depends(require_admin),
    db: Session = Depends(get_db),
):
    request_type = admin_service.upsert_request_type(
        db, caller,
        name=payload.name,
        description=payload.description,
        default_priority=payload.default_priority,
        active=payload.active,
        request_type_id=payload.id,
    )
    db.commit()
    db.refresh(request_type)
    return request_type


@router.put(
    "/departments/{department_id}/request-types/{request_type_id}/automation",
    response_model=AutomationSettingResponse,
)
async def set_automation(
    department_id: int,
    request_type_id: int,
    payload: AutomationSettingUpdate,
    caller: CallerContext = Depends(require_admin),
    db: Session = Depends(get_db),
):
    setting = admin_service.set_department_request_type_setting(
        db, caller, department_id, request_type_id,
        approval_mode=ApprovalMode(payload.approval_mode),
        auto_close=payload.auto_close,
        default_next_department_id=payload.default_next_department_id,
    )
    db.commit()
    db.refresh(setting)
    return setting


# ============= OUTBOX ROUTES =============

@router.post("/outbox/run", response_model=OutboxRunResponse)
async def run_outbox(
    payload: Optional[OutboxRunRequest] = None,
    caller: CallerContext = Depends(require_admin),
    db: Session = Depends(get_db),
):
    """Run one dispatcher pass now instead of waiting for the scheduler."""
    payload = payload or OutboxRunRequest()
    return run_batch(db, limit=payload.limit, max_attempts=payload.max_attempts)


@router.get("/outbox/summary")
async def get_outbox_summary(
    caller: CallerContext = Depends(require_admin),
    db: Session = Depends(get_db),
):
    return admin_service.outbox_summary(db, caller)
