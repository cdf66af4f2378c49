"""
Audit Log API routes.
"""
from typing import List, Optional
from datetime import datetime

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.orm import Session

from opscore.api.requests import RequestResponse
from opscore.core.rbac import CallerContext, get_caller_context, require_admin
from opscore.db.session import get_db
from opscore.services.audit import list_audit_logs, rollback_audit

router = APIRouter(prefix="/api/audit", tags=["Audit"])


# ============= SCHEMAS =============

class AuditLogResponse(BaseModel):
    id: int
    table_name: str
    action: str
    record_pk: Optional[str]
    request_id: Optional[int]
    step_id: Optional[int]
    old_data: Optional[dict]
    new_data: Optional[dict]
    changed_by: Optional[int]
    changed_at: Optional[datetime]

    class Config:
        from_attributes = True


# ============= ROUTES =============

@router.get("/logs", response_model=List[AuditLogResponse])
async def get_audit_logs(
    table_name: Optional[str] = Query(None, description="Filter by table"),
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    caller: CallerContext = Depends(get_caller_context),
    db: Session = Depends(get_db),
):
    """Newest first; non-admin roles see entries of requests visible to them."""
    return list_audit_logs(db, caller, table_name=table_name, limit=limit, offset=offset)


@router.post("/logs/{audit_id}/rollback", response_model=RequestResponse)
async def rollback_audit_entry(
    audit_id: int,
    caller: CallerContext = Depends(require_admin),
    db: Session = Depends(get_db),
):
    """Restore the pre-change values of a requests UPDATE (admin only)."""
    request = rollback_audit(db, caller, audit_id)
    db.commit()
    db.refresh(request)
    return request
