"""
KPI, SLA and workload API routes (read-only projections).
"""
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.orm import Session

from opscore.core.rbac import CallerContext, get_caller_context
from opscore.db.session import get_db
from opscore.services import kpi

router = APIRouter(prefix="/api", tags=["Dashboard"])


# ============= SCHEMAS =============

class DashboardKpis(BaseModel):
    scope: str
    department_id: Optional[int]
    active: int
    overdue: int
    pending_approval: int
    unassigned: int
    on_hold: int
    info_required: int
    my_open: int
    avg_cycle_hours_30d: Optional[float]


class SlaStepRow(BaseModel):
    request_id: int
    reference_code: Optional[str]
    title: str
    priority: int
    step_id: int
    step_no: int
    department_id: int
    assigned_to: Optional[int]
    status: str
    due_at: Optional[datetime]
    hours_to_due: Optional[float]
    is_overdue: bool
    step_age_hours: float


class WorkloadRow(BaseModel):
    department_id: int
    department_name: str
    user_id: int
    full_name: Optional[str]
    role: str
    open_steps: int
    in_progress_steps: int
    avg_step_age_hours: Optional[float]


# ============= ROUTES =============

@router.get("/kpi/dashboard", response_model=DashboardKpis)
async def get_dashboard(
    scope: Optional[str] = Query(None, description="personal, department or company"),
    department_id: Optional[int] = Query(None),
    caller: CallerContext = Depends(get_caller_context),
    db: Session = Depends(get_db),
):
    return kpi.dashboard_kpis(db, caller, scope=scope, department_id=department_id)


@router.get("/sla/open-steps", response_model=List[SlaStepRow])
async def get_sla_open_steps(
    caller: CallerContext = Depends(get_caller_context),
    db: Session = Depends(get_db),
):
    """Overdue first, then nearest due date."""
    return kpi.sla_open_steps(db, caller)


@router.get("/departments/workload", response_model=List[WorkloadRow])
async def get_department_workload(
    caller: CallerContext = Depends(get_caller_context),
    db: Session = Depends(get_db),
):
    return kpi.department_workload(db, caller)
