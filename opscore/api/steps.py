"""
Step transition API routes.

Each route is one command in one transaction: the service flushes, the
route commits, and any domain error leaves the session uncommitted.
"""
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.orm import Session

from opscore.api.requests import StepResponse
from opscore.core.rbac import CallerContext, get_caller_context
from opscore.db.session import get_db
from opscore.services import workflow

router = APIRouter(prefix="/api/steps", tags=["Steps"])


# ============= SCHEMAS =============

class AssignPayload(BaseModel):
    assignee_id: int


class CompletePayload(BaseModel):
    notes: Optional[str] = None


class ApprovePayload(BaseModel):
    next_department_id: Optional[int] = None
    next_assignee_id: Optional[int] = None
    notes: Optional[str] = None


class ReturnPayload(BaseModel):
    reason: str
    assignee_id: Optional[int] = None


class ReasonPayload(BaseModel):
    reason: str


class NotesPayload(BaseModel):
    notes: str


class ResumePayload(BaseModel):
    notes: Optional[str] = None


def _done(db: Session, step):
    db.commit()
    db.refresh(step)
    return step


# ============= ROUTES =============

@router.post("/{step_id}/assign", response_model=StepResponse)
async def assign_step(
    step_id: int,
    payload: AssignPayload,
    caller: CallerContext = Depends(get_caller_context),
    db: Session = Depends(get_db),
):
    return _done(db, workflow.assign_step(db, caller, step_id, payload.assignee_id))


@router.post("/{step_id}/start", response_model=StepResponse)
async def start_step(
    step_id: int,
    caller: CallerContext = Depends(get_caller_context),
    db: Session = Depends(get_db),
):
    return _done(db, workflow.start_step(db, caller, step_id))


@router.post("/{step_id}/complete", response_model=StepResponse)
async def complete_step(
    step_id: int,
    payload: Optional[CompletePayload] = None,
    caller: CallerContext = Depends(get_caller_context),
    db: Session = Depends(get_db),
):
    notes = payload.notes if payload else None
    return _done(db, workflow.complete_step(db, caller, step_id, notes=notes))


@router.post("/{step_id}/approve", response_model=StepResponse)
async def approve_step(
    step_id: int,
    payload: Optional[ApprovePayload] = None,
    caller: CallerContext = Depends(get_caller_context),
    db: Session = Depends(get_db),
):
    """Approve; forwards when next_department_id is set, otherwise closes the request."""
    payload = payload or ApprovePayload()
    step = workflow.approve_step(
        db, caller, step_id,
        next_department_id=payload.next_department_id,
        next_assignee_id=payload.next_assignee_id,
        notes=payload.notes,
    )
    return _done(db, step)


@router.post("/{step_id}/return", response_model=StepResponse)
async def return_step(
    step_id: int,
    payload: ReturnPayload,
    caller: CallerContext = Depends(get_caller_context),
    db: Session = Depends(get_db),
):
    """Returns the newly created step in the previous department."""
    new_step = workflow.return_step(db, caller, step_id, payload.reason, assignee_id=payload.assignee_id)
    return _done(db, new_step)


@router.post("/{step_id}/reject", response_model=StepResponse)
async def reject_step(
    step_id: int,
    payload: ReasonPayload,
    caller: CallerContext = Depends(get_caller_context),
    db: Session = Depends(get_db),
):
    return _done(db, workflow.reject_step(db, caller, step_id, payload.reason))


@router.post("/{step_id}/hold", response_model=StepResponse)
async def hold_step(
    step_id: int,
    payload: NotesPayload,
    caller: CallerContext = Depends(get_caller_context),
    db: Session = Depends(get_db),
):
    return _done(db, workflow.set_on_hold(db, caller, step_id, payload.notes))


@router.post("/{step_id}/info-required", response_model=StepResponse)
async def info_required_step(
    step_id: int,
    payload: NotesPayload,
    caller: CallerContext = Depends(get_caller_context),
    db: Session = Depends(get_db),
):
    return _done(db, workflow.set_info_required(db, caller, step_id, payload.notes))


@router.post("/{step_id}/resume", response_model=StepResponse)
async def resume_step(
    step_id: int,
    payload: Optional[ResumePayload] = None,
    caller: CallerContext = Depends(get_caller_context),
    db: Session = Depends(get_db),
):
    notes = payload.notes if payload else None
    return _done(db, workflow.resume_step(db, caller, step_id, notes=notes))
