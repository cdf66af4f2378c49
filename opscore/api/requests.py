"""
Request API routes: create, edit, list, detail, comments and attachments.
"""
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from opscore.core.config import settings
from opscore.core.rbac import CallerContext, get_caller_context
from opscore.db.models import RequestAttachment, RequestComment, RequestStep
from opscore.db.session import get_db
from opscore.services import kpi, workflow
from opscore.services.audit import list_events
from opscore.services.visibility import get_visible_request

router = APIRouter(prefix="/api", tags=["Requests"])


# ============= SCHEMAS =============

class RequestCreate(BaseModel):
    title: str
    request_type_id: int
    department_id: int
    description: Optional[str] = None
    priority: Optional[int] = None
    assigned_to: Optional[int] = None
    due_at: Optional[datetime] = None
    amount: Optional[Decimal] = None
    currency: Optional[str] = Field(None, max_length=3)
    cost_center: Optional[str] = None
    project_code: Optional[str] = None
    external_ref: Optional[str] = None
    category: Optional[str] = None
    risk_level: Optional[str] = None


class RequestUpdate(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    priority: Optional[int] = None
    due_at: Optional[datetime] = None
    amount: Optional[Decimal] = None
    currency: Optional[str] = Field(None, max_length=3)
    cost_center: Optional[str] = None
    project_code: Optional[str] = None
    external_ref: Optional[str] = None
    category: Optional[str] = None
    risk_level: Optional[str] = None


class RequestResponse(BaseModel):
    id: int
    reference_code: Optional[str]
    title: str
    description: Optional[str]
    request_type_id: int
    priority: int
    requester_id: int
    origin_department_id: Optional[int]
    amount: Optional[Decimal]
    currency: Optional[str]
    cost_center: Optional[str]
    project_code: Optional[str]
    external_ref: Optional[str]
    category: Optional[str]
    risk_level: Optional[str]
    request_status: str
    workflow_status: Optional[str]
    current_step_id: Optional[int]
    due_at: Optional[datetime]
    created_at: Optional[datetime]
    updated_at: Optional[datetime]
    closed_at: Optional[datetime]

    class Config:
        from_attributes = True


class StepResponse(BaseModel):
    id: int
    request_id: int
    step_no: int
    from_department_id: Optional[int]
    department_id: int
    assigned_to: Optional[int]
    status: str
    resume_status: Optional[str]
    created_by: Optional[int]
    created_at: Optional[datetime]
    started_at: Optional[datetime]
    completed_at: Optional[datetime]
    completion_notes: Optional[str]
    approved_at: Optional[datetime]
    approved_by: Optional[int]
    approval_notes: Optional[str]
    auto_approved: bool
    returned_at: Optional[datetime]
    return_reason: Optional[str]
    status_notes: Optional[str]
    due_at: Optional[datetime]
    related_step_id: Optional[int]

    class Config:
        from_attributes = True


class EventResponse(BaseModel):
    id: int
    step_id: Optional[int]
    event_type: str
    message: Optional[str]
    created_by: Optional[int]
    created_at: Optional[datetime]
    meta_data: Optional[dict]

    class Config:
        from_attributes = True


class CommentCreate(BaseModel):
    body: str
    step_id: Optional[int] = None


class CommentResponse(BaseModel):
    id: int
    request_id: int
    step_id: Optional[int]
    user_id: int
    body: str
    created_at: Optional[datetime]

    class Config:
        from_attributes = True


class AttachmentCreate(BaseModel):
    storage_path: str
    file_name: str
    storage_bucket: Optional[str] = None
    mime_type: Optional[str] = None
    byte_size: Optional[int] = None
    step_id: Optional[int] = None


class AttachmentResponse(BaseModel):
    id: int
    request_id: int
    step_id: Optional[int]
    uploaded_by: int
    storage_bucket: str
    storage_path: str
    file_name: str
    mime_type: Optional[str]
    byte_size: Optional[int]
    created_at: Optional[datetime]

    class Config:
        from_attributes = True


class SignedUrlResponse(BaseModel):
    attachment_id: int
    url: str
    expires_in: int


class RequestDetail(BaseModel):
    request: RequestResponse
    steps: List[StepResponse]
    events: List[EventResponse]
    comments: List[CommentResponse]
    attachments: List[AttachmentResponse]


class CurrentRequestRow(BaseModel):
    id: int
    reference_code: Optional[str]
    title: str
    request_type_id: int
    request_type_name: Optional[str]
    priority: int
    request_status: str
    workflow_status: Optional[str]
    requester_id: int
    origin_department_id: Optional[int]
    due_at: Optional[datetime]
    created_at: Optional[datetime]
    closed_at: Optional[datetime]
    request_age_hours: float
    request_age_days: float
    current_step_id: Optional[int]
    current_step_no: Optional[int]
    current_department_id: Optional[int]
    current_assigned_to: Optional[int]
    current_step_status: Optional[str]
    current_step_age_hours: Optional[float]
    current_step_age_days: Optional[float]


# ============= REQUEST ROUTES =============

@router.post("/requests", response_model=RequestResponse, status_code=status.HTTP_201_CREATED)
async def create_request(
    payload: RequestCreate,
    caller: CallerContext = Depends(get_caller_context),
    db: Session = Depends(get_db),
):
    """Submit a new request; step 1 lands in the target department."""
    request = workflow.create_request(db, caller, **payload.model_dump(exclude_none=True))
    db.commit()
    db.refresh(request)
    return request


@router.get("/requests", response_model=List[CurrentRequestRow])
async def list_requests(
    request_status: Optional[str] = Query(None, description="open, closed, rejected or archived"),
    limit: int = Query(100, le=500),
    offset: int = Query(0, ge=0),
    caller: CallerContext = Depends(get_caller_context),
    db: Session = Depends(get_db),
):
    return kpi.current_requests(db, caller, request_status=request_status, limit=limit, offset=offset)


@router.get("/requests/{request_id}", response_model=RequestDetail)
async def get_request(
    request_id: int,
    caller: CallerContext = Depends(get_caller_context),
    db: Session = Depends(get_db),
):
    request = get_visible_request(db, caller, request_id)
    steps = (
        db.query(RequestStep)
        .filter(RequestStep.request_id == request.id)
        .order_by(RequestStep.step_no)
        .all()
    )
    comments = (
        db.query(RequestComment)
        .filter(RequestComment.request_id == request.id)
        .order_by(RequestComment.created_at, RequestComment.id)
        .all()
    )
    attachments = (
        db.query(RequestAttachment)
        .filter(RequestAttachment.request_id == request.id)
        .order_by(RequestAttachment.created_at, RequestAttachment.id)
        .all()
    )
    return RequestDetail(
        request=RequestResponse.model_validate(request),
        steps=[StepResponse.model_validate(s) for s in steps],
        events=[EventResponse.model_validate(e) for e in list_events(db, request.id)],
        comments=[CommentResponse.model_validate(c) for c in comments],
        attachments=[AttachmentResponse.model_validate(a) for a in attachments],
    )


@router.patch("/requests/{request_id}", response_model=RequestResponse)
async def update_request(
    request_id: int,
    payload: RequestUpdate,
    caller: CallerContext = Depends(get_caller_context),
    db: Session = Depends(get_db),
):
    request = workflow.update_request_details(
        db, caller, request_id, **payload.model_dump(exclude_unset=True)
    )
    db.commit()
    db.refresh(request)
    return request


# ============= COMMENTS & ATTACHMENTS =============

@router.post(
    "/requests/{request_id}/comments",
    response_model=CommentResponse,
    status_code=status.HTTP_201_CREATED,
)
async def add_comment(
    request_id: int,
    payload: CommentCreate,
    caller: CallerContext = Depends(get_caller_context),
    db: Session = Depends(get_db),
):
    comment = workflow.add_comment(db, caller, request_id, payload.body, step_id=payload.step_id)
    db.commit()
    db.refresh(comment)
    return comment


@router.post(
    "/requests/{request_id}/attachments",
    response_model=AttachmentResponse,
    status_code=status.HTTP_201_CREATED,
)
async def add_attachment(
    request_id: int,
    payload: AttachmentCreate,
    caller: CallerContext = Depends(get_caller_context),
    db: Session = Depends(get_db),
):
    """Record an object already uploaded to the attachment bucket."""
    attachment = workflow.add_attachment(db, caller, request_id, **payload.model_dump())
    db.commit()
    db.refresh(attachment)
    return attachment


@router.get("/attachments/{attachment_id}/url", response_model=SignedUrlResponse)
async def get_attachment_url(
    attachment_id: int,
    caller: CallerContext = Depends(get_caller_context),
    db: Session = Depends(get_db),
):
    url = workflow.attachment_download_url(db, caller, attachment_id)
    return SignedUrlResponse(
        attachment_id=attachment_id,
        url=url,
        expires_in=settings.SIGNED_URL_EXPIRY_SECONDS,
    )
