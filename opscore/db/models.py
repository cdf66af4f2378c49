"""
SQLAlchemy ORM models for the operations core.
Every business row is scoped to a company for multi-tenancy.
"""
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import (
    Column, Integer, String, Text, Boolean, DateTime, Numeric,
    ForeignKey, Enum, JSON, UniqueConstraint, Index
)
from sqlalchemy.orm import relationship
import enum

from opscore.db.session import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_aware(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; every stored value is UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


# ============= ENUMS =============

class MembershipRole(str, enum.Enum):
    EMPLOYEE = "employee"
    MANAGER = "manager"
    CEO = "ceo"
    ADMIN = "admin"


class RequestStatus(str, enum.Enum):
    OPEN = "open"
    CLOSED = "closed"
    REJECTED = "rejected"
    ARCHIVED = "archived"


class StepStatus(str, enum.Enum):
    QUEUED = "queued"
    IN_PROGRESS = "in_progress"
    DONE_PENDING_APPROVAL = "done_pending_approval"
    ON_HOLD = "on_hold"
    INFO_REQUIRED = "info_required"
    APPROVED = "approved"
    RETURNED = "returned"
    REJECTED = "rejected"
    CANCELED = "canceled"


class ApprovalMode(str, enum.Enum):
    MANUAL = "manual"
    AUTO = "auto"


class OutboxStatus(str, enum.Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    SENT = "sent"
    FAILED = "failed"


class AuditAction(str, enum.Enum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


# Non-native enums: stored as VARCHAR, portable across
# PostgreSQL and the SQLite test database.
def enum_values(enum_cls):
    return [e.value for e in enum_cls]


MembershipRoleType = Enum(
    *enum_values(MembershipRole),
    name="membershiprole",
    native_enum=False,
    length=32,
)
RequestStatusType = Enum(
    *enum_values(RequestStatus),
    name="requeststatus",
    native_enum=False,
    length=32,
)
StepStatusType = Enum(
    *enum_values(StepStatus),
    name="stepstatus",
    native_enum=False,
    length=32,
)
ApprovalModeType = Enum(
    *enum_values(ApprovalMode),
    name="approvalmode",
    native_enum=False,
    length=16,
)
OutboxStatusType = Enum(
    *enum_values(OutboxStatus),
    name="outboxstatus",
    native_enum=False,
    length=16,
)


# ============= TENANCY & IDENTITY =============

class Company(Base):
    """Tenant. Never deleted."""
    __tablename__ = "companies"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), unique=True, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    departments = relationship("Department", back_populates="company")
    memberships = relationship("Membership", back_populates="company")


class Department(Base):
    __tablename__ = "departments"

    id = Column(Integer, primary_key=True, index=True)
    company_id = Column(Integer, ForeignKey("companies.id"), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    code = Column(String(50))
    accepts_external_requests = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    company = relationship("Company", back_populates="departments")

    __table_args__ = (
        UniqueConstraint("company_id", "name", name="uq_department_company_name"),
    )


class User(Base):
    """Local mirror of an identity-provider subject."""
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(255), unique=True, nullable=False, index=True)
    full_name = Column(String(255))
    job_title = Column(String(255))
    is_active = Column(Boolean, default=True, nullable=False)
    is_system_admin = Column(Boolean, default=False, nullable=False)
    active_company_id = Column(Integer, ForeignKey("companies.id"), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    memberships = relationship("Membership", back_populates="user")


class Membership(Base):
    """Role of a user within one company.

    admin and ceo carry no department; employee and manager require one.
    """
    __tablename__ = "memberships"

    id = Column(Integer, primary_key=True, index=True)
    company_id = Column(Integer, ForeignKey("companies.id"), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    role = Column(MembershipRoleType, nullable=False, default=MembershipRole.EMPLOYEE.value)
    department_id = Column(Integer, ForeignKey("departments.id"), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    company = relationship("Company", back_populates="memberships")
    user = relationship("User", back_populates="memberships")
    department = relationship("Department")

    __table_args__ = (
        UniqueConstraint("company_id", "user_id", name="uq_membership_company_user"),
    )


# ============= REQUEST CATALOG =============

class RequestType(Base):
    __tablename__ = "request_types"

    id = Column(Integer, primary_key=True, index=True)
    company_id = Column(Integer, ForeignKey("companies.id"), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    description = Column(Text)
    default_priority = Column(Integer, default=3, nullable=False)
    active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        UniqueConstraint("company_id", "name", name="uq_request_type_company_name"),
    )


class DepartmentRequestTypeSetting(Base):
    """Automation rule applied when a step of this type completes in this department."""
    __tablename__ = "department_request_type_settings"

    id = Column(Integer, primary_key=True, index=True)
    company_id = Column(Integer, ForeignKey("companies.id"), nullable=False, index=True)
    department_id = Column(Integer, ForeignKey("departments.id"), nullable=False)
    request_type_id = Column(Integer, ForeignKey("request_types.id"), nullable=False)
    approval_mode = Column(ApprovalModeType, nullable=False, default=ApprovalMode.MANUAL.value)
    auto_close = Column(Boolean, nullable=False, default=True)
    default_next_department_id = Column(Integer, ForeignKey("departments.id"), nullable=True)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("department_id", "request_type_id", name="uq_dept_request_type_setting"),
    )


# ============= REQUESTS & WORKFLOW =============

class Request(Base):
    __tablename__ = "requests"

    id = Column(Integer, primary_key=True, index=True)
    company_id = Column(Integer, ForeignKey("companies.id"), nullable=False, index=True)
    reference_code = Column(String(32), unique=True, index=True)
    title = Column(String(500), nullable=False)
    description = Column(Text)
    request_type_id = Column(Integer, ForeignKey("request_types.id"), nullable=False)
    priority = Column(Integer, nullable=False, default=3)
    requester_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    origin_department_id = Column(Integer, ForeignKey("departments.id"), nullable=True)

    # Business metadata
    amount = Column(Numeric(14, 2))
    currency = Column(String(3))
    cost_center = Column(String(100))
    project_code = Column(String(100))
    external_ref = Column(String(255))
    category = Column(String(100))
    risk_level = Column(String(20))

    request_status = Column(RequestStatusType, nullable=False, default=RequestStatus.OPEN.value, index=True)
    # Derived caches, refreshed with every step change
    workflow_status = Column(String(32))
    current_step_id = Column(Integer, ForeignKey("request_steps.id", use_alter=True, name="fk_request_current_step"), nullable=True)

    due_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), default=utcnow, index=True)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
    closed_at = Column(DateTime(timezone=True))

    request_type = relationship("RequestType")
    requester = relationship("User", foreign_keys=[requester_id])
    steps = relationship(
        "RequestStep",
        back_populates="request",
        foreign_keys="RequestStep.request_id",
        order_by="RequestStep.step_no",
    )

    __table_args__ = (
        Index("ix_requests_company_status", "company_id", "request_status"),
    )


class RequestStep(Base):
    __tablename__ = "request_steps"

    id = Column(Integer, primary_key=True, index=True)
    request_id = Column(Integer, ForeignKey("requests.id"), nullable=False, index=True)
    company_id = Column(Integer, ForeignKey("companies.id"), nullable=False, index=True)
    step_no = Column(Integer, nullable=False)
    from_department_id = Column(Integer, ForeignKey("departments.id"), nullable=True)
    department_id = Column(Integer, ForeignKey("departments.id"), nullable=False, index=True)
    assigned_to = Column(Integer, ForeignKey("users.id"), nullable=True, index=True)
    status = Column(StepStatusType, nullable=False, default=StepStatus.QUEUED.value, index=True)
    # Status to restore when leaving on_hold / info_required
    resume_status = Column(StepStatusType, nullable=True)

    created_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    started_at = Column(DateTime(timezone=True))
    completed_at = Column(DateTime(timezone=True))
    completion_notes = Column(Text)
    approved_at = Column(DateTime(timezone=True))
    approved_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    approval_notes = Column(Text)
    auto_approved = Column(Boolean, default=False, nullable=False)
    returned_at = Column(DateTime(timezone=True))
    return_reason = Column(Text)
    status_notes = Column(Text)
    status_changed_at = Column(DateTime(timezone=True), default=utcnow)
    due_at = Column(DateTime(timezone=True))
    related_step_id = Column(Integer, ForeignKey("request_steps.id"), nullable=True)

    request = relationship("Request", back_populates="steps", foreign_keys=[request_id])
    department = relationship("Department", foreign_keys=[department_id])
    assignee = relationship("User", foreign_keys=[assigned_to])

    __table_args__ = (
        UniqueConstraint("request_id", "step_no", name="uq_request_step_no"),
    )


class RequestComment(Base):
    """Immutable comment on a request (optionally tied to a step)."""
    __tablename__ = "request_comments"

    id = Column(Integer, primary_key=True, index=True)
    request_id = Column(Integer, ForeignKey("requests.id"), nullable=False, index=True)
    step_id = Column(Integer, ForeignKey("request_steps.id"), nullable=True)
    company_id = Column(Integer, ForeignKey("companies.id"), nullable=False)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    body = Column(Text, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)


class RequestAttachment(Base):
    """Attachment metadata. The bytes live in the external object store."""
    __tablename__ = "request_attachments"

    id = Column(Integer, primary_key=True, index=True)
    request_id = Column(Integer, ForeignKey("requests.id"), nullable=False, index=True)
    step_id = Column(Integer, ForeignKey("request_steps.id"), nullable=True)
    company_id = Column(Integer, ForeignKey("companies.id"), nullable=False)
    uploaded_by = Column(Integer, ForeignKey("users.id"), nullable=False)
    storage_bucket = Column(String(255), nullable=False, default="request-attachments")
    storage_path = Column(String(1024), nullable=False)
    file_name = Column(String(500), nullable=False)
    mime_type = Column(String(255))
    byte_size = Column(Integer)
    created_at = Column(DateTime(timezone=True), default=utcnow)


# ============= AUDIT & EVENTS =============

class AuditLog(Base):
    """Append-only row snapshot per mutation."""
    __tablename__ = "audit_log"

    id = Column(Integer, primary_key=True, index=True)
    company_id = Column(Integer, ForeignKey("companies.id"), nullable=False)
    table_name = Column(String(100), nullable=False, index=True)
    action = Column(String(10), nullable=False)
    record_pk = Column(String(64))
    request_id = Column(Integer, ForeignKey("requests.id"), nullable=True, index=True)
    step_id = Column(Integer, ForeignKey("request_steps.id"), nullable=True)
    old_data = Column(JSON)
    new_data = Column(JSON)
    changed_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    changed_at = Column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        Index("ix_audit_log_company_changed_at", "company_id", "changed_at"),
    )


class RequestEvent(Base):
    """Human-readable timeline entry for a request."""
    __tablename__ = "request_events"

    id = Column(Integer, primary_key=True, index=True)
    request_id = Column(Integer, ForeignKey("requests.id"), nullable=False, index=True)
    step_id = Column(Integer, ForeignKey("request_steps.id"), nullable=True)
    company_id = Column(Integer, ForeignKey("companies.id"), nullable=False)
    event_type = Column(String(50), nullable=False)
    message = Column(Text)
    created_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    meta_data = Column(JSON, default=dict)


# ============= NOTIFICATIONS =============

class NotificationOutbox(Base):
    __tablename__ = "notification_outbox"

    id = Column(Integer, primary_key=True, index=True)
    company_id = Column(Integer, ForeignKey("companies.id"), nullable=False, index=True)
    channel = Column(String(20), nullable=False, default="email")
    to_email = Column(String(255))
    subject = Column(String(500))
    body = Column(Text)
    status = Column(OutboxStatusType, nullable=False, default=OutboxStatus.QUEUED.value)
    attempts = Column(Integer, nullable=False, default=0)
    next_attempt_at = Column(DateTime(timezone=True), default=utcnow)
    locked_at = Column(DateTime(timezone=True))
    locked_by = Column(String(100))
    error = Column(Text)
    sent_at = Column(DateTime(timezone=True))
    request_id = Column(Integer, ForeignKey("requests.id"), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        Index("ix_outbox_status_next_attempt", "status", "next_attempt_at"),
    )
