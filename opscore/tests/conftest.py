"""
Shared fixtures: an in-memory SQLite database per test and a tenant with
three departments and one user per role.
"""
import os

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["DEBUG"] = "true"
os.environ["SECRET_KEY"] = "test-secret-key-0123456789abcdef0123456789"
os.environ["OUTBOX_DRY_RUN"] = "true"

import pytest
from sqlalchemy.orm import Session

from opscore.core.rbac import CallerContext, load_caller_context
from opscore.db.session import Base, SessionLocal, engine
from opscore.db import models  # noqa - register tables on Base.metadata
from opscore.db.models import (
    Company, Department, Membership, MembershipRole, RequestType, User,
)


class Tenant:
    """Company fixture with handles to its departments, users and type."""

    def __init__(self, db: Session):
        self.db = db
        self.company = None
        self.departments = {}
        self.users = {}
        self.request_type = None

    def dept(self, code: str) -> Department:
        return self.departments[code]

    def user(self, key: str) -> User:
        return self.users[key]

    def ctx(self, key: str) -> CallerContext:
        return load_caller_context(self.db, self.users[key].id)


def build_tenant(db: Session, name: str = "Acme Corp", prefix: str = "") -> Tenant:
    tenant = Tenant(db)
    company = Company(name=name)
    db.add(company)
    db.flush()
    tenant.company = company

    for code, external in (("D1", True), ("D2", True), ("D3", False)):
        department = Department(
            company_id=company.id,
            name=f"Department {code}",
            code=code,
            accepts_external_requests=external,
        )
        db.add(department)
        tenant.departments[code] = department
    db.flush()

    people = [
        ("admin", MembershipRole.ADMIN, None),
        ("ceo", MembershipRole.CEO, None),
        ("mgr1", MembershipRole.MANAGER, "D1"),
        ("emp1", MembershipRole.EMPLOYEE, "D1"),
        ("emp1b", MembershipRole.EMPLOYEE, "D1"),
        ("mgr2", MembershipRole.MANAGER, "D2"),
        ("emp2", MembershipRole.EMPLOYEE, "D2"),
        ("mgr3", MembershipRole.MANAGER, "D3"),
        ("emp3", MembershipRole.EMPLOYEE, "D3"),
    ]
    for key, role, dept_code in people:
        user = User(
            email=f"{prefix}{key}@acme.test",
            full_name=f"{prefix}{key}".title(),
            is_active=True,
            active_company_id=company.id,
        )
        db.add(user)
        db.flush()
        db.add(Membership(
            company_id=company.id,
            user_id=user.id,
            role=role.value,
            department_id=tenant.departments[dept_code].id if dept_code else None,
        ))
        tenant.users[key] = user

    tenant.request_type = RequestType(
        company_id=company.id, name="General", description="Anything", default_priority=3
    )
    db.add(tenant.request_type)
    db.commit()
    return tenant


@pytest.fixture
def db_session():
    """Fresh schema for every test."""
    Base.metadata.create_all(bind=engine)
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def tenant(db_session: Session) -> Tenant:
    return build_tenant(db_session)


@pytest.fixture
def other_tenant(db_session: Session) -> Tenant:
    return build_tenant(db_session, name="Globex", prefix="globex-")


@pytest.fixture
def sys_admin(db_session: Session) -> User:
    user = User(email="root@opscore.test", full_name="Root", is_active=True, is_system_admin=True)
    db_session.add(user)
    db_session.commit()
    return user


@pytest.fixture
def new_request(db_session: Session, tenant: Tenant):
    """Factory: create and commit a request in a department."""
    from opscore.services import workflow

    def _create(requester: str = "emp1", department: str = "D1", **kwargs):
        kwargs.setdefault("title", "New laptop")
        kwargs.setdefault("request_type_id", tenant.request_type.id)
        request = workflow.create_request(
            db_session, tenant.ctx(requester),
            department_id=tenant.dept(department).id,
            **kwargs,
        )
        db_session.commit()
        return request

    return _create
