"""
Startup bootstrap and demo data.

`bootstrap_system_admin` is the production path: it grants the global
system-admin flag to SYSTEM_ADMIN_BOOTSTRAP_EMAIL. `seed_demo_data` builds a
demo tenant and only runs with SEED_DEMO=true (which requires DEBUG).
"""
from opscore.core.config import settings
from opscore.core.logging import get_logger
from opscore.db.models import (
    ApprovalMode, Company, Department, DepartmentRequestTypeSetting, Membership,
    MembershipRole, RequestType, User, utcnow,
)
from opscore.db.session import SessionLocal, get_db_context

logger = get_logger(__name__)

DEMO_COMPANY = "Demo Operations (DEMO)"


def bootstrap_system_admin(email: str = None) -> bool:
    """
    Mark the bootstrap user as system admin, creating the local profile if needed.

    Idempotent: does nothing when the flag is already set.
    """
    email = (email or settings.SYSTEM_ADMIN_BOOTSTRAP_EMAIL or "").strip().lower()
    if not email:
        logger.info("System admin bootstrap: SYSTEM_ADMIN_BOOTSTRAP_EMAIL not set. Skipping.")
        return False

    with get_db_context() as db:
        user = db.query(User).filter(User.email == email).first()
        if user is None:
            user = User(email=email, full_name="System Administrator", is_active=True)
            db.add(user)
        elif user.is_system_admin:
            return False
        user.is_system_admin = True
        user.updated_at = utcnow()

    logger.info(f"System admin flag granted to {email}")
    return True


def seed_demo_data():
    """
    Seed a demo company for development/testing ONLY.

    WARNING: creates predictable demo accounts.
    NEVER enable SEED_DEMO=true in production!
    """
    db = SessionLocal()
    try:
        if db.query(Company).filter(Company.name == DEMO_COMPANY).first():
            logger.info("Demo data already exists. Skipping...")
            return

        company = Company(name=DEMO_COMPANY)
        db.add(company)
        db.flush()

        departments = {}
        for name, code, external in [
            ("Operations", "OPS", True),
            ("Finance", "FIN", True),
            ("Legal", "LEG", False),
        ]:
            department = Department(
                company_id=company.id, name=name, code=code, accepts_external_requests=external
            )
            db.add(department)
            departments[code] = department
        db.flush()

        users_data = [
            ("admin@demo.local", "Demo Admin", MembershipRole.ADMIN, None),
            ("ceo@demo.local", "Demo CEO", MembershipRole.CEO, None),
            ("ops.manager@demo.local", "Olivia Ops", MembershipRole.MANAGER, "OPS"),
            ("ops.employee@demo.local", "Oscar Ops", MembershipRole.EMPLOYEE, "OPS"),
            ("fin.manager@demo.local", "Fiona Finance", MembershipRole.MANAGER, "FIN"),
            ("fin.employee@demo.local", "Felix Finance", MembershipRole.EMPLOYEE, "FIN"),
            ("legal.manager@demo.local", "Leah Legal", MembershipRole.MANAGER, "LEG"),
        ]
        for email, full_name, role, dept_code in users_data:
            user = User(email=email, full_name=full_name, is_active=True, active_company_id=company.id)
            db.add(user)
            db.flush()
            db.add(Membership(
                company_id=company.id,
                user_id=user.id,
                role=role.value,
                department_id=departments[dept_code].id if dept_code else None,
            ))

        purchase = RequestType(company_id=company.id, name="Purchase", default_priority=3)
        access = RequestType(company_id=company.id, name="Access request", default_priority=2)
        db.add_all([purchase, access])
        db.flush()

        # Access requests are auto-approved by Operations and closed
        db.add(DepartmentRequestTypeSetting(
            company_id=company.id,
            department_id=departments["OPS"].id,
            request_type_id=access.id,
            approval_mode=ApprovalMode.AUTO.value,
            auto_close=True,
        ))

        db.commit()
        logger.info("Demo data seeded: 1 company, 3 departments, 7 users, 2 request types")
    except Exception as e:
        db.rollback()
        logger.error(f"Demo seeding error: {e}")
    finally:
        db.close()


if __name__ == "__main__":
    from opscore.db.session import init_db
    init_db()
