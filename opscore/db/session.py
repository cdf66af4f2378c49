"""
Database session management with SQLAlchemy.
"""
from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker, Session
from sqlalchemy.pool import StaticPool
from typing import Generator
from contextlib import contextmanager

from opscore.core.config import settings
from opscore.core.logging import get_logger

logger = get_logger(__name__)


def _engine_kwargs(url: str) -> dict:
    """Pool options per backend. SQLite (tests, local tooling) has no pool sizing."""
    if url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
        return kwargs
    return {
        "pool_pre_ping": True,
        "pool_size": 10,
        "max_overflow": 20,
        "pool_timeout": 30,
        "pool_recycle": 1800,
    }


engine = create_engine(settings.DATABASE_URL, **_engine_kwargs(settings.DATABASE_URL))

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def get_db() -> Generator[Session, None, None]:
    """Dependency for getting database session.

    Routes commit explicitly; an exception leaves the transaction
    uncommitted and close() rolls it back.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def get_db_context() -> Generator[Session, None, None]:
    """Context manager for database session (workers, scripts)."""
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def init_db():
    """
    Initialize database connection and run startup tasks.

    IMPORTANT: Schema is managed by Alembic migrations, NOT create_all().
    Run `alembic upgrade head` before first startup.

    Startup order:
    1. Run preflight check (validates DB connectivity)
    2. Verify schema exists (tables were created by Alembic)
    3. Grant the system-admin flag to SYSTEM_ADMIN_BOOTSTRAP_EMAIL
    4. Seed demo data ONLY if SEED_DEMO=true (never in production)
    """
    from sqlalchemy import inspect, text

    from opscore.db.preflight import run_db_preflight
    run_db_preflight()

    from opscore.db import models  # noqa
    from opscore.db.seed import bootstrap_system_admin, seed_demo_data

    inspector = inspect(engine)
    existing_tables = inspector.get_table_names()
    required_tables = ["companies", "users", "memberships", "requests", "request_steps"]

    missing = [t for t in required_tables if t not in existing_tables]
    if missing:
        logger.error(
            f"Database schema missing tables {missing}. Run `alembic upgrade head`."
        )
        if settings.DEBUG:
            logger.warning("DEBUG=true: auto-creating tables (NOT for production!)")
            Base.metadata.create_all(bind=engine)
        else:
            return
    else:
        logger.info(f"Database schema verified: {len(existing_tables)} tables found")

    if "alembic_version" in existing_tables:
        try:
            with engine.connect() as conn:
                version = conn.execute(text("SELECT version_num FROM alembic_version")).scalar()
                logger.info(f"Alembic migration version: {version}")
        except Exception as e:
            logger.warning(f"Could not read migration version: {e}")

    bootstrap_system_admin()

    if settings.SEED_DEMO:
        logger.info("SEED_DEMO=true: seeding demo data")
        seed_demo_data()
