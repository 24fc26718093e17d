"""
Database connection and session management.
Provides SQLAlchemy engine, session factory, and base class.
Connection pool usage is exported as Prometheus gauges.
"""
import logging
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker, declarative_base
from sqlalchemy.pool import Pool
from prometheus_client import Gauge
from core.config import settings

logger = logging.getLogger(__name__)

db_pool_connections_checked_out = Gauge(
    "db_pool_connections_checked_out",
    "Number of database connections currently checked out of the pool",
    labelnames=["instance"]
)


def build_engine(database_url: str):
    """
    Create a SQLAlchemy engine for the given URL.

    Pool sizing only applies to server databases; SQLite (tests, local
    development) keeps SQLAlchemy's default pool and allows cross-thread use.
    """
    if database_url.startswith("sqlite"):
        return create_engine(database_url, connect_args={"check_same_thread": False})
    return create_engine(
        database_url,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
        pool_pre_ping=settings.db_pool_pre_ping,
        pool_recycle=settings.db_pool_recycle,
        echo=settings.log_level == "DEBUG"
    )


engine = build_engine(settings.database_url)


@event.listens_for(Pool, "checkout")
def receive_checkout(dbapi_conn, connection_record, connection_proxy):
    """Track connections handed out by the pool."""
    db_pool_connections_checked_out.labels(instance="api").inc()


@event.listens_for(Pool, "checkin")
def receive_checkin(dbapi_conn, connection_record):
    """Track connections returned to the pool."""
    db_pool_connections_checked_out.labels(instance="api").dec()


# Create SessionLocal class for database sessions
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Create Base class for models
Base = declarative_base()


def init_db() -> None:
    """
    Initialize database by creating all tables.
    Should be called once during application setup.
    """
    from db import models  # noqa: F401  (registers models with Base)
    Base.metadata.create_all(bind=engine)
    logger.info("Database tables created successfully")


def seed_db() -> None:
    """
    Seed the database with a demo tenant, its admin and two members.
    All users get the password 'password123'. No-op if the tenant exists.
    """
    from core.security import hash_password
    from db.models import Tenant, UserRole
    from db.repository import Repository

    db = SessionLocal()
    try:
        if db.query(Tenant).filter(Tenant.slug == "demo").first():
            logger.info("Database already seeded")
            return

        repository = Repository(db)
        password_hash = hash_password("password123")
        tenant, admin = repository.create_tenant_with_admin(
            name="Demo",
            slug="demo",
            domain="demo.local",
            admin_email="admin@demo.local",
            admin_password_hash=password_hash,
            admin_display_name="Demo Admin"
        )
        for i in range(1, 3):
            repository.create_user(
                tenant_id=tenant.id,
                email=f"user{i}@demo.local",
                password_hash=password_hash,
                display_name=f"Demo User {i}",
                role=UserRole.MEMBER
            )
        logger.info(f"Database seeded with tenant {tenant.id} (admin {admin.id})")
    finally:
        db.close()
