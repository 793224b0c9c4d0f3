"""
Database connection and session management.
Provides SQLAlchemy engine, session factory, and base class.
Connection pool usage is exported as Prometheus metrics.
"""
import os
import logging
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker, declarative_base
from sqlalchemy.pool import Pool
from prometheus_client import Gauge, Counter
from core.config import settings

logger = logging.getLogger(__name__)

db_pool_connections_checked_out = Gauge(
    "db_pool_connections_checked_out",
    "Number of database connections currently checked out of the pool",
    labelnames=["instance"]
)

db_connections_opened_total = Counter(
    "db_connections_opened_total",
    "Total number of DBAPI connections opened",
    labelnames=["instance"]
)

# Production connection pool settings (ignored for SQLite)
DB_POOL_SIZE = int(os.getenv("DB_POOL_SIZE", "20"))
DB_MAX_OVERFLOW = int(os.getenv("DB_MAX_OVERFLOW", "10"))
DB_POOL_PRE_PING = os.getenv("DB_POOL_PRE_PING", "true").lower() == "true"
DB_POOL_RECYCLE = int(os.getenv("DB_POOL_RECYCLE", "3600"))  # 1 hour


def build_engine(database_url: str):
    """
    Create an engine for the given URL.

    SQLite connections are shared across the Starlette threadpool, so the
    same-thread check is disabled; every other backend gets the pooled setup.
    """
    if database_url.startswith("sqlite"):
        return create_engine(
            database_url,
            connect_args={"check_same_thread": False},
            echo=settings.log_level == "DEBUG"
        )
    return create_engine(
        database_url,
        pool_size=DB_POOL_SIZE,
        max_overflow=DB_MAX_OVERFLOW,
        pool_pre_ping=DB_POOL_PRE_PING,
        pool_recycle=DB_POOL_RECYCLE,
        echo=settings.log_level == "DEBUG"
    )


engine = build_engine(settings.database_url)


@event.listens_for(Pool, "connect")
def receive_connect(dbapi_conn, connection_record):
    """Track database connections."""
    db_connections_opened_total.labels(instance="api").inc()


@event.listens_for(Pool, "checkout")
def receive_checkout(dbapi_conn, connection_record, connection_proxy):
    db_pool_connections_checked_out.labels(instance="api").inc()


@event.listens_for(Pool, "checkin")
def receive_checkin(dbapi_conn, connection_record):
    db_pool_connections_checked_out.labels(instance="api").dec()


SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def init_db() -> None:
    """
    Initialize database by creating all tables.
    Should be called once during application setup.
    """
    from db import models  # noqa: F401  Import models to register them with Base
    Base.metadata.create_all(bind=engine)
    logger.info("Database tables created successfully")
