"""Database connection and session management."""

from sqlalchemy import create_engine, event
from sqlalchemy.orm import DeclarativeBase, sessionmaker

from metering.config import settings


def _enable_immediate_transactions(engine) -> None:
    """Open every SQLite transaction with BEGIN IMMEDIATE.

    The write lock is taken when the transaction starts, so a read-check-write
    sequence inside one transaction is serialized against other writers.
    """

    @event.listens_for(engine, "connect")
    def _disable_pysqlite_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def _build_engine(database_url: str):
    """Create a SQLAlchemy engine with appropriate configuration."""
    connect_args = {}
    if database_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
        connect_args["timeout"] = settings.SQLITE_BUSY_TIMEOUT_SECONDS
        engine = create_engine(database_url, connect_args=connect_args)
        _enable_immediate_transactions(engine)
        return engine
    return create_engine(database_url, connect_args=connect_args, pool_pre_ping=True)


engine = _build_engine(settings.DATABASE_URL)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


class Base(DeclarativeBase):
    """Declarative base for all ORM models."""

    pass


def get_db():
    """Dependency that provides a database session and ensures cleanup."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
