"""
Database Session Management - 数据库会话管理
Provides database initialization and session context management.
"""

import logging
from contextlib import contextmanager
from typing import Optional, Generator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, Session

from payroll_ledger.config import get_settings
from .models import Base

logger = logging.getLogger(__name__)


# Global engine and session factory
_engine: Optional[Engine] = None
_SessionLocal: Optional[sessionmaker] = None


def init_database(db_path: Optional[str] = None) -> Engine:
    """
    Initialize the SQLite database engine and session factory.
    初始化数据库

    Every transaction starts with ``BEGIN IMMEDIATE`` so that concurrent
    writers queue on the database lock instead of failing on lock upgrade.

    Args:
        db_path: Optional path to the database file

    Returns:
        SQLAlchemy Engine instance
    """
    global _engine, _SessionLocal

    if _engine is not None:
        _engine.dispose()

    settings = get_settings()
    if db_path is None:
        db_path = settings.database_path

    database_url = f"sqlite:///{db_path}"

    _engine = create_engine(
        database_url,
        echo=settings.sql_debug,
        connect_args={
            "check_same_thread": False,  # Allow multi-threaded access
            "timeout": settings.db_busy_timeout,
        },
    )

    @event.listens_for(_engine, "connect")
    def set_sqlite_pragma(dbapi_connection, connection_record):
        # Let SQLAlchemy emit BEGIN itself (see begin_immediate)
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(_engine, "begin")
    def begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    # Create session factory
    _SessionLocal = sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=_engine
    )

    logger.info("database_initialized", extra={"db_path": db_path})
    return _engine


def create_all_tables(engine: Optional[Engine] = None) -> None:
    """
    Create all database tables.
    创建所有数据库表

    Args:
        engine: Optional engine instance (uses global if not provided)
    """
    if engine is None:
        engine = get_engine()

    Base.metadata.create_all(bind=engine)


def get_engine() -> Engine:
    """
    Get the global database engine, initializing it with defaults on first use.

    Returns:
        SQLAlchemy Engine instance
    """
    global _engine

    if _engine is None:
        init_database()

    return _engine


def get_session_factory() -> sessionmaker:
    """Get the session factory."""
    global _SessionLocal

    if _SessionLocal is None:
        get_engine()  # This will initialize the session factory

    return _SessionLocal


@contextmanager
def session_scope() -> Generator[Session, None, None]:
    """
    Provide a transactional scope around a series of operations.
    提供事务性会话上下文管理器

    Usage:
        with session_scope() as session:
            employee = EmployeeRepository.get_by_employee_no(session, "EMP0001")
            # Automatically commits on success, rollbacks on exception

    Yields:
        SQLAlchemy Session instance
    """
    session_factory = get_session_factory()
    session = session_factory()

    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def close_engine() -> None:
    """
    Close the database engine and cleanup resources.
    关闭数据库引擎
    """
    global _engine, _SessionLocal

    if _engine is not None:
        _engine.dispose()
        _engine = None
        _SessionLocal = None
