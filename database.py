"""
Database Configuration and Session Management
============================================

Main database engine, session factory, and table creation for the payment service.
"""

import logging
from contextlib import contextmanager

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, Session

from config import Config
from models import Base

logger = logging.getLogger(__name__)


def build_engine(database_url: str, echo: bool = False) -> Engine:
    """Create an engine with settings appropriate for the backend"""
    if database_url.startswith("sqlite"):
        engine = create_engine(
            database_url,
            echo=echo,
            connect_args={
                "check_same_thread": False,  # sessions are handed across worker threads
                "timeout": 30,               # wait on SQLite's writer lock instead of failing
            },
        )

        @event.listens_for(engine, "connect")
        def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        return engine

    return create_engine(
        database_url,
        pool_size=7,
        max_overflow=15,
        pool_pre_ping=True,    # Validate connections before use
        pool_recycle=3600,     # Recycle connections every hour
        pool_timeout=30,
        echo=echo,
    )


def build_session_factory(bind: Engine) -> sessionmaker:
    """Session factory; objects stay readable after commit for result building"""
    return sessionmaker(
        bind=bind,
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,
    )


engine = build_engine(Config.DATABASE_URL, echo=Config.DATABASE_ECHO)

SessionLocal = build_session_factory(engine)


def create_tables(bind: Engine = None):
    """Create all tables registered on the declarative base"""
    target = bind or engine
    Base.metadata.create_all(bind=target)
    logger.info("✅ Database tables created")


def get_session() -> Session:
    """Get a new database session"""
    return SessionLocal()


@contextmanager
def managed_session(session_factory: sessionmaker = None):
    """Sync context manager for database sessions"""
    session = (session_factory or SessionLocal)()
    try:
        yield session
        session.commit()
    except Exception as e:
        session.rollback()
        logger.error(f"Database session error: {e}")
        raise
    finally:
        session.close()
