# hubnet/database/session.py
import logging

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from ..config import settings
from .models import Base

logger = logging.getLogger(__name__)


def create_db_engine(url: str, **kwargs) -> Engine:
    """Create an engine; SQLite gets cross-thread access and enforced foreign keys"""
    if url.startswith("sqlite"):
        connect_args = kwargs.pop("connect_args", {})
        connect_args.setdefault("check_same_thread", False)
        kwargs["connect_args"] = connect_args

    db_engine = create_engine(url, **kwargs)

    if url.startswith("sqlite"):
        @event.listens_for(db_engine, "connect")
        def _enable_foreign_keys(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    return db_engine


engine = create_db_engine(settings.DATABASE_URL)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def init_db(bind: Engine = None) -> None:
    """Create all tables"""
    Base.metadata.create_all(bind=bind or engine)
    logger.info("Database schema ready")


def get_db():
    """FastAPI dependency yielding a session per request"""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_db_session() -> Session:
    """Session for code outside a request (caller closes it)"""
    return SessionLocal()
