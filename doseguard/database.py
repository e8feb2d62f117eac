from contextlib import contextmanager

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from .config import get_settings
from .models.base import Base

_engine = None
_SessionLocal = None


def get_engine():
    global _engine
    if _engine is not None:
        return _engine
    settings = get_settings()
    connect_args = {}
    kwargs = {"pool_pre_ping": True, "future": True}
    if settings.DATABASE_URL.startswith("sqlite"):
        # Sweeper thread and request threads share the same file database
        connect_args = {"check_same_thread": False}
    else:
        kwargs["pool_size"] = settings.DB_POOL_SIZE
    kwargs["connect_args"] = connect_args
    _engine = create_engine(settings.DATABASE_URL, **kwargs)
    return _engine


def get_sessionmaker():
    global _SessionLocal
    if _SessionLocal is not None:
        return _SessionLocal
    _SessionLocal = sessionmaker(
        bind=get_engine(), autocommit=False, autoflush=False, expire_on_commit=False
    )
    return _SessionLocal


def reset_engine() -> None:
    global _engine, _SessionLocal
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _SessionLocal = None


def init_db() -> None:
    Base.metadata.create_all(bind=get_engine())


@contextmanager
def session_scope():
    """Session for background work outside a request."""
    db: Session = get_sessionmaker()()
    try:
        yield db
    finally:
        db.close()


def get_db():
    SessionLocal = get_sessionmaker()
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
