"""Database connection and session management."""
from contextlib import contextmanager

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError, ProgrammingError
from sqlalchemy.orm import sessionmaker
from sqlmodel import Session, SQLModel

from .errors import StorageUnavailable
from .logging_config import get_logger

# Table classes must be imported so SQLModel.metadata knows about them.
from . import database  # noqa: F401

logger = get_logger(__name__)


def make_engine(database_url: str) -> Engine:
    """Create an engine with settings suited to the backend."""
    engine_kwargs = {
        "echo": False,
        "pool_pre_ping": True,
    }

    if "sqlite" in database_url:
        engine_kwargs["connect_args"] = {"check_same_thread": False}
    elif "postgresql" in database_url:
        engine_kwargs["pool_size"] = 10
        engine_kwargs["max_overflow"] = 20

    return create_engine(database_url, **engine_kwargs)


def make_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=engine,
        class_=Session,
        expire_on_commit=False,
    )


def init_db(engine: Engine):
    """Initialize database tables."""
    SQLModel.metadata.create_all(engine)


@contextmanager
def storage_session(session_factory: sessionmaker):
    """Yield a session; backing-store faults surface as StorageUnavailable."""
    try:
        with session_factory() as session:
            yield session
    except (OperationalError, ProgrammingError) as exc:
        logger.warning("Storage unavailable: %s", exc.orig if exc.orig is not None else exc)
        raise StorageUnavailable(str(exc.orig if exc.orig is not None else exc)) from exc
