from typing import Any, Callable, Iterator, TypeVar

from fastapi import Request
from starlette.concurrency import run_in_threadpool
from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker

Base = declarative_base()

T = TypeVar("T")


def create_db_engine(database_url: str) -> Engine:
    """Create an engine; SQLite gets cross-thread access and enforced foreign keys."""
    if database_url.startswith("sqlite"):
        engine = create_engine(database_url, connect_args={"check_same_thread": False})

        @event.listens_for(engine, "connect")
        def _enable_foreign_keys(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        return engine

    return create_engine(database_url, pool_pre_ping=True)


def create_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)


def init_db(engine: Engine) -> None:
    # Register the tables on Base.metadata
    from sitechat.models import chat  # noqa: F401

    Base.metadata.create_all(bind=engine)


def get_db(request: Request) -> Iterator[Session]:
    """FastAPI dependency yielding a session bound to the app's engine."""
    db = request.app.state.session_factory()
    try:
        yield db
    finally:
        db.close()


async def run_db(session_factory: sessionmaker, fn: Callable[..., T], *args: Any) -> T:
    """Run `fn(db, *args)` in the threadpool with a fresh session."""
    def call() -> T:
        with session_factory() as db:
            return fn(db, *args)

    return await run_in_threadpool(call)
