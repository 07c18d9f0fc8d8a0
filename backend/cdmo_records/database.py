"""Database engine, session factory and request-scoped session dependency."""
from __future__ import annotations

from collections.abc import Iterator

from fastapi import Request
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from .config import settings

Base = declarative_base()


class Database:
    """Owns one engine and its session factory for the lifetime of a process."""

    def __init__(self, url: str, *, pool_size: int | None = None, max_overflow: int | None = None):
        engine_kwargs: dict = {"pool_pre_ping": True}
        if url.startswith("sqlite"):
            # Sessions are handed across threads by the ASGI server and the test client.
            engine_kwargs["connect_args"] = {"check_same_thread": False, "timeout": 30}
        else:
            engine_kwargs["pool_size"] = pool_size or settings.DATABASE_POOL_SIZE
            engine_kwargs["max_overflow"] = max_overflow or settings.DATABASE_MAX_OVERFLOW

        self.url = url
        self.engine = create_engine(url, **engine_kwargs)
        self.SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=self.engine)

    @classmethod
    def from_settings(cls) -> "Database":
        return cls(settings.database_url)

    def session(self) -> Session:
        return self.SessionLocal()

    def create_all(self) -> None:
        Base.metadata.create_all(bind=self.engine)

    def dispose(self) -> None:
        self.engine.dispose()


def get_db(request: Request) -> Iterator[Session]:
    """Yield a session bound to the application's database."""
    db = request.app.state.database.session()
    try:
        yield db
    finally:
        db.close()
