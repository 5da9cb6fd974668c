from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from finchat.models import Base


class Database:
    """
    Owns the engine + session factory. Build one per process and hand it to
    the stores; call dispose() on shutdown to release the connection pool.
    """

    def __init__(self, url: str, echo: bool = False):
        kwargs = {"echo": echo, "pool_pre_ping": True}
        if url.startswith("sqlite"):
            kwargs["connect_args"] = {"check_same_thread": False}
            # in-memory sqlite lives inside a single connection
            if url in ("sqlite://", "sqlite:///:memory:"):
                kwargs["poolclass"] = StaticPool

        self.url = url
        self.engine = create_engine(url, **kwargs)
        self.SessionLocal = sessionmaker(bind=self.engine, autoflush=False, expire_on_commit=False)

    def create_all(self) -> None:
        Base.metadata.create_all(self.engine)

    def drop_all(self) -> None:
        Base.metadata.drop_all(self.engine)

    def dispose(self) -> None:
        self.engine.dispose()

    @contextmanager
    def session(self) -> Iterator[Session]:
        """Read-only / caller-managed session, always closed afterwards."""
        db = self.SessionLocal()
        try:
            yield db
        finally:
            db.close()

    @contextmanager
    def transaction(self) -> Iterator[Session]:
        """
        Session inside one transaction: commits if the block succeeds,
        rolls back (and re-raises) otherwise.
        """
        db = self.SessionLocal()
        try:
            with db.begin():
                yield db
        finally:
            db.close()
