import logging
from contextlib import contextmanager
from typing import Iterator, Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from .errors import LedgerServiceError

logger = logging.getLogger(__name__)


class Storage:
    """
    Persistence handle injected into every service.

    Each ``transaction()`` is one unit of work: commit when the block exits
    normally, roll back on any exception. A ``LedgerServiceError`` flagged
    with ``persist_changes`` commits its writes before propagating.
    """

    def __init__(self, database_url: Optional[str] = None, engine: Optional[Engine] = None):
        if engine is None:
            if database_url is None:
                raise ValueError("database_url or engine is required")
            connect_args = {"check_same_thread": False} if database_url.startswith("sqlite") else {}
            engine = create_engine(database_url, connect_args=connect_args, pool_pre_ping=True)
        self.engine = engine
        self.session_factory = sessionmaker(bind=engine, expire_on_commit=False)
        if database_url is not None and self.dialect == "sqlite":
            logger.warning(
                "SQLite ignores SELECT ... FOR UPDATE; concurrent requests are only guarded by "
                "conditional updates. Use PostgreSQL or MySQL in production."
            )

    @classmethod
    def in_memory(cls, migrate: bool = True) -> "Storage":
        engine = create_engine(
            "sqlite://",
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
        storage = cls(engine=engine)
        if migrate:
            from .migrations import run_migrations
            run_migrations(engine)
        return storage

    @property
    def dialect(self) -> str:
        return self.engine.dialect.name

    @contextmanager
    def transaction(self) -> Iterator[Session]:
        session = self.session_factory()
        try:
            yield session
            session.commit()
        except LedgerServiceError as e:
            if e.persist_changes:
                session.commit()
            else:
                session.rollback()
            raise
        except Exception:
            logger.exception("Transaction rolled back")
            session.rollback()
            raise
        finally:
            session.close()
