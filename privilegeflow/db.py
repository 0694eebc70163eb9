"""
Database plumbing: declarative base, engine construction and the
transactional ``session_scope()`` every workflow write goes through.

All timestamps are stored as UTC and always come back timezone-aware,
whatever the backend does with time zones (SQLite drops them).
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Generator

from sqlalchemy import DateTime, create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker
from sqlalchemy.types import TypeDecorator

from privilegeflow.errors import WorkflowError

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator):
    """Timezone-aware datetime stored as UTC.

    Naive values on the way in are taken to already be UTC.  Values read
    back are always ``tzinfo=timezone.utc``.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value
        return value.astimezone(timezone.utc).replace(tzinfo=None)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class Base(DeclarativeBase):
    """Declarative base for all PrivilegeFlow ORM rows."""

    type_annotation_map = {
        datetime: UTCDateTime(),
    }


class Database:
    """Owns one SQLAlchemy engine and its session factory."""

    def __init__(self, url: str, echo: bool = False, **engine_kwargs: Any) -> None:
        if url.startswith("sqlite"):
            connect_args = engine_kwargs.pop("connect_args", {})
            connect_args.setdefault("check_same_thread", False)
            connect_args.setdefault("timeout", 30)
            engine_kwargs["connect_args"] = connect_args
        self.engine: Engine = create_engine(url, echo=echo, **engine_kwargs)
        self._session_factory = sessionmaker(bind=self.engine, expire_on_commit=False)
        logger.info("Database engine initialized (dialect=%s)", self.engine.dialect.name)

    def create_tables(self) -> None:
        """Create every table registered on ``Base.metadata``."""
        # Registers the row classes on Base.metadata.
        from privilegeflow import orm  # noqa: F401

        Base.metadata.create_all(self.engine)

    def session(self) -> Session:
        return self._session_factory()

    @contextmanager
    def session_scope(self) -> Generator[Session, None, None]:
        """Provide a transactional scope around a series of operations.

        Commits on normal exit; rolls back and re-raises on any exception.

        Usage::

            with db.session_scope() as session:
                session.add(row)
        """
        session = self.session()
        try:
            yield session
            session.commit()
        except WorkflowError as exc:
            session.rollback()
            logger.debug("Transaction rolled back (%s)", exc.code)
            raise
        except Exception:
            session.rollback()
            logger.warning("Transaction rolled back", exc_info=True)
            raise
        finally:
            session.close()

    def dispose(self) -> None:
        self.engine.dispose()
