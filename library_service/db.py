"""
Process-wide database handle.

One ``Database`` is built when the app starts and is passed to everything
that needs the store. ``transaction()`` is the atomic unit: commit on normal
exit, rollback on any exception.
"""
import logging
from contextlib import contextmanager

from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker

from .models import Base

logger = logging.getLogger(__name__)


class Database:
    def __init__(self, url, echo=False):
        self.url = url
        connect_args = {}
        if url.startswith("sqlite"):
            connect_args = {"check_same_thread": False, "timeout": 30}

        self.engine = create_engine(
            url, echo=echo, future=True, connect_args=connect_args
        )
        if self.engine.dialect.name == "sqlite":
            _serialize_sqlite_writers(self.engine)

        self.SessionLocal = sessionmaker(
            bind=self.engine,
            autoflush=False,
            autocommit=False,
            expire_on_commit=False,
        )

    def create_all(self):
        Base.metadata.create_all(self.engine)

    def drop_all(self):
        Base.metadata.drop_all(self.engine)

    def session(self):
        return self.SessionLocal()

    @contextmanager
    def transaction(self):
        session = self.SessionLocal()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            logger.debug("Transaction rolled back", exc_info=True)
            raise
        finally:
            session.close()

    def dispose(self):
        self.engine.dispose()


def _serialize_sqlite_writers(engine):
    # SQLite ignores SELECT ... FOR UPDATE. Starting every transaction with
    # BEGIN IMMEDIATE takes the write lock up front, so check-then-write
    # sequences cannot interleave.
    @event.listens_for(engine, "connect")
    def _disable_pysqlite_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")
