"""
Database access: engine, sessions and the transaction wrapper every
stock-mutating code path goes through.
"""

import logging
import time
from contextlib import contextmanager

from sqlalchemy import create_engine, event, text
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.orm import DeclarativeBase, sessionmaker

from .errors import CheckoutTimeoutError, DatabaseUnavailable

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    pass


def on_commit(session, fn):
    """run fn once the enclosing transaction has committed (dropped on rollback)"""
    session.info.setdefault('on_commit', []).append(fn)


def _make_sqlite_serializable(engine):
    # pysqlite's own BEGIN handling is off; every transaction takes the
    # write lock up front so racing checkouts queue instead of deadlocking
    @event.listens_for(engine, 'connect')
    def _connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute('PRAGMA foreign_keys=ON')
        cursor.close()

    @event.listens_for(engine, 'begin')
    def _begin(conn):
        conn.exec_driver_sql('BEGIN IMMEDIATE')


class Database:

    def __init__(self, url, timeout=None):
        self.url = url
        kwargs = {}
        if url.startswith('sqlite'):
            # a blocked writer gives up no later than the checkout deadline
            kwargs['connect_args'] = {'check_same_thread': False, 'timeout': timeout or 30}
        self.engine = create_engine(url, **kwargs)
        self.dialect = self.engine.dialect.name
        if self.dialect == 'sqlite':
            _make_sqlite_serializable(self.engine)
        self.Session = sessionmaker(self.engine, expire_on_commit=False)
        self.default_timeout = timeout

    def create_all(self):
        Base.metadata.create_all(self.engine)

    def ping(self):
        try:
            with self.engine.connect() as conn:
                conn.execute(text('SELECT 1'))
        except (OperationalError, InterfaceError) as e:
            raise DatabaseUnavailable(details=str(e.orig)[:200]) from e

    @contextmanager
    def session(self):
        """read-only work; nothing is committed"""
        session = self.Session()
        try:
            yield session
        except (OperationalError, InterfaceError) as e:
            raise DatabaseUnavailable(details=str(e.orig)[:200]) from e
        finally:
            session.close()

    @contextmanager
    def transaction(self, timeout=None):
        """
        One unit of work. Commits when the block exits cleanly, rolls back
        on any exception, and aborts instead of committing once `timeout`
        seconds have passed. on_commit callbacks fire after the commit.
        """
        timeout = timeout if timeout is not None else self.default_timeout
        deadline = time.monotonic() + timeout if timeout else None
        session = self.Session()
        try:
            with session.begin():
                if timeout and self.dialect == 'postgresql':
                    session.execute(text(f'SET LOCAL statement_timeout = {int(timeout * 1000)}'))
                yield session
                session.flush()
                if deadline is not None and time.monotonic() > deadline:
                    raise CheckoutTimeoutError(f'Transaction exceeded {timeout}s and was rolled back')
        except OperationalError as e:
            if 'statement timeout' in str(e.orig) or 'database is locked' in str(e.orig):
                raise CheckoutTimeoutError(f'Transaction exceeded {timeout}s and was rolled back') from e
            logger.error('database error, transaction rolled back: %s', e.orig)
            raise DatabaseUnavailable(details=str(e.orig)[:200]) from e
        except InterfaceError as e:
            logger.error('database interface error: %s', e.orig)
            raise DatabaseUnavailable(details=str(e.orig)[:200]) from e
        finally:
            callbacks = session.info.pop('on_commit', [])
            session.close()

        for fn in callbacks:
            try:
                fn()
            except Exception:
                # the commit already happened; a failed notification must not undo it
                logger.exception('post-commit callback failed')
