import threading
import time
from contextlib import contextmanager

from sqlalchemy import create_engine, delete, event, insert
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from booking_guard.errors import StoreUnavailableError
from booking_guard.models import AttemptRecord, AttemptRecordModel, Base

UPDATE_RETRIES = 3


class SqlAttemptStore:
    """Attempt records kept as rows of ``booking_code_attempts``.

    An update first makes sure the subject's row exists, then locks it with
    ``SELECT ... FOR UPDATE`` for the rest of the transaction. SQLite has no
    row locks, so every SQLite transaction opens with ``BEGIN IMMEDIATE`` and
    holds the database write lock instead.
    """

    def __init__(self, db_url: str = "sqlite:///./booking_guard.db", busy_timeout_s: float = 30):
        self.is_sqlite = db_url.startswith("sqlite")
        connect_args = {"check_same_thread": False, "timeout": busy_timeout_s} if self.is_sqlite else {}
        self.engine = create_engine(db_url, connect_args=connect_args)
        if self.is_sqlite:
            _begin_immediate(self.engine)
        self.SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=self.engine)
        self._lock = threading.Lock()

        Base.metadata.create_all(bind=self.engine)

    @contextmanager
    def session(self):
        session = self.SessionLocal()
        try:
            yield session
            session.commit()
        except IntegrityError:
            # a lost insert race, not an outage; callers retry
            session.rollback()
            raise
        except SQLAlchemyError as exc:
            session.rollback()
            raise StoreUnavailableError(f"database: {type(exc).__name__} {exc}") from exc
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def _retrying(self, operation):
        last_exc = None
        for _ in range(UPDATE_RETRIES):
            try:
                with self._lock, self.session() as session:
                    return operation(session)
            except IntegrityError as exc:
                last_exc = exc
        raise StoreUnavailableError(f"database: gave up after {UPDATE_RETRIES} conflicts: {last_exc}") from last_exc

    def _ensure_row(self, session, subject_id: str, now: float) -> None:
        # placeholder expires immediately, so it reads as "no record"
        values = dict(subject_id=subject_id, failure_count=0, locked_until=None, updated_at=now, expires_at=now)
        dialect = self.engine.dialect.name
        if dialect == "sqlite":
            session.execute(sqlite.insert(AttemptRecordModel).values(**values).on_conflict_do_nothing())
        elif dialect == "postgresql":
            session.execute(postgresql.insert(AttemptRecordModel).values(**values).on_conflict_do_nothing())
        elif session.get(AttemptRecordModel, subject_id) is None:
            with session.begin_nested():
                session.execute(insert(AttemptRecordModel).values(**values))

    def dispose(self) -> None:
        self.engine.dispose()

    def now(self) -> float:
        return time.time()

    def get(self, subject_id: str, now: float) -> AttemptRecord | None:
        with self.session() as session:
            row = session.get(AttemptRecordModel, subject_id)
            if row is None:
                return None
            record = AttemptRecord.from_orm_model(row)
        if record.is_expired(now):
            return None
        return record

    def set(self, record: AttemptRecord) -> None:
        def write(session):
            self._ensure_row(session, record.subject_id, record.updated_at)
            row = session.get(AttemptRecordModel, record.subject_id, with_for_update=True, populate_existing=True)
            if row is None:
                session.add(_copy_into(AttemptRecordModel(subject_id=record.subject_id), record))
            else:
                _copy_into(row, record)

        self._retrying(write)

    def delete(self, subject_id: str) -> None:
        with self._lock, self.session() as session:
            session.execute(delete(AttemptRecordModel).where(AttemptRecordModel.subject_id == subject_id))

    def update(self, subject_id: str, transition, now: float):
        def apply(session):
            self._ensure_row(session, subject_id, now)
            row = session.get(AttemptRecordModel, subject_id, with_for_update=True, populate_existing=True)
            before = AttemptRecord.from_orm_model(row) if row is not None else None
            if before is not None and before.is_expired(now):
                before = None
            after = transition(before)
            if after is None:
                if row is not None:
                    session.delete(row)
            elif row is None:
                # purged between the insert and the lock
                session.add(_copy_into(AttemptRecordModel(subject_id=subject_id), after))
            else:
                _copy_into(row, after)
            return before, after

        return self._retrying(apply)

    def purge_expired(self, now: float) -> int:
        with self._lock, self.session() as session:
            result = session.execute(
                delete(AttemptRecordModel).where(
                    AttemptRecordModel.expires_at.is_not(None),
                    AttemptRecordModel.expires_at <= now,
                )
            )
            return result.rowcount


def _begin_immediate(engine) -> None:
    @event.listens_for(engine, "connect")
    def _disable_driver_transactions(dbapi_connection, connection_record):
        # let the "begin" hook below emit BEGIN itself
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def _copy_into(row: AttemptRecordModel, record: AttemptRecord) -> AttemptRecordModel:
    row.failure_count = record.failure_count
    row.locked_until = record.locked_until
    row.updated_at = record.updated_at
    row.expires_at = record.expires_at
    return row
