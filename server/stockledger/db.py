from contextlib import contextmanager
import logging
import time
from typing import Callable, Iterator, TypeVar

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from .config import settings
from .errors import InventoryError, LockTimeoutError, StoreError


logger = logging.getLogger(__name__)

Base = declarative_base()

T = TypeVar("T")

# lock_not_available, deadlock_detected
POSTGRES_LOCK_ERROR_CODES = {"55P03", "40P01"}
SQLITE_LOCK_MESSAGES = ("database is locked", "database table is locked")
WRITE_LOCK_OPTION = "stockledger_write_lock"


def configure_sqlite_locking(engine: Engine) -> None:
    """Let SQLite write transactions take the database write lock up front.

    pysqlite's own transaction handling is switched off and SQLAlchemy emits
    BEGIN itself. Connections carrying the ``WRITE_LOCK_OPTION`` execution
    option begin with ``BEGIN IMMEDIATE``, so two writers never read the same
    row and then race to update it: the second one waits (up to the busy
    timeout) for the first to commit. Plain reads use a deferred BEGIN.
    """

    @event.listens_for(engine, "connect")
    def _disable_pysqlite_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin(conn):
        if conn.get_execution_options().get(WRITE_LOCK_OPTION):
            conn.exec_driver_sql("BEGIN IMMEDIATE")
        else:
            conn.exec_driver_sql("BEGIN")


def create_store_engine(url: str, *, echo: bool = False, lock_timeout_ms: int | None = None, **kwargs) -> Engine:
    timeout_ms = settings.lock_timeout_ms if lock_timeout_ms is None else lock_timeout_ms
    if url.startswith("sqlite"):
        connect_args = kwargs.pop("connect_args", {})
        connect_args.setdefault("check_same_thread", False)
        connect_args.setdefault("timeout", timeout_ms / 1000.0)
        engine = create_engine(url, echo=echo, connect_args=connect_args, **kwargs)
        configure_sqlite_locking(engine)
        return engine
    return create_engine(url, echo=echo, pool_pre_ping=True, **kwargs)


engine = create_store_engine(settings.database_url, echo=settings.database_echo)
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)


def get_db() -> Iterator[Session]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def is_lock_timeout(exc: OperationalError) -> bool:
    if getattr(exc.orig, "pgcode", None) in POSTGRES_LOCK_ERROR_CODES:
        return True
    message = str(exc.orig).lower()
    return any(marker in message for marker in SQLITE_LOCK_MESSAGES)


def _end_read_transaction(db: Session) -> None:
    # A deferred SQLite transaction that has already read cannot be upgraded
    # to the write lock without risking an immediate "database is locked".
    if db.in_transaction() and not (db.new or db.dirty or db.deleted):
        db.commit()


@contextmanager
def unit_of_work(db: Session, *, lock_timeout_ms: int | None = None) -> Iterator[Session]:
    """Run the enclosed block as one transaction.

    A read-only transaction already open on the session (for example the
    current-user lookup done by the auth dependency) is ended first, so the
    unit of work always starts on a fresh, write-locked connection.

    Commits when the block exits normally. Any exception rolls the whole
    transaction back; store failures are re-raised as ``LockTimeoutError`` or
    ``StoreError`` so callers only ever see the inventory error taxonomy.
    """
    timeout_ms = settings.lock_timeout_ms if lock_timeout_ms is None else lock_timeout_ms
    try:
        _end_read_transaction(db)
        if not db.in_transaction():
            db.connection(execution_options={WRITE_LOCK_OPTION: True})
        if db.get_bind().dialect.name == "postgresql":
            db.execute(text(f"SET LOCAL lock_timeout = {int(timeout_ms)}"))
        yield db
        db.commit()
    except InventoryError:
        db.rollback()
        raise
    except OperationalError as exc:
        db.rollback()
        if is_lock_timeout(exc):
            logger.warning("Inventory lock unavailable (lock timeout %sms): %s", timeout_ms, exc.orig)
            raise LockTimeoutError("Inventory lock unavailable; retry the operation.") from exc
        raise StoreError(f"Inventory store failure: {exc.orig}") from exc
    except SQLAlchemyError as exc:
        db.rollback()
        raise StoreError(f"Inventory store failure: {exc}") from exc
    except BaseException:
        db.rollback()
        raise


def retry_on_lock_timeout(fn: Callable[[], T], *, attempts: int = 3, backoff_seconds: float = 0.05) -> T:
    """Call ``fn`` again with exponential backoff while it raises ``LockTimeoutError``."""
    attempt = 1
    while True:
        try:
            return fn()
        except LockTimeoutError:
            if attempt >= attempts:
                raise
            delay = backoff_seconds * (2 ** (attempt - 1))
            logger.info("Retrying after lock timeout (attempt %s/%s, sleeping %.3fs)", attempt, attempts, delay)
            time.sleep(delay)
            attempt += 1
