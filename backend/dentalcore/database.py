import logging
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from contextlib import contextmanager
from typing import Any
from typing import Callable
from typing import Iterator
from typing import Optional
from typing import TypeVar

from sqlalchemy import Engine
from sqlalchemy import create_engine
from sqlalchemy import event
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.orm import declarative_base
from sqlalchemy.orm import sessionmaker

from dentalcore.exceptions import PersistenceFailed
from dentalcore.exceptions import ReadTimeout

logger = logging.getLogger(__name__)

_T = TypeVar("_T")

# Create Base class
Base = declarative_base()


def _enable_sqlite_foreign_keys(dbapi_connection, _record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def make_engine(db_url: str, **kwargs) -> Engine:
    """Create a SQLAlchemy engine with the given URL and options.

    Args:
        db_url: Database connection URL
        **kwargs: Additional arguments for create_engine

    Returns:
        A SQLAlchemy Engine instance
    """
    connect_args = kwargs.pop("connect_args", {})
    is_sqlite = db_url.startswith("sqlite")
    if is_sqlite:
        if "check_same_thread" not in connect_args:
            connect_args["check_same_thread"] = False
        # Writers wait for the database lock instead of failing immediately
        connect_args.setdefault("timeout", 30)
        kwargs.pop("pool_size", None)
        kwargs.pop("max_overflow", None)
    else:
        kwargs.setdefault("pool_pre_ping", True)
        kwargs.setdefault("pool_recycle", 600)

    engine = create_engine(db_url, connect_args=connect_args, **kwargs)

    if is_sqlite:
        event.listen(engine, "connect", _enable_sqlite_foreign_keys)

    return engine


def make_sessionmaker(engine: Engine) -> sessionmaker:
    """Create a sessionmaker bound to the given engine.

    ``expire_on_commit=False`` keeps attributes readable after a commit so a
    freshly persisted row can still be turned into a response object once its
    transaction has closed.
    """
    return sessionmaker(
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,
        bind=engine,
    )


def initialize_database(engine: Engine) -> None:
    """Create all tables registered on :data:`Base` (idempotent)."""

    # Registers every mapped class on Base.metadata
    from dentalcore.models import models  # noqa: F401

    Base.metadata.create_all(bind=engine)


@contextmanager
def db_session(session_factory: Callable[[], Session]) -> Iterator[Session]:
    """
    Transactional session scope.

    1. Auto-commit on success
    2. Auto-rollback on error
    3. Always close session

    Usage:
        with db_session(factory) as db:
            db.add(row)
            # Automatic commit + close

        # On error: automatic rollback + close, original exception re-raised
    """
    session = session_factory()

    try:
        yield session
        session.commit()  # Auto-commit on success
        logger.debug("Database session committed successfully")

    except Exception as e:
        session.rollback()  # Auto-rollback on error
        logger.debug(f"Database session rolled back due to error: {e}")
        raise  # Re-raise the original exception

    finally:
        session.close()  # Always close


class Store:
    """Backing-store handle injected into every repository.

    Owns the session factory and a small thread pool used to bound reads:
    :meth:`read` runs the query on a pool thread (with its own session) and
    gives up waiting after ``read_timeout`` seconds.  Lifecycle (``close``)
    belongs to the process entry point.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        *,
        engine: Optional[Engine] = None,
        read_timeout: float = 5.0,
        read_workers: int = 8,
    ):
        self.session_factory = session_factory
        self.engine = engine if engine is not None else session_factory.kw.get("bind")
        self.read_timeout = read_timeout
        self._executor = ThreadPoolExecutor(max_workers=read_workers, thread_name_prefix="store-read")

    @contextmanager
    def transaction(self) -> Iterator[Session]:
        """One backing-store transaction (commit on success, rollback on error)."""
        with db_session(self.session_factory) as session:
            yield session

    def _run_read(self, fn: Callable[[Session], _T]) -> _T:
        with self.session_factory() as session:
            return fn(session)

    def read(self, fn: Callable[[Session], _T], *, entity: str = "record", timeout: Optional[float] = None) -> _T:
        """Run ``fn(session)`` with a bounded wait.

        *fn* must return plain data (not ORM rows): its session is closed as
        soon as it returns.

        Raises:
            ReadTimeout: the query did not finish within the budget.
            PersistenceFailed: the backing store rejected the query.
        """
        timeout = self.read_timeout if timeout is None else timeout
        future = self._executor.submit(self._run_read, fn)
        try:
            return future.result(timeout=timeout)
        except FutureTimeoutError:
            future.cancel()
            logger.warning(f"Read of {entity} exceeded {timeout}s")
            raise ReadTimeout(entity, timeout) from None
        except SQLAlchemyError as exc:
            logger.error(f"Read of {entity} failed: {exc}")
            raise PersistenceFailed(entity, "read", exc) from exc

    def ping(self) -> bool:
        try:
            with self.session_factory() as session:
                session.execute(text("SELECT 1"))
            return True
        except Exception as exc:  # noqa: BLE001 – health probe reports, never raises
            logger.error(f"Backing store ping failed: {exc}")
            return False

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)
        if self.engine is not None:
            self.engine.dispose()
        logger.info("Backing store closed")


def create_store(db_url: str, *, read_timeout: float = 5.0, read_workers: int = 8, **engine_kwargs: Any) -> Store:
    """Build engine + sessionmaker + :class:`Store` in one call."""
    engine = make_engine(db_url, **engine_kwargs)
    return Store(make_sessionmaker(engine), engine=engine, read_timeout=read_timeout, read_workers=read_workers)
