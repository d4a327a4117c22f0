"""
==============================================
Database provider contract and database handle.
==============================================

A DatabaseProvider turns a preparer into a fresh, isolated EmbeddedDatabase.
Providers are values: two providers with the same variant, configuration and
customizers compare and hash equal, so outer layers can cache them.

EmbeddedDatabase is the connection source handed to tests. Every connection
goes through a BlockingConnectionSource, so connect() never observes a
database while a clone or preparer is still running on it.

Classes:
    DatabaseProvider: Abstract provider with value semantics
    EmbeddedDatabase: Per-test database exposed as a connection source

Example:
    >>> database = provider.create_database(SqlPreparer(["CREATE TABLE t (id INT)"]))
    >>> with database.get_engine().connect() as conn:
    ...     conn.exec_driver_sql("SELECT COUNT(*) FROM t").scalar()
    0
    >>> database.close()
"""

import logging
import threading
from abc import ABC, abstractmethod
from concurrent.futures import Executor, Future
from typing import Any, Callable, Dict, Mapping, Optional, Sequence, Tuple, Union

from sqlalchemy import Engine, create_engine
from sqlalchemy.engine import URL
from sqlalchemy.pool import NullPool

from embedded_db.core.config import DatabaseConfiguration
from embedded_db.core.exceptions import EmbeddedDatabaseError, PreparationError, ProviderError
from embedded_db.core.logger import log_teardown_failure
from embedded_db.preparer.preparers import DatabasePreparer, as_preparer
from embedded_db.provider.blocking import BlockingConnectionSource

logger = logging.getLogger(__name__)

PreparerLike = Union[None, DatabasePreparer, Sequence[DatabasePreparer]]


class EmbeddedDatabase:
    """Isolated database owned by one test.

    Attributes:
        name: Database name on its backing engine
        handle: Engine-specific resource kept alive with the database
    """

    def __init__(
        self,
        name: str,
        source: BlockingConnectionSource,
        url: Union[str, URL],
        port: Optional[int] = None,
        connection_params: Optional[Mapping[str, Any]] = None,
        on_close: Optional[Callable[['EmbeddedDatabase'], None]] = None,
        handle: Any = None
    ):
        self.name = name
        self.handle = handle
        self._source = source
        self._url = url
        self._port = port
        self._connection_params = dict(connection_params or {})
        self._on_close = on_close
        self._engine: Optional[Engine] = None
        self._lock = threading.Lock()
        self._closed = False

    @property
    def source(self) -> BlockingConnectionSource:
        """The readiness gate guarding this database."""
        return self._source

    @property
    def connection_factory(self) -> Callable[[], Any]:
        """Underlying DB-API connection factory, bypassing the gate."""
        return self._source.unwrap()

    @property
    def port(self) -> Optional[int]:
        """Bound network port for server-backed databases, else None."""
        return self._port

    @property
    def url(self) -> Union[str, URL]:
        return self._url

    @property
    def connection_params(self) -> Dict[str, Any]:
        return dict(self._connection_params)

    @property
    def closed(self) -> bool:
        return self._closed

    def connect(self) -> Any:
        """
        Open a new DB-API connection once pending operations have finished.

        Raises:
            ProviderError: If the database is closed or stays busy past the
                gate timeout
        """
        if self._closed:
            raise ProviderError(f"Database {self.name} is closed")
        return self._source.connect()

    def get_engine(self, **kwargs) -> Engine:
        """Return a SQLAlchemy engine whose connections come from connect().

        The engine is created on first call and reused; keyword arguments
        only apply to that first call. Pooling is disabled unless a poolclass
        is given, so closing the database never races idle pooled sessions.
        """
        with self._lock:
            if self._engine is None:
                kwargs.setdefault('poolclass', NullPool)
                self._engine = create_engine(self._url, creator=self.connect, **kwargs)
            return self._engine

    def apply(self, preparer: PreparerLike) -> None:
        """
        Run a preparer against this database while the gate is held.

        Other threads calling connect() wait until the preparer finishes.

        Raises:
            PreparationError: If the preparer raises; the original exception
                is available as .cause
        """
        preparer = as_preparer(preparer)
        with self._source.hold():
            self._run_preparer(preparer)

    def apply_async(self, preparer: PreparerLike, executor: Executor) -> Future:
        """Queue a preparer on an executor; connect() blocks until it completes.

        The gate is closed before this method returns, so a connection taken
        right after the call always sees the prepared state.
        """
        preparer = as_preparer(preparer)
        self._source.block()

        def run():
            try:
                with self._source.owner():
                    self._run_preparer(preparer)
            finally:
                self._source.unblock()

        try:
            return executor.submit(run)
        except BaseException:
            self._source.unblock()
            raise

    def _run_preparer(self, preparer: DatabasePreparer) -> None:
        try:
            preparer.prepare(self)
        except EmbeddedDatabaseError:
            raise
        except Exception as e:
            logger.error(f"Preparer {preparer!r} failed on {self.name}: {e}")
            raise PreparationError(
                f"Preparer {preparer!r} failed: {e}",
                cause=e,
                fingerprint=preparer.fingerprint
            ) from e

    def dispose(self) -> None:
        """Release engine resources without closing the database."""
        with self._lock:
            engine, self._engine = self._engine, None
        if engine is not None:
            engine.dispose()

    def close(self) -> None:
        """Discard the database. Failures are logged, never raised."""
        with self._lock:
            if self._closed:
                return
            self._closed = True

        try:
            self.dispose()
        except Exception as e:
            log_teardown_failure(logger, f"dispose engine of {self.name}", e)

        if self._on_close is not None:
            try:
                self._on_close(self)
            except Exception as e:
                log_teardown_failure(logger, f"close database {self.name}", e)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False

    def __repr__(self):
        state = 'closed' if self._closed else 'open'
        port = f", port={self._port}" if self._port is not None else ''
        return f"EmbeddedDatabase(name={self.name!r}{port}, {state})"


class DatabaseProvider(ABC):
    """Creates isolated databases from preparers.

    Attributes:
        variant: Short name of the backing engine family
        config: Immutable configuration identity
        customizers: Ordered callables applied to the server builder
    """

    variant = 'abstract'

    def __init__(
        self,
        config: Union[None, DatabaseConfiguration, Mapping[str, Any]] = None,
        customizers: Sequence[Callable[[Any], Any]] = ()
    ):
        if config is None:
            config = DatabaseConfiguration()
        elif not isinstance(config, DatabaseConfiguration):
            config = DatabaseConfiguration.from_properties(config)
        self.config = config
        self.customizers: Tuple[Callable[[Any], Any], ...] = tuple(customizers)

    @classmethod
    def from_environment(cls, **kwargs) -> 'DatabaseProvider':
        """Build a provider from EMBEDDED_DATABASE_* environment variables."""
        return cls(DatabaseConfiguration.from_environment(), **kwargs)

    def identity(self) -> Tuple[Any, ...]:
        """Value identity used for equality, hashing and shared resources."""
        return (self.variant, self.config, self.customizers)

    @abstractmethod
    def create_database(self, preparer: PreparerLike = None) -> EmbeddedDatabase:
        """
        Return a fresh database holding the prepared state.

        Args:
            preparer: Preparer, sequence of preparers or None for an empty
                database

        Returns:
            EmbeddedDatabase owned by the caller

        Raises:
            ProviderError: If the backing engine cannot start
            PreparationError: If the preparer raises
        """

    def __eq__(self, other):
        if not isinstance(other, DatabaseProvider):
            return NotImplemented
        return type(self) is type(other) and self.identity() == other.identity()

    def __hash__(self):
        return hash((type(self), self.identity()))

    def __repr__(self):
        return (
            f"{type(self).__name__}(isolation={self.config.isolation.value}, "
            f"customizers={len(self.customizers)})"
        )
