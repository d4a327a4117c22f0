"""
==========================================
Database preparers and their fingerprints.
==========================================

A preparer is a unit of database setup (DDL/DML) applied to a fresh
database. Its fingerprint is a SHA-256 digest of its content and is used as
the template cache key: two preparers with the same fingerprint must leave
the database in the same state.

Classes:
    DatabasePreparer: Abstract preparer with value semantics
    SqlPreparer: Ordered SQL statements, optionally tagged with a schema id
    CallablePreparer: Python callable with an explicit identity
    CompositePreparer: Ordered sequence of preparers

Example:
    >>> from embedded_db.preparer import SqlPreparer, preparer
    >>>
    >>> schema = SqlPreparer([
    ...     "CREATE TABLE prime_number (number INT PRIMARY KEY NOT NULL)",
    ... ])
    >>>
    >>> @preparer('seed-primes-v1')
    ... def seed(database):
    ...     with database.get_engine().begin() as conn:
    ...         conn.exec_driver_sql("INSERT INTO prime_number VALUES (2), (3)")
    >>>
    >>> combined = schema + seed
    >>> provider.create_database(combined)
"""

import hashlib
import json
from abc import ABC, abstractmethod
from typing import Any, Callable, Iterable, Optional, Sequence, Tuple, Union


def compute_fingerprint(kind: str, payload: Any) -> str:
    """Digest a JSON-serializable payload tagged with the preparer kind."""
    canonical = json.dumps([kind, payload], sort_keys=True, separators=(',', ':'))
    return hashlib.sha256(canonical.encode('utf-8')).hexdigest()


class DatabasePreparer(ABC):
    """Unit of database preparation identified by a content fingerprint.

    Preparers are values: equal fingerprints mean equal preparers.
    """

    @property
    @abstractmethod
    def fingerprint(self) -> str:
        """Stable content digest used as the template cache key."""

    @abstractmethod
    def prepare(self, database) -> None:
        """Apply the preparation to the given database.

        Args:
            database: EmbeddedDatabase (or any object with connect())
        """

    def __eq__(self, other):
        if not isinstance(other, DatabasePreparer):
            return NotImplemented
        return self.fingerprint == other.fingerprint

    def __hash__(self):
        return hash(self.fingerprint)

    def __add__(self, other: 'DatabasePreparer') -> 'CompositePreparer':
        if not isinstance(other, DatabasePreparer):
            return NotImplemented
        return CompositePreparer([self, other])

    def __repr__(self):
        return f"{type(self).__name__}(fingerprint={self.fingerprint[:12]})"


class SqlPreparer(DatabasePreparer):
    """Runs ordered SQL statements on a single connection and commits.

    Attributes:
        statements: Statements executed in order
        schema: Optional schema id folded into the fingerprint
    """

    def __init__(self, statements: Union[str, Iterable[str]], schema: Optional[str] = None):
        if isinstance(statements, str):
            statements = [statements]
        self.statements: Tuple[str, ...] = tuple(statements)
        self.schema = schema
        self._fingerprint = compute_fingerprint(
            'sql', {'schema': schema, 'statements': list(self.statements)}
        )

    @property
    def fingerprint(self) -> str:
        return self._fingerprint

    def prepare(self, database) -> None:
        connection = database.connect()
        try:
            cursor = connection.cursor()
            try:
                for statement in self.statements:
                    cursor.execute(statement)
            finally:
                cursor.close()
            connection.commit()
        except Exception:
            connection.rollback()
            raise
        finally:
            connection.close()


class CallablePreparer(DatabasePreparer):
    """Wraps a callable; the caller supplies its identity.

    Code objects are never hashed, so changing the callable's behavior must
    come with a new identity.
    """

    def __init__(self, func: Callable[[Any], None], identity: str):
        if not identity:
            raise ValueError("CallablePreparer requires a non-empty identity")
        self.func = func
        self.identity = identity
        self._fingerprint = compute_fingerprint('callable', identity)

    @property
    def fingerprint(self) -> str:
        return self._fingerprint

    def prepare(self, database) -> None:
        self.func(database)


class CompositePreparer(DatabasePreparer):
    """Applies child preparers in order.

    Nested composites are flattened, so (a + b) + c equals a + (b + c), and
    empty composites vanish. A composite of a single preparer takes that
    preparer's fingerprint, so p, [p] and p + EMPTY_PREPARER share a template.
    """

    def __init__(self, preparers: Sequence[DatabasePreparer] = ()):
        flattened = []
        for child in preparers:
            if isinstance(child, CompositePreparer):
                flattened.extend(child.preparers)
            else:
                flattened.append(child)
        self.preparers: Tuple[DatabasePreparer, ...] = tuple(flattened)
        if len(self.preparers) == 1:
            self._fingerprint = self.preparers[0].fingerprint
        else:
            self._fingerprint = compute_fingerprint(
                'composite', [child.fingerprint for child in self.preparers]
            )

    @property
    def fingerprint(self) -> str:
        return self._fingerprint

    def prepare(self, database) -> None:
        for child in self.preparers:
            child.prepare(database)

    def __bool__(self):
        return bool(self.preparers)


EMPTY_PREPARER = CompositePreparer()


def preparer(identity: str) -> Callable[[Callable[[Any], None]], CallablePreparer]:
    """Decorator turning a function into a CallablePreparer."""
    def decorate(func: Callable[[Any], None]) -> CallablePreparer:
        return CallablePreparer(func, identity)
    return decorate


def as_preparer(value: Union[None, DatabasePreparer, Sequence[DatabasePreparer]]) -> DatabasePreparer:
    """Coerce None, a preparer or a sequence of preparers into one preparer."""
    if value is None:
        return EMPTY_PREPARER
    if isinstance(value, DatabasePreparer):
        return value
    if isinstance(value, (list, tuple)):
        if len(value) == 1 and isinstance(value[0], DatabasePreparer):
            return value[0]
        return CompositePreparer(value)
    raise TypeError(f"Expected a DatabasePreparer, got {type(value).__name__}")
