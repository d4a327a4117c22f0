"""
======================================
Error taxonomy for embedded databases.
======================================

All errors raised by the package derive from EmbeddedDatabaseError so that
callers can catch the whole family at once, while each subclass keeps a
distinct meaning:

    ConfigurationError: malformed or conflicting recognized options
    ProviderError: the backing engine could not start or be reached
    DatabaseCreationError: an admin statement (CREATE/DROP DATABASE) failed
    PreparationError: a preparer raised while applying DDL/DML
    TeardownWarning: best-effort cleanup failed (logged, never raised)

Example:
    >>> from embedded_db.core.exceptions import PreparationError
    >>>
    >>> try:
    ...     provider.create_database(broken_preparer)
    ... except PreparationError as e:
    ...     print(f"Preparer failed: {e.cause!r}")
"""

from typing import Optional


class EmbeddedDatabaseError(Exception):
    """Base class for every error raised by embedded_db."""
    pass


class ConfigurationError(EmbeddedDatabaseError):
    """Exception raised for malformed or conflicting configuration options.

    Raised at provider construction; the provider is unusable afterwards.
    """
    pass


class ProviderError(EmbeddedDatabaseError):
    """Exception raised when a backing engine fails to start or respond.

    Covers port conflicts, missing binaries or images and crashes during
    bootstrap. Not retried automatically.
    """
    pass


class DatabaseCreationError(ProviderError):
    """Exception raised for database creation operation errors.

    Raised when creating, dropping or terminating connections to a logical
    database on a running server fails.
    """
    pass


class PreparationError(EmbeddedDatabaseError):
    """Exception raised when a preparer fails while preparing a database.

    Attributes:
        fingerprint: Fingerprint of the failed preparer, if known
        cause: The original exception raised by the preparer
    """

    def __init__(
        self,
        message: str,
        cause: Optional[BaseException] = None,
        fingerprint: Optional[str] = None
    ):
        super().__init__(message)
        self.cause = cause
        self.fingerprint = fingerprint


class TeardownWarning(EmbeddedDatabaseError, UserWarning):
    """Best-effort cleanup failure.

    Instances are logged by teardown helpers and never raised to callers,
    since the owning test has already completed when teardown runs.
    """
    pass
