"""
============================================
On-demand isolated databases for test suites.
============================================

A preparer describes the schema and data a test needs. Providers apply each
distinct preparer once, keep the result as a template and hand every caller
a fresh clone of it.

Example:
    >>> from embedded_db import SqliteDatabaseProvider, SqlPreparer
    >>>
    >>> provider = SqliteDatabaseProvider()
    >>> schema = SqlPreparer(["CREATE TABLE prime_number (number INT PRIMARY KEY)"])
    >>> with provider.create_database(schema) as database:
    ...     conn = database.connect()
"""

from embedded_db.core import (
    ConfigurationError,
    DatabaseConfiguration,
    DatabaseCreationError,
    EmbeddedDatabaseError,
    PreparationError,
    PreparerIsolation,
    ProviderError,
    TeardownWarning,
    get_logger,
    load_properties,
    setup_logging,
)
from embedded_db.preparer import (
    EMPTY_PREPARER,
    CallablePreparer,
    CompositePreparer,
    DatabasePreparer,
    SqlPreparer,
    as_preparer,
    preparer,
)
from embedded_db.provider import (
    BlockingConnectionSource,
    DatabaseCreator,
    DatabaseProvider,
    DockerPostgresDatabaseProvider,
    EmbeddedDatabase,
    ProcessPostgresDatabaseProvider,
    SqliteDatabaseProvider,
    default_server_registry,
)
from embedded_db.registry import BuildState, TemplateEntry, TemplateRegistry, default_template_registry

__version__ = '0.1.0'


def shutdown_all() -> int:
    """Stop every backing server started in this process and forget its templates.

    Returns:
        Number of servers stopped
    """
    return default_server_registry.shutdown_all(default_template_registry)


__all__ = [
    'BlockingConnectionSource',
    'BuildState',
    'CallablePreparer',
    'CompositePreparer',
    'ConfigurationError',
    'DatabaseConfiguration',
    'DatabaseCreationError',
    'DatabaseCreator',
    'DatabasePreparer',
    'DatabaseProvider',
    'DockerPostgresDatabaseProvider',
    'EMPTY_PREPARER',
    'EmbeddedDatabase',
    'EmbeddedDatabaseError',
    'PreparationError',
    'PreparerIsolation',
    'ProcessPostgresDatabaseProvider',
    'ProviderError',
    'SqlPreparer',
    'SqliteDatabaseProvider',
    'TeardownWarning',
    'TemplateEntry',
    'TemplateRegistry',
    'as_preparer',
    'get_logger',
    'load_properties',
    'preparer',
    'setup_logging',
    'shutdown_all',
]
