"""
=====================================================
Database providers for isolated test databases.
=====================================================

Modules:
    base: Provider contract and the EmbeddedDatabase connection source
    blocking: Readiness-gated connection source decorator
    create_database: Logical database administration on PostgreSQL
    servers: Forked-process and container PostgreSQL servers
    sqlite: In-process SQLite provider
    postgres: Server-backed PostgreSQL providers

Example:
    >>> from embedded_db.provider import SqliteDatabaseProvider
    >>>
    >>> provider = SqliteDatabaseProvider()
    >>> database = provider.create_database()
"""

__all__ = [
    'BlockingConnectionSource',
    'ContainerPostgresServer',
    'ContainerServerBuilder',
    'DatabaseCreator',
    'DatabaseProvider',
    'DockerPostgresDatabaseProvider',
    'EmbeddedDatabase',
    'PostgresDatabaseProvider',
    'ProcessPostgresDatabaseProvider',
    'ProcessPostgresServer',
    'ProcessServerBuilder',
    'ServerBuilder',
    'ServerKey',
    'ServerRegistry',
    'SqliteDatabaseProvider',
    'default_server_registry',
    'find_bin_directory',
]

from embedded_db.provider.base import DatabaseProvider, EmbeddedDatabase
from embedded_db.provider.blocking import BlockingConnectionSource
from embedded_db.provider.create_database import DatabaseCreator
from embedded_db.provider.postgres import (
    DockerPostgresDatabaseProvider,
    PostgresDatabaseProvider,
    ProcessPostgresDatabaseProvider,
)
from embedded_db.provider.servers import (
    ContainerPostgresServer,
    ContainerServerBuilder,
    ProcessPostgresServer,
    ProcessServerBuilder,
    ServerBuilder,
    ServerKey,
    ServerRegistry,
    default_server_registry,
    find_bin_directory,
)
from embedded_db.provider.sqlite import SqliteDatabaseProvider
