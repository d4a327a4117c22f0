"""
=============================================
Server-backed PostgreSQL database providers.
=============================================

Each provider shares backing servers per configuration identity and derives
per-test databases from prepared templates:

1. Resolve the server for this request. Under database isolation one server
   serves every preparer; under cluster isolation each preparer fingerprint
   gets its own server (own port and data directory).
2. Get or build the template: a logical database created from template0,
   prepared once, then emptied of sessions.
3. Clone it with CREATE DATABASE ... TEMPLATE, serialized per template.
4. Closing the returned database drops it and releases the server.

Variants:
    ProcessPostgresDatabaseProvider: forks initdb + postgres from local binaries
    DockerPostgresDatabaseProvider: runs the official image through docker

Example:
    >>> from embedded_db import ProcessPostgresDatabaseProvider, SqlPreparer
    >>>
    >>> provider = ProcessPostgresDatabaseProvider({'server.max_connections': '50'})
    >>> with provider.create_database(SqlPreparer(["CREATE TABLE t (id INT)"])) as database:
    ...     conn = database.connect()
"""

import atexit
import functools
import logging
import threading
import uuid
from typing import Any, Callable, Mapping, Optional, Sequence, Union

import psycopg2
from sqlalchemy.engine import URL

from embedded_db.core.config import DatabaseConfiguration, PreparerIsolation
from embedded_db.core.exceptions import ProviderError
from embedded_db.core.logger import log_teardown_failure
from embedded_db.preparer.preparers import DatabasePreparer, as_preparer
from embedded_db.provider.base import DatabaseProvider, EmbeddedDatabase, PreparerLike
from embedded_db.provider.blocking import BlockingConnectionSource
from embedded_db.provider.servers import (
    ContainerPostgresServer,
    ContainerServerBuilder,
    PostgresServer,
    ProcessPostgresServer,
    ProcessServerBuilder,
    ServerBuilder,
    ServerKey,
    ServerRegistry,
    default_server_registry,
)
from embedded_db.registry.template_registry import TemplateRegistry, default_template_registry

logger = logging.getLogger(__name__)

TEMPLATE_PREFIX = 'tpl_'
DATABASE_PREFIX = 'db_'


class PostgresDatabaseProvider(DatabaseProvider):
    """Provider of databases cloned from templates on a shared server.

    Attributes:
        builder_class: ServerBuilder subclass handed to customizers
        server_class: PostgresServer subclass started from the builder
    """

    builder_class = ServerBuilder
    server_class = PostgresServer

    def __init__(
        self,
        config: Union[None, DatabaseConfiguration, Mapping[str, Any]] = None,
        customizers: Sequence[Callable[[Any], Any]] = (),
        *,
        register_shutdown: Optional[Callable[[Callable[[], None]], Any]] = None,
        template_registry: Optional[TemplateRegistry] = None,
        server_registry: Optional[ServerRegistry] = None
    ):
        super().__init__(config, customizers)
        self._register_shutdown = register_shutdown or atexit.register
        self._templates = template_registry if template_registry is not None else default_template_registry
        self._servers = server_registry if server_registry is not None else default_server_registry
        self._startup_error: Optional[ProviderError] = None
        self._lock = threading.Lock()

    def server_key(self, fingerprint: str) -> ServerKey:
        """Key of the server a preparer's databases live on."""
        if self.config.isolation is PreparerIsolation.CLUSTER:
            return ServerKey(self.identity(), fingerprint)
        return ServerKey(self.identity())

    def new_builder(self) -> ServerBuilder:
        """Builder seeded from configuration with every customizer applied in order."""
        builder = self.builder_class(self.config)
        for customizer in self.customizers:
            customizer(builder)
        return builder

    def _new_server(self) -> PostgresServer:
        return self.server_class(self.new_builder())

    def _acquire_server(self, key: ServerKey) -> PostgresServer:
        with self._lock:
            if self._startup_error is not None:
                raise self._startup_error

        while True:
            try:
                server = self._servers.get_or_start(key, self._new_server, self._register_shutdown)
            except ProviderError as e:
                with self._lock:
                    self._startup_error = e
                raise
            # An idle cluster may be evicted between lookup and acquire
            if server.acquire():
                return server

    def _release_server(self, server: PostgresServer) -> None:
        server.release()
        max_idle = self.config.max_idle_clusters
        if self.config.isolation is PreparerIsolation.CLUSTER and max_idle is not None:
            self._servers.evict_idle(self.identity(), max_idle, self._templates)

    def _new_database(
        self,
        server: PostgresServer,
        name: str,
        on_close: Optional[Callable[[EmbeddedDatabase], None]] = None
    ) -> EmbeddedDatabase:
        params = server.connection_params(name)
        url = URL.create(
            drivername='postgresql+psycopg2',
            username=server.user,
            password=server.password,
            host=server.host,
            port=server.port,
            database=name
        )
        source = BlockingConnectionSource(functools.partial(psycopg2.connect, **params))
        return EmbeddedDatabase(
            name,
            source,
            url,
            port=server.port,
            connection_params=params,
            on_close=on_close
        )

    def _build_template(self, server: PostgresServer, preparer: DatabasePreparer) -> EmbeddedDatabase:
        name = f"{TEMPLATE_PREFIX}{uuid.uuid4().hex}"
        creator = server.creator
        creator.create_database(name, template='template0')

        template = self._new_database(server, name)
        try:
            template.apply(preparer)
        except Exception:
            try:
                creator.drop_database(name)
            except Exception as e:
                log_teardown_failure(logger, f"drop failed template {name}", e)
            raise

        template.dispose()
        creator.terminate_connections(name)
        logger.info(f"Template {name} built for {preparer!r} on port {server.port}")
        return template

    def _drop_database(self, server: PostgresServer, database: EmbeddedDatabase) -> None:
        try:
            if server.running:
                server.creator.drop_database(database.name)
            else:
                logger.debug(f"Server of {database.name} already stopped, nothing to drop")
        finally:
            self._release_server(server)

    def create_database(self, preparer: PreparerLike = None) -> EmbeddedDatabase:
        preparer = as_preparer(preparer)
        key = self.server_key(preparer.fingerprint)
        server = self._acquire_server(key)

        try:
            entry = self._templates.get_or_build(
                (key, preparer.fingerprint),
                lambda: self._build_template(server, preparer)
            )

            name = f"{DATABASE_PREFIX}{uuid.uuid4().hex}"
            database = self._new_database(
                server, name, on_close=lambda db: self._drop_database(server, db)
            )
            with database.source.hold(), entry.lock:
                server.creator.create_database(name, template=entry.database.name)
        except BaseException:
            self._release_server(server)
            raise

        logger.debug(f"Created {name} from {entry.database.name} on port {server.port}")
        return database


class ProcessPostgresDatabaseProvider(PostgresDatabaseProvider):
    """Databases on PostgreSQL servers forked from local binaries."""

    variant = 'process'
    builder_class = ProcessServerBuilder
    server_class = ProcessPostgresServer


class DockerPostgresDatabaseProvider(PostgresDatabaseProvider):
    """Databases on PostgreSQL servers running in docker containers."""

    variant = 'docker'
    builder_class = ContainerServerBuilder
    server_class = ContainerPostgresServer
