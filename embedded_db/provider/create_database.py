"""
==================================================
Logical database administration on a PostgreSQL server.
==================================================

Creates, clones and drops logical databases on a running server. Used by the
server-backed providers to build templates and derive per-test databases via
CREATE DATABASE ... TEMPLATE.

Statements run through the admin database (typically 'postgres') rather than
the target database. CREATE/DROP DATABASE cannot run inside a transaction,
so they are executed on the raw psycopg2 connection in autocommit mode.

Key Features:
    - Database creation from a template with optional encoding and collation
    - Connection termination before cloning or dropping
    - Uses SQL from embedded_db.sql for all DDL generation

Example:
    >>> from embedded_db.provider.create_database import DatabaseCreator
    >>>
    >>> creator = DatabaseCreator(host='localhost', port=54321, user='postgres')
    >>> creator.create_database('tpl_1234', template='template0')
    >>> creator.create_database('db_5678', template='tpl_1234')
    >>> creator.drop_database('db_5678')
    >>> creator.close_connections()
"""

import logging
import threading
from typing import Any, Mapping, Optional

import psycopg2
from psycopg2.extensions import ISOLATION_LEVEL_AUTOCOMMIT
from sqlalchemy import Engine, create_engine, text
from sqlalchemy.engine import URL
from sqlalchemy.exc import SQLAlchemyError

from embedded_db.core.exceptions import DatabaseCreationError
from embedded_db.sql.ddl import create_database_sql, drop_database_sql, terminate_connections_sql
from embedded_db.sql.query_builder import count_database_connections_sql

logger = logging.getLogger(__name__)


class DatabaseCreator:
    """Admin operations on the logical databases of one server.

    Attributes:
        host: PostgreSQL server hostname
        port: PostgreSQL server port
        user: Database user with CREATE DATABASE privileges
        password: Database password
        admin_db: Admin database name (typically 'postgres')
        db_config: Encoding and collation applied to created databases
    """

    def __init__(
        self,
        host: str,
        port: int,
        user: str,
        password: Optional[str] = None,
        admin_db: str = 'postgres',
        encoding: Optional[str] = None,
        lc_collate: Optional[str] = None,
        lc_ctype: Optional[str] = None,
        connect_args: Optional[Mapping[str, Any]] = None
    ):
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.admin_db = admin_db

        self.db_config = {
            'encoding': encoding,
            'lc_collate': lc_collate,
            'lc_ctype': lc_ctype
        }

        self._connect_args = dict(connect_args or {})
        self._admin_engine: Optional[Engine] = None
        self._engine_lock = threading.Lock()

    def _get_admin_engine(self) -> Engine:
        """Get SQLAlchemy engine connected to admin database."""
        with self._engine_lock:
            if self._admin_engine is None:
                connection_url = URL.create(
                    drivername='postgresql+psycopg2',
                    username=self.user,
                    password=self.password,
                    host=self.host,
                    port=self.port,
                    database=self.admin_db
                )
                self._admin_engine = create_engine(
                    connection_url,
                    isolation_level='AUTOCOMMIT',
                    connect_args=self._connect_args,
                    echo=False
                )
            return self._admin_engine

    def _execute_admin(self, statement: str) -> None:
        """Run a statement that must not be wrapped in a transaction."""
        engine = self._get_admin_engine()
        with engine.connect() as conn:
            raw_conn = conn.connection.driver_connection
            raw_conn.set_isolation_level(ISOLATION_LEVEL_AUTOCOMMIT)

            with raw_conn.cursor() as cursor:
                cursor.execute(statement)

    def terminate_connections(self, name: str) -> int:
        """
        Terminate all other sessions connected to a database.

        Returns:
            Number of connections terminated
        """
        try:
            engine = self._get_admin_engine()
            with engine.connect() as conn:
                count_result = conn.execute(
                    text(count_database_connections_sql()), {'database_name': name}
                )
                connection_count = count_result.scalar() or 0

                if connection_count == 0:
                    return 0

                logger.debug(f"Terminating {connection_count} connections to {name}")
                conn.execute(text(terminate_connections_sql(name)))

                return connection_count

        except SQLAlchemyError as e:
            logger.error(f"Error terminating connections: {e}")
            raise DatabaseCreationError(f"Failed to terminate connections: {e}") from e

    def create_database(self, name: str, template: Optional[str] = None) -> None:
        """
        Create a database, optionally as a copy of a template database.

        The template must have no other sessions while the copy runs. Encoding
        and locale apply only when building from template0; a clone inherits
        them from its template.

        Raises:
            DatabaseCreationError: If creation fails
        """
        db_config = self.db_config if template in (None, 'template0') else {}
        create_sql = create_database_sql(database_name=name, template=template, **db_config)

        try:
            self._execute_admin(create_sql)
        except (SQLAlchemyError, psycopg2.Error) as e:
            logger.error(f"Error creating database {name}: {e}")
            raise DatabaseCreationError(f"Failed to create database {name}: {e}") from e

        logger.debug(f"Created database {name}" + (f" from {template}" if template else ""))

    def drop_database(self, name: str, force: bool = False) -> None:
        """
        Drop a database if it exists, terminating its sessions first.

        Args:
            name: Database to drop
            force: Use WITH (FORCE) (PostgreSQL 13+)

        Raises:
            DatabaseCreationError: If dropping fails
        """
        self.terminate_connections(name)

        try:
            self._execute_admin(drop_database_sql(database_name=name, if_exists=True, force=force))
        except (SQLAlchemyError, psycopg2.Error) as e:
            logger.error(f"Error dropping database {name}: {e}")
            raise DatabaseCreationError(f"Failed to drop database {name}: {e}") from e

        logger.debug(f"Dropped database {name}")

    def close_connections(self) -> None:
        """Close all admin connections."""
        with self._engine_lock:
            engine, self._admin_engine = self._admin_engine, None
        if engine is not None:
            engine.dispose()
