"""
==================================================
Connectivity utilities for backing database servers.
==================================================

Readiness checks and port allocation shared by the forked-process and
container variants. Servers are slow to start; callers poll with
wait_for_database() until the server accepts connections or the backing
process dies.

Example:
    >>> from embedded_db.utils.database_utils import find_free_port, wait_for_database
    >>>
    >>> port = find_free_port()
    >>> # ... start a server on that port ...
    >>> wait_for_database('localhost', port, 'postgres', '', max_retries=50, retry_delay=0.1)
"""

import logging
import socket
import time
from typing import Callable, Optional

import psycopg2
from psycopg2 import OperationalError

from embedded_db.core.exceptions import ProviderError

logger = logging.getLogger(__name__)


class DatabaseConnectionError(ProviderError):
    """Exception raised when a backing server never becomes reachable."""
    pass


def find_free_port(host: str = 'localhost') -> int:
    """
    Ask the OS for a currently unused TCP port.

    The port is released before returning, so a concurrent process may still
    take it; the server start then fails and surfaces as a ProviderError.

    Args:
        host: Interface to bind while probing

    Returns:
        Port number
    """
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as probe:
        probe.bind((host, 0))
        return probe.getsockname()[1]


def check_database_available(
    host: str,
    port: int,
    user: str,
    password: Optional[str] = None,
    database: str = 'postgres',
    timeout: int = 5
) -> bool:
    """
    Check if a PostgreSQL server accepts connections.

    Args:
        host: Database hostname
        port: Database port
        user: Database user
        password: Database password
        database: Database name
        timeout: Connection timeout in seconds

    Returns:
        True if a connection succeeded, False otherwise
    """
    try:
        conn = psycopg2.connect(
            host=host,
            port=port,
            user=user,
            password=password,
            dbname=database,
            connect_timeout=timeout
        )
        conn.close()
        return True
    except OperationalError as e:
        logger.debug(f"Database not available: {e}")
        return False


def wait_for_database(
    host: str,
    port: int,
    user: str,
    password: Optional[str] = None,
    database: str = 'postgres',
    max_retries: int = 100,
    retry_delay: float = 0.1,
    timeout: int = 5,
    is_alive: Optional[Callable[[], bool]] = None
) -> bool:
    """
    Wait for a PostgreSQL server to accept connections.

    Args:
        host: Database hostname
        port: Database port
        user: Database user
        password: Database password
        database: Database name
        max_retries: Maximum number of attempts
        retry_delay: Delay between attempts in seconds
        timeout: Connection timeout per attempt in seconds
        is_alive: Optional probe of the backing process; polling stops as
            soon as it returns False

    Returns:
        True once the server is available

    Raises:
        DatabaseConnectionError: If the server never becomes available
    """
    logger.debug(f"Waiting for PostgreSQL at {host}:{port}/{database}...")

    for attempt in range(1, max_retries + 1):
        if is_alive is not None and not is_alive():
            raise DatabaseConnectionError(
                f"PostgreSQL at {host}:{port} exited before accepting connections"
            )

        if check_database_available(host, port, user, password, database, timeout):
            logger.debug(f"✅ PostgreSQL is available (attempt {attempt}/{max_retries})")
            return True

        if attempt < max_retries:
            time.sleep(retry_delay)

    error_msg = (
        f"PostgreSQL at {host}:{port}/{database} did not become available "
        f"after {max_retries} attempts"
    )
    logger.error(f"❌ {error_msg}")
    raise DatabaseConnectionError(error_msg)
