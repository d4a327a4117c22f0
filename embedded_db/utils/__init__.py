"""
==========================
Utility Functions Package.
==========================

Connectivity helpers shared by the server-backed providers.

Modules:
    database_utils: Port allocation and readiness polling
"""

__all__ = [
    'DatabaseConnectionError',
    'check_database_available',
    'find_free_port',
    'wait_for_database',
]

from .database_utils import (
    DatabaseConnectionError,
    check_database_available,
    find_free_port,
    wait_for_database,
)
