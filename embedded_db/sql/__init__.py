"""
=========================================================
SQL utilities package for embedded database lifecycles.
=========================================================

Pure functions generating the DDL and catalog queries used by the
PostgreSQL providers.

    - ddl.py: CREATE/DROP DATABASE and session termination
    - query_builder.py: catalog queries with bound parameters
"""

__all__ = [
    'count_database_connections_sql',
    'create_database_sql',
    'drop_database_sql',
    'quote_identifier',
    'quote_literal',
    'show_setting_sql',
    'terminate_connections_sql',
]

from .ddl import (
    create_database_sql,
    drop_database_sql,
    quote_identifier,
    quote_literal,
    terminate_connections_sql,
)
from .query_builder import (
    count_database_connections_sql,
    show_setting_sql,
)
