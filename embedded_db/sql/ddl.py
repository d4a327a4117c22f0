"""
=================================================================
Data Definition Language (DDL) utilities for database lifecycles.
=================================================================

Pure functions generating the PostgreSQL statements used to create, clone
and drop per-test databases. Database creation and dropping need an
AUTOCOMMIT connection to the admin database, which callers handle
separately.

Functions:
    quote_identifier: Quote a PostgreSQL identifier
    create_database_sql: Generate CREATE DATABASE (optionally from a template)
    drop_database_sql: Generate DROP DATABASE statement
    terminate_connections_sql: Terminate sessions connected to a database

Example:
    >>> from embedded_db.sql.ddl import create_database_sql
    >>>
    >>> # Clone a prepared template
    >>> print(create_database_sql('db_1234', template='tpl_abcd'))
    CREATE DATABASE "db_1234"
        WITH TEMPLATE = "tpl_abcd";
"""

from typing import Optional


def quote_identifier(identifier: str) -> str:
    """Quote a PostgreSQL identifier, doubling embedded quotes.

    Example:
        >>> quote_identifier('my"db')
        '"my""db"'
    """
    return '"' + identifier.replace('"', '""') + '"'


def quote_literal(value: str) -> str:
    """Quote a PostgreSQL string literal, doubling embedded quotes."""
    return "'" + value.replace("'", "''") + "'"


def create_database_sql(
    database_name: str,
    template: Optional[str] = None,
    encoding: Optional[str] = None,
    lc_collate: Optional[str] = None,
    lc_ctype: Optional[str] = None
) -> str:
    """
    Generate CREATE DATABASE statement.

    Encoding and locale options only apply when creating from template0;
    a clone inherits them from its template.

    Args:
        database_name: Name of the database to create
        template: Template database to copy
        encoding: Character encoding
        lc_collate: Collation order
        lc_ctype: Character classification

    Returns:
        SQL CREATE DATABASE statement
    """
    options = []

    if template:
        options.append(f"TEMPLATE = {quote_identifier(template)}")
    if encoding:
        options.append(f"ENCODING = {quote_literal(encoding)}")
    if lc_collate:
        options.append(f"LC_COLLATE = {quote_literal(lc_collate)}")
    if lc_ctype:
        options.append(f"LC_CTYPE = {quote_literal(lc_ctype)}")

    sql = f"CREATE DATABASE {quote_identifier(database_name)}"
    if options:
        sql += "\n    WITH " + "\n         ".join(options)

    return sql + ";"


def drop_database_sql(
    database_name: str,
    if_exists: bool = True,
    force: bool = False
) -> str:
    """
    Generate DROP DATABASE statement.

    Args:
        database_name: Name of the database to drop
        if_exists: Add IF EXISTS clause
        force: Add WITH (FORCE) clause (PostgreSQL 13+)

    Returns:
        SQL DROP DATABASE statement
    """
    sql_parts = ["DROP DATABASE"]

    if if_exists:
        sql_parts.append("IF EXISTS")

    sql_parts.append(quote_identifier(database_name))

    if force:
        sql_parts.append("WITH (FORCE)")

    return " ".join(sql_parts) + ";"


def terminate_connections_sql(database_name: str) -> str:
    """
    Generate SQL to terminate all other sessions connected to a database.

    Args:
        database_name: Name of the database

    Returns:
        SQL to terminate connections
    """
    return f"""
SELECT pg_terminate_backend(pid)
FROM pg_stat_activity
WHERE datname = {quote_literal(database_name)}
  AND pid <> pg_backend_pid();"""
