"""
=============================================
Catalog queries for database lifecycle checks.
=============================================

Metadata queries run against the admin database of a backing server.
Every query takes its values as bound parameters (':name' style) for
execution through sqlalchemy.text().

Functions:
    count_database_connections_sql: How many sessions are connected to it?
    show_setting_sql: Effective value of a server setting
"""

import re

_SETTING_NAME = re.compile(r'^[A-Za-z_][A-Za-z0-9_.]*$')


def count_database_connections_sql() -> str:
    """
    Generate SQL to count other sessions connected to a database.

    Returns:
        SQL query (parameter ':database_name') returning the session count
    """
    return """SELECT COUNT(*)
FROM pg_stat_activity
WHERE datname = :database_name
  AND pid <> pg_backend_pid()"""


def show_setting_sql(setting: str) -> str:
    """
    Generate SHOW statement for a server setting.

    Args:
        setting: Setting name, e.g. 'max_connections'

    Returns:
        SHOW statement

    Raises:
        ValueError: If the setting name is not a plain identifier
    """
    if not _SETTING_NAME.match(setting):
        raise ValueError(f"Invalid setting name: {setting!r}")
    return f"SHOW {setting}"
