"""
Database preparers: fingerprinted units of DDL/DML applied once per
fingerprint and reused through templates.
"""

__all__ = [
    'CallablePreparer',
    'CompositePreparer',
    'DatabasePreparer',
    'EMPTY_PREPARER',
    'SqlPreparer',
    'as_preparer',
    'compute_fingerprint',
    'preparer',
]

from .preparers import (
    EMPTY_PREPARER,
    CallablePreparer,
    CompositePreparer,
    DatabasePreparer,
    SqlPreparer,
    as_preparer,
    compute_fingerprint,
    preparer,
)
