"""
===============================================
Smoke tests for the embedded_db public surface
===============================================

Available markers:
------------------
smoke, e2e

How to Execute:
---------------
All tests:          python -m pytest tests/test_embedded_db.py -v
"""

from unittest.mock import patch

import pytest

import embedded_db


@pytest.mark.smoke
def test_public_names_are_exported():
    for name in embedded_db.__all__:
        assert hasattr(embedded_db, name), name


@pytest.mark.smoke
def test_shutdown_all_uses_default_registries():
    with patch.object(embedded_db.default_server_registry, 'shutdown_all', return_value=2) as mock_shutdown:
        assert embedded_db.shutdown_all() == 2

    mock_shutdown.assert_called_once_with(embedded_db.default_template_registry)


@pytest.mark.e2e
def test_sqlite_workflow_end_to_end(template_registry):
    provider = embedded_db.SqliteDatabaseProvider(template_registry=template_registry)
    schema = embedded_db.SqlPreparer(["CREATE TABLE prime_number (number INT PRIMARY KEY NOT NULL)"])

    @embedded_db.preparer('primes-seed-v1')
    def seed(database):
        conn = database.connect()
        conn.executemany("INSERT INTO prime_number VALUES (?)", [(2,), (3,), (5,)])
        conn.commit()
        conn.close()

    with provider.create_database(schema + seed) as database:
        conn = database.connect()
        assert conn.execute("SELECT SUM(number) FROM prime_number").fetchone()[0] == 10
        conn.close()

    assert database.closed
    with pytest.raises(embedded_db.ProviderError):
        database.connect()
