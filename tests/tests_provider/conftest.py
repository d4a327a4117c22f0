"""
Shared fixtures and mocking helpers for provider tests.

Key fixtures:
- patch_create_engine: patches create_engine in the create_database module.
- db_creator_factory: returns a DatabaseCreator wired to the patched engine.
- server_registry: fresh ServerRegistry so tests never share servers.
"""

from unittest.mock import patch

import pytest


@pytest.fixture
def patch_create_engine():
    """Patch sqlalchemy.create_engine as used by DatabaseCreator."""
    with patch("embedded_db.provider.create_database.create_engine") as mock_create_engine:
        yield mock_create_engine


@pytest.fixture
def db_creator_factory():
    """Factory that creates a DatabaseCreator with default params."""
    from embedded_db.provider.create_database import DatabaseCreator

    def factory(**overrides):
        params = dict(
            host="localhost",
            port=54321,
            user="postgres",
            password=None,
            admin_db="postgres",
        )
        params.update(overrides)
        return DatabaseCreator(**params)

    return factory


@pytest.fixture
def server_registry():
    from embedded_db.provider.servers import ServerRegistry

    registry = ServerRegistry()
    yield registry
    registry.shutdown_all()


@pytest.fixture
def fake_server_class():
    """PostgresServer subclass that records start/stop without real processes."""
    from embedded_db.provider.servers import PostgresServer

    class FakeServer(PostgresServer):
        started = []
        stopped = []
        fail_with = None

        def start(self):
            if type(self).fail_with is not None:
                raise type(self).fail_with
            self.port = self.builder.port or 50000 + len(FakeServer.started)
            FakeServer.started.append(self)

        def stop(self):
            if self.port is not None:
                FakeServer.stopped.append(self)
            self.port = None

    return FakeServer
