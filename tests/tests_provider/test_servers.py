"""
==================================================
Pytest suite for embedded_db.provider.servers
==================================================

Sections:
---------
1. Unit tests - builders and binary discovery
2. Integration tests - process/container start and stop with mocked OS/docker
3. Edge case tests - startup failures, eviction and shutdown

Mocks and helpers:
------------------
- MagicMock docker client and container
- Patched subprocess.run / subprocess.Popen and wait_for_database
- FakeServer (conftest): PostgresServer without a real backend
"""

import os
import signal
import subprocess
from unittest.mock import MagicMock, patch

import pytest
from docker.errors import DockerException

from embedded_db.core.config import DatabaseConfiguration
from embedded_db.core.exceptions import ProviderError
from embedded_db.provider.servers import (
    CONTAINER_DATA_DIRECTORY,
    CONTAINER_PASSWORD,
    ContainerPostgresServer,
    ContainerServerBuilder,
    ProcessPostgresServer,
    ProcessServerBuilder,
    ServerBuilder,
    ServerKey,
    find_bin_directory,
)
from embedded_db.registry.template_registry import TemplateRegistry


def make_bin_directory(path):
    for name in ('initdb', 'postgres'):
        binary = path / name
        binary.write_text('#!/bin/sh\n')
        binary.chmod(0o755)
    return str(path)


def make_container(host_port='49153', status='running'):
    container = MagicMock()
    container.short_id = 'abc123'
    container.status = status
    container.ports = {'5432/tcp': [{'HostIp': '0.0.0.0', 'HostPort': host_port}]}
    return container


# ===============
# 1. UNIT TESTS
# ===============

@pytest.mark.unit
def test_builder_reserves_connections():
    """max_connections is multiplied by the reservation factor."""
    default = ServerBuilder(DatabaseConfiguration())
    configured = ServerBuilder(DatabaseConfiguration.from_properties({'server.max_connections': '100'}))

    assert default.server_config['max_connections'] == '300'
    assert configured.server_config['max_connections'] == '300'
    assert ServerBuilder(
        DatabaseConfiguration.from_properties({'server.max_connections': '20'})
    ).server_config['max_connections'] == '60'


@pytest.mark.unit
def test_builder_port_and_settings():
    config = DatabaseConfiguration.from_properties({
        'server.port': '33334',
        'server.shared_buffers': '64MB',
        'initdb.lc-collate': 'fr_BE.UTF-8',
        'initdb.encoding': 'UTF8',
        'client.application_name': 'tests',
    })

    builder = ServerBuilder(config)

    assert builder.port == 33334
    assert 'port' not in builder.server_config
    assert builder.settings()['fsync'] == 'off'
    assert builder.settings()['shared_buffers'] == '64MB'
    assert builder.initdb_arguments() == ['--encoding=UTF8', '--lc-collate=fr_BE.UTF-8']
    assert builder.connect_config == {'application_name': 'tests'}


@pytest.mark.unit
def test_builder_setters_last_writer_wins():
    builder = ServerBuilder(DatabaseConfiguration())

    builder.set_port(33334).set_port(33335)
    builder.set_server_config('fsync', 'on')
    builder.set_initdb_option('locale', 'C')
    builder.set_connect_config('sslmode', 'disable')

    assert builder.port == 33335
    assert builder.settings()['fsync'] == 'on'
    assert builder.initdb_options == {'locale': 'C'}
    assert builder.connect_config == {'sslmode': 'disable'}


@pytest.mark.unit
def test_builder_database_options_follow_initdb():
    builder = ServerBuilder(DatabaseConfiguration.from_properties({
        'initdb.locale': 'C',
        'initdb.lc-ctype': 'C.UTF-8',
        'initdb.encoding': 'UTF8',
    }))

    assert builder.database_options() == {
        'encoding': 'UTF8', 'lc_collate': 'C', 'lc_ctype': 'C.UTF-8',
    }
    assert ServerBuilder(DatabaseConfiguration()).database_options() == {
        'encoding': None, 'lc_collate': None, 'lc_ctype': None,
    }


@pytest.mark.unit
def test_container_builder_defaults():
    builder = ContainerServerBuilder(DatabaseConfiguration.from_properties({
        'docker.image': 'postgres:15-alpine',
        'docker.tmpfs.enabled': 'true',
    }))

    assert builder.image == 'postgres:15-alpine'
    assert builder.tmpfs_enabled is True
    assert builder.tmpfs_options == 'rw,noexec,nosuid'
    builder.set_tmpfs(True, 'rw,size=1g').set_image('postgres:16')
    assert builder.tmpfs_options == 'rw,size=1g'
    assert builder.image == 'postgres:16'


@pytest.mark.unit
def test_find_bin_directory_configured(tmp_path):
    directory = make_bin_directory(tmp_path)

    assert find_bin_directory(directory) == directory


@pytest.mark.unit
def test_find_bin_directory_from_pg_config(tmp_path):
    directory = make_bin_directory(tmp_path)
    completed = subprocess.CompletedProcess(['pg_config'], 0, stdout=directory + '\n', stderr='')

    with patch('embedded_db.provider.servers.shutil.which',
               side_effect=lambda name: '/usr/bin/pg_config' if name == 'pg_config' else None), \
         patch('embedded_db.provider.servers.subprocess.run', return_value=completed):
        assert find_bin_directory() == directory


@pytest.mark.edge_case
def test_find_bin_directory_missing(tmp_path):
    with pytest.raises(ProviderError, match="configured directory"):
        find_bin_directory(str(tmp_path))

    with patch('embedded_db.provider.servers.shutil.which', return_value=None), \
         patch('embedded_db.provider.servers.glob.glob', return_value=[]):
        with pytest.raises(ProviderError, match="process.bin-dir"):
            find_bin_directory()


# ======================
# 2. INTEGRATION TESTS
# ======================

@pytest.mark.integration
def test_process_server_start_and_stop(tmp_path):
    builder = ProcessServerBuilder(DatabaseConfiguration.from_properties({
        'initdb.lc-collate': 'C', 'server.shared_buffers': '64MB',
    }))
    builder.set_base_directory(str(tmp_path)).set_port(33334)
    server = ProcessPostgresServer(builder)
    process = MagicMock()
    process.poll.return_value = None

    with patch('embedded_db.provider.servers.find_bin_directory', return_value='/pg/bin'), \
         patch('embedded_db.provider.servers.subprocess.run') as mock_run, \
         patch('embedded_db.provider.servers.subprocess.Popen', return_value=process) as mock_popen, \
         patch('embedded_db.provider.servers.wait_for_database') as mock_wait:
        server.start()
        data_directory = server.data_directory

        initdb_command = mock_run.call_args[0][0]
        postgres_command = mock_popen.call_args[0][0]

        assert initdb_command[:7] == ['/pg/bin/initdb', '-A', 'trust', '-U', 'postgres', '-E', 'UTF-8']
        assert '--lc-collate=C' in initdb_command
        assert postgres_command[:5] == ['/pg/bin/postgres', '-D', data_directory, '-p', '33334']
        assert 'max_connections=300' in postgres_command
        assert 'shared_buffers=64MB' in postgres_command
        assert 'fsync=off' in postgres_command
        assert mock_wait.call_args[0][:3] == ('localhost', 33334, 'postgres')
        assert server.port == 33334
        assert server.connection_params('db_1')['dbname'] == 'db_1'

        server.stop()

    process.send_signal.assert_called_once_with(signal.SIGINT)
    assert server.port is None
    assert not os.path.exists(data_directory)


@pytest.mark.integration
def test_process_server_kills_after_timeout(tmp_path):
    builder = ProcessServerBuilder(DatabaseConfiguration()).set_base_directory(str(tmp_path))
    server = ProcessPostgresServer(builder)
    process = MagicMock()
    process.poll.return_value = None
    process.wait.side_effect = [subprocess.TimeoutExpired('postgres', 10), 0]

    with patch('embedded_db.provider.servers.find_bin_directory', return_value='/pg/bin'), \
         patch('embedded_db.provider.servers.subprocess.run'), \
         patch('embedded_db.provider.servers.subprocess.Popen', return_value=process), \
         patch('embedded_db.provider.servers.wait_for_database'):
        server.start()
        server.stop()

    process.kill.assert_called_once()


@pytest.mark.integration
def test_container_server_start_and_stop():
    builder = ContainerServerBuilder(DatabaseConfiguration.from_properties({
        'docker.tmpfs.enabled': 'true',
        'initdb.lc-collate': 'fr_BE.UTF-8',
        'server.max_connections': '100',
    }))
    client = MagicMock()
    container = make_container()
    client.containers.run.return_value = container
    server = ContainerPostgresServer(builder, client=client)

    with patch('embedded_db.provider.servers.wait_for_database') as mock_wait:
        server.start()

    kwargs = client.containers.run.call_args[1]
    assert kwargs['image'] == 'postgres:16-alpine'
    assert kwargs['detach'] is True
    assert kwargs['environment']['POSTGRES_PASSWORD'] == CONTAINER_PASSWORD
    assert kwargs['environment']['POSTGRES_INITDB_ARGS'] == '--lc-collate=fr_BE.UTF-8'
    assert kwargs['ports'] == {'5432/tcp': None}
    assert kwargs['tmpfs'] == {CONTAINER_DATA_DIRECTORY: 'rw,noexec,nosuid'}
    assert 'max_connections=300' in kwargs['command']
    assert server.port == 49153
    assert mock_wait.call_args[0][:4] == ('127.0.0.1', 49153, 'postgres', 'docker')
    assert server.connection_params()['password'] == 'docker'

    server.stop()

    container.stop.assert_called_once()
    container.remove.assert_called_once_with(force=True, v=True)
    assert server.port is None


@pytest.mark.integration
def test_container_fixed_port_without_tmpfs():
    builder = ContainerServerBuilder(DatabaseConfiguration()).set_port(33334)
    client = MagicMock()
    client.containers.run.return_value = make_container(host_port='33334')
    server = ContainerPostgresServer(builder, client=client)

    with patch('embedded_db.provider.servers.wait_for_database'):
        server.start()

    kwargs = client.containers.run.call_args[1]
    assert kwargs['ports'] == {'5432/tcp': 33334}
    assert 'tmpfs' not in kwargs
    assert server.port == 33334


# ==================
# 3. EDGE CASE TESTS
# ==================

@pytest.mark.edge_case
def test_initdb_failure_is_provider_error(tmp_path):
    builder = ProcessServerBuilder(DatabaseConfiguration()).set_base_directory(str(tmp_path))
    server = ProcessPostgresServer(builder)
    failure = subprocess.CalledProcessError(1, ['initdb'], stderr='initdb: cannot be run as root')

    with patch('embedded_db.provider.servers.find_bin_directory', return_value='/pg/bin'), \
         patch('embedded_db.provider.servers.subprocess.run', side_effect=failure):
        with pytest.raises(ProviderError, match="cannot be run as root"):
            server.start()

    assert os.listdir(tmp_path) == []
    assert server.port is None


@pytest.mark.edge_case
def test_process_exit_during_startup(tmp_path):
    builder = ProcessServerBuilder(DatabaseConfiguration()).set_base_directory(str(tmp_path))
    server = ProcessPostgresServer(builder)
    process = MagicMock()
    process.poll.return_value = 1

    with patch('embedded_db.provider.servers.find_bin_directory', return_value='/pg/bin'), \
         patch('embedded_db.provider.servers.subprocess.run'), \
         patch('embedded_db.provider.servers.subprocess.Popen', return_value=process), \
         patch('embedded_db.utils.database_utils.check_database_available', return_value=False):
        with pytest.raises(ProviderError, match="exited before accepting connections"):
            server.start()

    assert os.listdir(tmp_path) == []


@pytest.mark.edge_case
def test_docker_unavailable():
    server = ContainerPostgresServer(ContainerServerBuilder(DatabaseConfiguration()))

    with patch('embedded_db.provider.servers.docker.from_env', side_effect=DockerException("no socket")):
        with pytest.raises(ProviderError, match="Docker is not available"):
            server.start()


@pytest.mark.edge_case
def test_container_run_failure_cleans_up():
    client = MagicMock()
    container = make_container(status='exited')
    container.ports = {}
    client.containers.run.return_value = container
    server = ContainerPostgresServer(ContainerServerBuilder(DatabaseConfiguration()), client=client)

    with pytest.raises(ProviderError, match="did not publish"):
        server.start()

    container.remove.assert_called_once_with(force=True, v=True)


@pytest.mark.edge_case
def test_registry_starts_each_key_once(server_registry, fake_server_class):
    registered = []
    factory = lambda: fake_server_class(ServerBuilder(DatabaseConfiguration()))

    first = server_registry.get_or_start(ServerKey('identity'), factory, registered.append)
    second = server_registry.get_or_start(ServerKey('identity'), factory, registered.append)
    other = server_registry.get_or_start(ServerKey('identity', 'fp'), factory, registered.append)

    assert first is second
    assert other is not first
    assert len(registered) == 1

    registered[0]()

    assert fake_server_class.stopped == [first, other]
    assert server_registry.entries() == []


@pytest.mark.edge_case
def test_evict_idle_keeps_most_recent(server_registry, fake_server_class, template_registry):
    factory = lambda: fake_server_class(ServerBuilder(DatabaseConfiguration()))
    servers = [
        server_registry.get_or_start(ServerKey('identity', f'fp{i}'), factory, lambda stop: None)
        for i in range(3)
    ]
    for i, server in enumerate(servers):
        server.acquire()
        server.release()
        server.last_released = float(i)
        template_registry.get_or_build((ServerKey('identity', f'fp{i}'), f'fp{i}'), lambda: 'tpl')
    servers[0].acquire()

    stopped = server_registry.evict_idle('identity', 1, template_registry)

    assert stopped == [servers[1]]
    assert servers[1].acquire() is False
    assert servers[0].acquire() is True
    assert len(template_registry.entries()) == 2
    assert len(server_registry.entries()) == 2


@pytest.mark.edge_case
def test_shutdown_all_stops_everything(server_registry, fake_server_class):
    fake_server_class.stopped.clear()
    factory = lambda: fake_server_class(ServerBuilder(DatabaseConfiguration()))
    server_registry.get_or_start(ServerKey('a'), factory, lambda stop: None)
    server_registry.get_or_start(ServerKey('b'), factory, lambda stop: None)

    assert server_registry.shutdown_all() == 2
    assert len(fake_server_class.stopped) == 2
    assert server_registry.entries() == []


@pytest.mark.edge_case
def test_creator_requires_running_server(fake_server_class):
    """Admin statements are never sent once the server has stopped."""
    builder = ServerBuilder(DatabaseConfiguration.from_properties({'initdb.lc-collate': 'C'}))
    server = fake_server_class(builder)

    with pytest.raises(ProviderError, match="not running"):
        server.creator

    server.start()
    creator = server.creator
    assert creator.port == server.port
    assert creator.db_config['lc_collate'] == 'C'

    server.stop()
    with pytest.raises(ProviderError, match="not running"):
        server.creator


@pytest.mark.edge_case
def test_evict_idle_discards_templates_while_key_is_held(server_registry, fake_server_class):
    key = ServerKey('identity', 'fp')
    key_held = []

    class RecordingTemplates(TemplateRegistry):
        def discard_scope(self, scope):
            key_held.append(scope in server_registry)
            return super().discard_scope(scope)

    templates = RecordingTemplates()
    server = server_registry.get_or_start(
        key, lambda: fake_server_class(ServerBuilder(DatabaseConfiguration())), lambda stop: None
    )
    templates.get_or_build((key, 'fp'), lambda: 'tpl')
    server.acquire()
    server.release()

    assert server_registry.evict_idle('identity', 0, templates) == [server]
    assert key_held == [True]
    assert templates.entries() == []
    assert key not in server_registry
