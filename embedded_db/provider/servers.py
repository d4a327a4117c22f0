"""
=======================================================
Backing PostgreSQL servers: forked process and container.
=======================================================

A backing server is a heavyweight resource shared by many test databases.
Servers are built from a mutable builder that customizers adjust before
start, started once per ServerKey through a ServerRegistry, reference-counted
by the databases living on them, and stopped by a shutdown hook or by
shutdown_all().

Variants:
    ProcessPostgresServer: initdb + postgres forked into a temporary data dir
    ContainerPostgresServer: official postgres image run through the docker SDK

Example:
    >>> builder = ProcessServerBuilder(DatabaseConfiguration())
    >>> builder.set_server_config('work_mem', '8MB')
    >>> server = ProcessPostgresServer(builder)
    >>> server.start()
    >>> server.port
    54321
    >>> server.stop()
"""

import functools
import glob
import logging
import os
import re
import shutil
import signal
import subprocess
import tempfile
import threading
import time
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Hashable, List, NamedTuple, Optional, Tuple

import docker
import psycopg2
from docker.errors import DockerException

from embedded_db.core.config import DatabaseConfiguration, initdb_locale
from embedded_db.core.exceptions import ProviderError
from embedded_db.core.logger import log_teardown_failure
from embedded_db.provider.create_database import DatabaseCreator
from embedded_db.registry.template_registry import BuildRegistry, TemplateRegistry
from embedded_db.utils.database_utils import find_free_port, wait_for_database

logger = logging.getLogger(__name__)

POSTGRES_USER = 'postgres'
CONTAINER_PASSWORD = 'docker'
CONTAINER_PORT = '5432/tcp'
CONTAINER_DATA_DIRECTORY = '/var/lib/postgresql/data'
CONTAINER_LABEL = 'embedded_db'

DEFAULT_MAX_CONNECTIONS = 100
CONNECTION_RESERVATION_FACTOR = 3

# Durability is irrelevant for throwaway test clusters
SPEED_SETTINGS = {
    'fsync': 'off',
    'synchronous_commit': 'off',
    'full_page_writes': 'off',
}

STARTUP_RETRIES = 300
STARTUP_RETRY_DELAY = 0.1
STOP_TIMEOUT = 10


class ServerBuilder:
    """Mutable server settings handed to customizers before start.

    Attributes:
        port: Host port to bind; 0 picks a free one
        server_config: Server settings passed as -c name=value
        initdb_options: Cluster bootstrap options passed as --name=value
        connect_config: libpq keywords added to every connection
    """

    def __init__(self, config: DatabaseConfiguration):
        server = config.server_config
        self.port = int(server.pop('port', 0))
        max_connections = int(server.get('max_connections', DEFAULT_MAX_CONNECTIONS))
        server['max_connections'] = str(max_connections * CONNECTION_RESERVATION_FACTOR)
        self.server_config: Dict[str, str] = server
        self.initdb_options: Dict[str, str] = config.initdb_config
        self.connect_config: Dict[str, str] = config.client_config

    def set_port(self, port: int) -> 'ServerBuilder':
        self.port = int(port)
        return self

    def set_server_config(self, name: str, value: Any) -> 'ServerBuilder':
        self.server_config[name] = str(value)
        return self

    def set_initdb_option(self, name: str, value: Any) -> 'ServerBuilder':
        self.initdb_options[name] = str(value)
        return self

    def set_connect_config(self, name: str, value: Any) -> 'ServerBuilder':
        self.connect_config[name] = str(value)
        return self

    def settings(self) -> Dict[str, str]:
        """Speed settings overlaid with configured server settings."""
        return {**SPEED_SETTINGS, **self.server_config}

    def initdb_arguments(self) -> List[str]:
        return [f"--{name}={value}" for name, value in sorted(self.initdb_options.items())]

    def database_options(self) -> Dict[str, Optional[str]]:
        """Encoding and locale for databases created from template0.

        Mirrors the bootstrap options so templates match the cluster defaults.
        """
        return {
            'encoding': self.initdb_options.get('encoding'),
            'lc_collate': initdb_locale(self.initdb_options, 'collate'),
            'lc_ctype': initdb_locale(self.initdb_options, 'ctype'),
        }


class ProcessServerBuilder(ServerBuilder):
    """Builder for forked servers.

    Attributes:
        bin_directory: Directory with initdb and postgres, or None to discover
        base_directory: Parent of the temporary data directory
    """

    def __init__(self, config: DatabaseConfiguration):
        super().__init__(config)
        self.bin_directory = config.bin_directory
        self.base_directory: Optional[str] = None

    def set_bin_directory(self, path: str) -> 'ProcessServerBuilder':
        self.bin_directory = path
        return self

    def set_base_directory(self, path: str) -> 'ProcessServerBuilder':
        self.base_directory = path
        return self


class ContainerServerBuilder(ServerBuilder):
    """Builder for container servers.

    Attributes:
        image: Container image reference
        tmpfs_enabled: Whether the data directory is a tmpfs mount
        tmpfs_options: tmpfs mount options
        environment: Extra container environment variables
    """

    def __init__(self, config: DatabaseConfiguration):
        super().__init__(config)
        self.image = config.docker_image
        self.tmpfs_enabled = config.docker_tmpfs_enabled
        self.tmpfs_options = config.docker_tmpfs_options
        self.environment: Dict[str, str] = {}

    def set_image(self, image: str) -> 'ContainerServerBuilder':
        self.image = image
        return self

    def set_tmpfs(self, enabled: bool, options: Optional[str] = None) -> 'ContainerServerBuilder':
        self.tmpfs_enabled = enabled
        if options is not None:
            self.tmpfs_options = options
        return self

    def set_environment(self, name: str, value: Any) -> 'ContainerServerBuilder':
        self.environment[name] = str(value)
        return self


class PostgresServer(ABC):
    """Running PostgreSQL server shared by the databases created on it.

    Attributes:
        host: Hostname clients connect to
        port: Bound port once started
        user: Superuser name
        password: Superuser password, None for trust authentication
    """

    host = 'localhost'
    user = POSTGRES_USER
    password: Optional[str] = None

    def __init__(self, builder: ServerBuilder):
        self.builder = builder
        self.port: Optional[int] = None
        self.last_released = time.monotonic()
        self._refcount = 0
        self._retired = False
        self._lock = threading.Lock()
        self._creator: Optional[DatabaseCreator] = None

    @property
    def running(self) -> bool:
        return self.port is not None and not self._retired

    @property
    def idle(self) -> bool:
        with self._lock:
            return self._refcount == 0

    def acquire(self) -> bool:
        """Count one more database living on this server.

        Returns:
            False if the server has been retired and must not be used
        """
        with self._lock:
            if self._retired:
                return False
            self._refcount += 1
            return True

    def release(self) -> None:
        with self._lock:
            self._refcount = max(0, self._refcount - 1)
            self.last_released = time.monotonic()

    def retire_if_idle(self) -> bool:
        """Mark an idle server as unusable so it can be stopped safely."""
        with self._lock:
            if self._refcount or self._retired:
                return False
            self._retired = True
            return True

    def connection_params(self, database: str = 'postgres') -> Dict[str, Any]:
        """psycopg2.connect() keyword arguments for a database on this server."""
        params: Dict[str, Any] = {
            'host': self.host,
            'port': self.port,
            'user': self.user,
            'dbname': database,
        }
        if self.password is not None:
            params['password'] = self.password
        params.update(self.builder.connect_config)
        return params

    def connect(self, database: str = 'postgres'):
        return psycopg2.connect(**self.connection_params(database))

    @property
    def creator(self) -> DatabaseCreator:
        """Admin helper bound to this server.

        Raises:
            ProviderError: If the server is not running
        """
        with self._lock:
            if not self.running:
                raise ProviderError(f"{type(self).__name__} is not running")
            if self._creator is None:
                self._creator = DatabaseCreator(
                    host=self.host,
                    port=self.port,
                    user=self.user,
                    password=self.password,
                    admin_db='postgres',
                    connect_args=self.builder.connect_config,
                    **self.builder.database_options()
                )
            return self._creator

    def _wait_until_ready(self, is_alive: Callable[[], bool]) -> None:
        wait_for_database(
            self.host,
            self.port,
            self.user,
            self.password,
            max_retries=STARTUP_RETRIES,
            retry_delay=STARTUP_RETRY_DELAY,
            is_alive=is_alive
        )

    @abstractmethod
    def start(self) -> None:
        """Start the server and wait until it accepts connections.

        Raises:
            ProviderError: If the server cannot start or never becomes ready
        """

    @abstractmethod
    def stop(self) -> None:
        """Stop the server and remove its data. Safe to call repeatedly."""

    def _close_creator(self) -> None:
        with self._lock:
            creator, self._creator = self._creator, None
        if creator is not None:
            try:
                creator.close_connections()
            except Exception as e:
                log_teardown_failure(logger, "close admin connections", e)

    def __repr__(self):
        return f"{type(self).__name__}(port={self.port})"


def _version_key(path: str) -> int:
    match = re.search(r'/(\d+)/bin$', path)
    return int(match.group(1)) if match else 0


def find_bin_directory(bin_directory: Optional[str] = None) -> str:
    """
    Locate a directory holding both initdb and postgres.

    Looks at the configured directory, then `pg_config --bindir`, then PATH,
    then /usr/lib/postgresql/<version>/bin (newest first).

    Raises:
        ProviderError: If no usable directory is found
    """
    def usable(directory: str) -> bool:
        return all(os.access(os.path.join(directory, name), os.X_OK) for name in ('initdb', 'postgres'))

    if bin_directory:
        if usable(bin_directory):
            return bin_directory
        raise ProviderError(f"initdb/postgres not found in configured directory {bin_directory}")

    candidates: List[str] = []
    pg_config = shutil.which('pg_config')
    if pg_config:
        try:
            result = subprocess.run(
                [pg_config, '--bindir'], capture_output=True, text=True, check=True
            )
            candidates.append(result.stdout.strip())
        except (OSError, subprocess.CalledProcessError) as e:
            logger.debug(f"pg_config --bindir failed: {e}")

    initdb = shutil.which('initdb')
    if initdb:
        candidates.append(os.path.dirname(initdb))

    candidates.extend(sorted(glob.glob('/usr/lib/postgresql/*/bin'), key=_version_key, reverse=True))

    for candidate in candidates:
        if candidate and usable(candidate):
            return candidate

    raise ProviderError(
        "PostgreSQL binaries not found; install PostgreSQL or set process.bin-dir"
    )


class ProcessPostgresServer(PostgresServer):
    """PostgreSQL forked from local binaries into a temporary data directory."""

    def __init__(self, builder: ProcessServerBuilder):
        super().__init__(builder)
        self.data_directory: Optional[str] = None
        self._process: Optional[subprocess.Popen] = None
        self._log_file = None

    def _initdb(self, bin_directory: str) -> None:
        command = [
            os.path.join(bin_directory, 'initdb'),
            '-A', 'trust',
            '-U', self.user,
            '-E', 'UTF-8',
            '-D', self.data_directory,
        ] + self.builder.initdb_arguments()

        logger.debug(f"Running {' '.join(command)}")
        try:
            subprocess.run(command, capture_output=True, text=True, check=True)
        except subprocess.CalledProcessError as e:
            raise ProviderError(f"initdb failed: {e.stderr.strip() or e}") from e
        except OSError as e:
            raise ProviderError(f"Unable to run initdb: {e}") from e

    def _postgres_command(self, bin_directory: str, port: int) -> List[str]:
        command = [
            os.path.join(bin_directory, 'postgres'),
            '-D', self.data_directory,
            '-p', str(port),
            '-c', 'listen_addresses=localhost',
            '-c', f'unix_socket_directories={self.data_directory}',
        ]
        for name, value in sorted(self.builder.settings().items()):
            command.extend(['-c', f'{name}={value}'])
        return command

    def _is_alive(self) -> bool:
        return self._process is not None and self._process.poll() is None

    def _log_tail(self) -> str:
        path = os.path.join(self.data_directory or '', 'postgres.log')
        try:
            with open(path, encoding='utf-8', errors='replace') as log:
                return ''.join(log.readlines()[-10:]).strip()
        except OSError:
            return ''

    def start(self) -> None:
        bin_directory = find_bin_directory(self.builder.bin_directory)
        self.data_directory = tempfile.mkdtemp(prefix='embedded-pg-', dir=self.builder.base_directory)
        port = self.builder.port or find_free_port()

        try:
            self._initdb(bin_directory)
            self._log_file = open(os.path.join(self.data_directory, 'postgres.log'), 'ab')
            self._process = subprocess.Popen(
                self._postgres_command(bin_directory, port),
                stdout=subprocess.DEVNULL,
                stderr=self._log_file
            )
            self.port = port
            self._wait_until_ready(self._is_alive)
        except Exception as e:
            tail = self._log_tail()
            self.stop()
            logger.error(f"❌ PostgreSQL failed to start on port {port}: {e}")
            if isinstance(e, ProviderError) and not tail:
                raise
            detail = f"\n{tail}" if tail else ''
            raise ProviderError(f"PostgreSQL failed to start on port {port}: {e}{detail}") from e

        logger.info(f"✅ PostgreSQL started on port {port} ({self.data_directory})")

    def stop(self) -> None:
        self._close_creator()
        process, self._process = self._process, None
        if process is not None:
            try:
                if process.poll() is None:
                    process.send_signal(signal.SIGINT)
                    try:
                        process.wait(timeout=STOP_TIMEOUT)
                    except subprocess.TimeoutExpired:
                        process.kill()
                        process.wait()
                logger.info(f"PostgreSQL on port {self.port} stopped")
            except Exception as e:
                log_teardown_failure(logger, f"stop PostgreSQL on port {self.port}", e)

        if self._log_file is not None:
            self._log_file.close()
            self._log_file = None

        if self.data_directory:
            shutil.rmtree(self.data_directory, ignore_errors=True)
            self.data_directory = None
        self.port = None


class ContainerPostgresServer(PostgresServer):
    """PostgreSQL running in a container started through the docker SDK."""

    password = CONTAINER_PASSWORD

    def __init__(self, builder: ContainerServerBuilder, client=None):
        super().__init__(builder)
        self.host = '127.0.0.1'
        self.container = None
        self._client = client

    def _get_client(self):
        if self._client is None:
            try:
                self._client = docker.from_env()
            except DockerException as e:
                raise ProviderError(f"Docker is not available: {e}") from e
        return self._client

    def _run_arguments(self) -> Dict[str, Any]:
        builder = self.builder
        environment = {'POSTGRES_PASSWORD': CONTAINER_PASSWORD}
        initdb_arguments = builder.initdb_arguments()
        if initdb_arguments:
            environment['POSTGRES_INITDB_ARGS'] = ' '.join(initdb_arguments)
        environment.update(builder.environment)

        command = ['postgres']
        for name, value in sorted(builder.settings().items()):
            command.extend(['-c', f'{name}={value}'])

        arguments = {
            'image': builder.image,
            'command': command,
            'detach': True,
            'environment': environment,
            'ports': {CONTAINER_PORT: builder.port or None},
            'labels': {CONTAINER_LABEL: 'true'},
        }
        if builder.tmpfs_enabled:
            arguments['tmpfs'] = {CONTAINER_DATA_DIRECTORY: builder.tmpfs_options}
        return arguments

    def _published_port(self) -> int:
        for _ in range(50):
            self.container.reload()
            bindings = (self.container.ports or {}).get(CONTAINER_PORT)
            if bindings:
                return int(bindings[0]['HostPort'])
            if self.container.status not in ('created', 'running'):
                break
            time.sleep(STARTUP_RETRY_DELAY)
        raise ProviderError(f"Container {self.container.short_id} did not publish {CONTAINER_PORT}")

    def _is_alive(self) -> bool:
        try:
            self.container.reload()
        except DockerException:
            return False
        return self.container.status in ('created', 'running')

    def start(self) -> None:
        client = self._get_client()
        arguments = self._run_arguments()

        try:
            self.container = client.containers.run(**arguments)
            self.port = self._published_port()
            self._wait_until_ready(self._is_alive)
        except Exception as e:
            self.stop()
            logger.error(f"❌ PostgreSQL container ({arguments['image']}) failed to start: {e}")
            if isinstance(e, ProviderError):
                raise
            raise ProviderError(f"PostgreSQL container ({arguments['image']}) failed to start: {e}") from e

        logger.info(f"✅ PostgreSQL container {self.container.short_id} started on port {self.port}")

    def stop(self) -> None:
        self._close_creator()
        container, self.container = self.container, None
        if container is not None:
            try:
                container.stop(timeout=STOP_TIMEOUT)
            except Exception as e:
                logger.debug(f"Container stop failed: {e}")
            try:
                container.remove(force=True, v=True)
                logger.info(f"PostgreSQL container {container.short_id} removed")
            except Exception as e:
                log_teardown_failure(logger, f"remove container {container.short_id}", e)
        self.port = None


class ServerKey(NamedTuple):
    """Sharing key of a backing server.

    group is the preparer fingerprint under cluster isolation, else None.
    """

    identity: Hashable
    group: Optional[str] = None


class ServerRegistry(BuildRegistry):
    """Started servers keyed by ServerKey, at most one start per key.

    Each distinct register_shutdown hook receives a single callback that stops
    every server started through it, so restarting evicted clusters never
    grows the hook list.
    """

    def __init__(self):
        super().__init__()
        self._hooks: List[Tuple[Callable[[Callable[[], None]], Any], List[PostgresServer]]] = []

    def get_or_start(
        self,
        key: ServerKey,
        factory: Callable[[], PostgresServer],
        register_shutdown: Callable[[Callable[[], None]], Any]
    ) -> PostgresServer:
        """Return the running server for key, starting one if needed."""
        def start() -> PostgresServer:
            server = factory()
            server.start()
            self._track(server, register_shutdown)
            return server

        return self.get_or_build(key, start).value

    def _track(
        self,
        server: PostgresServer,
        register_shutdown: Callable[[Callable[[], None]], Any]
    ) -> None:
        with self._lock:
            for hook, servers in self._hooks:
                if hook == register_shutdown:
                    servers.append(server)
                    return
            servers = [server]
            self._hooks.append((register_shutdown, servers))
        register_shutdown(functools.partial(self._stop_tracked, servers))

    def _untrack(self, server: PostgresServer) -> None:
        with self._lock:
            for _, servers in self._hooks:
                if server in servers:
                    servers.remove(server)

    def _stop_tracked(self, servers: List[PostgresServer]) -> None:
        """Shutdown callback: stop and forget the servers started through one hook."""
        with self._lock:
            stopping = list(servers)
            servers.clear()
            for key in [key for key, entry in self._entries.items() if entry.value in stopping]:
                del self._entries[key]
        for server in stopping:
            try:
                server.stop()
            except Exception as e:
                log_teardown_failure(logger, f"stop {server!r}", e)

    def evict_idle(
        self,
        identity: Hashable,
        keep: int,
        templates: Optional[TemplateRegistry] = None
    ) -> List[PostgresServer]:
        """
        Stop least recently released idle clusters beyond keep.

        Args:
            identity: Provider identity whose clusters are considered
            keep: Number of idle clusters to retain
            templates: Registry whose templates on stopped servers are dropped

        Returns:
            Servers that were stopped
        """
        idle = [
            entry for entry in self.entries()
            if entry.key.identity == identity and entry.key.group is not None and entry.value.idle
        ]
        idle.sort(key=lambda entry: entry.value.last_released, reverse=True)

        stopped = []
        for entry in idle[keep:]:
            server = entry.value
            if not server.retire_if_idle():
                continue
            # Templates go first: a replacement cluster can only start once the key is free
            if templates is not None:
                templates.discard_scope(entry.key)
            self.discard(entry.key)
            self._untrack(server)
            logger.debug(f"Evicting idle cluster {server!r}")
            server.stop()
            stopped.append(server)
        return stopped

    def shutdown_all(self, templates: Optional[TemplateRegistry] = None) -> int:
        """Stop every registered server; returns how many were stopped."""
        entries = self.clear()
        for entry in entries:
            if templates is not None:
                templates.discard_scope(entry.key)
            self._untrack(entry.value)
            try:
                entry.value.stop()
            except Exception as e:
                log_teardown_failure(logger, f"stop {entry.value!r}", e)
        return len(entries)


default_server_registry = ServerRegistry()
