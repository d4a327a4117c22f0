"""
=====================================================
Configuration identity for embedded database engines.
=====================================================

Turns a resolved mapping of recognized option keys into an immutable
DatabaseConfiguration. Two configurations are equal iff every recognized
option matches, which lets providers built from them compare and hash as
values.

Recognized keys:
    isolation-mode          'database' (default) or 'cluster'
    server.<name>           PostgreSQL server settings (-c name=value)
    client.<name>           connection-level settings
    initdb.<name>           cluster bootstrap options (--name=value)
    docker.image            container image (container variant)
    docker.tmpfs.enabled    mount the data directory on tmpfs
    docker.tmpfs.options    tmpfs mount options
    process.bin-dir         directory holding initdb/postgres binaries
    max-idle-clusters       idle clusters kept under cluster isolation

The same keys can come from the environment (and a .env file in the working
directory), prefixed with EMBEDDED_DATABASE_ and using '__' between segments.

Example:
    >>> from embedded_db.core.config import DatabaseConfiguration
    >>>
    >>> config = DatabaseConfiguration.from_properties({
    ...     'isolation-mode': 'cluster',
    ...     'server.max_connections': '100',
    ...     'initdb.lc-collate': 'C',
    ... })
    >>> config.isolation
    <PreparerIsolation.CLUSTER: 'cluster'>
    >>>
    >>> # From EMBEDDED_DATABASE_* environment variables
    >>> config = DatabaseConfiguration.from_environment()
"""

import logging
import os
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Tuple

from dotenv import find_dotenv, load_dotenv

from embedded_db.core.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

ENV_PREFIX = 'EMBEDDED_DATABASE_'
DEFAULT_DOCKER_IMAGE = 'postgres:16-alpine'
DEFAULT_TMPFS_OPTIONS = 'rw,noexec,nosuid'

_TRUE_VALUES = {'true', 'yes', 'on', '1'}
_FALSE_VALUES = {'false', 'no', 'off', '0'}

Properties = Tuple[Tuple[str, str], ...]


class PreparerIsolation(str, Enum):
    """Whether preparers share one cluster or each get their own."""

    DATABASE = 'database'
    CLUSTER = 'cluster'

    @classmethod
    def parse(cls, value: Any) -> 'PreparerIsolation':
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ConfigurationError(
                f"Unknown isolation mode {value!r}; expected 'database' or 'cluster'"
            ) from None


def initdb_locale(options: Mapping[str, str], category: str) -> Optional[str]:
    """Locale for one category ('collate' or 'ctype'); --locale sets both."""
    return options.get(f'lc-{category}') or options.get('locale')


def _parse_bool(key: str, value: Any) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in _TRUE_VALUES:
        return True
    if text in _FALSE_VALUES:
        return False
    raise ConfigurationError(f"Option {key!r} expects a boolean, got {value!r}")


def _freeze(section: str, values: Any, separator: Tuple[str, str]) -> Properties:
    """Normalize a mapping (or pairs) into a sorted tuple of string pairs."""
    if not values:
        return ()
    items = values.items() if isinstance(values, Mapping) else values
    frozen: Dict[str, str] = {}
    for name, value in items:
        normalized = str(name).strip().replace(*separator)
        if not normalized:
            raise ConfigurationError(f"Empty property name in '{section}' options")
        frozen[normalized] = str(value)
    return tuple(sorted(frozen.items()))


@dataclass(frozen=True)
class DatabaseConfiguration:
    """Immutable configuration identity of a database provider.

    Attributes:
        isolation: Preparer isolation mode (database or cluster level)
        server_properties: Server settings as sorted (name, value) pairs
        client_properties: Connection settings as sorted (name, value) pairs
        initdb_properties: Cluster bootstrap options as sorted (name, value) pairs
        docker_image: Container image for the container variant
        docker_tmpfs_enabled: Whether the container data directory lives on tmpfs
        docker_tmpfs_options: Mount options for the tmpfs data directory
        bin_directory: Directory with initdb/postgres for the forked variant
        max_idle_clusters: Idle clusters retained under cluster isolation
    """

    isolation: PreparerIsolation = PreparerIsolation.DATABASE
    server_properties: Properties = ()
    client_properties: Properties = ()
    initdb_properties: Properties = ()
    docker_image: str = DEFAULT_DOCKER_IMAGE
    docker_tmpfs_enabled: bool = False
    docker_tmpfs_options: str = DEFAULT_TMPFS_OPTIONS
    bin_directory: Optional[str] = None
    max_idle_clusters: Optional[int] = None
    _hash: int = field(init=False, repr=False, compare=False, default=0)

    def __post_init__(self):
        object.__setattr__(self, 'isolation', PreparerIsolation.parse(self.isolation))
        object.__setattr__(self, 'server_properties',
                           _freeze('server', self.server_properties, ('-', '_')))
        object.__setattr__(self, 'client_properties',
                           _freeze('client', self.client_properties, ('-', '_')))
        object.__setattr__(self, 'initdb_properties',
                           _freeze('initdb', self.initdb_properties, ('_', '-')))
        object.__setattr__(self, 'docker_tmpfs_enabled',
                           _parse_bool('docker.tmpfs.enabled', self.docker_tmpfs_enabled))
        self._validate()
        object.__setattr__(self, '_hash', hash((
            self.isolation,
            self.server_properties,
            self.client_properties,
            self.initdb_properties,
            self.docker_image,
            self.docker_tmpfs_enabled,
            self.docker_tmpfs_options,
            self.bin_directory,
            self.max_idle_clusters,
        )))

    def __hash__(self):
        return self._hash

    def _validate(self) -> None:
        server = dict(self.server_properties)

        if 'max_connections' in server:
            try:
                if int(server['max_connections']) <= 0:
                    raise ValueError
            except ValueError:
                raise ConfigurationError(
                    f"server.max_connections must be a positive integer, "
                    f"got {server['max_connections']!r}"
                ) from None

        if 'port' in server and self.isolation is PreparerIsolation.CLUSTER:
            raise ConfigurationError(
                "server.port cannot be fixed when isolation-mode is 'cluster': "
                "every cluster needs its own port"
            )

        if not self.docker_image or not str(self.docker_image).strip():
            raise ConfigurationError("docker.image must not be empty")

        if not self.docker_tmpfs_enabled and self.docker_tmpfs_options != DEFAULT_TMPFS_OPTIONS:
            raise ConfigurationError(
                "docker.tmpfs.options is set but docker.tmpfs.enabled is false"
            )

        if self.max_idle_clusters is not None:
            if isinstance(self.max_idle_clusters, bool) or not isinstance(self.max_idle_clusters, int) \
                    or self.max_idle_clusters < 0:
                raise ConfigurationError(
                    f"max-idle-clusters must be a non-negative integer, got {self.max_idle_clusters!r}"
                )

    @property
    def server_config(self) -> Dict[str, str]:
        """Server settings as a new dict."""
        return dict(self.server_properties)

    @property
    def client_config(self) -> Dict[str, str]:
        """Client settings as a new dict."""
        return dict(self.client_properties)

    @property
    def initdb_config(self) -> Dict[str, str]:
        """Cluster bootstrap options as a new dict."""
        return dict(self.initdb_properties)

    @property
    def collation(self) -> Optional[str]:
        """Collation requested for new clusters, if any."""
        return initdb_locale(self.initdb_config, 'collate')

    @classmethod
    def from_properties(cls, properties: Optional[Mapping[str, Any]] = None) -> 'DatabaseConfiguration':
        """Build a configuration from a mapping of recognized option keys.

        Args:
            properties: Resolved option mapping (see module docstring)

        Returns:
            DatabaseConfiguration for the recognized options

        Raises:
            ConfigurationError: If a recognized option is malformed or conflicting
        """
        kwargs: Dict[str, Any] = {}
        server: Dict[str, str] = {}
        client: Dict[str, str] = {}
        initdb: Dict[str, str] = {}

        for raw_key, value in (properties or {}).items():
            key = str(raw_key).strip().lower()

            if key in ('isolation-mode', 'isolation_mode', 'preparer-isolation'):
                kwargs['isolation'] = PreparerIsolation.parse(value)
            elif key.startswith('server.'):
                server[key[len('server.'):]] = value
            elif key.startswith('client.'):
                client[key[len('client.'):]] = value
            elif key.startswith('initdb.'):
                initdb[key[len('initdb.'):]] = value
            elif key == 'docker.image':
                kwargs['docker_image'] = str(value).strip()
            elif key == 'docker.tmpfs.enabled':
                kwargs['docker_tmpfs_enabled'] = _parse_bool(key, value)
            elif key == 'docker.tmpfs.options':
                kwargs['docker_tmpfs_options'] = str(value).strip()
            elif key == 'process.bin-dir':
                kwargs['bin_directory'] = str(value).strip() or None
            elif key == 'max-idle-clusters':
                try:
                    kwargs['max_idle_clusters'] = int(value)
                except (TypeError, ValueError):
                    raise ConfigurationError(
                        f"max-idle-clusters must be an integer, got {value!r}"
                    ) from None
            else:
                logger.debug(f"Ignoring unrecognized option {raw_key!r}")

        return cls(
            server_properties=_freeze('server', server, ('-', '_')),
            client_properties=_freeze('client', client, ('-', '_')),
            initdb_properties=_freeze('initdb', initdb, ('_', '-')),
            **kwargs
        )

    @classmethod
    def from_environment(cls, environ: Optional[Mapping[str, str]] = None) -> 'DatabaseConfiguration':
        """Build a configuration from EMBEDDED_DATABASE_* environment variables."""
        return cls.from_properties(load_properties(environ))


def load_properties(
    environ: Optional[Mapping[str, str]] = None,
    prefix: str = ENV_PREFIX
) -> Dict[str, str]:
    """Collect recognized option keys from environment variables.

    When no mapping is given, a .env file found from the working directory is
    loaded first (existing variables win) and os.environ is read.

    Args:
        environ: Mapping to read instead of the process environment
        prefix: Variable prefix identifying embedded database options

    Returns:
        Dict of dotted option keys, e.g. {'server.max-connections': '100'}

    Example:
        >>> load_properties({'EMBEDDED_DATABASE_SERVER__MAX_CONNECTIONS': '100'})
        {'server.max-connections': '100'}
    """
    if environ is None:
        load_dotenv(dotenv_path=find_dotenv(usecwd=True))
        environ = os.environ

    properties: Dict[str, str] = {}
    for name, value in environ.items():
        if not name.startswith(prefix):
            continue
        remainder = name[len(prefix):]
        if not remainder or remainder == 'LOG_LEVEL':
            continue
        segments = [segment.lower().replace('_', '-') for segment in remainder.split('__')]
        properties['.'.join(segments)] = value
    return properties
