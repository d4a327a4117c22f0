"""
=====================================
In-process SQLite database provider.
=====================================

Databases are named shared-cache in-memory SQLite databases. Each one is
kept alive by a keeper connection for as long as it is open; closing the
database closes the keeper and frees the memory. Templates are prepared
once per fingerprint and cloned into new databases with the SQLite online
backup API.

client.<name> options are applied as PRAGMA statements on every new
connection. Server, initdb and docker options have no effect on this engine
but remain part of the provider identity.

Example:
    >>> provider = SqliteDatabaseProvider({'client.foreign_keys': 'ON'})
    >>> database = provider.create_database(SqlPreparer(["CREATE TABLE t (id INTEGER)"]))
    >>> conn = database.connect()
"""

import logging
import re
import sqlite3
import uuid
from typing import Any, Callable, Mapping, Optional, Sequence, Union

from sqlalchemy.engine import URL

from embedded_db.core.config import DatabaseConfiguration
from embedded_db.core.exceptions import ConfigurationError, ProviderError
from embedded_db.preparer.preparers import DatabasePreparer, as_preparer
from embedded_db.provider.base import DatabaseProvider, EmbeddedDatabase, PreparerLike
from embedded_db.provider.blocking import BlockingConnectionSource
from embedded_db.registry.template_registry import TemplateRegistry, default_template_registry

logger = logging.getLogger(__name__)

_PRAGMA_NAME = re.compile(r'^[A-Za-z_][A-Za-z0-9_]*$')
_PRAGMA_VALUE = re.compile(r'^[A-Za-z0-9_.+-]+$')


def _memory_uri(name: str) -> str:
    return f"file:{name}?mode=memory&cache=shared"


class SqliteDatabaseProvider(DatabaseProvider):
    """Provider of in-process, in-memory SQLite databases.

    All providers with equal configuration are equal and share templates.
    """

    variant = 'sqlite'

    def __init__(
        self,
        config: Union[None, DatabaseConfiguration, Mapping[str, Any]] = None,
        customizers: Sequence[Callable[[Any], Any]] = (),
        *,
        template_registry: Optional[TemplateRegistry] = None
    ):
        super().__init__(config, customizers)
        self._templates = template_registry if template_registry is not None else default_template_registry
        self._pragmas = self._validate_pragmas(self.config.client_config)

    @staticmethod
    def _validate_pragmas(pragmas: Mapping[str, str]) -> Mapping[str, str]:
        for name, value in pragmas.items():
            if not _PRAGMA_NAME.match(name) or not _PRAGMA_VALUE.match(value):
                raise ConfigurationError(f"Invalid SQLite client option {name}={value!r}")
        return dict(pragmas)

    @property
    def scope(self):
        """Template scope shared by every equal provider."""
        return (self.variant, self.config, self.customizers)

    def _open(self, uri: str) -> sqlite3.Connection:
        try:
            connection = sqlite3.connect(uri, uri=True, check_same_thread=False)
        except sqlite3.Error as e:
            raise ProviderError(f"Unable to open in-memory database {uri}: {e}") from e
        for name, value in self._pragmas.items():
            connection.execute(f"PRAGMA {name} = {value}")
        return connection

    def _new_database(self) -> EmbeddedDatabase:
        name = uuid.uuid4().hex
        uri = _memory_uri(name)
        keeper = self._open(uri)
        source = BlockingConnectionSource(lambda: self._open(uri))
        return EmbeddedDatabase(
            name,
            source,
            URL.create('sqlite', database=uri, query={'uri': 'true'}),
            on_close=lambda database: keeper.close(),
            handle=keeper
        )

    def _build_template(self, preparer: DatabasePreparer) -> EmbeddedDatabase:
        template = self._new_database()
        try:
            template.apply(preparer)
        except Exception:
            template.close()
            raise
        template.dispose()
        logger.info(f"Template {template.name} built for {preparer!r}")
        return template

    def create_database(self, preparer: PreparerLike = None) -> EmbeddedDatabase:
        preparer = as_preparer(preparer)
        entry = self._templates.get_or_build(
            (self.scope, preparer.fingerprint),
            lambda: self._build_template(preparer)
        )

        database = self._new_database()
        try:
            with database.source.hold(), entry.lock:
                entry.database.handle.backup(database.handle)
        except sqlite3.Error as e:
            database.close()
            raise ProviderError(f"Unable to clone template {entry.database.name}: {e}") from e

        logger.debug(f"Created {database.name} from {entry.database.name}")
        return database
