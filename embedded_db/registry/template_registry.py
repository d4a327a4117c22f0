"""
=====================================================
Keyed build registries with at-most-one-builder-per-key.
=====================================================

A registry maps a key to an entry that is built at most once: the first
caller for a key runs the builder, every concurrent caller for the same key
blocks until that build finishes and then receives the same entry, or the
same exception. Failed entries are dropped so a later call retries. Distinct
keys build fully in parallel; the registry lock is only held to look up or
insert entries, never while a builder runs.

Classes:
    BuildState: Building / Ready / Failed
    RegistryEntry: One keyed build result with its readiness event
    BuildRegistry: Generic single-flight cache
    TemplateEntry: Entry holding a prepared template database
    TemplateRegistry: Registry of templates keyed by scope x fingerprint

Example:
    >>> from embedded_db.registry import TemplateRegistry
    >>>
    >>> registry = TemplateRegistry()
    >>> entry = registry.get_or_build(('scope', fingerprint), build_template)
    >>> with entry.lock:
    ...     clone_from(entry.database)
"""

import logging
import threading
import time
from enum import Enum
from typing import Any, Callable, Dict, Hashable, List, Optional

logger = logging.getLogger(__name__)


class BuildState(str, Enum):
    """Lifecycle of a registry entry."""

    BUILDING = 'building'
    READY = 'ready'
    FAILED = 'failed'


class RegistryEntry:
    """Result of one keyed build.

    Attributes:
        key: Registry key
        state: Current BuildState
        value: Built value once READY
        error: Exception raised by the builder once FAILED
        lock: Serializes structural operations that read the built value
        created_at: Monotonic timestamp of entry creation
    """

    def __init__(self, key: Hashable):
        self.key = key
        self.state = BuildState.BUILDING
        self.value: Any = None
        self.error: Optional[BaseException] = None
        self.lock = threading.Lock()
        self.created_at = time.monotonic()
        self._done = threading.Event()

    @property
    def ready(self) -> bool:
        return self.state is BuildState.READY

    def wait(self, timeout: Optional[float] = None) -> Any:
        """Block until the build finishes; return the value or raise its error."""
        if not self._done.wait(timeout):
            raise TimeoutError(f"Timed out waiting for build of {self.key!r}")
        if self.error is not None:
            raise self.error
        return self.value

    def _complete(self, value: Any) -> None:
        self.value = value
        self.state = BuildState.READY
        self._done.set()

    def _fail(self, error: BaseException) -> None:
        self.error = error
        self.state = BuildState.FAILED
        self._done.set()

    def __repr__(self):
        return f"{type(self).__name__}(key={self.key!r}, state={self.state.value})"


class BuildRegistry:
    """Concurrent mapping from key to a value built at most once."""

    entry_class = RegistryEntry

    def __init__(self):
        self._lock = threading.Lock()
        self._entries: Dict[Hashable, RegistryEntry] = {}

    def get_or_build(
        self,
        key: Hashable,
        builder: Callable[[], Any],
        timeout: Optional[float] = None
    ) -> RegistryEntry:
        """
        Return the entry for key, running builder if no entry exists.

        Args:
            key: Hashable registry key
            builder: Zero-argument callable producing the value
            timeout: Optional wait limit for callers that did not build

        Returns:
            READY entry for key

        Raises:
            Exception: Whatever the builder raised, for the builder and for
                every caller that waited on the same build
        """
        with self._lock:
            entry = self._entries.get(key)
            owner = entry is None
            if owner:
                entry = self.entry_class(key)
                self._entries[key] = entry

        if not owner:
            entry.wait(timeout)
            return entry

        try:
            value = builder()
        except BaseException as e:
            with self._lock:
                if self._entries.get(key) is entry:
                    del self._entries[key]
            entry._fail(e)
            logger.debug(f"Build failed for {key!r}: {e}")
            raise

        entry._complete(value)
        return entry

    def get(self, key: Hashable) -> Optional[RegistryEntry]:
        """Return the READY entry for key, if any."""
        with self._lock:
            entry = self._entries.get(key)
        return entry if entry is not None and entry.ready else None

    def discard(self, key: Hashable) -> Optional[RegistryEntry]:
        """Forget the entry for key and return it."""
        with self._lock:
            return self._entries.pop(key, None)

    def discard_where(self, predicate: Callable[[Hashable], bool]) -> List[RegistryEntry]:
        """Forget every READY entry whose key matches predicate."""
        with self._lock:
            keys = [key for key, entry in self._entries.items() if entry.ready and predicate(key)]
            return [self._entries.pop(key) for key in keys]

    def entries(self) -> List[RegistryEntry]:
        """Snapshot of READY entries."""
        with self._lock:
            return [entry for entry in self._entries.values() if entry.ready]

    def clear(self) -> List[RegistryEntry]:
        """Forget every READY entry and return them."""
        return self.discard_where(lambda key: True)

    def __contains__(self, key: Hashable) -> bool:
        return self.get(key) is not None

    def __len__(self) -> int:
        return len(self.entries())


class TemplateEntry(RegistryEntry):
    """Registry entry whose value is a prepared template database.

    Keys are (scope, fingerprint) pairs, where scope identifies the backing
    resource the template lives on.
    """

    @property
    def fingerprint(self) -> str:
        return self.key[-1]

    @property
    def scope(self) -> Hashable:
        return self.key[0]

    @property
    def database(self):
        return self.value


class TemplateRegistry(BuildRegistry):
    """Registry of prepared templates keyed by (scope, fingerprint)."""

    entry_class = TemplateEntry

    def get_or_build(
        self,
        key: Hashable,
        builder: Callable[[], Any],
        timeout: Optional[float] = None
    ) -> TemplateEntry:
        if not isinstance(key, tuple) or len(key) != 2:
            raise ValueError(f"Template keys are (scope, fingerprint) pairs, got {key!r}")
        return super().get_or_build(key, builder, timeout)

    def discard_scope(self, scope: Hashable) -> List[TemplateEntry]:
        """Forget every template living on the given backing resource."""
        return self.discard_where(lambda key: key[0] == scope)


# Process-wide template cache shared by providers that are not given their own
default_template_registry = TemplateRegistry()
