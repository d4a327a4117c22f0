"""
=============================================
Readiness-gated connection source decorator.
=============================================

Wraps a connection source and withholds connections while structural or
preparer operations are queued on the underlying database. Threads that
perform those operations are registered as owners and pass through the gate,
so a preparer can still connect to the database it is preparing.

Each wrapped database has its own gate; unrelated databases never wait on
each other.

Example:
    >>> gate = BlockingConnectionSource(database_connect)
    >>> with gate.hold():
    ...     run_preparer(gate)        # owner thread, passes through
    >>> conn = gate.connect()          # other threads wait for hold() to end
"""

import logging
import threading
import time
from collections import Counter
from contextlib import contextmanager
from typing import Any, Callable, Iterator, Optional

from embedded_db.core.exceptions import ProviderError

logger = logging.getLogger(__name__)


class BlockingConnectionSource:
    """Connection source that blocks until pending operations complete.

    Attributes:
        timeout: Default seconds to wait in connect() (None waits forever)
    """

    def __init__(self, delegate: Callable[[], Any], timeout: Optional[float] = None):
        self._delegate = delegate
        self.timeout = timeout
        self._condition = threading.Condition()
        self._pending = 0
        self._owners: Counter = Counter()

    @property
    def ready(self) -> bool:
        """True when no operation is pending."""
        with self._condition:
            return self._pending == 0

    def block(self) -> None:
        """Queue one pending operation; connect() waits until it is released."""
        with self._condition:
            self._pending += 1

    def unblock(self) -> None:
        """Release one pending operation and wake waiting callers."""
        with self._condition:
            if self._pending == 0:
                raise RuntimeError("unblock() called without a matching block()")
            self._pending -= 1
            if self._pending == 0:
                self._condition.notify_all()

    @contextmanager
    def owner(self) -> Iterator[None]:
        """Let the current thread through the gate for the duration of the block."""
        ident = threading.get_ident()
        with self._condition:
            self._owners[ident] += 1
        try:
            yield
        finally:
            with self._condition:
                self._owners[ident] -= 1
                if self._owners[ident] <= 0:
                    del self._owners[ident]

    @contextmanager
    def hold(self) -> Iterator[None]:
        """Block the gate and run the body as its owner."""
        self.block()
        try:
            with self.owner():
                yield
        finally:
            self.unblock()

    def wait_ready(self, timeout: Optional[float] = None) -> None:
        """
        Wait until no operation is pending or the current thread is an owner.

        Args:
            timeout: Seconds to wait; defaults to the gate timeout

        Raises:
            ProviderError: If the gate stays blocked past the timeout
        """
        timeout = self.timeout if timeout is None else timeout
        ident = threading.get_ident()
        deadline = None if timeout is None else time.monotonic() + timeout

        with self._condition:
            if self._pending and not self._owners.get(ident):
                logger.debug(f"Waiting for {self._pending} pending operation(s)")
            while self._pending and not self._owners.get(ident):
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    raise ProviderError(
                        f"Database not ready after {timeout}s: "
                        f"{self._pending} operation(s) still pending"
                    )
                self._condition.wait(remaining)

    def connect(self, timeout: Optional[float] = None) -> Any:
        """Return a connection from the delegate once the gate is open."""
        self.wait_ready(timeout)
        return self._delegate()

    def unwrap(self) -> Callable[[], Any]:
        """Return the undecorated connection source."""
        return self._delegate

    def __repr__(self):
        with self._condition:
            return f"BlockingConnectionSource(pending={self._pending})"
