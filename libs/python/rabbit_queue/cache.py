"""
Thread-safe cache of single-assignment deferred values.

Each key maps to a concurrent.futures.Future. The future is installed under
the lock before the creation call runs, so concurrent callers asking for the
same key trigger exactly one creation and all receive the same value.
"""

import logging
import threading
from concurrent.futures import Future
from typing import Callable, Generic, Iterator, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class DeferredCache(Generic[T]):
    """
    Map of key -> Future[T] with install-then-create semantics.

    Several caches can share one lock so that removals spanning more than
    one cache happen as a single step.
    """

    def __init__(self, lock: Optional[threading.RLock] = None) -> None:
        self._lock = lock if lock is not None else threading.RLock()
        self._entries: dict[str, Future] = {}

    @property
    def lock(self) -> threading.RLock:
        return self._lock

    def get_or_create(
        self,
        key: str,
        factory: Callable[[], T],
        condition: Optional[Callable[[], bool]] = None,
    ) -> T:
        """
        Return the value for key, creating it with factory if absent.

        The first caller runs factory in its own thread, outside the lock.
        Callers arriving while creation is pending block until it resolves.
        If factory raises, the entry is evicted, pending callers receive the
        same exception, and the exception is re-raised.

        If condition is given it is evaluated under the lock. When it is
        false the cache is left untouched and factory runs uncached.
        """
        with self._lock:
            if condition is not None and not condition():
                future = None
                owner = False
            else:
                future = self._entries.get(key)
                owner = future is None
                if owner:
                    future = Future()
                    self._entries[key] = future

        if future is None:
            return factory()
        if not owner:
            logger.debug("Waiting on cached entry %s", key)
            return future.result()

        try:
            value = factory()
        except BaseException as e:
            with self._lock:
                if self._entries.get(key) is future:
                    del self._entries[key]
            future.set_exception(e)
            raise
        future.set_result(value)
        return value

    def put(self, key: str, value: T) -> None:
        """Install an already resolved entry, replacing any existing one."""
        future = Future()
        future.set_result(value)
        with self._lock:
            self._entries[key] = future

    def peek(self, key: str) -> Optional[Future]:
        """Return the entry's future without waiting on it."""
        with self._lock:
            return self._entries.get(key)

    def get(self, key: str) -> Optional[T]:
        """Wait for and return the entry's value, or None if absent."""
        future = self.peek(key)
        if future is None:
            return None
        return future.result()

    def pop(self, key: str) -> Optional[Future]:
        with self._lock:
            return self._entries.pop(key, None)

    def keys(self) -> list[str]:
        with self._lock:
            return list(self._entries)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __iter__(self) -> Iterator[str]:
        return iter(self.keys())
