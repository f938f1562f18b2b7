"""
Keyed critical sections for shared shop-floor resources.

One re-entrant lock per (namespace, key): a product's lot set, a machine's
allocation set, a work order's record. Locks for several keys are always
taken in sorted order, and callers nest namespaces in the global order
work_order -> product -> machine, so concurrent operations cannot deadlock.

These locks serialize callers inside one process. Queries on the guarded
rows also use SELECT ... FOR UPDATE so PostgreSQL enforces the same
sections across processes.
"""
import threading
import weakref
from contextlib import ExitStack, contextmanager
from typing import Hashable, Iterator, Tuple

WORK_ORDER = "work_order"
PRODUCT = "product"
MACHINE = "machine"


class _KeyLock:
    """Re-entrant lock that the registry can reference weakly."""
    __slots__ = ("_lock", "__weakref__")

    def __init__(self):
        self._lock = threading.RLock()

    def acquire(self, blocking: bool = True, timeout: float = -1) -> bool:
        return self._lock.acquire(blocking, timeout)

    def release(self) -> None:
        self._lock.release()

    def __enter__(self):
        self.acquire()
        return self

    def __exit__(self, *exc_info):
        self.release()


class KeyedLocks:
    """
    Registry of lazily created re-entrant locks keyed by (namespace, key).

    Entries are weak: a lock lives only while some caller holds a reference
    to it, so keys of finished work orders do not accumulate.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: "weakref.WeakValueDictionary[Tuple[str, Hashable], _KeyLock]" = (
            weakref.WeakValueDictionary()
        )

    def get(self, namespace: str, key: Hashable) -> _KeyLock:
        with self._guard:
            lock = self._locks.get((namespace, key))
            if lock is None:
                lock = _KeyLock()
                self._locks[(namespace, key)] = lock
            return lock

    def __len__(self) -> int:
        return len(self._locks)

    @contextmanager
    def hold(self, namespace: str, *keys: Hashable) -> Iterator[None]:
        """Acquire the locks for ``keys`` (deduplicated, sorted) for the block."""
        with ExitStack() as stack:
            for key in sorted(set(k for k in keys if k is not None)):
                lock = self.get(namespace, key)
                lock.acquire()
                stack.callback(lock.release)
            yield


# Process-wide registry shared by every service instance
resource_locks = KeyedLocks()
