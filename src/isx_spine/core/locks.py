"""
Reader/writer lock for read-heavy shared registries.

Status polling dominates traffic on the operation registry while writes
(create, delete, forced cancel) are rare, so readers share the lock and a
writer waits for them to leave. Waiting writers block new readers, which
keeps a steady stream of polls from starving ``delete``.

The lock is thread-based: FastAPI runs plain ``def`` endpoints in a thread
pool, so registry reads can arrive from outside the event loop. Critical
sections never await.

Tags:
    concurrency, locking, registry
"""

from __future__ import annotations

import threading
from collections.abc import Iterator
from contextlib import contextmanager


class ReadWriteLock:
    """Writer-preferring reader/writer lock.

    Example::

        lock = ReadWriteLock()
        with lock.read():
            value = registry.get(key)
        with lock.write():
            registry[key] = value
    """

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    @contextmanager
    def read(self) -> Iterator[None]:
        with self._cond:
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def write(self) -> Iterator[None]:
        with self._cond:
            self._writers_waiting += 1
            try:
                while self._writer or self._readers:
                    self._cond.wait()
            finally:
                self._writers_waiting -= 1
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()

    @property
    def readers(self) -> int:
        """Number of readers currently holding the lock."""
        return self._readers


__all__ = ["ReadWriteLock"]
