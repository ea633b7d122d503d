"""
Per-project mutual exclusion for tracker and alert mutations.

A project is the unit of concurrency: two completions (or a completion and
a sweep) on the same project are serialized, different projects run in
parallel. Locks are process-local; cross-process races are caught by the
database constraints and surface as ConcurrencyConflict.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager


class ProjectLockRegistry:
    def __init__(self):
        self._locks: dict[int, threading.RLock] = {}
        self._guard = threading.Lock()

    def _lock_for(self, project_id: int) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(project_id)
            if lock is None:
                lock = self._locks[project_id] = threading.RLock()
            return lock

    @contextmanager
    def hold(self, project_id: int):
        lock = self._lock_for(project_id)
        with lock:
            yield

    def clear(self) -> None:
        with self._guard:
            self._locks.clear()


project_locks = ProjectLockRegistry()
