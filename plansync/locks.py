from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from typing import Iterator

logger = logging.getLogger(__name__)


class _KeyLock:
    __slots__ = ("lock", "holders")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.holders = 0


class KeyedLocks:
    """One mutex per key, created on first use and dropped when the last holder leaves.

    A waiter proceeds once the current holder settles, whether it succeeded or
    raised. Distinct keys never contend.
    """

    def __init__(self) -> None:
        self._registry_lock = threading.Lock()
        self._locks: dict[str, _KeyLock] = {}

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._registry_lock:
            entry = self._locks.get(key)
            if entry is None:
                entry = _KeyLock()
                self._locks[key] = entry
            entry.holders += 1
            waiting = entry.lock.locked()
        if waiting:
            logger.debug("Waiting for in-flight mutation on %s", key)
        entry.lock.acquire()
        try:
            yield
        finally:
            entry.lock.release()
            with self._registry_lock:
                entry.holders -= 1
                if entry.holders == 0 and self._locks.get(key) is entry:
                    del self._locks[key]

    def is_held(self, key: str) -> bool:
        with self._registry_lock:
            entry = self._locks.get(key)
            return entry is not None and entry.lock.locked()

    def __len__(self) -> int:
        with self._registry_lock:
            return len(self._locks)
