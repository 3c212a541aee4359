"""In-process coordination primitives for sync passes."""

from __future__ import annotations

import asyncio
import logging
import weakref
from collections.abc import Hashable

logger = logging.getLogger("fhirsync.locks")


class KeyedLocks:
    """``asyncio.Lock`` per key, created lazily for the running event loop."""

    def __init__(self):
        self._locks: weakref.WeakKeyDictionary[
            asyncio.AbstractEventLoop, dict[Hashable, asyncio.Lock]
        ] = weakref.WeakKeyDictionary()

    def get(self, key: Hashable) -> asyncio.Lock:
        loop = asyncio.get_running_loop()
        locks = self._locks.setdefault(loop, {})
        lock = locks.get(key)
        if lock is None:
            lock = locks[key] = asyncio.Lock()
        return lock


class SingleFlight:
    """At most one holder per key; a busy key is refused, never queued."""

    def __init__(self):
        self._inflight: set[Hashable] = set()

    def try_acquire(self, key: Hashable) -> bool:
        if key in self._inflight:
            return False
        self._inflight.add(key)
        return True

    def release(self, key: Hashable) -> None:
        self._inflight.discard(key)

    def is_running(self, key: Hashable) -> bool:
        return key in self._inflight


class CancellationRegistry:
    """Cooperative cancellation flags checked between resources of a pass."""

    def __init__(self):
        self._requested: set[Hashable] = set()

    def request(self, key: Hashable) -> None:
        logger.info("Cancellation requested for %s", key)
        self._requested.add(key)

    def is_requested(self, key: Hashable) -> bool:
        return key in self._requested

    def clear(self, key: Hashable) -> None:
        self._requested.discard(key)
