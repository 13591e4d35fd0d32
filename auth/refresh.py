"""
auth/refresh.py -- Single-flight cache for token refreshes.

When a soft-expired token arrives on several concurrent requests (a browser
firing parallel XHRs right after the token TTL passes), each of them would
otherwise mint its own replacement. RefreshCache guarantees the refresh runs
at most once per original token string:

  1. In-flight dedupe: the first caller starts the refresh as a task stored
     under the token string before awaiting anything; every caller awaits
     that task through asyncio.shield, so a disconnecting client never
     cancels the refresh the others are waiting on. The check-and-insert
     has no await in between, so it is atomic on the event loop.
  2. Completed results go to a backing store (get/set) so callers that arrive
     after the refresh finished reuse the same replacement. Eviction is the
     store's business -- TTLRefreshStore bounds both size and age.

With no store configured every caller refreshes independently. That is an
accepted degraded mode, not an error.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from collections import OrderedDict
from collections.abc import Awaitable, Callable
from typing import Any, Optional, Protocol

from auth.errors import AuthError, RefreshFailed
from auth.models import Claims

logger = logging.getLogger("authgate.auth.refresh")

Refreshed = tuple[Claims, str]
RefreshFn = Callable[[], Awaitable[Refreshed]]

_DEFAULT_SIZE = 1000
_DEFAULT_TTL = 60  # seconds


class RefreshStore(Protocol):
    """Minimal cache interface: anything with get/set works (dict-like LRU, redis adapter, ...)."""

    def get(self, key: str) -> Optional[Any]: ...

    def set(self, key: str, value: Any) -> None: ...


class TTLRefreshStore:
    """In-memory LRU store with a per-entry TTL.

    Guarded by a lock so it is safe from threadpool callers too.
    """

    def __init__(self, size: int = _DEFAULT_SIZE, ttl: int = _DEFAULT_TTL, clock: Callable[[], float] = time.monotonic) -> None:
        self.size = size
        self.ttl = ttl
        self._clock = clock
        self._lock = threading.Lock()
        self._data: OrderedDict[str, tuple[float, Any]] = OrderedDict()

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            item = self._data.get(key)
            if item is None:
                return None
            stored_at, value = item
            if self._clock() - stored_at > self.ttl:
                del self._data[key]
                return None
            self._data.move_to_end(key)
            return value

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            self._data[key] = (self._clock(), value)
            self._data.move_to_end(key)
            while len(self._data) > self.size:
                self._data.popitem(last=False)

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)


class RefreshCache:
    """Single-flight wrapper around a RefreshStore.

    Usage:
        cache = RefreshCache(TTLRefreshStore())
        claims, token = await cache.get_or_refresh(raw_token, lambda: refresh(claims))
    """

    def __init__(self, store: RefreshStore | None) -> None:
        self.store = store
        self._inflight: dict[str, asyncio.Future] = {}

    async def get_or_refresh(self, key: str, refresh_fn: RefreshFn) -> Refreshed:
        if self.store is None:
            return await self._run(refresh_fn)

        cached = self.store.get(key)
        if cached is not None:
            return cached

        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(self._refresh_and_store(key, refresh_fn))
            self._inflight[key] = task
        # shield: a cancelled caller, the first one included, must not cancel the shared refresh
        return await asyncio.shield(task)

    async def _refresh_and_store(self, key: str, refresh_fn: RefreshFn) -> Refreshed:
        try:
            result = await self._run(refresh_fn)
            self.store.set(key, result)
            return result
        finally:
            self._inflight.pop(key, None)

    @staticmethod
    async def _run(refresh_fn: RefreshFn) -> Refreshed:
        try:
            return await refresh_fn()
        except RefreshFailed:
            raise
        except AuthError as exc:
            raise RefreshFailed(f"can't refresh token: {exc.message}") from exc
        except Exception as exc:
            raise RefreshFailed(f"can't refresh token: {exc}") from exc
