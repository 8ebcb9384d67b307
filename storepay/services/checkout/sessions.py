"""Thread-safe, two-index, TTL-bounded in-memory session store.

Bridges the gap between 3DS initiate and the gateway callback (pending
sessions) and keeps refund context warm after completion. Entries expire
after a per-store TTL; a background sweeper purges them and notifies the
owner through `on_evict`.
"""

import asyncio
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Generic, Hashable, Optional, TypeVar

from storepay.common.config import settings
from storepay.common.logging import logger
from storepay.common.metrics import pending_sessions, sessions_evicted_total

V = TypeVar("V")


@dataclass
class _Entry(Generic[V]):
    primary_key: Hashable
    secondary_key: Optional[Hashable]
    value: V
    expires_at: float


class SessionStore(Generic[V]):
    """Records addressable by a primary key and an optional secondary key."""

    def __init__(
        self,
        name: str,
        ttl_seconds: float,
        on_evict: Optional[Callable[[Hashable, Any], None]] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.ttl_seconds = ttl_seconds
        self.on_evict = on_evict
        self._clock = clock
        self._lock = threading.RLock()
        self._primary: dict[Hashable, _Entry[V]] = {}
        self._secondary: dict[Hashable, Hashable] = {}

    def put(self, primary_key: Hashable, value: V, secondary_key: Optional[Hashable] = None) -> None:
        """Insert or replace a record; last write wins."""

        with self._lock:
            self._drop(primary_key)
            if secondary_key is not None:
                # A secondary key points at one record only.
                previous = self._secondary.get(secondary_key)
                if previous is not None and previous != primary_key:
                    self._drop(previous)
                self._secondary[secondary_key] = primary_key
            self._primary[primary_key] = _Entry(
                primary_key=primary_key,
                secondary_key=secondary_key,
                value=value,
                expires_at=self._clock() + self.ttl_seconds,
            )
            self._update_gauge()

    def get_by_primary_key(self, primary_key: Hashable) -> Optional[V]:
        with self._lock:
            entry = self._live_entry(primary_key)
            return entry.value if entry else None

    def get_by_secondary_key(self, secondary_key: Hashable) -> Optional[V]:
        with self._lock:
            primary_key = self._secondary.get(secondary_key)
            if primary_key is None:
                return None
            entry = self._live_entry(primary_key)
            return entry.value if entry else None

    def remove(self, primary_key: Hashable) -> None:
        """Delete a record from both indices; unknown keys are ignored."""

        with self._lock:
            self._drop(primary_key)
            self._update_gauge()

    def take(self, primary_key: Hashable) -> Optional[V]:
        """Atomically fetch and remove a live record."""

        with self._lock:
            entry = self._live_entry(primary_key)
            if entry is None:
                return None
            self._drop(primary_key)
            self._update_gauge()
            return entry.value

    def evict_expired(self) -> int:
        """Purge expired records and run the eviction callback for each one."""

        now = self._clock()
        with self._lock:
            expired = [entry for entry in self._primary.values() if entry.expires_at <= now]
            for entry in expired:
                self._drop(entry.primary_key)
            self._update_gauge()

        for entry in expired:
            sessions_evicted_total.labels(service=settings.service_name, store=self.name).inc()
            logger.info("session_evicted store=%s key=%s", self.name, entry.primary_key)
            if self.on_evict is None:
                continue
            try:
                self.on_evict(entry.primary_key, entry.value)
            except Exception as exc:
                logger.exception(
                    "session_evict_callback_failed store=%s key=%s error=%s", self.name, entry.primary_key, exc
                )
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            now = self._clock()
            return sum(1 for entry in self._primary.values() if entry.expires_at > now)

    def _live_entry(self, primary_key: Hashable) -> Optional[_Entry[V]]:
        entry = self._primary.get(primary_key)
        if entry is None or entry.expires_at <= self._clock():
            return None
        return entry

    def _drop(self, primary_key: Hashable) -> None:
        entry = self._primary.pop(primary_key, None)
        if entry is not None and entry.secondary_key is not None:
            if self._secondary.get(entry.secondary_key) == primary_key:
                del self._secondary[entry.secondary_key]

    def _update_gauge(self) -> None:
        pending_sessions.labels(service=settings.service_name, store=self.name).set(len(self._primary))


async def sweep_forever(stores: list[SessionStore], interval_seconds: float) -> None:
    """Periodically evict expired entries from every store."""

    while True:
        await asyncio.sleep(interval_seconds)
        for store in stores:
            try:
                # Eviction callbacks touch the database; keep them off the event loop.
                await asyncio.to_thread(store.evict_expired)
            except Exception as exc:
                logger.exception("session_sweep_failed store=%s error=%s", store.name, exc)
