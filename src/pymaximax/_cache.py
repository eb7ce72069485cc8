"""Internal key/value cache with per-entry expiry."""

from __future__ import annotations

import copy
import enum
import logging
from collections.abc import Iterator
from dataclasses import dataclass
from typing import Any, Final

from pymaximax._scheduling import LoopScheduler, Scheduler, TimerHandle

_logger = logging.getLogger(__name__)


class _Miss(enum.Enum):
    MISS = "miss"

    def __repr__(self) -> str:
        return "MISS"

    def __bool__(self) -> bool:
        return False


#: Returned by :meth:`ExpiringCache.get` for absent or expired keys.
MISS: Final = _Miss.MISS


def is_expired(now: float, expires_at: float) -> bool:
    return now >= expires_at


@dataclass(slots=True)
class CacheEntry:
    """A stored value and the monotonic instant it stops being served."""

    key: str
    value: Any
    expires_at: float


class ExpiringCache:
    """In-memory cache where every entry carries its own TTL.

    Freshness is decided at read time, so an expired entry is never
    served even if the background sweep has not run yet. The sweep
    (one shared timer for all entries) only bounds memory; both paths
    delete through :meth:`delete`, which is idempotent.

    Values are deep-copied on the way in and on the way out, so callers
    never hold a reference into the store.
    """

    def __init__(
        self,
        *,
        default_ttl: float = 300.0,
        sweep_interval: float | None = 60.0,
        scheduler: Scheduler | None = None,
    ) -> None:
        self._default_ttl = default_ttl
        self._sweep_interval = sweep_interval
        self._scheduler = scheduler or LoopScheduler()
        self._entries: dict[str, CacheEntry] = {}
        self._sweep_handle: TimerHandle | None = None

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return isinstance(key, str) and self.has(key)

    def keys(self) -> Iterator[str]:
        """Iterate over the keys currently stored (fresh or not yet evicted)."""
        return iter(list(self._entries))

    def set(self, key: str, value: Any, ttl: float | None = None) -> Any:
        """Store *value* under *key* for *ttl* seconds and return *value*."""
        effective_ttl = self._default_ttl if ttl is None else ttl
        self._entries[key] = CacheEntry(
            key=key,
            value=copy.deepcopy(value),
            expires_at=self._scheduler.time() + effective_ttl,
        )
        return value

    def get(self, key: str, default: Any = MISS) -> Any:
        entry = self._fresh_entry(key)
        if entry is None:
            return default
        return copy.deepcopy(entry.value)

    def has(self, key: str) -> bool:
        return self._fresh_entry(key) is not None

    def expires_at(self, key: str) -> float | None:
        entry = self._fresh_entry(key)
        return entry.expires_at if entry is not None else None

    def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    def delete_matching(self, pattern: str) -> int:
        """Delete every key containing *pattern*; return how many were removed."""
        matched = [key for key in self._entries if pattern in key]
        for key in matched:
            self.delete(key)
        return len(matched)

    def clear(self) -> None:
        self._entries.clear()

    def sweep(self) -> int:
        """Evict every expired entry now; return the number evicted."""
        now = self._scheduler.time()
        expired = [key for key, entry in self._entries.items() if is_expired(now, entry.expires_at)]
        for key in expired:
            self.delete(key)
        if expired:
            _logger.debug("Cache sweep evicted %d entries", len(expired))
        return len(expired)

    def _fresh_entry(self, key: str) -> CacheEntry | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if is_expired(self._scheduler.time(), entry.expires_at):
            self.delete(key)
            return None
        return entry

    # ------------------------------------------------------------------
    # Background sweep
    # ------------------------------------------------------------------

    @property
    def sweeping(self) -> bool:
        return self._sweep_handle is not None

    def start(self) -> None:
        """Start the periodic sweep timer (no-op when disabled or running)."""
        if self._sweep_interval is None or self._sweep_interval <= 0:
            return
        if self._sweep_handle is not None:
            return
        self._sweep_handle = self._scheduler.call_later(self._sweep_interval, self._on_sweep_timer)

    def stop(self) -> None:
        handle = self._sweep_handle
        self._sweep_handle = None
        if handle is not None:
            handle.cancel()

    def _on_sweep_timer(self) -> None:
        self._sweep_handle = None
        self.sweep()
        self.start()
