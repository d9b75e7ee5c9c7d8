"""Process-wide cache of authority sessions keyed by credential identity."""

from __future__ import annotations

import hashlib
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

import anyio

from backend.core.config import settings
from backend.core.observability import metrics
from backend.core.observability.logging import logger

from .dto import Credential


def fingerprint(credential: Credential) -> str:
    """Deterministic cache key from identity fields; never from secret material."""
    raw = "|".join(
        (
            credential.tax_id,
            credential.scope_id,
            credential.environment.value,
            credential.jurisdiction,
        )
    )
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def mask_fingerprint(value: str) -> str:
    return value[:8] + "***"


def format_age(seconds: float) -> str:
    seconds = max(int(seconds), 0)
    if seconds < 60:
        return f"{seconds}s"
    if seconds < 3600:
        return f"{seconds // 60}m"
    return f"{seconds // 3600}h"


@dataclass
class CachedSession:
    fingerprint: str
    handle: Any
    created_at: float
    hits: int
    identity: Dict[str, str]


class SessionCache:
    """TTL cache with least-valuable-first eviction and a periodic sweep.

    All map access happens under one lock. Session construction on a miss runs
    outside the lock so that different credentials build concurrently.
    """

    def __init__(
        self,
        factory: Callable[[Credential], Any],
        *,
        ttl_s: Optional[float] = None,
        max_size: Optional[int] = None,
        sweep_interval_s: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
        start_sweeper: bool = True,
    ) -> None:
        self._factory = factory
        self._ttl = float(ttl_s if ttl_s is not None else settings.SESSION_CACHE_TTL_S)
        self._max_size = int(max_size if max_size is not None else settings.SESSION_CACHE_MAX_SIZE)
        if self._max_size < 1:
            raise ValueError("max_size must be >= 1")
        self._sweep_interval = float(
            sweep_interval_s
            if sweep_interval_s is not None
            else settings.SESSION_CACHE_SWEEP_INTERVAL_S
        )
        self._clock = clock
        self._entries: Dict[str, CachedSession] = {}
        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._sweeper: Optional[threading.Thread] = None
        if start_sweeper:
            self.start()

    @property
    def ttl_seconds(self) -> float:
        return self._ttl

    @property
    def max_size(self) -> int:
        return self._max_size

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    # -- lookup -------------------------------------------------------------

    def _lookup(self, key: str) -> Optional[Any]:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if now - entry.created_at < self._ttl:
                entry.hits += 1
                metrics.increment_session_cache_hits()
                return entry.handle
            del self._entries[key]
        metrics.increment_session_cache_evictions("expired")
        logger.info("session_cache_expired", extra={"session": mask_fingerprint(key)})
        return None

    def _store(self, key: str, credential: Credential, handle: Any) -> Any:
        now = self._clock()
        evicted: List[CachedSession] = []
        with self._lock:
            current = self._entries.get(key)
            if current is not None and now - current.created_at < self._ttl:
                # a concurrent miss for the same credential finished first
                current.hits += 1
                return current.handle
            self._entries[key] = CachedSession(
                fingerprint=key,
                handle=handle,
                created_at=now,
                hits=1,
                identity=credential.redacted(),
            )
            while len(self._entries) > self._max_size:
                victim = min(
                    self._entries.values(), key=lambda e: (e.hits, e.created_at)
                )
                evicted.append(self._entries.pop(victim.fingerprint))
        for entry in evicted:
            metrics.increment_session_cache_evictions("capacity")
            logger.info(
                "session_cache_evicted",
                extra={"session": mask_fingerprint(entry.fingerprint), "hits": entry.hits},
            )
        return handle

    def get(self, credential: Credential) -> Any:
        """Return the cached session, constructing it on a miss.

        Construction errors propagate; nothing is cached for the credential.
        """
        key = fingerprint(credential)
        handle = self._lookup(key)
        if handle is not None:
            return handle
        metrics.increment_session_cache_misses()
        logger.info("session_cache_miss", extra={"session": mask_fingerprint(key)})
        handle = self._factory(credential)
        return self._store(key, credential, handle)

    async def get_async(self, credential: Credential) -> Any:
        key = fingerprint(credential)
        handle = self._lookup(key)
        if handle is not None:
            return handle
        metrics.increment_session_cache_misses()
        logger.info("session_cache_miss", extra={"session": mask_fingerprint(key)})
        handle = await anyio.to_thread.run_sync(self._factory, credential)
        return self._store(key, credential, handle)

    # -- maintenance ----------------------------------------------------------

    def evict(self, credential: Credential) -> bool:
        key = fingerprint(credential)
        with self._lock:
            removed = self._entries.pop(key, None)
        if removed is not None:
            metrics.increment_session_cache_evictions("manual")
        return removed is not None

    def clear(self) -> int:
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
        logger.info("session_cache_cleared", extra={"count": count})
        return count

    def sweep(self) -> int:
        """Remove every expired entry regardless of cache size."""
        now = self._clock()
        with self._lock:
            expired = [
                key
                for key, entry in self._entries.items()
                if now - entry.created_at >= self._ttl
            ]
            for key in expired:
                del self._entries[key]
        if expired:
            metrics.increment_session_cache_evictions("sweep")
            logger.info("session_cache_swept", extra={"count": len(expired)})
        return len(expired)

    def stats(self) -> Dict[str, Any]:
        now = self._clock()
        with self._lock:
            entries = sorted(self._entries.values(), key=lambda e: e.hits, reverse=True)
            listing = [
                {
                    "session": mask_fingerprint(entry.fingerprint),
                    "tax_id": entry.identity.get("tax_id"),
                    "environment": entry.identity.get("environment"),
                    "hits": entry.hits,
                    "age": format_age(now - entry.created_at),
                    "expires_in": format_age(self._ttl - (now - entry.created_at)),
                }
                for entry in entries
            ]
        return {
            "count": len(listing),
            "max_size": self._max_size,
            "ttl_seconds": int(self._ttl),
            "entries": listing,
        }

    # -- lifecycle --------------------------------------------------------------

    def start(self) -> None:
        if self._sweeper is not None and self._sweeper.is_alive():
            return
        if self._sweep_interval <= 0:
            return
        self._stop_event.clear()
        self._sweeper = threading.Thread(
            target=self._run_sweeper, name="nfce-session-sweeper", daemon=True
        )
        self._sweeper.start()

    def _run_sweeper(self) -> None:
        while not self._stop_event.wait(self._sweep_interval):
            try:
                self.sweep()
            except Exception as exc:
                logger.error("session_cache_sweep_error", extra={"error": str(exc)})

    def destroy(self) -> None:
        self._stop_event.set()
        if self._sweeper is not None:
            self._sweeper.join(timeout=5)
            self._sweeper = None
        self.clear()


__all__ = [
    "CachedSession",
    "SessionCache",
    "fingerprint",
    "mask_fingerprint",
    "format_age",
]
