"""Nummernkreis-Service für NFC-e (nNF + cNF je NumberingKey)."""

from __future__ import annotations

import hashlib
import secrets
import threading
import time
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Iterator, List, Optional

import anyio
from sqlalchemy.exc import IntegrityError

from backend.core.config import settings
from backend.core.observability import metrics
from backend.core.observability.logging import logger

from .dto import Allocation, NumberingKey, NumberingStats
from .errors import AllocationExhausted, ValidationError
from .ledger import LedgerStore

MODE_RESERVE = "reserve"
MODE_LIVE = "live"

CodeGenerator = Callable[[NumberingKey, int], str]


def _default_clock() -> datetime:
    return datetime.now(timezone.utc)


def generate_confirmation_code(key: NumberingKey, attempt: int = 1) -> str:
    """8-digit code from wall clock, monotonic clock, two random draws and the key."""

    seed = "|".join(
        (
            str(time.time_ns()),
            str(time.perf_counter_ns()),
            str(secrets.randbits(64)),
            str(secrets.randbits(64)),
            key.tax_id,
            key.jurisdiction,
            key.series,
            key.environment.value,
            str(attempt),
        )
    )
    digest = hashlib.sha256(seed.encode("utf-8")).hexdigest()
    return f"{int(digest[:12], 16) % 100_000_000:08d}"


class SequenceAllocator:
    """Vergibt Ordinalzahl und Bestätigungscode je NumberingKey.

    ``reserve``: the new ordinal is persisted as an in-flight row inside the
    same locked transaction that read the maximum, so concurrent callers never
    share an ordinal. ``live``: nothing is written; the ordinal is derived from
    terminal rows only and two in-flight requests may receive the same number.
    """

    def __init__(
        self,
        ledger: LedgerStore,
        *,
        mode: Optional[str] = None,
        code_generator: CodeGenerator | None = None,
        max_code_attempts: Optional[int] = None,
        backoff_ms: Optional[int] = None,
        reserve_retries: Optional[int] = None,
        stale_after: Optional[timedelta] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        mode = (mode or settings.NFCE_NUMBERING_MODE).lower()
        if mode not in (MODE_RESERVE, MODE_LIVE):
            raise ValueError(f"unknown numbering mode {mode!r}")
        self._ledger = ledger
        self._mode = mode
        self._code_generator = code_generator or generate_confirmation_code
        self._max_code_attempts = max_code_attempts or settings.NFCE_CODE_RETRY_MAX
        self._backoff_ms = settings.NFCE_CODE_BACKOFF_MS if backoff_ms is None else backoff_ms
        self._reserve_retries = reserve_retries or settings.NFCE_RESERVE_RETRY_MAX
        self._stale_after = stale_after or timedelta(
            minutes=settings.NFCE_RESERVATION_STALE_MINUTES
        )
        self._sleep = sleep
        self._clock = clock or _default_clock
        # key -> [lock, holders]; dropped once no caller holds or waits on it
        self._locks: Dict[NumberingKey, List] = {}
        self._locks_guard = threading.Lock()

    @property
    def mode(self) -> str:
        return self._mode

    @property
    def reserves(self) -> bool:
        return self._mode == MODE_RESERVE

    async def allocate(self, key: NumberingKey) -> Allocation:
        return await anyio.to_thread.run_sync(self.allocate_sync, key)

    def allocate_sync(self, key: NumberingKey) -> Allocation:
        if not isinstance(key, NumberingKey):
            raise ValidationError("key must be a NumberingKey")

        with self._key_lock(key):
            for attempt in range(1, self._reserve_retries + 1):
                try:
                    with self._ledger.transaction() as conn:
                        ordinal = (
                            self._ledger.max_ordinal(
                                conn, key, terminal_only=not self.reserves, lock=True
                            )
                            + 1
                        )
                        code = self._unique_code(conn, key)
                        if self.reserves:
                            self._ledger.insert_reservation(conn, key, ordinal, code)
                except IntegrityError:
                    # another process committed the same ordinal or code first
                    logger.warning(
                        "numbering_reservation_conflict",
                        extra={**key.as_dict(), "attempt": attempt},
                    )
                    continue

                metrics.increment_numbering_allocated(self._mode)
                logger.info(
                    "numbering_allocated",
                    extra={**key.as_dict(), "ordinal": ordinal, "mode": self._mode},
                )
                return Allocation(ordinal=ordinal, confirmation_code=code)

        raise AllocationExhausted(
            f"could not reserve a number after {self._reserve_retries} attempts"
        )

    def _unique_code(self, conn, key: NumberingKey) -> str:
        for attempt in range(1, self._max_code_attempts + 1):
            code = self._code_generator(key, attempt)
            if not self._ledger.code_exists(conn, key, code):
                return code
            metrics.increment_code_collisions()
            logger.info(
                "numbering_code_collision",
                extra={**key.as_dict(), "attempt": attempt},
            )
            if attempt < self._max_code_attempts and self._backoff_ms:
                self._sleep(attempt * self._backoff_ms / 1000.0)
        raise AllocationExhausted(
            f"no unique confirmation code after {self._max_code_attempts} attempts"
        )

    @contextmanager
    def _key_lock(self, key: NumberingKey) -> Iterator[None]:
        with self._locks_guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = self._locks[key] = [threading.Lock(), 0]
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._locks_guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[key]

    @property
    def tracked_keys(self) -> int:
        """Number of keys with an allocation in progress."""
        with self._locks_guard:
            return len(self._locks)

    async def release(self, key: NumberingKey, allocation: Allocation) -> bool:
        """Return an allocation to the pool after a technical fault."""
        return await anyio.to_thread.run_sync(self.release_sync, key, allocation)

    def release_sync(self, key: NumberingKey, allocation: Allocation) -> bool:
        released = False
        if self.reserves:
            released = self._ledger.release(
                key, allocation.ordinal, allocation.confirmation_code
            )
        metrics.increment_numbering_released()
        logger.info(
            "numbering_released",
            extra={
                **key.as_dict(),
                "ordinal": allocation.ordinal,
                "mode": self._mode,
                "row_deleted": released,
            },
        )
        return released

    async def sweep(self) -> int:
        return await anyio.to_thread.run_sync(self.sweep_sync)

    def sweep_sync(self, now: Optional[datetime] = None) -> int:
        """Abandon reservations older than the stale threshold."""
        cutoff = (now or self._clock()) - self._stale_after
        expired = self._ledger.expire_reservations(cutoff)
        if expired:
            metrics.increment_reservations_expired(expired)
            logger.warning(
                "numbering_reservations_abandoned",
                extra={"count": expired, "cutoff": cutoff.isoformat()},
            )
        return expired

    async def stats(self, key: NumberingKey) -> NumberingStats:
        return await anyio.to_thread.run_sync(self._ledger.stats, key)


__all__ = [
    "MODE_RESERVE",
    "MODE_LIVE",
    "CodeGenerator",
    "generate_confirmation_code",
    "SequenceAllocator",
]
