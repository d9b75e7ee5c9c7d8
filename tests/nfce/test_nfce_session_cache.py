"""Tests for agents.nfce.session_cache."""

from __future__ import annotations

import dataclasses
import time

import anyio
import pytest

from agents.nfce import SessionCache, SessionConstructionError
from agents.nfce.session_cache import fingerprint, format_age, mask_fingerprint
from backend.core.observability.metrics import get_metrics


class ManualClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class CountingFactory:
    def __init__(self) -> None:
        self.calls = 0

    def __call__(self, credential):
        self.calls += 1
        return {"session": self.calls, "tax_id": credential.tax_id}


def _variant(credential, scope_id: str):
    return dataclasses.replace(credential, scope_id=scope_id)


def test_second_lookup_within_ttl_is_a_hit(credential) -> None:
    # Arrange
    factory = CountingFactory()
    cache = SessionCache(factory, ttl_s=60, max_size=10, clock=ManualClock(), start_sweeper=False)

    # Act
    first = cache.get(credential)
    second = cache.get(credential)

    # Assert
    assert first is second
    assert factory.calls == 1
    metrics = get_metrics()
    assert metrics["nfce_session_cache_hits_total"]["count"] == 1
    assert metrics["nfce_session_cache_misses_total"]["count"] == 1


def test_expired_entry_is_rebuilt(credential) -> None:
    clock = ManualClock()
    factory = CountingFactory()
    cache = SessionCache(factory, ttl_s=60, max_size=10, clock=clock, start_sweeper=False)

    first = cache.get(credential)
    clock.advance(60)
    second = cache.get(credential)

    assert first is not second
    assert factory.calls == 2
    assert len(cache) == 1


def test_secret_material_does_not_change_the_cache_key(credential) -> None:
    rotated = dataclasses.replace(credential, scope_token="another-token", certificate_password="x")

    assert fingerprint(rotated) == fingerprint(credential)
    assert fingerprint(_variant(credential, "000002")) != fingerprint(credential)
    assert len(fingerprint(credential)) == 64


def test_capacity_eviction_removes_least_used_entry(credential) -> None:
    # Arrange
    clock = ManualClock()
    factory = CountingFactory()
    cache = SessionCache(factory, ttl_s=600, max_size=2, clock=clock, start_sweeper=False)
    busy, idle, newcomer = (_variant(credential, s) for s in ("busy", "idle", "new"))
    cache.get(busy)
    clock.advance(1)
    cache.get(busy)
    cache.get(idle)
    clock.advance(1)

    # Act
    cache.get(newcomer)

    # Assert
    calls = factory.calls
    cache.get(busy)
    assert factory.calls == calls
    cache.get(idle)
    assert factory.calls == calls + 1
    assert get_metrics()["nfce_session_cache_evictions_total{reason=capacity}"]["count"] >= 1


def test_capacity_eviction_prefers_oldest_on_equal_hits(credential) -> None:
    clock = ManualClock()
    factory = CountingFactory()
    cache = SessionCache(factory, ttl_s=600, max_size=2, clock=clock, start_sweeper=False)
    oldest, middle, newest = (_variant(credential, s) for s in ("a", "b", "c"))
    cache.get(oldest)
    clock.advance(1)
    cache.get(middle)
    clock.advance(1)

    cache.get(newest)

    assert len(cache) == 2
    calls = factory.calls
    cache.get(middle)
    assert factory.calls == calls
    cache.get(oldest)
    assert factory.calls == calls + 1


def test_construction_failure_is_not_cached(credential) -> None:
    # Arrange
    attempts = []

    def flaky(cred):
        attempts.append(cred)
        if len(attempts) == 1:
            raise SessionConstructionError("certificate could not be decrypted")
        return object()

    cache = SessionCache(flaky, ttl_s=60, max_size=5, clock=ManualClock(), start_sweeper=False)

    # Act & Assert
    with pytest.raises(SessionConstructionError):
        cache.get(credential)
    assert len(cache) == 0
    assert cache.get(credential) is not None
    assert len(attempts) == 2


def test_stats_are_masked_and_sorted_by_hits(credential) -> None:
    # Arrange
    clock = ManualClock()
    cache = SessionCache(CountingFactory(), ttl_s=1800, max_size=5, clock=clock, start_sweeper=False)
    quiet = _variant(credential, "quiet")
    cache.get(quiet)
    for _ in range(3):
        cache.get(credential)
    clock.advance(125)

    # Act
    stats = cache.stats()

    # Assert
    assert stats["count"] == 2
    assert stats["max_size"] == 5
    assert stats["ttl_seconds"] == 1800
    top = stats["entries"][0]
    assert top["hits"] == 3
    assert top["session"] == mask_fingerprint(fingerprint(credential))
    assert top["session"].endswith("***") and len(top["session"]) == 11
    assert top["tax_id"] == "1234**********"
    assert top["environment"] == "homologation"
    assert top["age"] == "2m"
    assert top["expires_in"] == "27m"
    assert "csc-secret-token" not in repr(stats)


def test_clear_and_evict(credential) -> None:
    cache = SessionCache(CountingFactory(), ttl_s=60, max_size=5, clock=ManualClock(), start_sweeper=False)
    cache.get(credential)
    cache.get(_variant(credential, "other"))

    assert cache.evict(credential) is True
    assert cache.evict(credential) is False
    assert cache.clear() == 1
    assert cache.stats()["count"] == 0


def test_sweep_removes_only_expired_entries(credential) -> None:
    clock = ManualClock()
    cache = SessionCache(CountingFactory(), ttl_s=60, max_size=5, clock=clock, start_sweeper=False)
    cache.get(credential)
    clock.advance(50)
    cache.get(_variant(credential, "fresh"))
    clock.advance(15)

    assert cache.sweep() == 1
    assert len(cache) == 1


def test_background_sweeper_runs_until_destroyed(credential) -> None:
    # Arrange
    clock = ManualClock()
    cache = SessionCache(CountingFactory(), ttl_s=60, max_size=5, sweep_interval_s=0.01, clock=clock)
    cache.get(credential)
    clock.advance(120)

    # Act
    deadline = time.monotonic() + 2.0
    while len(cache) and time.monotonic() < deadline:
        time.sleep(0.01)
    remaining = len(cache)
    cache.destroy()

    # Assert
    assert remaining == 0
    assert cache._sweeper is None


@pytest.mark.anyio
async def test_get_async_builds_off_the_event_loop(credential) -> None:
    factory = CountingFactory()
    cache = SessionCache(factory, ttl_s=60, max_size=5, clock=ManualClock(), start_sweeper=False)

    async with anyio.create_task_group() as tg:
        for _ in range(3):
            tg.start_soon(cache.get_async, credential)

    assert len(cache) == 1
    assert cache.stats()["entries"][0]["hits"] >= 3


@pytest.mark.parametrize(
    "seconds, expected", [(0, "0s"), (59, "59s"), (60, "1m"), (3599, "59m"), (7200, "2h"), (-5, "0s")]
)
def test_format_age(seconds: float, expected: str) -> None:
    assert format_age(seconds) == expected
