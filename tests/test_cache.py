from __future__ import annotations

import json
from pathlib import Path

from trade_pilot.ai.analysis import MarketAnalysis, RecommendationStats, compute_stats
from trade_pilot.ai.cache import (
    CACHE_VERSION,
    JsonFileCacheStore,
    MemoryCacheStore,
    RecommendationCache,
)

from fakes import ManualClock, make_recommendation


def _put(cache: RecommendationCache) -> None:
    recs = [make_recommendation("AAPL"), make_recommendation("MSFT", confidence=75)]
    cache.put(recs, MarketAnalysis(summary="ok"), recs[:1], compute_stats(recs))


def test_get_returns_todays_set() -> None:
    cache = RecommendationCache(clock=ManualClock())
    assert cache.get() is None
    _put(cache)

    cached = cache.get()
    assert cached is not None
    assert [r.symbol for r in cached.recommendations] == ["AAPL", "MSFT"]
    assert cached.stats.buy_signals == 2
    assert cached.version == CACHE_VERSION
    assert cache.is_stale() is False
    assert cache.refresh_count == 1


def test_previous_day_set_is_purged_on_read() -> None:
    clock = ManualClock()
    store = MemoryCacheStore()
    cache = RecommendationCache(store, clock=clock)
    _put(cache)

    clock.advance(days=1)

    assert cache.get() is None
    assert store.load() is None
    assert cache.is_stale() is True


def test_version_mismatch_is_purged_on_read() -> None:
    clock = ManualClock()
    store = MemoryCacheStore()
    _put(RecommendationCache(store, clock=clock, version=1))

    newer = RecommendationCache(store, clock=clock, version=2)
    assert newer.get() is None
    assert store.load() is None


def test_undecodable_payload_is_purged() -> None:
    store = MemoryCacheStore()
    store.save({"version": CACHE_VERSION, "day": "not-a-date"})
    cache = RecommendationCache(store, clock=ManualClock())
    assert cache.get() is None
    assert store.load() is None


def test_file_store_survives_restart(tmp_path: Path) -> None:
    clock = ManualClock()
    path = tmp_path / "cache" / "recommendations.json"
    _put(RecommendationCache(JsonFileCacheStore(path), clock=clock))

    assert json.loads(path.read_text(encoding="utf-8"))["version"] == CACHE_VERSION
    reloaded = RecommendationCache(JsonFileCacheStore(path), clock=clock).get()
    assert reloaded is not None
    assert reloaded.recommendations[0].symbol == "AAPL"
    assert reloaded.recommendations[0].expected_return_pct > 0


def test_corrupt_file_is_removed(tmp_path: Path) -> None:
    path = tmp_path / "recommendations.json"
    path.write_text("{broken", encoding="utf-8")
    cache = RecommendationCache(JsonFileCacheStore(path), clock=ManualClock())
    assert cache.get() is None
    assert not path.exists()


def test_clear_removes_set() -> None:
    cache = RecommendationCache(clock=ManualClock())
    _put(cache)
    cache.clear()
    assert cache.get() is None


def test_status_message_describes_age() -> None:
    clock = ManualClock()
    cache = RecommendationCache(clock=clock)
    assert "No recommendations" in cache.status_message()

    cache.put([], MarketAnalysis(), [], RecommendationStats())
    assert cache.status_message().startswith("Fresh")

    clock.advance(hours=2)
    assert cache.status_message() == "AI recommendations from 2 hours ago"

    clock.advance(hours=5)
    assert "earlier today" in cache.status_message()


def test_info_reports_size_and_age() -> None:
    clock = ManualClock()
    cache = RecommendationCache(clock=clock)
    assert cache.info()["has_data"] is False

    _put(cache)
    clock.advance(minutes=90)

    info = cache.info()
    assert info["has_data"] is True
    assert info["recommendations"] == 2
    assert info["hours_old"] == 1.5
    assert info["day"] == clock.today().isoformat()
