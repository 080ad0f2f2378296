"""Whole-day recommendation cache with schema versioning."""

from __future__ import annotations

import json
import threading
from collections.abc import Sequence
from datetime import date, datetime
from pathlib import Path
from typing import Any, Protocol

from pydantic import BaseModel, ValidationError

from trade_pilot.ai.analysis import MarketAnalysis, RecommendationStats
from trade_pilot.ai.schemas import Recommendation
from trade_pilot.utils.clock import Clock, SystemClock
from trade_pilot.utils.logging import get_logger

CACHE_VERSION = 1


class CachedRecommendationSet(BaseModel):
    """One day's market read. Valid only for its own day and schema version."""

    day: date
    generated_at: datetime
    recommendations: list[Recommendation]
    market_analysis: MarketAnalysis
    top_opportunities: list[Recommendation]
    stats: RecommendationStats
    version: int = CACHE_VERSION


class CacheStore(Protocol):
    def load(self) -> dict[str, Any] | None: ...

    def save(self, payload: dict[str, Any]) -> None: ...

    def delete(self) -> None: ...


class MemoryCacheStore:
    """Process-local store."""

    def __init__(self) -> None:
        self._payload: dict[str, Any] | None = None

    def load(self) -> dict[str, Any] | None:
        return self._payload

    def save(self, payload: dict[str, Any]) -> None:
        self._payload = payload

    def delete(self) -> None:
        self._payload = None


class JsonFileCacheStore:
    """Single JSON document on disk, replaced atomically on save."""

    def __init__(self, path: Path) -> None:
        self._path = path

    def load(self) -> dict[str, Any] | None:
        if not self._path.exists():
            return None
        raw = json.loads(self._path.read_text(encoding="utf-8"))
        return raw if isinstance(raw, dict) else None

    def save(self, payload: dict[str, Any]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_suffix(self._path.suffix + ".tmp")
        tmp_path.write_text(json.dumps(payload, ensure_ascii=True, indent=2), encoding="utf-8")
        tmp_path.replace(self._path)

    def delete(self) -> None:
        self._path.unlink(missing_ok=True)


class RecommendationCache:
    """Read-mostly cache of today's recommendation set.

    Any entry from another day, another schema version, or that no longer
    decodes is purged the moment it is read.
    """

    def __init__(
        self,
        store: CacheStore | None = None,
        *,
        clock: Clock | None = None,
        version: int = CACHE_VERSION,
    ) -> None:
        self._store = store or MemoryCacheStore()
        self._clock = clock or SystemClock()
        self._version = version
        self._lock = threading.Lock()
        self._logger = get_logger("trade_pilot.ai.cache")
        self.refresh_count = 0

    @property
    def version(self) -> int:
        return self._version

    def get(self) -> CachedRecommendationSet | None:
        with self._lock:
            try:
                payload = self._store.load()
            except (OSError, json.JSONDecodeError) as exc:
                self._logger.warning("cache_read_failed", error=str(exc))
                self._store.delete()
                return None
            if payload is None:
                return None

            if payload.get("version") != self._version:
                self._purge("version_mismatch", found=payload.get("version"))
                return None
            try:
                cached = CachedRecommendationSet.model_validate(payload)
            except ValidationError as exc:
                self._purge("decode_failed", error=exc.errors()[0]["msg"])
                return None
            if cached.day != self._clock.today():
                self._purge("previous_day", day=cached.day.isoformat())
                return None
            return cached

    def put(
        self,
        recommendations: Sequence[Recommendation],
        analysis: MarketAnalysis,
        top_opportunities: Sequence[Recommendation],
        stats: RecommendationStats,
    ) -> CachedRecommendationSet:
        cached = CachedRecommendationSet(
            day=self._clock.today(),
            generated_at=self._clock.now(),
            recommendations=list(recommendations),
            market_analysis=analysis,
            top_opportunities=list(top_opportunities),
            stats=stats,
            version=self._version,
        )
        with self._lock:
            self._store.save(cached.model_dump(mode="json"))
            self.refresh_count += 1
        self._logger.info(
            "cache_stored",
            day=cached.day.isoformat(),
            recommendations=len(cached.recommendations),
        )
        return cached

    def clear(self) -> None:
        with self._lock:
            self._store.delete()
        self._logger.info("cache_cleared")

    def is_stale(self) -> bool:
        return self.get() is None

    def info(self) -> dict[str, Any]:
        cached = self.get()
        if cached is None:
            return {
                "has_data": False,
                "day": None,
                "generated_at": None,
                "hours_old": None,
                "recommendations": 0,
                "refresh_count": self.refresh_count,
            }
        hours_old = (self._clock.now() - cached.generated_at).total_seconds() / 3600
        return {
            "has_data": True,
            "day": cached.day.isoformat(),
            "generated_at": cached.generated_at.isoformat(),
            "hours_old": round(hours_old, 1),
            "recommendations": len(cached.recommendations),
            "refresh_count": self.refresh_count,
        }

    def status_message(self) -> str:
        """Human-readable age of the cached set."""
        info = self.info()
        if not info["has_data"]:
            return "No recommendations cached for today. A fresh scan will generate them."
        hours = int(info["hours_old"] or 0)
        if hours < 1:
            return "Fresh AI recommendations (generated recently)"
        if hours < 6:
            return f"AI recommendations from {hours} hour{'s' if hours != 1 else ''} ago"
        return f"AI recommendations from earlier today ({hours} hours ago)"

    def _purge(self, reason: str, **kwargs: Any) -> None:
        # Caller holds the lock.
        self._store.delete()
        self._logger.info("cache_invalidated", reason=reason, **kwargs)
