"""Per-provider daily request quotas."""

from __future__ import annotations

import threading
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from datetime import date, datetime

from trade_pilot.config import Provider
from trade_pilot.utils.clock import Clock, SystemClock, next_midnight
from trade_pilot.utils.logging import get_logger


@dataclass(slots=True)
class QuotaRecord:
    provider: Provider
    day: date
    used: int
    limit: int
    reset_at: datetime


@dataclass(frozen=True, slots=True)
class QuotaUsage:
    """Read-only usage view for one provider."""

    provider: Provider
    used: int
    limit: int
    remaining: int
    percentage: float
    reset_at: datetime


class QuotaTracker:
    """Daily request budget per provider.

    Records are reset lazily: the first touch on a new calendar day replaces
    the record with a zero-usage one. Check-and-increment is serialized by a
    lock per provider so concurrent consumers never push usage past the limit.
    """

    def __init__(
        self,
        limits: Mapping[Provider, int],
        *,
        priority: Sequence[Provider] | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._clock = clock or SystemClock()
        self._limits = dict(limits)
        self._priority = [p for p in (priority or list(self._limits)) if p in self._limits]
        self._priority += [p for p in self._limits if p not in self._priority]
        self._locks = {provider: threading.Lock() for provider in self._limits}
        self._records = {provider: self._fresh(provider) for provider in self._limits}
        self._logger = get_logger("trade_pilot.ai.quota")

    @property
    def providers(self) -> list[Provider]:
        return list(self._priority)

    def can_consume(self, provider: Provider) -> bool:
        if provider not in self._limits:
            return False
        with self._locks[provider]:
            record = self._current(provider)
            return record.used < record.limit

    def consume(self, provider: Provider) -> bool:
        """Increment usage iff under the limit. Returns False otherwise."""
        if provider not in self._limits:
            return False
        with self._locks[provider]:
            record = self._current(provider)
            if record.used >= record.limit:
                self._logger.warning(
                    "quota_exhausted",
                    provider=provider.value,
                    used=record.used,
                    limit=record.limit,
                )
                return False
            record.used += 1
            return True

    def usage(self, provider: Provider) -> QuotaUsage:
        with self._locks[provider]:
            record = self._current(provider)
            remaining = max(0, record.limit - record.used)
            percentage = 100.0 if record.limit == 0 else min(100.0, record.used / record.limit * 100)
            return QuotaUsage(
                provider=provider,
                used=record.used,
                limit=record.limit,
                remaining=remaining,
                percentage=percentage,
                reset_at=record.reset_at,
            )

    def all_usage(self) -> dict[Provider, QuotaUsage]:
        return {provider: self.usage(provider) for provider in self._priority}

    def available(self) -> list[Provider]:
        return [provider for provider in self._priority if self.can_consume(provider)]

    def best_available(
        self,
        preferred: Provider | None = None,
        *,
        exclude: Sequence[Provider] = (),
    ) -> Provider | None:
        """Preferred provider if it has budget, else the first in priority order."""
        if preferred is not None and preferred not in exclude and self.can_consume(preferred):
            return preferred
        for provider in self._priority:
            if provider in exclude or provider == preferred:
                continue
            if self.can_consume(provider):
                return provider
        return None

    def set_limit(self, provider: Provider, limit: int) -> None:
        if limit < 0:
            raise ValueError("limit_must_be_non_negative")
        if provider not in self._limits:
            self._locks[provider] = threading.Lock()
            self._priority.append(provider)
            self._limits[provider] = limit
            self._records[provider] = self._fresh(provider)
            return
        with self._locks[provider]:
            self._limits[provider] = limit
            self._records[provider].limit = limit

    def reset_all(self) -> None:
        for provider in self._limits:
            with self._locks[provider]:
                self._records[provider] = self._fresh(provider)

    def _current(self, provider: Provider) -> QuotaRecord:
        # Caller holds the provider lock.
        record = self._records[provider]
        if record.day != self._clock.today():
            record = self._fresh(provider)
            self._records[provider] = record
        return record

    def _fresh(self, provider: Provider) -> QuotaRecord:
        return QuotaRecord(
            provider=provider,
            day=self._clock.today(),
            used=0,
            limit=self._limits[provider],
            reset_at=next_midnight(self._clock),
        )
