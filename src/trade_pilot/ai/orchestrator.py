"""Provider selection, fallback and bulk recommendation fetching."""

from __future__ import annotations

import threading
import time
from collections.abc import Mapping, Sequence
from concurrent.futures import ThreadPoolExecutor

from pydantic import ValidationError

from trade_pilot.ai.analysis import (
    build_market_analysis,
    compute_stats,
    rank_by_confidence,
    select_top_opportunities,
)
from trade_pilot.ai.cache import CachedRecommendationSet, RecommendationCache
from trade_pilot.ai.prompts import build_recommendation_prompt
from trade_pilot.ai.quota import QuotaTracker, QuotaUsage
from trade_pilot.ai.schemas import (
    Err,
    Ok,
    ProviderResponse,
    Recommendation,
    parse_recommendation_text,
)
from trade_pilot.config import Provider
from trade_pilot.errors import (
    NoProviderAvailable,
    ProviderError,
    ProviderMalformedResponse,
    QuoteUnavailable,
)
from trade_pilot.interfaces import MarketData, ModelProvider
from trade_pilot.types import PortfolioSnapshot, Quote
from trade_pilot.utils.clock import Clock, SystemClock
from trade_pilot.utils.logging import get_logger, log_llm_call


class ProviderOrchestrator:
    """Routes recommendation requests across model providers.

    A provider is chosen through the quota tracker (preferred first, then the
    tracker's priority order). Quota is reserved before the call, so the local
    counter reflects attempts rather than successes. Any failure moves on to
    the next provider with remaining budget when fallback is enabled.
    """

    def __init__(
        self,
        providers: Mapping[Provider, ModelProvider],
        quota: QuotaTracker,
        *,
        clock: Clock | None = None,
        preferred: Provider = Provider.GEMINI,
        fallback: bool = True,
        max_concurrency: int = 3,
        cache: RecommendationCache | None = None,
        top_count: int = 5,
    ) -> None:
        if max_concurrency < 1:
            raise ValueError("max_concurrency_must_be_positive")
        self._providers = dict(providers)
        self._quota = quota
        self._clock = clock or SystemClock()
        self._preferred = preferred
        self._fallback = fallback
        self._max_concurrency = max_concurrency
        self._cache = cache or RecommendationCache(clock=self._clock)
        self._top_count = top_count
        self._logger = get_logger("trade_pilot.ai.orchestrator")

    @property
    def cache(self) -> RecommendationCache:
        return self._cache

    @property
    def providers(self) -> list[Provider]:
        return [p for p in self._quota.providers if p in self._providers]

    def request(
        self,
        provider: Provider,
        symbol: str,
        quote: Quote,
        portfolio: PortfolioSnapshot,
    ) -> ProviderResponse:
        """Run one call against one provider and tag the outcome."""
        client = self._providers.get(provider)
        if client is None:
            return Err(ProviderError("provider_not_configured", provider=provider.value))
        if not self._quota.consume(provider):
            return Err(NoProviderAvailable("quota_exhausted", provider=provider.value))

        prompt = build_recommendation_prompt(quote, portfolio)
        started = time.perf_counter()
        try:
            text = client.complete(prompt)
            raw = parse_recommendation_text(text, provider=provider.value)
            recommendation = Recommendation.from_raw(
                raw,
                symbol=symbol,
                current_price=quote.price,
                provider=provider.value,
                generated_at=self._clock.now(),
            )
        except ValidationError as exc:
            error = ProviderMalformedResponse(
                f"recommendation_invalid: {exc.errors()[0]['msg']}",
                provider=provider.value,
            )
            self._log_call(provider, symbol, started, error)
            return Err(error)
        except ProviderError as exc:
            if exc.provider is None:
                exc.provider = provider.value
            self._log_call(provider, symbol, started, exc)
            return Err(exc)

        self._log_call(provider, symbol, started, None, confidence=recommendation.confidence)
        return Ok(recommendation)

    def get_recommendation(
        self,
        symbol: str,
        quote: Quote,
        portfolio: PortfolioSnapshot,
        *,
        preferred: Provider | None = None,
        fallback: bool | None = None,
    ) -> Recommendation:
        """Recommendation from the first provider that succeeds.

        Raises ``NoProviderAvailable`` when no provider has budget left, or the
        last provider error when fallback is disabled.
        """
        use_fallback = self._fallback if fallback is None else fallback
        excluded = [p for p in self._quota.providers if p not in self._providers]
        last_error: ProviderError | None = None

        while True:
            provider = self._quota.best_available(preferred or self._preferred, exclude=excluded)
            if provider is None:
                if last_error is not None and not isinstance(last_error, NoProviderAvailable):
                    raise NoProviderAvailable(
                        f"all_providers_failed: {last_error}",
                        provider=last_error.provider,
                    ) from last_error
                raise NoProviderAvailable("no_provider_available")

            response = self.request(provider, symbol, quote, portfolio)
            if isinstance(response, Ok):
                return response.value

            last_error = response.error
            excluded.append(provider)
            if not use_fallback and not isinstance(last_error, NoProviderAvailable):
                raise last_error
            self._logger.info(
                "provider_fallback",
                symbol=symbol,
                failed_provider=provider.value,
                error=str(last_error),
            )

    def get_recommendations(
        self,
        quotes: Sequence[Quote],
        portfolio: PortfolioSnapshot,
        *,
        cancel: threading.Event | None = None,
    ) -> list[Recommendation]:
        """Bulk mode with a bounded worker pool.

        Failed symbols are omitted. Input order is preserved. Nothing is
        returned once ``cancel`` is set.
        """
        if not quotes:
            return []

        def work(quote: Quote) -> Recommendation | None:
            if cancel is not None and cancel.is_set():
                return None
            try:
                return self.get_recommendation(quote.symbol, quote, portfolio)
            except ProviderError as exc:
                self._logger.warning(
                    "recommendation_failed",
                    symbol=quote.symbol,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                return None

        with ThreadPoolExecutor(
            max_workers=self._max_concurrency,
            thread_name_prefix="recommend",
        ) as pool:
            results = list(pool.map(work, quotes))

        if cancel is not None and cancel.is_set():
            self._logger.info("recommendations_discarded", reason="cancelled")
            return []
        return [r for r in results if r is not None]

    def daily_recommendations(
        self,
        symbols: Sequence[str],
        market_data: MarketData,
        portfolio: PortfolioSnapshot,
        *,
        force_refresh: bool = False,
        cancel: threading.Event | None = None,
    ) -> CachedRecommendationSet | None:
        """Today's recommendation set, from cache or freshly generated."""
        if not force_refresh:
            cached = self._cache.get()
            if cached is not None:
                self._logger.debug("cache_hit", day=cached.day.isoformat())
                return cached

        quotes = self._fetch_quotes(symbols, market_data, cancel)
        if not quotes:
            self._logger.warning("no_quotes_available", symbols=len(symbols))
            return None

        recommendations = self.get_recommendations(quotes, portfolio, cancel=cancel)
        if not recommendations:
            self._logger.warning("no_recommendations_generated", symbols=len(symbols))
            return None

        ranked = rank_by_confidence(recommendations)
        analysis = build_market_analysis(
            ranked,
            quotes,
            top_count=self._top_count,
            generated_at=self._clock.now(),
        )
        return self._cache.put(
            ranked,
            analysis,
            select_top_opportunities(ranked, self._top_count),
            compute_stats(ranked),
        )

    def quota_usage(self) -> dict[Provider, QuotaUsage]:
        return self._quota.all_usage()

    def _fetch_quotes(
        self,
        symbols: Sequence[str],
        market_data: MarketData,
        cancel: threading.Event | None,
    ) -> list[Quote]:
        def fetch(symbol: str) -> Quote | None:
            if cancel is not None and cancel.is_set():
                return None
            try:
                return market_data.get_quote(symbol)
            except QuoteUnavailable as exc:
                self._logger.warning("quote_unavailable", symbol=symbol, reason=exc.reason)
                return None

        with ThreadPoolExecutor(
            max_workers=self._max_concurrency,
            thread_name_prefix="quote",
        ) as pool:
            quotes = list(pool.map(fetch, symbols))
        return [q for q in quotes if q is not None]

    def _log_call(
        self,
        provider: Provider,
        symbol: str,
        started: float,
        error: ProviderError | None,
        **kwargs: object,
    ) -> None:
        latency_ms = (time.perf_counter() - started) * 1000
        if error is not None:
            kwargs["error_type"] = type(error).__name__
            kwargs["error"] = str(error)
        log_llm_call(
            self._logger,
            provider=provider.value,
            symbol=symbol,
            success=error is None,
            latency_ms=latency_ms,
            **kwargs,
        )
