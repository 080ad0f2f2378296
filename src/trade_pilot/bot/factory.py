"""Wiring of the engine and its collaborators from settings."""

from __future__ import annotations

from collections.abc import Mapping
from pathlib import Path

from trade_pilot.ai.cache import JsonFileCacheStore, MemoryCacheStore, RecommendationCache
from trade_pilot.ai.orchestrator import ProviderOrchestrator
from trade_pilot.ai.providers import build_providers
from trade_pilot.ai.quota import QuotaTracker
from trade_pilot.bot.engine import TradingBotEngine
from trade_pilot.config import Provider, Settings
from trade_pilot.data.finnhub import FinnhubQuoteClient
from trade_pilot.exec.paper import PaperPortfolio
from trade_pilot.interfaces import MarketData, ModelProvider, Portfolio
from trade_pilot.journal.store import JournalStore
from trade_pilot.risk.manager import RiskManager
from trade_pilot.utils.clock import Clock, SystemClock


def paper_state_path(settings: Settings) -> Path:
    return settings.journal_dir / "paper_state.json"


def build_orchestrator(
    settings: Settings,
    *,
    clock: Clock,
    providers: Mapping[Provider, ModelProvider] | None = None,
) -> ProviderOrchestrator:
    store = (
        JsonFileCacheStore(settings.cache_file)
        if settings.cache_file is not None
        else MemoryCacheStore()
    )
    quota = QuotaTracker(
        settings.daily_limits(),
        priority=settings.provider_priority,
        clock=clock,
    )
    return ProviderOrchestrator(
        providers if providers is not None else build_providers(settings),
        quota,
        clock=clock,
        preferred=settings.preferred_provider,
        max_concurrency=settings.max_concurrent_requests,
        cache=RecommendationCache(store, clock=clock),
        top_count=settings.top_opportunities,
    )


def build_engine(
    settings: Settings,
    *,
    clock: Clock | None = None,
    providers: Mapping[Provider, ModelProvider] | None = None,
    market_data: MarketData | None = None,
    portfolio: Portfolio | None = None,
    run_background_tasks: bool = True,
) -> TradingBotEngine:
    """Build a paper-trading engine; any collaborator can be overridden."""
    clock = clock or SystemClock()
    settings.ensure_directories()
    return TradingBotEngine(
        settings,
        orchestrator=build_orchestrator(settings, clock=clock, providers=providers),
        risk_manager=RiskManager(settings),
        portfolio=portfolio
        or PaperPortfolio(
            paper_state_path(settings),
            initial_cash=settings.initial_cash,
            clock=clock,
        ),
        market_data=market_data or FinnhubQuoteClient(settings),
        clock=clock,
        journal=JournalStore(settings.journal_dir, clock=clock),
        run_background_tasks=run_background_tasks,
    )
