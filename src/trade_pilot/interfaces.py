"""Collaborator interfaces consumed by the engine."""

from __future__ import annotations

from typing import Protocol

from trade_pilot.config import Provider
from trade_pilot.types import Holding, Quote, Side, TradeResult


class MarketData(Protocol):
    """Quote source. Raises ``QuoteUnavailable``."""

    def get_quote(self, symbol: str) -> Quote:
        """Return a clean quote for ``symbol``."""


class ModelProvider(Protocol):
    """One model service. Raises ``ProviderTimeout`` or ``ProviderError``."""

    name: Provider

    def complete(self, prompt: str) -> str:
        """Return the raw completion text for ``prompt``."""


class Portfolio(Protocol):
    """Durable paper account.

    Raises ``InsufficientFunds``/``InsufficientShares`` for rejected trades and
    ``PortfolioUnreachable`` when the store itself cannot be used.
    """

    def get_holdings(self) -> dict[str, Holding]:
        """Current positions keyed by symbol."""

    def get_cash_balance(self) -> float:
        """Available cash."""

    def execute_trade(self, symbol: str, side: Side, quantity: int, price: float) -> TradeResult:
        """Apply a fill and return its result."""
