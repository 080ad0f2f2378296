"""Error taxonomy shared by the engine and its collaborators."""

from __future__ import annotations


class TradePilotError(Exception):
    """Base error."""


class QuoteUnavailable(TradePilotError):
    """Raised when market data for a symbol cannot be obtained."""

    def __init__(self, symbol: str, reason: str = "") -> None:
        self.symbol = symbol
        self.reason = reason
        super().__init__(f"quote_unavailable: {symbol}" + (f" ({reason})" if reason else ""))


class ProviderError(TradePilotError):
    """Raised when a model provider call fails."""

    def __init__(self, message: str, *, provider: str | None = None) -> None:
        self.provider = provider
        super().__init__(message)


class NoProviderAvailable(ProviderError):
    """Raised when every provider is exhausted or unconfigured."""


class ProviderTimeout(ProviderError):
    """Raised when a provider exceeds the hard request timeout."""


class ProviderMalformedResponse(ProviderError):
    """Raised when a provider response has no usable JSON object."""


class TradeRejected(TradePilotError):
    """Raised by the portfolio when a trade cannot be applied."""


class InsufficientFunds(TradeRejected):
    """Cash balance does not cover a buy."""


class InsufficientShares(TradeRejected):
    """Holding does not cover a sell."""


class PortfolioUnreachable(TradePilotError):
    """The portfolio boundary is broken; decisions are unsafe."""


class InvalidTransition(TradePilotError):
    """Raised when a bot lifecycle call is not valid from the current state."""

    def __init__(self, current: str, operation: str) -> None:
        self.current = current
        self.operation = operation
        super().__init__(f"invalid_transition: {operation} from {current}")


class OrderStateError(TradePilotError):
    """Raised when an order operation would break an order invariant."""
