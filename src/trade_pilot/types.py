"""Shared domain types for the trading bot."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Literal

if TYPE_CHECKING:
    from trade_pilot.ai.schemas import Recommendation

Side = Literal["BUY", "SELL"]
RiskLevel = Literal["LOW", "MEDIUM", "HIGH"]


class BotState(str, Enum):
    """Lifecycle state of the trading bot."""

    STOPPED = "STOPPED"
    RUNNING = "RUNNING"
    PAUSED = "PAUSED"
    ERROR = "ERROR"


class TradeStatus(str, Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class DecisionKind(str, Enum):
    EXECUTE_TRADE = "EXECUTE_TRADE"
    SKIP = "SKIP"
    DEFER = "DEFER"


class OverallRisk(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class ExitType(str, Enum):
    STOP_LOSS = "STOP_LOSS"
    TAKE_PROFIT = "TAKE_PROFIT"
    TRAILING_STOP = "TRAILING_STOP"


@dataclass(frozen=True, slots=True)
class Quote:
    """Clean quote record returned by the market data collaborator."""

    symbol: str
    price: float
    change_percent: float
    high52: float
    low52: float
    market_cap: float | None = None
    pe_ratio: float | None = None
    industry: str | None = None


@dataclass(frozen=True, slots=True)
class Holding:
    """One position as reported by the portfolio collaborator."""

    symbol: str
    quantity: int
    average_price: float
    current_price: float

    @property
    def market_value(self) -> float:
        return self.quantity * self.current_price

    @property
    def cost_basis(self) -> float:
        return self.quantity * self.average_price


@dataclass(frozen=True, slots=True)
class PortfolioSnapshot:
    """Point-in-time view of cash and holdings."""

    cash_balance: float
    holdings: dict[str, Holding] = field(default_factory=dict)

    @property
    def holdings_value(self) -> float:
        return sum(h.market_value for h in self.holdings.values())

    @property
    def total_value(self) -> float:
        return self.cash_balance + self.holdings_value


@dataclass(frozen=True, slots=True)
class TradeResult:
    """Fill reported by the portfolio collaborator."""

    symbol: str
    side: Side
    quantity: int
    price: float
    cash_balance: float
    executed_at: datetime


@dataclass(frozen=True, slots=True)
class PortfolioRiskSnapshot:
    """Portfolio-level risk recomputed from current holdings."""

    overall_risk: OverallRisk
    diversification_score: float
    concentration_risk: float
    holdings_count: int = 0
    drawdown_pct: float = 0.0


@dataclass(frozen=True, slots=True)
class ExitTarget:
    """A holding whose price crossed a protective threshold."""

    symbol: str
    type: ExitType
    current_price: float
    threshold_price: float
    quantity: int


@dataclass(frozen=True, slots=True)
class PositionSize:
    """Share count and exposure produced by position sizing."""

    shares: int
    position_value: float
    risk_amount: float
    position_size_ratio: float
    stop_price: float = 0.0
    binding_constraint: str = ""


@dataclass(frozen=True, slots=True)
class QueuedTrade:
    """A trade waiting for (or done with) simulated execution."""

    id: str
    symbol: str
    action: Side
    quantity: int
    target_price: float
    recommendation: Recommendation
    created_at: datetime
    scheduled_for: datetime
    status: TradeStatus = TradeStatus.PENDING
    reason: str | None = None
    order_id: str | None = None
    executed_price: float | None = None

    @property
    def amount(self) -> float:
        return self.quantity * self.target_price

    @property
    def is_final(self) -> bool:
        return self.status in (TradeStatus.COMPLETED, TradeStatus.FAILED)


@dataclass(frozen=True, slots=True)
class BotDecision:
    """Append-only audit record for one candidate evaluation."""

    id: str
    symbol: str
    recommendation: Recommendation
    decision: DecisionKind
    reason: str
    timestamp: datetime
    trade_id: str | None = None


@dataclass(frozen=True, slots=True)
class BotStatus:
    """Read-only snapshot of the bot lifecycle and today's activity."""

    state: BotState = BotState.STOPPED
    is_monitoring: bool = False
    uptime_seconds: float = 0.0
    last_scan: datetime | None = None
    next_scan: datetime | None = None
    today_trades_count: int = 0
    today_trade_amount: float = 0.0
    pending_trades: int = 0
    error_message: str | None = None


@dataclass(slots=True)
class BotPerformance:
    """Counters for automated executions."""

    total_automated_trades: int = 0
    successful_trades: int = 0
    failed_trades: int = 0
    total_volume: float = 0.0
    ai_guided_wins: int = 0
    ai_guided_losses: int = 0

    @property
    def success_rate(self) -> float:
        if self.total_automated_trades == 0:
            return 0.0
        return self.successful_trades / self.total_automated_trades * 100


@dataclass(slots=True)
class ScanReport:
    """Outcome of one scan cycle."""

    status: str
    decisions: list[BotDecision] = field(default_factory=list)
    exit_targets: list[ExitTarget] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    elapsed_ms: float = 0.0
