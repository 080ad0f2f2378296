"""Portfolio risk, exit targets and position sizing."""

from __future__ import annotations

import threading
from collections.abc import Mapping

import numpy as np
import pandas as pd  # type: ignore[import-untyped]

from trade_pilot.ai.schemas import Recommendation
from trade_pilot.config import Settings
from trade_pilot.types import (
    ExitTarget,
    ExitType,
    Holding,
    OverallRisk,
    PortfolioRiskSnapshot,
    PortfolioSnapshot,
    PositionSize,
)
from trade_pilot.utils.logging import get_logger, log_risk_event

_LEVELS = [OverallRisk.LOW, OverallRisk.MEDIUM, OverallRisk.HIGH, OverallRisk.CRITICAL]


def _max_level(*levels: OverallRisk) -> OverallRisk:
    return max(levels, key=_LEVELS.index)


class RiskManager:
    """Rule-based portfolio and position risk.

    Thresholds come from ``Settings``. Trailing-stop high-water marks are the
    only state kept here; they are guarded by a lock because exit checks may
    run from the scan task while a CLI reads them.
    """

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._high_water: dict[str, float] = {}
        self._lock = threading.Lock()
        self._logger = get_logger("trade_pilot.risk.manager")

    def assess_portfolio_risk(self, holdings: Mapping[str, Holding]) -> PortfolioRiskSnapshot:
        """Concentration, diversification and drawdown mapped to a risk level."""
        rows = [
            {"symbol": h.symbol, "value": h.market_value, "cost": h.cost_basis}
            for h in holdings.values()
            if h.quantity > 0
        ]
        if not rows:
            return PortfolioRiskSnapshot(
                overall_risk=OverallRisk.LOW,
                diversification_score=0.0,
                concentration_risk=0.0,
            )

        frame = pd.DataFrame(rows)
        total_value = float(frame["value"].sum())
        total_cost = float(frame["cost"].sum())
        if total_value <= 0:
            weights = np.full(len(frame), 1.0 / len(frame))
        else:
            weights = (frame["value"] / total_value).to_numpy()

        concentration = float(weights.max() * 100)
        hhi = float(np.square(weights).sum())
        diversification = max(0.0, min(100.0, 100.0 * (1.0 - hhi)))
        drawdown = 0.0
        if total_cost > 0:
            drawdown = max(0.0, (total_cost - total_value) / total_cost * 100)

        overall = self._overall_risk(concentration, diversification, drawdown, len(frame))
        return PortfolioRiskSnapshot(
            overall_risk=overall,
            diversification_score=round(diversification, 2),
            concentration_risk=round(concentration, 2),
            holdings_count=len(frame),
            drawdown_pct=round(drawdown, 2),
        )

    def _overall_risk(
        self,
        concentration: float,
        diversification: float,
        drawdown: float,
        holdings_count: int,
    ) -> OverallRisk:
        s = self._settings

        structure = OverallRisk.LOW
        if concentration >= s.concentration_critical_pct:
            structure = OverallRisk.CRITICAL
        elif concentration >= s.concentration_high_pct or diversification < s.diversification_high_below:
            structure = OverallRisk.HIGH
        elif (
            concentration >= s.concentration_medium_pct
            or diversification < s.diversification_medium_below
        ):
            structure = OverallRisk.MEDIUM
        # Below risk_min_positions structural risk is capped at MEDIUM.
        if holdings_count < s.risk_min_positions and structure != OverallRisk.LOW:
            structure = OverallRisk.MEDIUM

        losses = OverallRisk.LOW
        if drawdown >= s.drawdown_critical_pct:
            losses = OverallRisk.CRITICAL
        elif drawdown >= s.drawdown_high_pct:
            losses = OverallRisk.HIGH
        elif drawdown >= s.drawdown_medium_pct:
            losses = OverallRisk.MEDIUM

        return _max_level(structure, losses)

    def check_exit_targets(
        self,
        holdings: Mapping[str, Holding],
        prices: Mapping[str, float] | None = None,
    ) -> list[ExitTarget]:
        """Holdings whose price crossed stop-loss, take-profit or trailing stop.

        At most one target is emitted per holding; stop-loss wins over the
        others.
        """
        prices = prices or {}
        s = self._settings
        targets: list[ExitTarget] = []

        with self._lock:
            live = {sym for sym, h in holdings.items() if h.quantity > 0}
            for symbol in list(self._high_water):
                if symbol not in live:
                    del self._high_water[symbol]

            for symbol, holding in holdings.items():
                if holding.quantity <= 0 or holding.average_price <= 0:
                    continue
                price = float(prices.get(symbol, holding.current_price))
                if price <= 0:
                    continue

                stop_price = holding.average_price * (1 - s.stop_loss_pct / 100)
                target_price = holding.average_price * (1 + s.take_profit_pct / 100)
                trailing_stop = None
                if s.use_trailing_stop:
                    high = max(self._high_water.get(symbol, holding.average_price), price)
                    self._high_water[symbol] = high
                    trailing_stop = high * (1 - s.trailing_stop_pct / 100)

                target: ExitTarget | None = None
                if price <= stop_price:
                    target = self._target(holding, ExitType.STOP_LOSS, price, stop_price)
                elif price >= target_price:
                    target = self._target(holding, ExitType.TAKE_PROFIT, price, target_price)
                elif trailing_stop is not None and price <= trailing_stop:
                    target = self._target(holding, ExitType.TRAILING_STOP, price, trailing_stop)

                if target is not None:
                    targets.append(target)
                    log_risk_event(
                        self._logger,
                        event_type=target.type.value,
                        action="exit_signal",
                        symbol=symbol,
                        price=price,
                        threshold=round(target.threshold_price, 4),
                    )
        return targets

    @staticmethod
    def _target(holding: Holding, exit_type: ExitType, price: float, threshold: float) -> ExitTarget:
        return ExitTarget(
            symbol=holding.symbol,
            type=exit_type,
            current_price=price,
            threshold_price=round(threshold, 4),
            quantity=holding.quantity,
        )

    def high_water_mark(self, symbol: str) -> float | None:
        with self._lock:
            return self._high_water.get(symbol)

    def size_position(
        self,
        recommendation: Recommendation,
        portfolio: PortfolioSnapshot,
    ) -> PositionSize:
        """Share count bounded by position cap, risk-per-trade cap and cash.

        The smallest cap binds; fractional shares round down.
        """
        s = self._settings
        price = recommendation.current_price
        total_value = portfolio.total_value
        stop_price = price * (1 - s.stop_loss_pct / 100)
        if price <= 0 or total_value <= 0:
            return PositionSize(0, 0.0, 0.0, 0.0, stop_price, "no_capital")

        stop_distance = price - stop_price
        caps = {
            "max_position_size": total_value * s.max_position_size_pct / 100 / price,
            "max_risk_per_trade": total_value * s.max_risk_per_trade_pct / 100 / stop_distance,
            "available_cash": max(0.0, portfolio.cash_balance) / price,
        }
        binding = min(caps, key=lambda k: caps[k])
        shares = max(0, int(np.floor(caps[binding] + 1e-9)))
        position_value = shares * price
        return PositionSize(
            shares=shares,
            position_value=round(position_value, 2),
            risk_amount=round(shares * stop_distance, 2),
            position_size_ratio=position_value / total_value,
            stop_price=round(stop_price, 4),
            binding_constraint=binding,
        )
