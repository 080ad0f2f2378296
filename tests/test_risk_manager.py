from __future__ import annotations

from pathlib import Path

import pytest

from trade_pilot.risk.manager import RiskManager
from trade_pilot.types import ExitType, Holding, OverallRisk, PortfolioSnapshot

from fakes import make_recommendation, make_settings


def _holding(symbol: str, qty: int, avg: float, price: float) -> Holding:
    return Holding(symbol=symbol, quantity=qty, average_price=avg, current_price=price)


def _book(*holdings: Holding) -> dict[str, Holding]:
    return {h.symbol: h for h in holdings}


def test_stop_loss_fires_once_below_threshold(tmp_path: Path) -> None:
    risk = RiskManager(make_settings(tmp_path, stop_loss_pct=10.0))
    holdings = _book(_holding("AAPL", 10, 100.0, 100.0))

    targets = risk.check_exit_targets(holdings, {"AAPL": 89.0})

    assert len(targets) == 1
    assert targets[0].type == ExitType.STOP_LOSS
    assert targets[0].threshold_price == pytest.approx(90.0)
    assert targets[0].quantity == 10


def test_take_profit_and_quiet_band(tmp_path: Path) -> None:
    risk = RiskManager(make_settings(tmp_path, stop_loss_pct=10.0, take_profit_pct=25.0))
    holdings = _book(_holding("AAPL", 10, 100.0, 100.0))

    assert risk.check_exit_targets(holdings, {"AAPL": 105.0}) == []
    targets = risk.check_exit_targets(holdings, {"AAPL": 126.0})
    assert [t.type for t in targets] == [ExitType.TAKE_PROFIT]


def test_current_price_used_when_no_price_given(tmp_path: Path) -> None:
    risk = RiskManager(make_settings(tmp_path, stop_loss_pct=10.0))
    targets = risk.check_exit_targets(_book(_holding("AAPL", 5, 100.0, 80.0)))
    assert [t.type for t in targets] == [ExitType.STOP_LOSS]


def test_trailing_high_water_mark_ratchets_up(tmp_path: Path) -> None:
    risk = RiskManager(make_settings(tmp_path, use_trailing_stop=True, trailing_stop_pct=5.0))
    holdings = _book(_holding("NVDA", 4, 100.0, 100.0))

    for price in (100.0, 110.0, 105.0, 118.0):
        assert risk.check_exit_targets(holdings, {"NVDA": price}) == []
    assert risk.high_water_mark("NVDA") == 118.0

    targets = risk.check_exit_targets(holdings, {"NVDA": 112.0})
    assert [t.type for t in targets] == [ExitType.TRAILING_STOP]
    assert targets[0].threshold_price == pytest.approx(112.1)
    assert risk.high_water_mark("NVDA") == 118.0


def test_high_water_mark_dropped_when_position_closes(tmp_path: Path) -> None:
    risk = RiskManager(make_settings(tmp_path, use_trailing_stop=True))
    risk.check_exit_targets(_book(_holding("NVDA", 4, 100.0, 100.0)), {"NVDA": 110.0})
    risk.check_exit_targets({})
    assert risk.high_water_mark("NVDA") is None


def test_stop_loss_wins_over_trailing_stop(tmp_path: Path) -> None:
    risk = RiskManager(
        make_settings(tmp_path, stop_loss_pct=10.0, use_trailing_stop=True, trailing_stop_pct=5.0)
    )
    holdings = _book(_holding("AAPL", 10, 100.0, 100.0))
    targets = risk.check_exit_targets(holdings, {"AAPL": 85.0})
    assert [t.type for t in targets] == [ExitType.STOP_LOSS]


def test_position_cap_binds(tmp_path: Path) -> None:
    risk = RiskManager(
        make_settings(tmp_path, max_position_size_pct=20.0, max_risk_per_trade_pct=100.0)
    )
    sizing = risk.size_position(
        make_recommendation("AAPL", price=50.0), PortfolioSnapshot(cash_balance=10_000.0)
    )
    assert sizing.shares == 40
    assert sizing.position_value == 2000.0
    assert sizing.position_size_ratio == pytest.approx(0.2)
    assert sizing.binding_constraint == "max_position_size"


def test_risk_per_trade_cap_binds(tmp_path: Path) -> None:
    risk = RiskManager(make_settings(tmp_path, stop_loss_pct=50.0))
    sizing = risk.size_position(
        make_recommendation("AAPL", price=100.0), PortfolioSnapshot(cash_balance=10_000.0)
    )
    # 2% of 10k at risk over a 50 dollar stop distance.
    assert sizing.shares == 4
    assert sizing.risk_amount == 200.0
    assert sizing.stop_price == 50.0
    assert sizing.binding_constraint == "max_risk_per_trade"


def test_cash_cap_binds(tmp_path: Path) -> None:
    risk = RiskManager(make_settings(tmp_path))
    portfolio = PortfolioSnapshot(
        cash_balance=100.0,
        holdings=_book(_holding("MSFT", 99, 100.0, 100.0)),
    )
    sizing = risk.size_position(make_recommendation("AAPL", price=100.0), portfolio)
    assert sizing.shares == 1
    assert sizing.binding_constraint == "available_cash"


def test_no_capital_sizes_to_zero(tmp_path: Path) -> None:
    risk = RiskManager(make_settings(tmp_path))
    sizing = risk.size_position(make_recommendation("AAPL"), PortfolioSnapshot(cash_balance=0.0))
    assert sizing.shares == 0
    assert sizing.binding_constraint == "no_capital"


def test_empty_portfolio_is_low_risk(tmp_path: Path) -> None:
    snapshot = RiskManager(make_settings(tmp_path)).assess_portfolio_risk({})
    assert snapshot.overall_risk == OverallRisk.LOW
    assert snapshot.concentration_risk == 0.0
    assert snapshot.diversification_score == 0.0


def test_single_holding_structural_risk_capped(tmp_path: Path) -> None:
    snapshot = RiskManager(make_settings(tmp_path)).assess_portfolio_risk(
        _book(_holding("AAPL", 10, 100.0, 100.0))
    )
    assert snapshot.concentration_risk == 100.0
    assert snapshot.overall_risk == OverallRisk.MEDIUM


def test_single_holding_deep_loss_is_critical(tmp_path: Path) -> None:
    snapshot = RiskManager(make_settings(tmp_path)).assess_portfolio_risk(
        _book(_holding("AAPL", 10, 100.0, 70.0))
    )
    assert snapshot.drawdown_pct == pytest.approx(30.0)
    assert snapshot.overall_risk == OverallRisk.CRITICAL


def test_concentrated_portfolio_is_critical(tmp_path: Path) -> None:
    snapshot = RiskManager(make_settings(tmp_path)).assess_portfolio_risk(
        _book(
            _holding("AAPL", 8, 100.0, 100.0),
            _holding("MSFT", 1, 100.0, 100.0),
            _holding("NVDA", 1, 100.0, 100.0),
        )
    )
    assert snapshot.concentration_risk == 80.0
    assert snapshot.holdings_count == 3
    assert snapshot.overall_risk == OverallRisk.CRITICAL


def test_balanced_portfolio_is_low_risk(tmp_path: Path) -> None:
    symbols = ["AAPL", "MSFT", "NVDA", "AMZN", "META", "GOOGL"]
    snapshot = RiskManager(make_settings(tmp_path)).assess_portfolio_risk(
        _book(*(_holding(s, 1, 100.0, 100.0) for s in symbols))
    )
    assert snapshot.concentration_risk == pytest.approx(16.67)
    assert snapshot.diversification_score == pytest.approx(83.33)
    assert snapshot.overall_risk == OverallRisk.LOW
