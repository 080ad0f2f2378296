from __future__ import annotations

from pathlib import Path

import pytest

from trade_pilot.errors import InvalidTransition, PortfolioUnreachable
from trade_pilot.exec.paper import PaperPortfolio
from trade_pilot.journal.store import JournalStore
from trade_pilot.orders.model import OrderKind, OrderStatus
from trade_pilot.types import BotState, DecisionKind, Holding, Side, TradeResult, TradeStatus

from fakes import ManualClock, build_test_engine, make_settings, rec_json


class FlakyPortfolio(PaperPortfolio):
    """Paper portfolio whose fills or reads can be made to fail."""

    def __init__(self, **kwargs: object) -> None:
        super().__init__(**kwargs)  # type: ignore[arg-type]
        self.fill_error: Exception | None = None
        self.read_error: Exception | None = None

    def get_holdings(self) -> dict[str, Holding]:
        if self.read_error is not None:
            raise self.read_error
        return super().get_holdings()

    def execute_trade(self, symbol: str, side: Side, quantity: int, price: float) -> TradeResult:
        if self.fill_error is not None:
            raise self.fill_error
        return super().execute_trade(symbol, side, quantity, price)


def _buys(*symbols: str, confidence: int = 90) -> dict[str, str]:
    return {s: rec_json("BUY", confidence) for s in symbols}


def test_lifecycle_transitions(tmp_path: Path) -> None:
    engine, _ = build_test_engine(make_settings(tmp_path), clock=ManualClock(), prices={})

    assert engine.state == BotState.STOPPED
    with pytest.raises(InvalidTransition):
        engine.pause()
    with pytest.raises(InvalidTransition):
        engine.acknowledge_error()

    assert engine.start().state == BotState.RUNNING
    with pytest.raises(InvalidTransition):
        engine.start()
    assert engine.pause().is_monitoring is False
    assert engine.start().state == BotState.RUNNING
    assert engine.stop().state == BotState.STOPPED


def test_scan_skipped_unless_running(tmp_path: Path) -> None:
    engine, parts = build_test_engine(
        make_settings(tmp_path), clock=ManualClock(), prices={"AAPL": 100.0}
    )
    assert engine.run_scan_cycle().status == "skipped_not_running"
    assert parts["provider"].calls == []


def test_buy_is_queued_with_protective_bracket(tmp_path: Path) -> None:
    clock = ManualClock()
    engine, parts = build_test_engine(
        make_settings(tmp_path), clock=clock, prices={"AAPL": 100.0}, script=_buys("AAPL")
    )
    engine.start()

    report = engine.run_scan_cycle()

    assert report.status == "completed"
    [decision] = report.decisions
    assert decision.decision == DecisionKind.EXECUTE_TRADE
    [trade] = engine.queued_trades()
    assert (trade.symbol, trade.action, trade.quantity) == ("AAPL", "BUY", 10)
    assert trade.status == TradeStatus.PENDING
    status = engine.status()
    assert status.today_trades_count == 1
    assert status.today_trade_amount == 1000.0
    assert status.pending_trades == 1
    assert status.last_scan == clock.now()
    assert status.next_scan is not None
    kinds = sorted(o.kind.value for o in parts["orders"].all_orders())
    assert kinds == ["MARKET", "OCO", "STOP_LOSS", "TAKE_PROFIT"]

    [completed] = engine.drain_queue()

    assert completed.status == TradeStatus.COMPLETED
    assert completed.executed_price == 100.0
    assert parts["portfolio"].get_holdings()["AAPL"].quantity == 10
    assert {o.kind for o in engine.active_orders()} == {OrderKind.STOP_LOSS, OrderKind.TAKE_PROFIT}
    assert engine.performance().successful_trades == 1


def test_skip_reasons(tmp_path: Path) -> None:
    script = {
        "AAPL": rec_json("HOLD", 95),
        "MSFT": rec_json("BUY", 70),
        "TSLA": rec_json("BUY", 85, "HIGH"),
        "NVDA": rec_json("BUY", 90),
    }
    prices = {"AAPL": 100.0, "MSFT": 100.0, "TSLA": 100.0, "NVDA": 5000.0}
    engine, _ = build_test_engine(make_settings(tmp_path), clock=ManualClock(), prices=prices, script=script)
    engine.start()

    reasons = {d.symbol: d.reason for d in engine.run_scan_cycle().decisions}

    assert reasons["AAPL"] == "HOLD recommendations are not traded automatically"
    assert reasons["MSFT"] == "confidence 70 below threshold 80"
    assert reasons["TSLA"] == "risk level HIGH not enabled"
    assert reasons["NVDA"] == "position size rounds to zero"
    assert engine.queued_trades() == []


def test_daily_trade_cap(tmp_path: Path) -> None:
    symbols = ["AAPL", "MSFT", "NVDA", "AMZN", "META", "GOOGL"]
    script = {s: rec_json("BUY", 99 - i) for i, s in enumerate(symbols)}
    engine, _ = build_test_engine(
        make_settings(tmp_path, max_daily_trades=5),
        clock=ManualClock(),
        prices={s: 100.0 for s in symbols},
        script=script,
    )
    engine.start()

    decisions = engine.run_scan_cycle().decisions

    assert [d.decision for d in decisions[:5]] == [DecisionKind.EXECUTE_TRADE] * 5
    assert decisions[5].symbol == "GOOGL"
    assert decisions[5].decision == DecisionKind.SKIP
    assert decisions[5].reason.startswith("daily trade cap reached (5/5)")
    assert engine.status().today_trades_count == 5
    assert [d.symbol for d in engine.decisions(limit=2)] == ["META", "GOOGL"]


def test_daily_amount_cap_trims_quantity(tmp_path: Path) -> None:
    engine, _ = build_test_engine(
        make_settings(tmp_path, max_daily_amount=450.0),
        clock=ManualClock(),
        prices={"AAPL": 100.0, "MSFT": 100.0},
        script={"AAPL": rec_json("BUY", 95), "MSFT": rec_json("BUY", 90)},
    )
    engine.start()

    decisions = engine.run_scan_cycle().decisions

    assert engine.queued_trades()[0].quantity == 4
    assert decisions[1].reason == "position size rounds to zero"


def test_pending_trade_defers_repeat_candidate(tmp_path: Path) -> None:
    clock = ManualClock()
    engine, _ = build_test_engine(
        make_settings(tmp_path), clock=clock, prices={"AAPL": 100.0}, script=_buys("AAPL")
    )
    engine.start()
    engine.run_scan_cycle()
    clock.advance(minutes=30)

    [decision] = engine.run_scan_cycle().decisions

    assert decision.decision == DecisionKind.DEFER
    assert decision.reason == "trade already pending for AAPL"


def test_symbol_traded_once_per_day(tmp_path: Path) -> None:
    clock = ManualClock()
    engine, _ = build_test_engine(
        make_settings(tmp_path), clock=clock, prices={"AAPL": 100.0}, script=_buys("AAPL")
    )
    engine.start()
    engine.run_scan_cycle()
    engine.drain_queue()
    clock.advance(minutes=30)

    [decision] = engine.run_scan_cycle().decisions

    assert decision.reason == "AAPL already traded today"


def test_day_rollover_resets_counters(tmp_path: Path) -> None:
    clock = ManualClock()
    engine, parts = build_test_engine(
        make_settings(tmp_path, max_daily_trades=1),
        clock=clock,
        prices={"AAPL": 100.0, "MSFT": 100.0},
        script={"AAPL": rec_json("BUY", 95), "MSFT": rec_json("BUY", 90)},
    )
    engine.start()
    engine.run_scan_cycle()
    engine.drain_queue()
    assert engine.status().today_trades_count == 1

    clock.advance(days=1)

    status = engine.status()
    assert status.today_trades_count == 0
    assert status.today_trade_amount == 0.0
    decisions = engine.run_scan_cycle().decisions
    assert [d.decision for d in decisions] == [DecisionKind.EXECUTE_TRADE, DecisionKind.SKIP]
    # The stale cached set was regenerated for the new day.
    assert len(parts["provider"].calls) == 4


def test_critical_portfolio_skips_candidates_but_exits_run(tmp_path: Path) -> None:
    clock = ManualClock()
    portfolio = PaperPortfolio(clock=clock)
    portfolio.execute_trade("AAPL", "BUY", 10, 100.0)
    engine, _ = build_test_engine(
        make_settings(tmp_path),
        clock=clock,
        prices={"AAPL": 70.0, "MSFT": 100.0},
        script=_buys("MSFT"),
        portfolio=portfolio,
        symbols=["MSFT"],
    )
    engine.start()

    report = engine.run_scan_cycle()

    assert [t.type.value for t in report.exit_targets] == ["STOP_LOSS"]
    exit_decision, candidate = report.decisions
    assert exit_decision.symbol == "AAPL"
    assert exit_decision.decision == DecisionKind.EXECUTE_TRADE
    assert exit_decision.recommendation.provider == "risk_manager"
    assert candidate.symbol == "MSFT"
    assert candidate.reason.startswith("portfolio risk is CRITICAL")


def test_stop_loss_exit_flow(tmp_path: Path) -> None:
    clock = ManualClock()
    engine, parts = build_test_engine(
        make_settings(tmp_path), clock=clock, prices={"AAPL": 100.0}, script=_buys("AAPL")
    )
    engine.start()
    engine.run_scan_cycle()
    engine.drain_queue()
    oco = next(o for o in parts["orders"].all_orders() if o.kind == OrderKind.OCO)

    parts["market"].prices["AAPL"] = 80.0
    clock.advance(minutes=30)
    report = engine.run_scan_cycle()

    assert [t.type.value for t in report.exit_targets] == ["STOP_LOSS"]
    assert oco.stop_loss.status == OrderStatus.TRIGGERED
    assert oco.take_profit.status == OrderStatus.CANCELLED
    assert [t.symbol for t in engine.exit_targets()] == ["AAPL"]

    [sell] = engine.drain_queue()

    assert (sell.action, sell.quantity, sell.status) == ("SELL", 10, TradeStatus.COMPLETED)
    assert parts["portfolio"].get_holdings() == {}
    assert engine.active_orders() == []


def test_unreadable_holdings_after_sell_keep_protective_orders(tmp_path: Path) -> None:
    clock = ManualClock()
    portfolio = FlakyPortfolio(clock=clock)
    engine, parts = build_test_engine(
        make_settings(tmp_path, use_trailing_stop=True),
        clock=clock,
        prices={"AAPL": 100.0},
        script=_buys("AAPL"),
        portfolio=portfolio,
    )
    engine.start()
    engine.run_scan_cycle()
    engine.drain_queue()
    parts["market"].prices["AAPL"] = 80.0
    clock.advance(minutes=30)
    engine.run_scan_cycle()
    portfolio.read_error = OSError("state locked")

    [sell] = engine.drain_queue()

    assert sell.status == TradeStatus.COMPLETED
    assert engine.state == BotState.RUNNING
    assert [o.kind for o in engine.active_orders()] == [OrderKind.TRAILING_STOP]


def test_exit_not_requeued_while_pending(tmp_path: Path) -> None:
    clock = ManualClock()
    portfolio = PaperPortfolio(clock=clock)
    portfolio.execute_trade("AAPL", "BUY", 10, 100.0)
    engine, _ = build_test_engine(
        make_settings(tmp_path), clock=clock, prices={"AAPL": 50.0}, portfolio=portfolio, symbols=[]
    )
    engine.start()
    engine.run_scan_cycle()
    engine.run_scan_cycle()

    sells = [t for t in engine.queued_trades() if t.action == "SELL"]
    assert len(sells) == 1


def test_drain_runs_in_scheduled_order(tmp_path: Path) -> None:
    clock = ManualClock()
    portfolio = PaperPortfolio(clock=clock)
    portfolio.execute_trade("MSFT", "BUY", 10, 100.0)
    engine, parts = build_test_engine(
        make_settings(tmp_path, execution_delay_sec=300),
        clock=clock,
        prices={"AAPL": 100.0, "MSFT": 100.0},
        script=_buys("AAPL"),
        portfolio=portfolio,
        symbols=["AAPL"],
    )
    engine.start()
    engine.run_scan_cycle()
    assert engine.drain_queue() == []

    clock.advance(seconds=60)
    parts["market"].prices["MSFT"] = 80.0
    engine.run_scan_cycle()
    clock.advance(seconds=240)

    processed = engine.drain_queue()

    assert [(t.symbol, t.action) for t in processed] == [("MSFT", "SELL"), ("AAPL", "BUY")]
    assert all(t.status == TradeStatus.COMPLETED for t in processed)


def test_paused_engine_keeps_queue_and_does_not_drain(tmp_path: Path) -> None:
    engine, _ = build_test_engine(
        make_settings(tmp_path), clock=ManualClock(), prices={"AAPL": 100.0}, script=_buys("AAPL")
    )
    engine.start()
    engine.run_scan_cycle()
    engine.pause()

    assert engine.drain_queue() == []
    assert engine.status().pending_trades == 1

    engine.start()
    assert [t.status for t in engine.drain_queue()] == [TradeStatus.COMPLETED]


def test_insufficient_funds_fails_trade_only(tmp_path: Path) -> None:
    clock = ManualClock()
    engine, parts = build_test_engine(
        make_settings(tmp_path), clock=clock, prices={"AAPL": 100.0}, script=_buys("AAPL")
    )
    engine.start()
    engine.run_scan_cycle()
    parts["portfolio"].execute_trade("ZZZ", "BUY", 95, 100.0)

    [trade] = engine.drain_queue()

    assert trade.status == TradeStatus.FAILED
    assert trade.reason is not None and "insufficient_funds" in trade.reason
    assert engine.state == BotState.RUNNING
    assert engine.status().today_trade_amount == 0.0
    assert engine.active_orders() == []
    assert engine.performance().failed_trades == 1


def test_unreachable_portfolio_on_fill_escalates(tmp_path: Path) -> None:
    clock = ManualClock()
    portfolio = FlakyPortfolio(clock=clock)
    engine, _ = build_test_engine(
        make_settings(tmp_path),
        clock=clock,
        prices={"AAPL": 100.0, "MSFT": 100.0},
        script=_buys("AAPL", "MSFT"),
        portfolio=portfolio,
    )
    engine.start()
    engine.run_scan_cycle()
    portfolio.fill_error = PortfolioUnreachable("disk gone")

    processed = engine.drain_queue()

    assert len(processed) == 1
    assert processed[0].status == TradeStatus.FAILED
    status = engine.status()
    assert status.state == BotState.ERROR
    assert status.error_message is not None and "disk gone" in status.error_message
    assert status.pending_trades == 1
    with pytest.raises(InvalidTransition):
        engine.start()

    stopped = engine.emergency_stop("operator halt")

    assert stopped.state == BotState.STOPPED
    assert stopped.pending_trades == 0
    assert stopped.error_message is None
    assert engine.active_orders() == []


def test_unreachable_portfolio_on_scan_escalates(tmp_path: Path) -> None:
    clock = ManualClock()
    portfolio = FlakyPortfolio(clock=clock)
    portfolio.read_error = OSError("state locked")
    engine, _ = build_test_engine(
        make_settings(tmp_path), clock=clock, prices={"AAPL": 100.0}, portfolio=portfolio
    )
    engine.start()

    report = engine.run_scan_cycle()

    assert report.status == "error"
    assert engine.state == BotState.ERROR
    assert engine.acknowledge_error().state == BotState.STOPPED
    assert engine.start().state == BotState.RUNNING


def test_repeated_unexpected_failures_escalate(tmp_path: Path) -> None:
    clock = ManualClock()
    portfolio = FlakyPortfolio(clock=clock)
    engine, _ = build_test_engine(
        make_settings(tmp_path, max_consecutive_execution_failures=2),
        clock=clock,
        prices={"AAPL": 100.0, "MSFT": 100.0, "NVDA": 100.0},
        script=_buys("AAPL", "MSFT", "NVDA"),
        portfolio=portfolio,
    )
    engine.start()
    engine.run_scan_cycle()
    portfolio.fill_error = RuntimeError("broker glitch")

    processed = engine.drain_queue()

    assert [t.status for t in processed] == [TradeStatus.FAILED, TradeStatus.FAILED]
    assert engine.state == BotState.ERROR
    assert "2 consecutive execution failures" in (engine.status().error_message or "")


def test_emergency_stop_cancels_everything(tmp_path: Path) -> None:
    engine, parts = build_test_engine(
        make_settings(tmp_path),
        clock=ManualClock(),
        prices={"AAPL": 100.0, "MSFT": 100.0},
        script=_buys("AAPL", "MSFT"),
    )
    engine.start()
    engine.run_scan_cycle()

    status = engine.emergency_stop()

    assert status.state == BotState.STOPPED
    assert status.pending_trades == 0
    assert {t.status for t in engine.queued_trades()} == {TradeStatus.CANCELLED}
    assert engine.active_orders() == []
    assert all(not o.is_open for o in parts["orders"].all_orders())
    assert engine.drain_queue() == []


def test_completed_buy_scored_as_win(tmp_path: Path) -> None:
    clock = ManualClock()
    engine, parts = build_test_engine(
        make_settings(tmp_path), clock=clock, prices={"AAPL": 100.0}, script=_buys("AAPL")
    )
    engine.start()
    engine.run_scan_cycle()
    engine.drain_queue()
    parts["market"].prices["AAPL"] = 110.0
    clock.advance(minutes=30)

    engine.run_scan_cycle()
    engine.run_scan_cycle()

    performance = engine.performance()
    assert performance.ai_guided_wins == 1
    assert performance.ai_guided_losses == 0
    assert performance.success_rate == 100.0


def test_events_are_journaled(tmp_path: Path) -> None:
    clock = ManualClock()
    engine, _ = build_test_engine(
        make_settings(tmp_path), clock=clock, prices={"AAPL": 100.0}, script=_buys("AAPL")
    )
    journal = JournalStore(tmp_path / "events", clock=clock)
    engine._journal = journal
    engine.start()
    engine.run_scan_cycle()
    engine.drain_queue()

    types = [row["event_type"] for row in journal.load_recent(50)]
    assert types[0] == "state_change"
    assert "decision" in types
    assert "scan" in types
    assert types[-1] == "trade"


@pytest.mark.parametrize(
    ("interrupt", "final_state"),
    [("pause", BotState.PAUSED), ("emergency_stop", BotState.STOPPED)],
)
def test_scan_results_discarded_when_interrupted(
    tmp_path: Path, interrupt: str, final_state: BotState
) -> None:
    engine, parts = build_test_engine(
        make_settings(tmp_path), clock=ManualClock(), prices={"AAPL": 100.0}, script=_buys("AAPL")
    )
    parts["provider"].on_call = getattr(engine, interrupt)
    engine.start()

    report = engine.run_scan_cycle()

    assert report.status == "discarded"
    assert report.decisions == []
    assert engine.decisions() == []
    assert engine.queued_trades() == []
    assert engine.state == final_state
    assert engine.status().today_trades_count == 0


def test_daily_trade_cap_survives_restart(tmp_path: Path) -> None:
    clock = ManualClock()
    settings = make_settings(tmp_path, max_daily_trades=1)
    journal = JournalStore(tmp_path / "events", clock=clock)
    portfolio = PaperPortfolio(initial_cash=settings.initial_cash, clock=clock)
    first, _ = build_test_engine(
        settings,
        clock=clock,
        prices={"AAPL": 100.0},
        script=_buys("AAPL"),
        portfolio=portfolio,
        journal=journal,
    )
    first.start()
    first.run_scan_cycle()
    [filled] = first.drain_queue()
    first.stop()
    clock.advance(minutes=30)

    second, _ = build_test_engine(
        settings,
        clock=clock,
        prices={"AAPL": 100.0, "MSFT": 100.0},
        script=_buys("MSFT"),
        portfolio=portfolio,
        journal=journal,
    )
    status = second.status()
    assert status.today_trades_count == 1
    assert status.today_trade_amount == pytest.approx(filled.amount)

    second.start()
    decisions = second.run_scan_cycle().decisions

    msft = next(d for d in decisions if d.symbol == "MSFT")
    assert msft.decision == DecisionKind.SKIP
    assert msft.reason.startswith("daily trade cap reached (1/1)")
    assert second.queued_trades() == []


def test_restart_keeps_traded_symbols_but_not_unfilled_amounts(tmp_path: Path) -> None:
    clock = ManualClock()
    settings = make_settings(tmp_path)
    journal = JournalStore(tmp_path / "events", clock=clock)
    prices = {"AAPL": 100.0, "MSFT": 100.0}
    first, _ = build_test_engine(
        settings, clock=clock, prices=prices, script=_buys("AAPL", "MSFT"), journal=journal
    )
    first.start()
    first.run_scan_cycle()
    first.stop()
    assert first.status().today_trades_count == 2

    second, _ = build_test_engine(
        settings, clock=clock, prices=prices, script=_buys("AAPL", "MSFT"), journal=journal
    )
    status = second.status()
    assert status.today_trades_count == 2
    assert status.today_trade_amount == 0.0

    second.start()
    reasons = {d.symbol: d.reason for d in second.run_scan_cycle().decisions}
    assert reasons == {"AAPL": "AAPL already traded today", "MSFT": "MSFT already traded today"}


def test_previous_day_journal_is_not_restored(tmp_path: Path) -> None:
    clock = ManualClock()
    journal = JournalStore(tmp_path / "events", clock=clock)
    first, _ = build_test_engine(
        make_settings(tmp_path),
        clock=clock,
        prices={"AAPL": 100.0},
        script=_buys("AAPL"),
        journal=journal,
    )
    first.start()
    first.run_scan_cycle()
    first.drain_queue()
    clock.advance(days=1)

    second, _ = build_test_engine(
        make_settings(tmp_path), clock=clock, prices={"AAPL": 100.0}, journal=journal
    )

    assert second.status().today_trades_count == 0
