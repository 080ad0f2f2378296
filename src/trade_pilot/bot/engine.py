"""Automated decision-and-execution engine."""

from __future__ import annotations

import math
import threading
import time
import uuid
from collections import deque
from collections.abc import Callable, Sequence
from dataclasses import replace
from datetime import date, datetime, timedelta
from typing import Any

from trade_pilot.ai.orchestrator import ProviderOrchestrator
from trade_pilot.ai.quota import QuotaUsage
from trade_pilot.ai.schemas import Recommendation
from trade_pilot.bot.scheduler import PeriodicTask
from trade_pilot.config import Provider, Settings
from trade_pilot.errors import (
    InvalidTransition,
    PortfolioUnreachable,
    QuoteUnavailable,
    TradeRejected,
)
from trade_pilot.interfaces import MarketData, Portfolio
from trade_pilot.journal.store import JournalStore
from trade_pilot.orders.model import (
    Order,
    OrderBook,
    OrderStatus,
    build_bracket,
    build_market_order,
    build_trailing_stop,
)
from trade_pilot.risk.manager import RiskManager
from trade_pilot.types import (
    BotDecision,
    BotPerformance,
    BotState,
    BotStatus,
    DecisionKind,
    ExitTarget,
    Holding,
    OverallRisk,
    PortfolioRiskSnapshot,
    PortfolioSnapshot,
    QueuedTrade,
    ScanReport,
    Side,
    TradeStatus,
)
from trade_pilot.utils.clock import Clock, SystemClock
from trade_pilot.utils.logging import (
    get_logger,
    log_bot_decision,
    log_risk_event,
    log_state_change,
    log_trade_execution,
)

OutcomePolicy = Callable[[QueuedTrade, Holding | None], bool | None]

_TRANSITIONS: dict[str, tuple[BotState, ...]] = {
    "start": (BotState.STOPPED, BotState.PAUSED),
    "pause": (BotState.RUNNING,),
    "stop": (BotState.RUNNING, BotState.PAUSED),
    "acknowledge_error": (BotState.ERROR,),
}


def unrealized_pnl_outcome(trade: QueuedTrade, holding: Holding | None) -> bool | None:
    """Default attribution: a bought position is a win while it trades above cost."""
    if holding is None or holding.quantity <= 0:
        return None
    if holding.current_price == holding.average_price:
        return None
    return holding.current_price > holding.average_price


def _new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


class TradingBotEngine:
    """Lifecycle state machine, scan loop and execution drainer.

    All mutable state is guarded by one re-entrant lock. Collaborator calls
    (providers, quotes, portfolio fills) happen outside it; their results are
    discarded when the engine left RUNNING in the meantime. The status
    snapshot is rebuilt wholesale on every change.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        orchestrator: ProviderOrchestrator,
        risk_manager: RiskManager,
        portfolio: Portfolio,
        market_data: MarketData,
        clock: Clock | None = None,
        journal: JournalStore | None = None,
        order_book: OrderBook | None = None,
        outcome_policy: OutcomePolicy | None = None,
        symbols: Sequence[str] | None = None,
        run_background_tasks: bool = True,
    ) -> None:
        self._settings = settings
        self._orchestrator = orchestrator
        self._risk = risk_manager
        self._portfolio = portfolio
        self._market_data = market_data
        self._clock = clock or SystemClock()
        self._journal = journal
        self._orders = order_book or OrderBook()
        self._outcome_policy = outcome_policy or unrealized_pnl_outcome
        self._symbols = list(symbols) if symbols is not None else list(settings.watchlist)
        self._run_background_tasks = run_background_tasks
        self._logger = get_logger("trade_pilot.bot.engine")

        self._lock = threading.RLock()
        self._execution_lock = threading.RLock()
        self._cancel = threading.Event()
        self._state = BotState.STOPPED
        self._started_at: datetime | None = None
        self._started_monotonic: float | None = None
        self._last_scan: datetime | None = None
        self._next_scan: datetime | None = None
        self._error_message: str | None = None

        self._decisions: deque[BotDecision] = deque(maxlen=settings.decision_history_limit)
        self._trades: dict[str, QueuedTrade] = {}
        self._exit_targets: list[ExitTarget] = []
        self._performance = BotPerformance()
        self._scored_trades: set[str] = set()
        self._consecutive_failures = 0

        self._day: date = self._clock.today()
        self._today_count = 0
        self._today_amount = 0.0
        self._acted_today: set[str] = set()
        self._restore_today()

        self._scan_task: PeriodicTask | None = None
        self._drain_task: PeriodicTask | None = None
        self._status = BotStatus()
        self._publish_status()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> BotStatus:
        with self._lock:
            previous = self._check_transition("start")
            if previous == BotState.STOPPED:
                self._started_at = self._clock.now()
                self._started_monotonic = time.monotonic()
            self._cancel = threading.Event()
            self._error_message = None
            self._next_scan = self._clock.now()
            self._set_state(BotState.RUNNING, previous)
        if self._run_background_tasks:
            self._start_tasks()
        return self.status()

    def pause(self) -> BotStatus:
        with self._lock:
            previous = self._check_transition("pause")
            self._cancel.set()
            self._next_scan = None
            self._set_state(BotState.PAUSED, previous)
        self._stop_tasks()
        return self.status()

    def stop(self) -> BotStatus:
        with self._lock:
            previous = self._check_transition("stop")
            self._cancel.set()
            self._enter_stopped(previous)
        self._stop_tasks()
        return self.status()

    def emergency_stop(self, reason: str = "emergency stop") -> BotStatus:
        """Halt everything, cancel pending trades and open orders. Valid from any state."""
        with self._lock:
            self._cancel.set()
            previous = self._state
            # Blocks new drains; the next one sees STOPPED.
            self._state = BotState.STOPPED
        self._stop_tasks()

        # Waits for an in-flight fill to be recorded before cancelling.
        with self._execution_lock, self._lock:
            cancelled_trades = 0
            for trade in list(self._trades.values()):
                if trade.status == TradeStatus.PENDING:
                    self._close_trade(trade, TradeStatus.CANCELLED, reason=reason)
                    cancelled_trades += 1
            cancelled_orders = self._orders.cancel_all()
            self._state = previous
            self._enter_stopped(previous)
            self._error_message = None
            self._publish_status()

        log_risk_event(
            self._logger,
            event_type="emergency_stop",
            action="halt",
            reason=reason,
            cancelled_trades=cancelled_trades,
            cancelled_orders=cancelled_orders,
        )
        self._record("state_change", {
            "event": "emergency_stop",
            "reason": reason,
            "cancelled_trades": cancelled_trades,
            "cancelled_orders": cancelled_orders,
        })
        return self.status()

    def acknowledge_error(self) -> BotStatus:
        with self._lock:
            previous = self._check_transition("acknowledge_error")
            self._error_message = None
            self._enter_stopped(previous)
        return self.status()

    def _check_transition(self, operation: str) -> BotState:
        if self._state not in _TRANSITIONS[operation]:
            raise InvalidTransition(self._state.value, operation)
        return self._state

    def _enter_stopped(self, previous: BotState) -> None:
        self._started_at = None
        self._started_monotonic = None
        self._next_scan = None
        self._set_state(BotState.STOPPED, previous)

    def _set_state(self, new: BotState, previous: BotState) -> None:
        self._state = new
        self._publish_status()
        if new != previous:
            log_state_change(
                self._logger,
                previous=previous.value,
                current=new.value,
                error=self._error_message,
            )
            self._record("state_change", {
                "previous": previous.value,
                "current": new.value,
                "error": self._error_message,
            })

    def _escalate(self, message: str) -> None:
        with self._lock:
            if self._state == BotState.ERROR:
                return
            previous = self._state
            self._cancel.set()
            self._error_message = message
            self._next_scan = None
            self._set_state(BotState.ERROR, previous)
        self._stop_tasks()
        self._record("error", {"message": message})

    def _start_tasks(self) -> None:
        self._scan_task = PeriodicTask(
            "scan",
            self.run_scan_cycle,
            self._settings.scan_interval_min * 60,
        )
        self._drain_task = PeriodicTask(
            "drain",
            self.drain_queue,
            self._settings.drain_interval_sec,
        )
        self._scan_task.start()
        self._drain_task.start()

    def _stop_tasks(self) -> None:
        for task in (self._scan_task, self._drain_task):
            if task is not None:
                task.stop()
        self._scan_task = None
        self._drain_task = None

    # ------------------------------------------------------------------
    # Scan loop
    # ------------------------------------------------------------------

    def run_scan_cycle(self, *, force_refresh: bool = False) -> ScanReport:
        """One scan: exit targets first, then today's candidates in ranked order."""
        started = time.perf_counter()
        with self._lock:
            if self._state != BotState.RUNNING:
                return ScanReport(status="skipped_not_running")
            cancel = self._cancel
            scan_at = self._clock.now()

        report = ScanReport(status="completed")
        try:
            self._scan(report, scan_at, cancel, force_refresh)
        except PortfolioUnreachable as exc:
            report.status = "error"
            report.warnings.append(str(exc))
            self._escalate(f"portfolio unreachable: {exc}")
        except Exception as exc:  # noqa: BLE001 - the loop must survive.
            report.status = "error"
            report.warnings.append(str(exc))
            self._logger.exception("scan_failed", error=str(exc))
            self._record("error", {"message": f"scan failed: {exc}"})
        finally:
            with self._lock:
                self._last_scan = scan_at
                if self._state == BotState.RUNNING:
                    self._next_scan = scan_at + timedelta(minutes=self._settings.scan_interval_min)
                self._publish_status()
            report.elapsed_ms = round((time.perf_counter() - started) * 1000, 2)

        self._logger.info(
            "scan_completed",
            status=report.status,
            decisions=len(report.decisions),
            exit_targets=len(report.exit_targets),
            elapsed_ms=report.elapsed_ms,
        )
        self._record("scan", {
            "status": report.status,
            "decisions": len(report.decisions),
            "exit_targets": len(report.exit_targets),
            "warnings": report.warnings,
            "elapsed_ms": report.elapsed_ms,
        })
        return report

    def _scan(
        self,
        report: ScanReport,
        scan_at: datetime,
        cancel: threading.Event,
        force_refresh: bool,
    ) -> None:
        snapshot = self._portfolio_snapshot()
        prices = self._held_prices(snapshot, cancel)
        if prices:
            snapshot = PortfolioSnapshot(
                cash_balance=snapshot.cash_balance,
                holdings={
                    sym: replace(h, current_price=prices.get(sym, h.current_price))
                    for sym, h in snapshot.holdings.items()
                },
            )
        targets = self._risk.check_exit_targets(snapshot.holdings, prices)

        with self._lock:
            if not self._still_running(cancel):
                report.status = "discarded"
                return
            self._roll_day()
            self._exit_targets = list(targets)
            report.exit_targets = list(targets)
            for target in targets:
                decision = self._queue_exit(target, scan_at)
                if decision is not None:
                    report.decisions.append(decision)
            self._score_outcomes(snapshot.holdings)
            self._orders.expire(scan_at)
            self._publish_status()

        daily = self._orchestrator.daily_recommendations(
            self._symbols,
            self._market_data,
            snapshot,
            force_refresh=force_refresh,
            cancel=cancel,
        )
        if cancel.is_set():
            report.status = "discarded"
            return
        if daily is None:
            report.warnings.append("no recommendations available")
            return

        portfolio_risk = self._risk.assess_portfolio_risk(snapshot.holdings)
        if portfolio_risk.overall_risk == OverallRisk.CRITICAL:
            log_risk_event(
                self._logger,
                event_type="portfolio_risk_critical",
                action="skip_candidates",
                concentration=portfolio_risk.concentration_risk,
                drawdown=portfolio_risk.drawdown_pct,
            )
        report.warnings.extend(daily.market_analysis.risk_warnings)

        with self._lock:
            if not self._still_running(cancel):
                report.status = "discarded"
                return
            for recommendation in daily.recommendations:
                try:
                    decision = self._decide(recommendation, snapshot, portfolio_risk, scan_at)
                except Exception as exc:  # noqa: BLE001 - isolate one candidate.
                    decision = self._record_decision(
                        recommendation,
                        DecisionKind.SKIP,
                        f"evaluation error: {exc}",
                        scan_at,
                    )
                report.decisions.append(decision)
            self._publish_status()

    def _still_running(self, cancel: threading.Event) -> bool:
        return self._state == BotState.RUNNING and not cancel.is_set()

    def _portfolio_snapshot(self) -> PortfolioSnapshot:
        try:
            holdings = self._portfolio.get_holdings()
            cash = self._portfolio.get_cash_balance()
        except OSError as exc:
            raise PortfolioUnreachable(str(exc)) from exc
        return PortfolioSnapshot(cash_balance=cash, holdings=dict(holdings))

    def _held_prices(self, snapshot: PortfolioSnapshot, cancel: threading.Event) -> dict[str, float]:
        prices: dict[str, float] = {}
        for symbol, holding in snapshot.holdings.items():
            if cancel.is_set():
                break
            if holding.quantity <= 0:
                continue
            try:
                prices[symbol] = self._market_data.get_quote(symbol).price
            except QuoteUnavailable as exc:
                self._logger.warning("held_quote_unavailable", symbol=symbol, reason=exc.reason)
        return prices

    def _decide(
        self,
        recommendation: Recommendation,
        portfolio: PortfolioSnapshot,
        portfolio_risk: PortfolioRiskSnapshot,
        at: datetime,
    ) -> BotDecision:
        s = self._settings
        symbol = recommendation.symbol

        def skip(reason: str) -> BotDecision:
            return self._record_decision(recommendation, DecisionKind.SKIP, reason, at)

        if recommendation.action == "HOLD":
            return skip("HOLD recommendations are not traded automatically")
        if recommendation.confidence < s.min_confidence:
            return skip(
                f"confidence {recommendation.confidence:.0f} below threshold {s.min_confidence:.0f}"
            )
        if recommendation.risk_level not in s.allowed_risk_levels:
            return skip(f"risk level {recommendation.risk_level} not enabled")
        if self._today_count >= s.max_daily_trades:
            return skip(f"daily trade cap reached ({self._today_count}/{s.max_daily_trades})")
        if self._today_amount >= s.max_daily_amount:
            return skip(
                f"daily amount cap reached (${self._today_amount:,.2f}/${s.max_daily_amount:,.2f})"
            )
        if any(t.symbol == symbol and t.status == TradeStatus.PENDING for t in self._trades.values()):
            return self._record_decision(
                recommendation,
                DecisionKind.DEFER,
                f"trade already pending for {symbol}",
                at,
            )
        if symbol in self._acted_today:
            return skip(f"{symbol} already traded today")
        if portfolio_risk.overall_risk == OverallRisk.CRITICAL:
            return skip(
                f"portfolio risk is CRITICAL (concentration {portfolio_risk.concentration_risk:.1f}%)"
            )

        price = recommendation.current_price
        remaining_amount = s.max_daily_amount - self._today_amount
        by_amount = math.floor(remaining_amount / price + 1e-9)
        if recommendation.action == "BUY":
            pending_buys = sum(
                t.amount
                for t in self._trades.values()
                if t.status == TradeStatus.PENDING and t.action == "BUY"
            )
            by_cash = math.floor(max(0.0, portfolio.cash_balance - pending_buys) / price + 1e-9)
            sizing = self._risk.size_position(recommendation, portfolio)
            quantity = min(sizing.shares, by_amount, by_cash)
        else:
            holding = portfolio.holdings.get(symbol)
            if holding is None or holding.quantity <= 0:
                return skip(f"no shares of {symbol} held to sell")
            sizing = None
            quantity = min(holding.quantity, by_amount)

        if quantity <= 0:
            return skip("position size rounds to zero")

        trade = self._enqueue_trade(
            recommendation,
            action=recommendation.action,
            quantity=quantity,
            price=price,
            at=at,
            delay_sec=s.execution_delay_sec,
        )
        if sizing is not None:
            bracket = build_bracket(
                recommendation,
                replace(sizing, shares=quantity),
                stop_loss_pct=s.stop_loss_pct,
                take_profit_pct=s.take_profit_pct,
                at=at,
                parent_id=trade.order_id or trade.id,
            )
            self._orders.add(bracket)
            if s.use_trailing_stop:
                self._orders.add(
                    build_trailing_stop(
                        symbol,
                        quantity,
                        entry_price=price,
                        trail_pct=s.trailing_stop_pct,
                        at=at,
                        parent_id=trade.order_id,
                    )
                )
        return self._record_decision(
            recommendation,
            DecisionKind.EXECUTE_TRADE,
            f"{recommendation.action} {quantity} {symbol} at ${price:,.2f} "
            f"(confidence {recommendation.confidence:.0f})",
            at,
            trade_id=trade.id,
        )

    def _queue_exit(self, target: ExitTarget, at: datetime) -> BotDecision | None:
        if any(
            t.symbol == target.symbol and t.action == "SELL" and t.status == TradeStatus.PENDING
            for t in self._trades.values()
        ):
            return None
        self._orders.trigger_for_symbol(target.symbol, target.type, at)
        label = target.type.value.replace("_", " ").lower()
        recommendation = Recommendation(
            symbol=target.symbol,
            action="SELL",
            confidence=100.0,
            reasoning=f"Automated {label} execution",
            risk_level="LOW",
            target_price=target.current_price,
            current_price=target.current_price,
            provider="risk_manager",
            generated_at=at,
        )
        trade = self._enqueue_trade(
            recommendation,
            action="SELL",
            quantity=target.quantity,
            price=target.current_price,
            at=at,
            delay_sec=0,
        )
        self._record("exit_target", {
            "symbol": target.symbol,
            "type": target.type.value,
            "current_price": target.current_price,
            "threshold_price": target.threshold_price,
            "quantity": target.quantity,
        })
        return self._record_decision(
            recommendation,
            DecisionKind.EXECUTE_TRADE,
            f"{label} triggered at ${target.current_price:,.2f} "
            f"(threshold ${target.threshold_price:,.2f})",
            at,
            trade_id=trade.id,
        )

    def _enqueue_trade(
        self,
        recommendation: Recommendation,
        *,
        action: Side,
        quantity: int,
        price: float,
        at: datetime,
        delay_sec: int,
    ) -> QueuedTrade:
        order = self._orders.add(build_market_order(recommendation, quantity, side=action, at=at))
        self._orders.activate(order.id)
        trade = QueuedTrade(
            id=_new_id("trade"),
            symbol=recommendation.symbol,
            action=action,
            quantity=quantity,
            target_price=price,
            recommendation=recommendation,
            created_at=at,
            scheduled_for=at + timedelta(seconds=delay_sec),
            order_id=order.id,
        )
        self._trades[trade.id] = trade
        self._today_count += 1
        self._today_amount += trade.amount
        self._acted_today.add(trade.symbol)
        return trade

    def _record_decision(
        self,
        recommendation: Recommendation,
        kind: DecisionKind,
        reason: str,
        at: datetime,
        *,
        trade_id: str | None = None,
    ) -> BotDecision:
        decision = BotDecision(
            id=_new_id("dec"),
            symbol=recommendation.symbol,
            recommendation=recommendation,
            decision=kind,
            reason=reason,
            timestamp=at,
            trade_id=trade_id,
        )
        self._decisions.append(decision)
        trade = self._trades.get(trade_id) if trade_id is not None else None
        log_bot_decision(
            self._logger,
            symbol=decision.symbol,
            decision=kind.value,
            reason=reason,
            confidence=recommendation.confidence,
        )
        self._record("decision", {
            "id": decision.id,
            "symbol": decision.symbol,
            "action": recommendation.action,
            "confidence": recommendation.confidence,
            "decision": kind.value,
            "reason": reason,
            "trade_id": trade_id,
            "quantity": trade.quantity if trade is not None else None,
            "amount": trade.amount if trade is not None else None,
        })
        return decision

    def _restore_today(self) -> None:
        """Seed today's counters and traded symbols from the journal.

        Trades queued by an earlier process that never closed still count
        toward the trade cap but not toward the amount.
        """
        if self._journal is None:
            return
        try:
            events = self._journal.load_day(self._day)
        except (OSError, ValueError) as exc:
            self._logger.warning("journal_restore_failed", error=str(exc))
            return

        open_amounts: dict[str, float] = {}
        for event in events:
            payload = event.get("payload") or {}
            event_type = event.get("event_type")
            if (
                event_type == "decision"
                and payload.get("decision") == DecisionKind.EXECUTE_TRADE.value
            ):
                self._today_count += 1
                self._acted_today.add(str(payload.get("symbol")))
                if payload.get("trade_id"):
                    open_amounts[payload["trade_id"]] = float(payload.get("amount") or 0.0)
            elif event_type == "trade":
                amount = open_amounts.pop(payload.get("id"), None)
                if amount is not None and payload.get("status") == TradeStatus.COMPLETED.value:
                    self._today_amount += amount

        if self._today_count:
            self._logger.info(
                "daily_counters_restored",
                day=self._day.isoformat(),
                trades=self._today_count,
                amount=round(self._today_amount, 2),
                unfinished=len(open_amounts),
            )

    def _roll_day(self) -> None:
        today = self._clock.today()
        if today != self._day:
            self._day = today
            self._today_count = 0
            self._today_amount = 0.0
            self._acted_today = set()

    def _score_outcomes(self, holdings: dict[str, Holding]) -> None:
        for trade in self._trades.values():
            if (
                trade.status != TradeStatus.COMPLETED
                or trade.action != "BUY"
                or trade.id in self._scored_trades
            ):
                continue
            outcome = self._outcome_policy(trade, holdings.get(trade.symbol))
            if outcome is None:
                continue
            self._scored_trades.add(trade.id)
            if outcome:
                self._performance.ai_guided_wins += 1
            else:
                self._performance.ai_guided_losses += 1

    # ------------------------------------------------------------------
    # Execution drainer
    # ------------------------------------------------------------------

    def drain_queue(self) -> list[QueuedTrade]:
        """Execute due PENDING trades in ``scheduled_for`` order while RUNNING."""
        processed: list[QueuedTrade] = []
        with self._execution_lock:
            while True:
                with self._lock:
                    if self._state != BotState.RUNNING:
                        break
                    now = self._clock.now()
                    due = [
                        t
                        for t in self._trades.values()
                        if t.status == TradeStatus.PENDING and t.scheduled_for <= now
                    ]
                    if not due:
                        break
                    trade = min(due, key=lambda t: t.scheduled_for)
                processed.append(self._execute(trade))
        return processed

    def _execute(self, trade: QueuedTrade) -> QueuedTrade:
        try:
            result = self._portfolio.execute_trade(
                trade.symbol,
                trade.action,
                trade.quantity,
                trade.target_price,
            )
        except TradeRejected as exc:
            with self._lock:
                self._consecutive_failures = 0
                return self._close_trade(trade, TradeStatus.FAILED, reason=str(exc))
        except PortfolioUnreachable as exc:
            with self._lock:
                closed = self._close_trade(
                    trade, TradeStatus.FAILED, reason=f"portfolio unreachable: {exc}"
                )
            self._escalate(f"portfolio unreachable: {exc}")
            return closed
        except Exception as exc:  # noqa: BLE001 - recorded on the trade.
            with self._lock:
                self._consecutive_failures += 1
                failures = self._consecutive_failures
                closed = self._close_trade(
                    trade, TradeStatus.FAILED, reason=f"execution error: {exc}"
                )
            if failures >= self._settings.max_consecutive_execution_failures:
                self._escalate(f"{failures} consecutive execution failures: {exc}")
            return closed

        with self._lock:
            self._consecutive_failures = 0
            return self._close_trade(
                trade,
                TradeStatus.COMPLETED,
                executed_price=result.price,
                executed_at=result.executed_at,
            )

    def _close_trade(
        self,
        trade: QueuedTrade,
        status: TradeStatus,
        *,
        reason: str | None = None,
        executed_price: float | None = None,
        executed_at: datetime | None = None,
    ) -> QueuedTrade:
        # Caller holds the state lock.
        closed = replace(trade, status=status, reason=reason, executed_price=executed_price)
        self._trades[trade.id] = closed
        at = executed_at or self._clock.now()

        if status == TradeStatus.COMPLETED:
            self._performance.total_automated_trades += 1
            self._performance.successful_trades += 1
            self._performance.total_volume += closed.quantity * (executed_price or closed.target_price)
            self._settle_orders(closed, at)
        else:
            if status == TradeStatus.FAILED:
                self._performance.total_automated_trades += 1
                self._performance.failed_trades += 1
            if trade.created_at.date() == self._day:
                self._today_amount = max(0.0, self._today_amount - trade.amount)
            if trade.order_id is not None:
                self._orders.cancel_children(trade.order_id)
                self._orders.cancel(trade.order_id)

        log_trade_execution(
            self._logger,
            symbol=closed.symbol,
            side=closed.action,
            quantity=closed.quantity,
            price=executed_price or closed.target_price,
            trade_id=closed.id,
            status=status.value,
            reason=reason,
        )
        self._record("trade", {
            "id": closed.id,
            "symbol": closed.symbol,
            "action": closed.action,
            "quantity": closed.quantity,
            "target_price": closed.target_price,
            "executed_price": executed_price,
            "status": status.value,
            "reason": reason,
        })
        self._publish_status()
        return closed

    def _settle_orders(self, trade: QueuedTrade, at: datetime) -> None:
        if trade.order_id is not None:
            self._orders.trigger(trade.order_id, at)
        if trade.action == "BUY":
            for order in self._orders.all_orders():
                if order.parent_id == trade.order_id and order.status == OrderStatus.PENDING:
                    self._orders.activate(order.id)
            return
        try:
            holding = self._portfolio.get_holdings().get(trade.symbol)
        except (PortfolioUnreachable, OSError) as exc:
            # Position size unknown: leave the remaining exit orders open.
            self._logger.warning(
                "holdings_unreadable_after_sell", symbol=trade.symbol, error=str(exc)
            )
            return
        if holding is None or holding.quantity <= 0:
            self._orders.cancel_symbol(trade.symbol)

    # ------------------------------------------------------------------
    # Observability
    # ------------------------------------------------------------------

    @property
    def state(self) -> BotState:
        return self._state

    def status(self) -> BotStatus:
        with self._lock:
            self._roll_day()
            self._publish_status()
            return self._status

    def decisions(self, limit: int | None = None) -> list[BotDecision]:
        with self._lock:
            items = list(self._decisions)
        if limit is None:
            return items
        return items[-limit:] if limit > 0 else []

    def queued_trades(self) -> list[QueuedTrade]:
        with self._lock:
            return sorted(self._trades.values(), key=lambda t: t.scheduled_for)

    def exit_targets(self) -> list[ExitTarget]:
        with self._lock:
            return list(self._exit_targets)

    def portfolio_risk(self) -> PortfolioRiskSnapshot:
        return self._risk.assess_portfolio_risk(self._portfolio_snapshot().holdings)

    def quota_usage(self) -> dict[Provider, QuotaUsage]:
        return self._orchestrator.quota_usage()

    def active_orders(self) -> list[Order]:
        return self._orders.open_orders()

    def performance(self) -> BotPerformance:
        with self._lock:
            return replace(self._performance)

    def _publish_status(self) -> None:
        uptime = 0.0
        if self._started_monotonic is not None:
            uptime = time.monotonic() - self._started_monotonic
        self._status = BotStatus(
            state=self._state,
            is_monitoring=self._state == BotState.RUNNING,
            uptime_seconds=round(uptime, 1),
            last_scan=self._last_scan,
            next_scan=self._next_scan,
            today_trades_count=self._today_count,
            today_trade_amount=round(self._today_amount, 2),
            pending_trades=sum(1 for t in self._trades.values() if t.status == TradeStatus.PENDING),
            error_message=self._error_message if self._state == BotState.ERROR else None,
        )

    def _record(self, event_type: str, payload: dict[str, Any]) -> None:
        if self._journal is None:
            return
        try:
            self._journal.append(event_type, payload)
        except OSError as exc:
            self._logger.warning("journal_write_failed", event_type=event_type, error=str(exc))
