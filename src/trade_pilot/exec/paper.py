"""Paper portfolio with persistent local state."""

from __future__ import annotations

import copy
import json
import threading
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

from trade_pilot.errors import (
    InsufficientFunds,
    InsufficientShares,
    PortfolioUnreachable,
    TradeRejected,
)
from trade_pilot.types import Holding, PortfolioSnapshot, Side, TradeResult
from trade_pilot.utils.clock import Clock, SystemClock


@dataclass(slots=True)
class _Position:
    quantity: int
    average_price: float
    last_price: float


@dataclass(slots=True)
class _PaperState:
    cash: float
    initial_cash: float
    realized_pnl: float = 0.0
    trade_count: int = 0
    positions: dict[str, _Position] = field(default_factory=dict)


class PaperPortfolio:
    """Simulated cash-and-holdings account for long-only paper trading.

    Every fill is persisted before it is applied or reported. Any failure to read or
    write the state file surfaces as ``PortfolioUnreachable``.
    """

    def __init__(
        self,
        state_file: Path | None = None,
        *,
        initial_cash: float = 10_000.0,
        slippage_bps: float = 0.0,
        clock: Clock | None = None,
    ) -> None:
        self._state_file = state_file
        self._slippage_bps = slippage_bps
        self._clock = clock or SystemClock()
        self._lock = threading.Lock()
        self._state = self._load_state(initial_cash)

    def get_holdings(self) -> dict[str, Holding]:
        with self._lock:
            return {
                symbol: Holding(
                    symbol=symbol,
                    quantity=pos.quantity,
                    average_price=pos.average_price,
                    current_price=pos.last_price,
                )
                for symbol, pos in self._state.positions.items()
                if pos.quantity > 0
            }

    def get_cash_balance(self) -> float:
        with self._lock:
            return self._state.cash

    @property
    def realized_pnl(self) -> float:
        return self._state.realized_pnl

    def snapshot(self) -> PortfolioSnapshot:
        holdings = self.get_holdings()
        return PortfolioSnapshot(cash_balance=self.get_cash_balance(), holdings=holdings)

    def execute_trade(self, symbol: str, side: Side, quantity: int, price: float) -> TradeResult:
        """Apply a simulated fill with configured slippage."""
        if quantity <= 0:
            raise TradeRejected("quantity_must_be_positive")
        if price <= 0:
            raise TradeRejected("price_must_be_positive")
        symbol = symbol.upper()

        with self._lock:
            state = copy.deepcopy(self._state)
            if side == "BUY":
                fill_price = price * (1.0 + self._slippage_bps / 10_000.0)
                cost = fill_price * quantity
                if cost > state.cash + 1e-9:
                    raise InsufficientFunds(
                        f"insufficient_funds: need {cost:.2f}, have {state.cash:.2f}"
                    )
                pos = state.positions.get(symbol)
                if pos is None:
                    pos = _Position(quantity=0, average_price=0.0, last_price=fill_price)
                    state.positions[symbol] = pos
                total_cost = pos.average_price * pos.quantity + cost
                pos.quantity += quantity
                pos.average_price = total_cost / pos.quantity
                pos.last_price = fill_price
                state.cash -= cost
            else:
                pos = state.positions.get(symbol)
                held = pos.quantity if pos else 0
                if pos is None or held < quantity:
                    raise InsufficientShares(
                        f"insufficient_shares: need {quantity}, have {held}"
                    )
                fill_price = price * (1.0 - self._slippage_bps / 10_000.0)
                state.cash += fill_price * quantity
                state.realized_pnl += (fill_price - pos.average_price) * quantity
                pos.quantity -= quantity
                pos.last_price = fill_price
                if pos.quantity == 0:
                    del state.positions[symbol]

            state.trade_count += 1
            self._persist(state)
            self._state = state
            return TradeResult(
                symbol=symbol,
                side=side,
                quantity=quantity,
                price=float(fill_price),
                cash_balance=self._state.cash,
                executed_at=self._clock.now(),
            )

    def mark_to_market(self, prices: dict[str, float]) -> PortfolioSnapshot:
        """Update last prices for held symbols."""
        with self._lock:
            state = copy.deepcopy(self._state)
            for symbol, price in prices.items():
                pos = state.positions.get(symbol.upper())
                if pos is not None and price > 0:
                    pos.last_price = float(price)
            self._persist(state)
            self._state = state
        return self.snapshot()

    def _load_state(self, initial_cash: float) -> _PaperState:
        if self._state_file is None or not self._state_file.exists():
            return _PaperState(cash=initial_cash, initial_cash=initial_cash)

        try:
            raw = json.loads(self._state_file.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise PortfolioUnreachable(f"state_unreadable: {exc}") from exc
        positions = {
            str(symbol): _Position(
                quantity=int(payload.get("quantity", 0)),
                average_price=float(payload.get("average_price", 0.0)),
                last_price=float(payload.get("last_price", 0.0)),
            )
            for symbol, payload in (raw.get("positions") or {}).items()
        }
        return _PaperState(
            cash=float(raw.get("cash", initial_cash)),
            initial_cash=float(raw.get("initial_cash", initial_cash)),
            realized_pnl=float(raw.get("realized_pnl", 0.0)),
            trade_count=int(raw.get("trade_count", 0)),
            positions=positions,
        )

    def _persist(self, state: _PaperState) -> None:
        if self._state_file is None:
            return
        payload: dict[str, Any] = asdict(state)
        serialized = json.dumps(payload, ensure_ascii=True, indent=2)
        tmp_path = self._state_file.with_suffix(self._state_file.suffix + ".tmp")
        try:
            self._state_file.parent.mkdir(parents=True, exist_ok=True)
            tmp_path.write_text(serialized, encoding="utf-8")
            tmp_path.replace(self._state_file)
        except OSError as exc:
            tmp_path.unlink(missing_ok=True)
            raise PortfolioUnreachable(f"state_unwritable: {exc}") from exc
