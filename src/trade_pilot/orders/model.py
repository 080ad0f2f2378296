"""Order model: entry, bracket and trailing-stop orders plus an in-memory book.

Pure data and validation; nothing here talks to a broker or the portfolio.
"""

from __future__ import annotations

import threading
import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import ClassVar

from trade_pilot.ai.schemas import Recommendation
from trade_pilot.errors import OrderStateError
from trade_pilot.types import ExitType, PositionSize, Side

STOP_TRIGGER_BUFFER = 1.005
LADDER_LEVELS = (0.6, 1.0, 1.5)
LADDER_FRACTIONS = (0.33, 0.33)


class OrderKind(str, Enum):
    MARKET = "MARKET"
    STOP_LOSS = "STOP_LOSS"
    TAKE_PROFIT = "TAKE_PROFIT"
    TRAILING_STOP = "TRAILING_STOP"
    OCO = "OCO"


class OrderStatus(str, Enum):
    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    TRIGGERED = "TRIGGERED"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"


_OPEN = (OrderStatus.PENDING, OrderStatus.ACTIVE)


def new_order_id(prefix: str = "ord") -> str:
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


@dataclass(slots=True, kw_only=True)
class Order:
    """Fields shared by every order variant."""

    KIND: ClassVar[OrderKind]

    id: str
    symbol: str
    quantity: int
    created_at: datetime
    status: OrderStatus = OrderStatus.PENDING
    expires_at: datetime | None = None
    parent_id: str | None = None
    triggered_at: datetime | None = None

    @property
    def kind(self) -> OrderKind:
        return self.KIND

    @property
    def is_open(self) -> bool:
        return self.status in _OPEN


@dataclass(slots=True, kw_only=True)
class MarketOrder(Order):
    KIND: ClassVar[OrderKind] = OrderKind.MARKET

    side: Side
    price: float


@dataclass(slots=True, kw_only=True)
class StopLossOrder(Order):
    KIND: ClassVar[OrderKind] = OrderKind.STOP_LOSS

    stop_price: float
    trigger_price: float
    side: Side = "SELL"

    def is_hit(self, price: float) -> bool:
        return price <= self.trigger_price


@dataclass(frozen=True, slots=True)
class LadderStep:
    price: float
    quantity: int


@dataclass(slots=True, kw_only=True)
class TakeProfitOrder(Order):
    KIND: ClassVar[OrderKind] = OrderKind.TAKE_PROFIT

    target_price: float
    profit_pct: float
    ladder: list[LadderStep] = field(default_factory=list)
    side: Side = "SELL"

    def is_hit(self, price: float) -> bool:
        return price >= self.target_price


@dataclass(slots=True, kw_only=True)
class TrailingStopOrder(Order):
    """Stop that follows the high-water mark upward and never moves down."""

    KIND: ClassVar[OrderKind] = OrderKind.TRAILING_STOP

    trail_pct: float
    high_water_mark: float
    stop_price: float
    side: Side = "SELL"

    def observe(self, price: float) -> bool:
        """Ratchet on a new high; return True when ``price`` hits the stop."""
        if price > self.high_water_mark:
            self.high_water_mark = price
            self.stop_price = max(self.stop_price, price * (1 - self.trail_pct / 100))
        return price <= self.stop_price


@dataclass(slots=True, kw_only=True)
class OcoOrder(Order):
    """Stop-loss and take-profit pair; the first to trigger cancels the other."""

    KIND: ClassVar[OrderKind] = OrderKind.OCO

    stop_loss: StopLossOrder
    take_profit: TakeProfitOrder

    @property
    def children(self) -> tuple[StopLossOrder, TakeProfitOrder]:
        return self.stop_loss, self.take_profit

    def sibling_of(self, order_id: str) -> Order:
        if order_id == self.stop_loss.id:
            return self.take_profit
        if order_id == self.take_profit.id:
            return self.stop_loss
        raise OrderStateError(f"order_not_in_oco: {order_id}")


def build_market_order(
    recommendation: Recommendation,
    quantity: int,
    *,
    side: Side,
    at: datetime,
) -> MarketOrder:
    if quantity <= 0:
        raise OrderStateError("quantity_must_be_positive")
    return MarketOrder(
        id=new_order_id("mkt"),
        symbol=recommendation.symbol,
        quantity=quantity,
        created_at=at,
        side=side,
        price=recommendation.current_price,
    )


def take_profit_ladder(entry_price: float, target_price: float, quantity: int) -> list[LadderStep]:
    """Partial exits at 60%, 100% and 150% of the expected move."""
    move = target_price - entry_price
    steps: list[LadderStep] = []
    remaining = quantity
    for i, level in enumerate(LADDER_LEVELS):
        if i < len(LADDER_FRACTIONS):
            qty = int(quantity * LADDER_FRACTIONS[i])
        else:
            qty = remaining
        qty = min(qty, remaining)
        if qty > 0:
            steps.append(LadderStep(price=round(entry_price + move * level, 4), quantity=qty))
            remaining -= qty
    return steps


def build_bracket(
    recommendation: Recommendation,
    sizing: PositionSize,
    *,
    stop_loss_pct: float,
    take_profit_pct: float,
    at: datetime,
    parent_id: str,
    expires_at: datetime | None = None,
) -> OcoOrder:
    """OCO stop-loss/take-profit bracket protecting a buy."""
    if sizing.shares <= 0:
        raise OrderStateError("quantity_must_be_positive")
    entry = recommendation.current_price
    stop_price = round(entry * (1 - stop_loss_pct / 100), 4)
    target_price = round(entry * (1 + take_profit_pct / 100), 4)
    common = {
        "symbol": recommendation.symbol,
        "quantity": sizing.shares,
        "created_at": at,
        "expires_at": expires_at,
        "parent_id": parent_id,
    }
    stop = StopLossOrder(
        id=new_order_id("sl"),
        stop_price=stop_price,
        trigger_price=round(stop_price * STOP_TRIGGER_BUFFER, 4),
        **common,
    )
    take = TakeProfitOrder(
        id=new_order_id("tp"),
        target_price=target_price,
        profit_pct=take_profit_pct,
        ladder=take_profit_ladder(entry, target_price, sizing.shares),
        **common,
    )
    validate_oco(stop, take)
    return OcoOrder(id=new_order_id("oco"), stop_loss=stop, take_profit=take, **common)


def build_trailing_stop(
    symbol: str,
    quantity: int,
    *,
    entry_price: float,
    trail_pct: float,
    at: datetime,
    parent_id: str | None = None,
) -> TrailingStopOrder:
    if quantity <= 0:
        raise OrderStateError("quantity_must_be_positive")
    if not 0 < trail_pct < 100:
        raise OrderStateError("trail_pct_out_of_range")
    return TrailingStopOrder(
        id=new_order_id("trl"),
        symbol=symbol,
        quantity=quantity,
        created_at=at,
        parent_id=parent_id,
        trail_pct=trail_pct,
        high_water_mark=entry_price,
        stop_price=round(entry_price * (1 - trail_pct / 100), 4),
    )


def validate_oco(stop: StopLossOrder, take: TakeProfitOrder) -> None:
    if stop.symbol != take.symbol:
        raise OrderStateError("oco_symbol_mismatch")
    if stop.quantity != take.quantity:
        raise OrderStateError("oco_quantity_mismatch")
    if stop.parent_id != take.parent_id:
        raise OrderStateError("oco_parent_mismatch")
    if stop.stop_price >= take.target_price:
        raise OrderStateError("oco_stop_above_target")


class OrderBook:
    """Thread-safe registry of orders and their status transitions.

    OCO children are only ever cancelled together with, or as a consequence
    of, their sibling.
    """

    def __init__(self) -> None:
        self._orders: dict[str, Order] = {}
        self._oco_of: dict[str, str] = {}
        self._lock = threading.RLock()

    def add(self, order: Order) -> Order:
        with self._lock:
            if order.id in self._orders:
                raise OrderStateError(f"duplicate_order_id: {order.id}")
            self._orders[order.id] = order
            if isinstance(order, OcoOrder):
                for child in order.children:
                    self._orders[child.id] = child
                    self._oco_of[child.id] = order.id
            return order

    def get(self, order_id: str) -> Order:
        with self._lock:
            try:
                return self._orders[order_id]
            except KeyError:
                raise OrderStateError(f"unknown_order: {order_id}") from None

    def _oco_containing(self, order_id: str) -> OcoOrder | None:
        oco_id = self._oco_of.get(order_id)
        if oco_id is None:
            return None
        oco = self._orders.get(oco_id)
        if not isinstance(oco, OcoOrder):
            raise OrderStateError(f"oco_parent_missing: {order_id}")
        return oco

    def activate(self, order_id: str) -> Order:
        with self._lock:
            order = self.get(order_id)
            if order.status != OrderStatus.PENDING:
                raise OrderStateError(f"cannot_activate_{order.status.value.lower()}")
            order.status = OrderStatus.ACTIVE
            if isinstance(order, OcoOrder):
                for child in order.children:
                    child.status = OrderStatus.ACTIVE
            return order

    def trigger(self, order_id: str, at: datetime) -> Order:
        """Mark an active order TRIGGERED; an OCO sibling is cancelled with it."""
        with self._lock:
            order = self.get(order_id)
            if isinstance(order, OcoOrder):
                raise OrderStateError("trigger_oco_child_instead")
            if order.status != OrderStatus.ACTIVE:
                raise OrderStateError(f"cannot_trigger_{order.status.value.lower()}")
            oco = self._oco_containing(order_id)
            order.status = OrderStatus.TRIGGERED
            order.triggered_at = at
            if oco is not None:
                oco.sibling_of(order_id).status = OrderStatus.CANCELLED
                oco.status = OrderStatus.TRIGGERED
                oco.triggered_at = at
            return order

    def cancel(self, order_id: str) -> Order:
        with self._lock:
            order = self.get(order_id)
            oco = self._oco_containing(order_id)
            if oco is not None and oco.sibling_of(order_id).is_open:
                raise OrderStateError("cannot_cancel_single_oco_child")
            if order.status == OrderStatus.CANCELLED:
                return order
            if not order.is_open:
                raise OrderStateError(f"cannot_cancel_{order.status.value.lower()}")
            order.status = OrderStatus.CANCELLED
            if isinstance(order, OcoOrder):
                for child in order.children:
                    if child.is_open:
                        child.status = OrderStatus.CANCELLED
            return order

    def cancel_children(self, parent_id: str) -> list[Order]:
        """Cancel every open top-level order protecting ``parent_id``."""
        with self._lock:
            return [
                self.cancel(order.id)
                for order in self._top_level()
                if order.parent_id == parent_id and order.is_open
            ]

    def cancel_symbol(self, symbol: str) -> list[Order]:
        with self._lock:
            return [
                self.cancel(order.id)
                for order in self._top_level()
                if order.symbol == symbol and order.is_open
            ]

    def trigger_for_symbol(self, symbol: str, exit_type: ExitType, at: datetime) -> Order | None:
        """Trigger the active exit order for ``symbol`` matching ``exit_type``."""
        wanted = {
            ExitType.STOP_LOSS: (OrderKind.STOP_LOSS,),
            ExitType.TAKE_PROFIT: (OrderKind.TAKE_PROFIT,),
            ExitType.TRAILING_STOP: (OrderKind.TRAILING_STOP, OrderKind.STOP_LOSS),
        }[exit_type]
        with self._lock:
            for kind in wanted:
                for order in self._orders.values():
                    if (
                        order.symbol == symbol
                        and order.kind == kind
                        and order.status == OrderStatus.ACTIVE
                    ):
                        return self.trigger(order.id, at)
        return None

    def evaluate(self, prices: Mapping[str, float], at: datetime) -> list[Order]:
        """Expire stale orders, then trigger any active exit order whose price is hit."""
        triggered: list[Order] = []
        with self._lock:
            self.expire(at)
            for order in list(self._orders.values()):
                if order.status != OrderStatus.ACTIVE or order.symbol not in prices:
                    continue
                price = prices[order.symbol]
                hit = False
                if isinstance(order, (StopLossOrder, TakeProfitOrder)):
                    hit = order.is_hit(price)
                elif isinstance(order, TrailingStopOrder):
                    hit = order.observe(price)
                # A sibling may have been cancelled earlier in this pass.
                if hit and order.status == OrderStatus.ACTIVE:
                    triggered.append(self.trigger(order.id, at))
        return triggered

    def expire(self, at: datetime) -> list[Order]:
        expired: list[Order] = []
        with self._lock:
            for order in self._top_level():
                if order.is_open and order.expires_at is not None and order.expires_at <= at:
                    order.status = OrderStatus.EXPIRED
                    if isinstance(order, OcoOrder):
                        for child in order.children:
                            if child.is_open:
                                child.status = OrderStatus.EXPIRED
                    expired.append(order)
        return expired

    def cancel_all(self) -> int:
        with self._lock:
            cancelled = 0
            for order in self._top_level():
                if order.is_open:
                    self.cancel(order.id)
                    cancelled += 1
            return cancelled

    def open_orders(self) -> list[Order]:
        """Open leaf orders (OCO containers are represented by their children)."""
        with self._lock:
            return [
                o for o in self._orders.values() if o.is_open and not isinstance(o, OcoOrder)
            ]

    def all_orders(self) -> list[Order]:
        with self._lock:
            return list(self._orders.values())

    def _top_level(self) -> list[Order]:
        return [o for o in self._orders.values() if o.id not in self._oco_of]
