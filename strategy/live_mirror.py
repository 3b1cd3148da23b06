"""Paper -> live mirror.

A second, PnL-driven state machine per instrument. The paper ledger's total
PnL (realized cumulative plus the open trade's unrealized) decides whether a
real position should exist. Two thresholds form a dead zone: a live trade is
opened only once the total exceeds ``open_threshold`` and is protectively
closed only once it falls below ``close_threshold``. A cooldown anchored at
a protective close (or at a near miss) suppresses re-entry until the next
minute boundary.
"""
import logging
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Deque, Dict, List, Optional

from strategy.clock import has_crossed_minute, next_minute_start_ms
from strategy.execution_types import OrderAction, OrderNotification
from strategy.paper_ledger import trade_pnl


logger = logging.getLogger(__name__)

DEFAULT_OPEN_THRESHOLD = 4.0
DEFAULT_CLOSE_THRESHOLD = -1.0


class LiveState(Enum):
    NO_POSITION = "NO_POSITION"
    POSITION = "POSITION"


@dataclass(frozen=True)
class PendingPaperTrade:
    entry_price: float
    quantity: float
    lot: float
    opened_at_ms: int


@dataclass(frozen=True)
class LiveTrade:
    id: str
    symbol: str
    entry_price: float
    quantity: float
    lot: float
    opened_at_ms: int

    def to_dict(self) -> Dict:
        return {
            'id': self.id,
            'symbol': self.symbol,
            'entry_price': self.entry_price,
            'quantity': self.quantity,
            'lot': self.lot,
            'opened_at_ms': self.opened_at_ms,
        }


@dataclass(frozen=True)
class LiveTradeRow:
    id: str
    symbol: str
    action: OrderAction
    at_ms: int
    entry_price: float
    exit_price: Optional[float]
    quantity: float
    realized_pnl: Optional[float]
    cumulative_pnl: float
    reason: str

    def to_dict(self) -> Dict:
        return {
            'id': self.id,
            'symbol': self.symbol,
            'action': self.action.value,
            'at_ms': self.at_ms,
            'entry_price': self.entry_price,
            'exit_price': self.exit_price,
            'quantity': self.quantity,
            'realized_pnl': self.realized_pnl,
            'cumulative_pnl': self.cumulative_pnl,
            'reason': self.reason,
        }


class LiveMirrorEngine:
    def __init__(self, symbol: str, open_threshold: float = DEFAULT_OPEN_THRESHOLD,
                 close_threshold: float = DEFAULT_CLOSE_THRESHOLD, trade_rows: int = 50):
        if close_threshold >= open_threshold:
            raise ValueError("close_threshold must be below open_threshold")
        self.symbol = symbol
        self.open_threshold = float(open_threshold)
        self.close_threshold = float(close_threshold)
        self.state = LiveState.NO_POSITION
        self.open_trade: Optional[LiveTrade] = None
        self.trades: Deque[LiveTradeRow] = deque(maxlen=max(int(trade_rows), 1))
        self.cumulative_pnl = 0.0
        self.unrealized_pnl = 0.0
        self.paper_cumulative_pnl = 0.0
        self.paper_unrealized_pnl = 0.0
        self.blocked_at_ms: Optional[int] = None
        self.pending_paper_trade: Optional[PendingPaperTrade] = None

    @property
    def total_pnl(self) -> float:
        return self.paper_cumulative_pnl + self.paper_unrealized_pnl

    @property
    def blocked_until_ms(self) -> Optional[int]:
        if self.blocked_at_ms is None:
            return None
        return next_minute_start_ms(self.blocked_at_ms)

    def is_blocked(self, at_ms: int) -> bool:
        return self.blocked_at_ms is not None and not has_crossed_minute(self.blocked_at_ms, at_ms)

    def is_live_active(self, at_ms: int) -> bool:
        return self.total_pnl > self.open_threshold and not self.is_blocked(at_ms)

    def on_paper_open(self, entry_price: float, quantity: float, lot: float,
                      at_ms: int) -> List[OrderNotification]:
        self.pending_paper_trade = PendingPaperTrade(entry_price, quantity, lot, at_ms)
        self._expire_cooldown(at_ms)

        if self.total_pnl <= self.open_threshold or self.blocked_at_ms is not None:
            logger.info(
                "Live %s waiting: paper trade open @ %.4f, total PnL %.2f (open > %.2f, blocked=%s)",
                self.symbol,
                entry_price,
                self.total_pnl,
                self.open_threshold,
                self.blocked_at_ms is not None,
            )
            return []
        if self.state != LiveState.NO_POSITION:
            logger.info("Live %s already in position, skipping mirror entry", self.symbol)
            return []
        return [self._open(entry_price, quantity, lot, at_ms, 'paper_open')]

    def on_pnl_update(self, paper_cumulative_pnl: float, paper_unrealized_pnl: float,
                      price: Optional[float], at_ms: int) -> List[OrderNotification]:
        notifications: List[OrderNotification] = []
        total_before = self.total_pnl
        self.paper_cumulative_pnl = paper_cumulative_pnl
        self.paper_unrealized_pnl = paper_unrealized_pnl
        total_after = self.total_pnl
        self._mark(price)

        was_above = total_before > self.open_threshold
        is_above = total_after > self.open_threshold

        block_expired = self._expire_cooldown(at_ms)

        if self.state == LiveState.POSITION and total_after < self.close_threshold:
            exit_price = price if price is not None else self.open_trade.entry_price
            notifications.append(self._close(exit_price, at_ms, 'protective_close'))
            # Pending stays recorded so a recovery can re-enter from the same paper trade.
            self.blocked_at_ms = at_ms
            logger.info(
                "Live %s cooldown until %s after protective close",
                self.symbol,
                self.blocked_until_ms,
            )

        should_activate = (not was_above and is_above) or (block_expired and is_above)
        if (should_activate and self.pending_paper_trade is not None
                and self.state == LiveState.NO_POSITION and self.blocked_at_ms is None):
            pending = self.pending_paper_trade
            entry_price = price if price is not None else pending.entry_price
            reason = 'cooldown_expired' if block_expired and was_above else 'threshold_crossed'
            notifications.append(self._open(entry_price, pending.quantity, pending.lot, at_ms, reason))

        if was_above and not is_above and self.state == LiveState.NO_POSITION:
            if self.blocked_at_ms is None:
                self.blocked_at_ms = at_ms
                logger.info(
                    "Live %s near miss at total PnL %.2f, cooldown until %s",
                    self.symbol,
                    total_after,
                    self.blocked_until_ms,
                )

        return notifications

    def on_paper_close(self, exit_price: float, paper_cumulative_pnl: float,
                       at_ms: int) -> List[OrderNotification]:
        notifications: List[OrderNotification] = []
        self.pending_paper_trade = None
        if self.state == LiveState.POSITION and self.open_trade is not None:
            notifications.append(self._close(exit_price, at_ms, 'paper_close'))
        else:
            logger.debug("Live %s has no open trade to mirror-close", self.symbol)
        notifications.extend(self.on_pnl_update(paper_cumulative_pnl, 0.0, exit_price, at_ms))
        return notifications

    def clear(self, paper_cumulative_pnl: float = 0.0, paper_unrealized_pnl: float = 0.0) -> None:
        """Drop trade history and re-seat the paper drivers on the cleared ledger.

        An open live position, its pending paper trade and the cooldown are
        kept. No threshold rule runs here, so clearing never emits an order.
        """
        self.trades.clear()
        self.cumulative_pnl = 0.0
        self.paper_cumulative_pnl = paper_cumulative_pnl
        self.paper_unrealized_pnl = paper_unrealized_pnl

    def rows(self) -> List[Dict]:
        return [row.to_dict() for row in self.trades]

    def _expire_cooldown(self, at_ms: int) -> bool:
        if self.blocked_at_ms is not None and has_crossed_minute(self.blocked_at_ms, at_ms):
            self.blocked_at_ms = None
            logger.info("Live %s cooldown expired", self.symbol)
            return True
        return False

    def _mark(self, price: Optional[float]) -> None:
        trade = self.open_trade
        if trade is None:
            self.unrealized_pnl = 0.0
        elif price is not None:
            self.unrealized_pnl = trade_pnl(trade.entry_price, price, trade.quantity, trade.lot)

    def _open(self, entry_price: float, quantity: float, lot: float, at_ms: int,
              reason: str) -> OrderNotification:
        trade = LiveTrade(
            id=f"live-{self.symbol}-{at_ms}",
            symbol=self.symbol,
            entry_price=entry_price,
            quantity=quantity,
            lot=lot,
            opened_at_ms=at_ms,
        )
        self.open_trade = trade
        self.state = LiveState.POSITION
        self.unrealized_pnl = 0.0
        self.trades.appendleft(
            LiveTradeRow(
                id=trade.id,
                symbol=self.symbol,
                action=OrderAction.ENTRY,
                at_ms=at_ms,
                entry_price=entry_price,
                exit_price=None,
                quantity=quantity,
                realized_pnl=None,
                cumulative_pnl=self.cumulative_pnl,
                reason=reason,
            )
        )
        logger.info(
            "Live OPEN %s @ %.4f qty=%s lot=%s (%s, total PnL %.2f)",
            self.symbol,
            entry_price,
            quantity,
            lot,
            reason,
            self.total_pnl,
        )
        return OrderNotification(OrderAction.ENTRY, self.symbol, entry_price, at_ms, quantity, reason)

    def _close(self, exit_price: float, at_ms: int, reason: str) -> OrderNotification:
        trade = self.open_trade
        realized = trade_pnl(trade.entry_price, exit_price, trade.quantity, trade.lot)
        self.cumulative_pnl += realized
        self.trades.appendleft(
            LiveTradeRow(
                id=f"{trade.id}-exit",
                symbol=self.symbol,
                action=OrderAction.EXIT,
                at_ms=at_ms,
                entry_price=trade.entry_price,
                exit_price=exit_price,
                quantity=trade.quantity,
                realized_pnl=realized,
                cumulative_pnl=self.cumulative_pnl,
                reason=reason,
            )
        )
        self.open_trade = None
        self.state = LiveState.NO_POSITION
        self.unrealized_pnl = 0.0
        logger.info(
            "Live CLOSE %s @ %.4f realized=%.2f (%s)",
            self.symbol,
            exit_price,
            realized,
            reason,
        )
        return OrderNotification(OrderAction.EXIT, self.symbol, exit_price, at_ms, trade.quantity, reason)

    def to_dict(self, at_ms: int) -> Dict:
        return {
            'state': self.state.value,
            'is_live_active': self.is_live_active(at_ms),
            'blocked_until_ms': self.blocked_until_ms if self.is_blocked(at_ms) else None,
            'open_trade': self.open_trade.to_dict() if self.open_trade else None,
            'cumulative_pnl': self.cumulative_pnl,
            'unrealized_pnl': self.unrealized_pnl,
            'total_paper_pnl': self.total_pnl,
            'pending_paper_trade': self.pending_paper_trade is not None,
        }
