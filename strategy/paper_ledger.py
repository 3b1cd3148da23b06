import logging
import math
from collections import deque
from dataclasses import dataclass
from typing import Deque, Dict, List, Optional

from strategy.instrument_fsm import InstrumentState


logger = logging.getLogger(__name__)

DEFAULT_NOTIONAL = 100_000.0


class LedgerInvariantError(RuntimeError):
    """Raised when the ledger is driven out of order (e.g. a second open trade)."""


def trade_pnl(entry_price: float, price: float, quantity: float, lot: float) -> float:
    return (price - entry_price) * quantity * lot


def position_quantity(notional: float, lot: float, price: float) -> int:
    return int(math.ceil(notional / (lot * price)))


@dataclass
class PaperTrade:
    id: str
    symbol: str
    opened_at_ms: int
    entry_price: float
    quantity: float
    lot: float
    current_price: float
    unrealized_pnl: float = 0.0
    exit_price: Optional[float] = None
    realized_pnl: Optional[float] = None
    closed_at_ms: Optional[int] = None

    @property
    def is_open(self) -> bool:
        return self.closed_at_ms is None

    def to_dict(self) -> Dict:
        return {
            'id': self.id,
            'symbol': self.symbol,
            'opened_at_ms': self.opened_at_ms,
            'entry_price': self.entry_price,
            'quantity': self.quantity,
            'lot': self.lot,
            'current_price': self.current_price,
            'unrealized_pnl': self.unrealized_pnl,
            'exit_price': self.exit_price,
            'realized_pnl': self.realized_pnl,
            'closed_at_ms': self.closed_at_ms,
        }


@dataclass(frozen=True)
class LedgerUpdate:
    """What one FSM step did to the ledger: 'open', 'mark', 'close' or None."""

    action: Optional[str]
    trade: Optional[PaperTrade] = None


class PaperTradeLedger:
    """Paper-trade bookkeeping for one instrument, driven by state machine transitions."""

    def __init__(self, symbol: str, notional: float = DEFAULT_NOTIONAL, closed_rows: int = 50) -> None:
        self.symbol = symbol
        self.notional = float(notional)
        self._open: Optional[PaperTrade] = None
        self._closed: Deque[PaperTrade] = deque(maxlen=max(int(closed_rows), 1))
        self._cumulative_pnl = 0.0
        self._sequence = 0

    @property
    def open_trade(self) -> Optional[PaperTrade]:
        return self._open

    @property
    def closed_trades(self) -> List[PaperTrade]:
        return list(self._closed)

    @property
    def cumulative_pnl(self) -> float:
        return self._cumulative_pnl

    @property
    def unrealized_pnl(self) -> float:
        return self._open.unrealized_pnl if self._open else 0.0

    def apply(self, previous: InstrumentState, current: InstrumentState,
              price: Optional[float], lot: float, at_ms: int) -> LedgerUpdate:
        """Reconcile the ledger with one event's net state change."""
        was_in = previous == InstrumentState.IN_POSITION
        is_in = current == InstrumentState.IN_POSITION

        if not was_in and is_in:
            return LedgerUpdate('open', self.open(price, lot, at_ms))
        if was_in and not is_in:
            return LedgerUpdate('close', self.close(price, at_ms))
        if is_in and self._open is not None and price is not None:
            self.mark(price)
            return LedgerUpdate('mark', self._open)
        return LedgerUpdate(None)

    def open(self, price: Optional[float], lot: float, at_ms: int) -> PaperTrade:
        if self._open is not None:
            raise LedgerInvariantError(
                f"{self.symbol}: paper trade {self._open.id} already open, refusing a second entry"
            )
        if price is None or price <= 0:
            raise LedgerInvariantError(f"{self.symbol}: cannot open a paper trade without a price")
        lot = lot if lot and lot > 0 else 1.0
        self._sequence += 1
        trade = PaperTrade(
            id=f"{self.symbol}-{at_ms}-{self._sequence}",
            symbol=self.symbol,
            opened_at_ms=at_ms,
            entry_price=price,
            quantity=position_quantity(self.notional, lot, price),
            lot=lot,
            current_price=price,
        )
        self._open = trade
        logger.info(
            "Paper OPEN %s @ %.4f qty=%s lot=%s",
            self.symbol,
            price,
            trade.quantity,
            lot,
        )
        return trade

    def mark(self, price: float) -> float:
        if self._open is None:
            return 0.0
        self._open.current_price = price
        self._open.unrealized_pnl = trade_pnl(self._open.entry_price, price, self._open.quantity, self._open.lot)
        return self._open.unrealized_pnl

    def close(self, price: Optional[float], at_ms: int) -> PaperTrade:
        trade = self._open
        if trade is None:
            raise LedgerInvariantError(f"{self.symbol}: no open paper trade to close")
        if price is None:
            price = trade.current_price
        realized = trade_pnl(trade.entry_price, price, trade.quantity, trade.lot)
        trade.current_price = price
        trade.exit_price = price
        trade.realized_pnl = realized
        trade.unrealized_pnl = 0.0
        trade.closed_at_ms = at_ms
        self._cumulative_pnl += realized
        self._closed.appendleft(trade)
        self._open = None
        logger.info(
            "Paper CLOSE %s @ %.4f realized=%.2f cumulative=%.2f",
            self.symbol,
            price,
            realized,
            self._cumulative_pnl,
        )
        return trade

    def clear(self) -> None:
        """Drop closed history and cumulative PnL; an in-flight trade stays open."""
        self._closed.clear()
        self._cumulative_pnl = 0.0

    def rows(self) -> List[Dict]:
        rows = [self._open.to_dict()] if self._open else []
        rows.extend(trade.to_dict() for trade in self._closed)
        return rows
