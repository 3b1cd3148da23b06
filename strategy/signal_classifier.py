from dataclasses import dataclass, replace
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, Optional

if TYPE_CHECKING:
    from strategy.instrument_fsm import InstrumentFsm


class SignalDirection(Enum):
    BUY = "BUY"
    SELL = "SELL"


_INTENT_MAP = {
    'BUY': SignalDirection.BUY,
    'ENTRY': SignalDirection.BUY,
    'SELL': SignalDirection.SELL,
    'EXIT': SignalDirection.SELL,
}

_SIDE_MAP = {
    'BUY': SignalDirection.BUY,
    'SELL': SignalDirection.SELL,
}


def classify_signal(intent: Any, side: Any) -> Optional[SignalDirection]:
    """Map a webhook's intent/side pair to a direction, intent taking precedence."""
    intent_key = str(intent or '').strip().upper()
    if intent_key in _INTENT_MAP:
        return _INTENT_MAP[intent_key]
    side_key = str(side or '').strip().upper()
    return _SIDE_MAP.get(side_key)


@dataclass(frozen=True)
class SignalTracking:
    """Per-instrument signal history.

    The three boolean flags are audit data only: once set they stay set for
    the life of the instrument and nothing downstream branches on them.
    """

    last_signal: Optional[SignalDirection] = None
    sell_after_buy_count: int = 0
    buy_after_sell_count: int = 0
    alternate_signal: bool = False
    buy_sell_sell: bool = False
    sell_buy_buy: bool = False

    def observe(self, direction: SignalDirection, fsm: 'InstrumentFsm',
                ltp: Optional[float]) -> 'SignalTracking':
        """Fold one classified signal in; ``fsm`` is the state after the signal was applied."""
        from strategy.instrument_fsm import InstrumentState

        changed = self.last_signal is not None and self.last_signal != direction

        sell_after_buy = 0
        buy_after_sell = 0
        if direction == SignalDirection.SELL:
            if self.last_signal == SignalDirection.BUY:
                sell_after_buy = 1
            elif self.last_signal == SignalDirection.SELL and self.sell_after_buy_count > 0:
                sell_after_buy = self.sell_after_buy_count + 1
        else:
            if self.last_signal == SignalDirection.SELL:
                buy_after_sell = 1
            elif self.last_signal == SignalDirection.BUY and self.buy_after_sell_count > 0:
                buy_after_sell = self.buy_after_sell_count + 1

        comparable = fsm.state == InstrumentState.AWAITING_ENTRY and ltp is not None
        buy_sell_sell_now = (
            direction == SignalDirection.SELL
            and sell_after_buy >= 2
            and comparable
            and fsm.last_buy_threshold is not None
            and ltp < fsm.last_buy_threshold
        )
        sell_buy_buy_now = (
            direction == SignalDirection.BUY
            and buy_after_sell >= 2
            and comparable
            and fsm.last_sell_threshold is not None
            and ltp < fsm.last_sell_threshold
        )

        return replace(
            self,
            last_signal=direction,
            sell_after_buy_count=sell_after_buy,
            buy_after_sell_count=buy_after_sell,
            alternate_signal=self.alternate_signal or changed,
            buy_sell_sell=self.buy_sell_sell or buy_sell_sell_now,
            sell_buy_buy=self.sell_buy_buy or sell_buy_buy_now,
        )

    def to_dict(self) -> Dict:
        return {
            'last_signal': self.last_signal.value if self.last_signal else None,
            'sell_after_buy_count': self.sell_after_buy_count,
            'buy_after_sell_count': self.buy_after_sell_count,
            'alternate_signal': self.alternate_signal,
            'buy_sell_sell': self.buy_sell_sell,
            'sell_buy_buy': self.sell_buy_buy,
        }


@dataclass(frozen=True)
class SignalRow:
    at_ms: int
    direction: SignalDirection
    intent: Optional[str]
    side: Optional[str]
    stop_price: Optional[float]
    alternate_signal: bool
    buy_sell_sell: bool
    sell_buy_buy: bool

    def to_dict(self) -> Dict:
        return {
            'at_ms': self.at_ms,
            'direction': self.direction.value,
            'intent': self.intent,
            'side': self.side,
            'stop_price': self.stop_price,
            'alternate_signal': self.alternate_signal,
            'buy_sell_sell': self.buy_sell_sell,
            'sell_buy_buy': self.sell_buy_buy,
        }
