import logging
from dataclasses import dataclass, replace
from enum import Enum
from typing import Dict, List, Optional

from strategy.signal_classifier import SignalDirection


logger = logging.getLogger(__name__)


class InstrumentState(Enum):
    NO_SIGNAL = "NO_SIGNAL"
    AWAITING_ENTRY = "AWAITING_ENTRY"
    IN_POSITION = "IN_POSITION"
    BLOCKED = "BLOCKED"


@dataclass(frozen=True)
class InstrumentFsm:
    state: InstrumentState = InstrumentState.NO_SIGNAL
    threshold: Optional[float] = None
    saved_entry_threshold: Optional[float] = None
    last_buy_threshold: Optional[float] = None
    last_sell_threshold: Optional[float] = None
    last_signal_at_ms: Optional[int] = None
    last_checked_at_ms: Optional[int] = None
    last_blocked_at_ms: Optional[int] = None

    @property
    def is_armed(self) -> bool:
        return self.threshold is not None and self.last_signal_at_ms is not None

    def checked_since_signal(self) -> bool:
        return (
            self.last_checked_at_ms is not None
            and self.last_signal_at_ms is not None
            and self.last_checked_at_ms >= self.last_signal_at_ms
        )

    def to_dict(self) -> Dict:
        return {
            'state': self.state.value,
            'threshold': self.threshold,
            'saved_entry_threshold': self.saved_entry_threshold,
            'last_buy_threshold': self.last_buy_threshold,
            'last_sell_threshold': self.last_sell_threshold,
            'last_signal_at_ms': self.last_signal_at_ms,
            'last_checked_at_ms': self.last_checked_at_ms,
            'last_blocked_at_ms': self.last_blocked_at_ms,
        }


@dataclass(frozen=True)
class Transition:
    instrument: str
    source: str
    from_state: InstrumentState
    to_state: InstrumentState
    action: str
    at_ms: int
    price: Optional[float]
    fsm: InstrumentFsm

    def to_dict(self) -> Dict:
        return {
            'instrument': self.instrument,
            'source': self.source,
            'from_state': self.from_state.value,
            'to_state': self.to_state.value,
            'action': self.action,
            'at_ms': self.at_ms,
            'price': self.price,
            'threshold': self.fsm.threshold,
        }


_ACTIONS = {
    (InstrumentState.AWAITING_ENTRY, InstrumentState.IN_POSITION): 'enter',
    (InstrumentState.AWAITING_ENTRY, InstrumentState.BLOCKED): 'block',
    (InstrumentState.IN_POSITION, InstrumentState.BLOCKED): 'exit',
    (InstrumentState.BLOCKED, InstrumentState.AWAITING_ENTRY): 'rearm',
}


class InstrumentStateMachine:
    """Pure transition functions over ``InstrumentFsm`` values.

    Each step returns the ordered list of snapshots it produced: empty for a
    no-op, one for an ordinary move, two when a cooldown reactivation passes
    through ``AWAITING_ENTRY`` and is evaluated on the same price.
    """

    def __init__(self):
        from strategy.fsm_states import AwaitingEntryState, BlockedState, InPositionState

        self.state_map = {
            InstrumentState.AWAITING_ENTRY: AwaitingEntryState,
            InstrumentState.IN_POSITION: InPositionState,
            InstrumentState.BLOCKED: BlockedState,
        }

    def apply_signal(self, current: InstrumentFsm, direction: Optional[SignalDirection],
                     stop_price: Optional[float], ltp: Optional[float], at_ms: int) -> List[InstrumentFsm]:
        if direction is None:
            return []
        if direction == SignalDirection.BUY:
            threshold = stop_price
            nxt = replace(
                current,
                state=InstrumentState.AWAITING_ENTRY,
                threshold=threshold,
                saved_entry_threshold=threshold,
                last_buy_threshold=threshold,
            )
        else:
            threshold = ltp
            nxt = replace(
                current,
                state=InstrumentState.AWAITING_ENTRY,
                threshold=threshold,
                last_sell_threshold=threshold,
            )
        return [replace(nxt, last_signal_at_ms=at_ms, last_checked_at_ms=None, last_blocked_at_ms=None)]

    def apply_price(self, current: InstrumentFsm, price: Optional[float], at_ms: int) -> List[InstrumentFsm]:
        if price is None or not current.is_armed:
            return []
        processor_cls = self.state_map.get(current.state)
        if processor_cls is None:
            return []
        return processor_cls(current, self).process(price, at_ms)

    def evaluate_entry(self, current: InstrumentFsm, price: float, at_ms: int) -> InstrumentFsm:
        """Single crossing check of a fresh signal episode."""
        if price > current.threshold:
            return replace(
                current,
                state=InstrumentState.IN_POSITION,
                last_checked_at_ms=at_ms,
                last_blocked_at_ms=None,
            )
        return replace(
            current,
            state=InstrumentState.BLOCKED,
            last_checked_at_ms=at_ms,
            last_blocked_at_ms=at_ms,
        )

    def build_transitions(self, instrument: str, source: str, start: InstrumentFsm,
                          steps: List[InstrumentFsm], price: Optional[float], at_ms: int) -> List[Transition]:
        transitions: List[Transition] = []
        previous = start
        for step in steps:
            if source == 'signal':
                action = 'signal'
            else:
                action = _ACTIONS.get((previous.state, step.state), 'update')
            transitions.append(
                Transition(
                    instrument=instrument,
                    source=source,
                    from_state=previous.state,
                    to_state=step.state,
                    action=action,
                    at_ms=at_ms,
                    price=price,
                    fsm=step,
                )
            )
            previous = step
        return transitions
