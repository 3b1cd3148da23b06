from __future__ import annotations
from abc import ABC, abstractmethod
from dataclasses import replace
from typing import TYPE_CHECKING, List

from strategy.clock import is_first_second_of_later_minute
from strategy.instrument_fsm import InstrumentFsm, InstrumentState

if TYPE_CHECKING:
    from strategy.instrument_fsm import InstrumentStateMachine


class FsmStateProcessor(ABC):
    def __init__(self, fsm: InstrumentFsm, machine: InstrumentStateMachine):
        self.fsm = fsm
        self.machine = machine

    @abstractmethod
    def process(self, price: float, at_ms: int) -> List[InstrumentFsm]:
        pass


class AwaitingEntryState(FsmStateProcessor):
    def process(self, price: float, at_ms: int) -> List[InstrumentFsm]:
        # Only the first price after the signal is evaluated.
        if self.fsm.checked_since_signal():
            return []
        return [self.machine.evaluate_entry(self.fsm, price, at_ms)]


class InPositionState(FsmStateProcessor):
    def process(self, price: float, at_ms: int) -> List[InstrumentFsm]:
        if price >= self.fsm.threshold:
            return []
        return [
            replace(
                self.fsm,
                state=InstrumentState.BLOCKED,
                last_checked_at_ms=at_ms,
                last_blocked_at_ms=at_ms,
            )
        ]


class BlockedState(FsmStateProcessor):
    def process(self, price: float, at_ms: int) -> List[InstrumentFsm]:
        if not is_first_second_of_later_minute(self.fsm.last_blocked_at_ms, at_ms):
            return []
        rearmed = replace(
            self.fsm,
            state=InstrumentState.AWAITING_ENTRY,
            last_signal_at_ms=at_ms,
            last_checked_at_ms=None,
            last_blocked_at_ms=None,
        )
        return [rearmed, self.machine.evaluate_entry(rearmed, price, at_ms)]
