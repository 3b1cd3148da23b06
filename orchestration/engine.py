"""Per-instrument decision engine.

Each event is routed to one or more instrument records and applied under
that record's lock: replay guard, last price, state machine, signal
tracking, paper ledger and live mirror. The resulting snapshot replaces the
published mapping in a single reference swap, so readers always see the
outputs of one event together.
"""
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from api.metrics import metrics
from config.utils import get_config_section
from ingest.events import Event, FeedPriceEvent, InstrumentKey, SignalEvent, TickEvent
from ingest.instrument_directory import InstrumentDirectory
from orchestration.store import InstrumentRecord, InstrumentStore
from strategy.execution_types import OrderNotification
from strategy.instrument_fsm import InstrumentFsm, InstrumentStateMachine, Transition
from strategy.live_mirror import LiveMirrorEngine, LiveState
from strategy.paper_ledger import PaperTradeLedger
from strategy.signal_classifier import SignalRow, SignalTracking, classify_signal


logger = logging.getLogger(__name__)

TransitionListener = Callable[[Transition], None]
NotificationListener = Callable[[OrderNotification], None]


@dataclass(frozen=True)
class InstrumentSnapshot:
    symbol: str
    key: str
    kind: str
    token: Optional[int]
    order_index: Optional[int]
    lot: float
    ltp: Optional[float]
    updated_at_ms: int
    fsm: InstrumentFsm
    tracking: SignalTracking
    signals: Tuple[Dict, ...]
    paper_open_trade: Optional[Dict]
    paper_trades: Tuple[Dict, ...]
    paper_cumulative_pnl: float
    paper_unrealized_pnl: float
    live_state: str
    live_open_trade: Optional[Dict]
    live_trades: Tuple[Dict, ...]
    live_cumulative_pnl: float
    live_unrealized_pnl: float
    live_total_pnl: float
    live_open_threshold: float
    live_blocked_until_ms: Optional[int]

    def is_live_blocked(self, now_ms: int) -> bool:
        return self.live_blocked_until_ms is not None and now_ms < self.live_blocked_until_ms

    def live_status(self, now_ms: int) -> str:
        if self.is_live_blocked(now_ms):
            return 'blocked'
        if self.live_total_pnl > self.live_open_threshold:
            return 'active'
        return 'idle'

    def to_dict(self) -> Dict[str, Any]:
        return {
            'symbol': self.symbol,
            'key': self.key,
            'kind': self.kind,
            'token': self.token,
            'order_index': self.order_index,
            'lot': self.lot,
            'ltp': self.ltp,
            'updated_at_ms': self.updated_at_ms,
            'fsm': self.fsm.to_dict(),
            'tracking': self.tracking.to_dict(),
            'signals': list(self.signals),
            'paper': {
                'open_trade': self.paper_open_trade,
                'trades': list(self.paper_trades),
                'cumulative_pnl': self.paper_cumulative_pnl,
                'unrealized_pnl': self.paper_unrealized_pnl,
            },
            'live': {
                'state': self.live_state,
                'open_trade': self.live_open_trade,
                'trades': list(self.live_trades),
                'cumulative_pnl': self.live_cumulative_pnl,
                'unrealized_pnl': self.live_unrealized_pnl,
                'total_paper_pnl': self.live_total_pnl,
                'blocked_until_ms': self.live_blocked_until_ms,
            },
        }


class DecisionEngine:
    def __init__(self, directory: InstrumentDirectory, config_obj=None):
        if config_obj is None:
            from config import config as config_obj
        engine_cfg = get_config_section(config_obj, 'engine')
        paper_cfg = get_config_section(config_obj, 'paper')
        live_cfg = get_config_section(config_obj, 'live')

        self.directory = directory
        self.signal_rows = int(engine_cfg.get('signal_rows', 50))
        self.notional = float(paper_cfg.get('notional', 100_000))
        self.closed_rows = int(paper_cfg.get('closed_rows', 50))
        self.open_threshold = float(live_cfg.get('open_threshold', 4))
        self.close_threshold = float(live_cfg.get('close_threshold', -1))
        self.trade_rows = int(live_cfg.get('trade_rows', 50))
        if self.open_threshold <= 0 or self.close_threshold >= 0:
            raise RuntimeError(
                f"live thresholds must satisfy close < 0 < open, got "
                f"open={self.open_threshold} close={self.close_threshold}"
            )

        self.machine = InstrumentStateMachine()
        self.store = InstrumentStore(self._new_record)
        self._published: Mapping[str, InstrumentSnapshot] = MappingProxyType({})
        self._publish_lock = threading.Lock()
        self._transition_listeners: List[TransitionListener] = []
        self._notification_listeners: List[NotificationListener] = []

    def add_transition_listener(self, listener: TransitionListener) -> None:
        self._transition_listeners.append(listener)

    def add_notification_listener(self, listener: NotificationListener) -> None:
        self._notification_listeners.append(listener)

    def _new_record(self, key: InstrumentKey) -> InstrumentRecord:
        if key.is_token:
            label = self.directory.lookup_symbol(key.token) or str(key.token)
            if self.directory.is_feed_symbol(label):
                # Feed-tracked symbols already own their bare label.
                label = str(key)
            order_index = self.directory.order_index(key.token)
        else:
            label = key.symbol
            order_index = None
        logger.info("Tracking new instrument %s (%s)", label, key)
        return InstrumentRecord(
            key=key,
            label=label,
            lot=self.directory.lot_size(label),
            ledger=PaperTradeLedger(label, notional=self.notional, closed_rows=self.closed_rows),
            live=LiveMirrorEngine(
                label,
                open_threshold=self.open_threshold,
                close_threshold=self.close_threshold,
                trade_rows=self.trade_rows,
            ),
            order_index=order_index,
            signal_rows=deque(maxlen=max(self.signal_rows, 1)),
        )

    def resolve_keys(self, event: Event) -> List[InstrumentKey]:
        if isinstance(event, TickEvent):
            return [InstrumentKey.for_token(event.instrument_token)]
        if isinstance(event, SignalEvent):
            if self.directory.is_feed_symbol(event.symbol):
                return [InstrumentKey.for_symbol(event.symbol.upper())]
            token = self.directory.lookup_token(event.symbol)
            return [InstrumentKey.for_token(token)] if token is not None else []
        if isinstance(event, FeedPriceEvent):
            keys = []
            if self.directory.is_feed_symbol(event.symbol):
                keys.append(InstrumentKey.for_symbol(event.symbol.upper()))
            token = self.directory.lookup_token(event.symbol)
            if token is not None:
                keys.append(InstrumentKey.for_token(token))
            return keys
        return []

    def process(self, event: Event) -> List[InstrumentSnapshot]:
        keys = self.resolve_keys(event)
        if not keys:
            metrics.record_drop('unresolved')
            logger.debug("Dropping %s event with no instrument mapping: %s", event.stream, event)
            return []
        snapshots = []
        for key in keys:
            snapshot = self.apply(key, event)
            if snapshot is not None:
                snapshots.append(snapshot)
        return snapshots

    def apply(self, key: InstrumentKey, event: Event) -> Optional[InstrumentSnapshot]:
        started = time.perf_counter()
        record = self.store.get_or_create(key)
        with record.lock:
            verdict = record.replay_verdict(event)
            if verdict is not None:
                metrics.record_drop(verdict)
                logger.debug("Dropping %s %s event for %s at %s", verdict, event.stream, record.label,
                             event.received_at_ms)
                return None
            outcome = self._step(record, event)
            if outcome is None:
                return None
            transitions, notifications = outcome
            snapshot = self._snapshot(record, event.received_at_ms)
            self._publish(snapshot)

            metrics.record_event(event.stream)
            for transition in transitions:
                for listener in self._transition_listeners:
                    listener(transition)
            for notification in notifications:
                for listener in self._notification_listeners:
                    listener(notification)

        metrics.record_processing_latency(time.perf_counter() - started)
        return snapshot

    def _step(self, record: InstrumentRecord, event: Event) -> Optional[Tuple[List[Transition], List[OrderNotification]]]:
        at_ms = event.received_at_ms
        start = record.fsm

        if isinstance(event, SignalEvent):
            direction = classify_signal(event.intent, event.side)
            if direction is None:
                metrics.record_drop('unclassified_signal')
                logger.debug("Ignoring signal for %s with intent=%r side=%r", record.label, event.intent, event.side)
                return None
            price = record.ltp
            steps = self.machine.apply_signal(start, direction, event.stop_price, price, at_ms)
            record.fsm = steps[-1]
            record.tracking = record.tracking.observe(direction, record.fsm, price)
            record.signal_rows.appendleft(
                SignalRow(
                    at_ms=at_ms,
                    direction=direction,
                    intent=event.intent,
                    side=event.side,
                    stop_price=event.stop_price,
                    alternate_signal=record.tracking.alternate_signal,
                    buy_sell_sell=record.tracking.buy_sell_sell,
                    sell_buy_buy=record.tracking.sell_buy_buy,
                )
            )
        else:
            price = event.price
            record.ltp = price
            steps = self.machine.apply_price(start, price, at_ms)
            if steps:
                record.fsm = steps[-1]
        record.mark_applied(event)

        transitions = self.machine.build_transitions(record.label, event.stream, start, steps, price, at_ms)
        for transition in transitions:
            metrics.record_transition(transition.from_state.value, transition.to_state.value)
            logger.info(
                "%s %s -> %s (%s, price=%s, threshold=%s)",
                record.label,
                transition.from_state.value,
                transition.to_state.value,
                transition.action,
                transition.price,
                transition.fsm.threshold,
            )

        notifications = self._settle_trades(record, start, price, at_ms)
        return transitions, notifications

    def _settle_trades(self, record: InstrumentRecord, start: InstrumentFsm, price: Optional[float],
                       at_ms: int) -> List[OrderNotification]:
        ledger = record.ledger
        update = ledger.apply(start.state, record.fsm.state, price, record.lot, at_ms)
        notifications: List[OrderNotification] = []
        if update.action == 'open':
            metrics.record_paper_trade('open')
            trade = update.trade
            notifications = record.live.on_paper_open(trade.entry_price, trade.quantity, trade.lot, at_ms)
        elif update.action == 'mark':
            notifications = record.live.on_pnl_update(ledger.cumulative_pnl, ledger.unrealized_pnl, price, at_ms)
        elif update.action == 'close':
            metrics.record_paper_trade('close')
            metrics.update_paper_pnl(record.label, ledger.cumulative_pnl)
            notifications = record.live.on_paper_close(update.trade.exit_price, ledger.cumulative_pnl, at_ms)

        for notification in notifications:
            metrics.record_live_trade(notification.action.value, notification.reason)
            metrics.record_order_notification(notification.action.value)
        if notifications:
            metrics.update_live_position(record.label, record.live.state == LiveState.POSITION)
        return notifications

    def _snapshot(self, record: InstrumentRecord, at_ms: int) -> InstrumentSnapshot:
        ledger = record.ledger
        live = record.live
        return InstrumentSnapshot(
            symbol=record.label,
            key=str(record.key),
            kind=record.kind,
            token=record.key.token,
            order_index=record.order_index,
            lot=record.lot,
            ltp=record.ltp,
            updated_at_ms=at_ms,
            fsm=record.fsm,
            tracking=record.tracking,
            signals=tuple(row.to_dict() for row in record.signal_rows),
            paper_open_trade=ledger.open_trade.to_dict() if ledger.open_trade else None,
            paper_trades=tuple(ledger.rows()),
            paper_cumulative_pnl=ledger.cumulative_pnl,
            paper_unrealized_pnl=ledger.unrealized_pnl,
            live_state=live.state.value,
            live_open_trade=live.open_trade.to_dict() if live.open_trade else None,
            live_trades=tuple(live.rows()),
            live_cumulative_pnl=live.cumulative_pnl,
            live_unrealized_pnl=live.unrealized_pnl,
            live_total_pnl=live.total_pnl,
            live_open_threshold=live.open_threshold,
            live_blocked_until_ms=live.blocked_until_ms,
        )

    def _publish(self, snapshot: InstrumentSnapshot) -> None:
        with self._publish_lock:
            current = dict(self._published)
            current[snapshot.symbol] = snapshot
            self._published = MappingProxyType(current)

    def published(self) -> Mapping[str, InstrumentSnapshot]:
        """Current immutable label -> snapshot mapping."""
        return self._published

    def snapshot_for(self, symbol: str) -> Optional[InstrumentSnapshot]:
        published = self._published
        if symbol in published:
            return published[symbol]
        wanted = symbol.upper()
        for label, snapshot in published.items():
            if label.upper() == wanted:
                return snapshot
        return None

    def clear(self, symbol: Optional[str] = None) -> int:
        """Reset paper and live history; state machines are untouched."""
        cleared = 0
        for record in self.store.records():
            if symbol is not None and record.label.upper() != symbol.upper():
                continue
            with record.lock:
                record.ledger.clear()
                record.live.clear(record.ledger.cumulative_pnl, record.ledger.unrealized_pnl)
                metrics.update_paper_pnl(record.label, record.ledger.cumulative_pnl)
                self._publish(self._snapshot(record, record.last_event_ms or 0))
            cleared += 1
        logger.info("Cleared trade history for %s instrument(s)", cleared)
        return cleared
