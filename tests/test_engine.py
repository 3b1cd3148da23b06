import sys

sys.path.insert(0, '.')

import pytest

from ingest.events import FeedPriceEvent, InstrumentKey, SignalEvent, TickEvent
from orchestration.engine import DecisionEngine
from strategy.execution_types import OrderAction
from strategy.instrument_fsm import InstrumentState
from strategy.paper_ledger import LedgerInvariantError
from tests.scenario_fixtures import make_config, make_directory


def _engine(notional=100_000):
    return DecisionEngine(make_directory(), make_config(notional=notional))


def _signal(symbol, at_ms, intent='BUY', stop=None):
    return SignalEvent(symbol=symbol, received_at_ms=at_ms, intent=intent, stop_price=stop)


def _feed(price, at_ms, symbol='BTCUSDT'):
    return FeedPriceEvent(symbol=symbol, price=price, received_at_ms=at_ms)


def test_resolve_keys_routes_each_stream():
    engine = _engine()
    assert engine.resolve_keys(TickEvent(101, 10.0, 0)) == [InstrumentKey.for_token(101)]
    assert engine.resolve_keys(_signal('NIFTY240222000CE', 0)) == [InstrumentKey.for_token(101)]
    assert engine.resolve_keys(_signal('NIFTY24FEB22000CE', 0)) == [InstrumentKey.for_token(101)]
    assert engine.resolve_keys(_signal('btcusdt', 0)) == [InstrumentKey.for_symbol('BTCUSDT')]
    assert engine.resolve_keys(_feed(1.0, 0)) == [InstrumentKey.for_symbol('BTCUSDT')]
    assert engine.resolve_keys(_feed(1.0, 0, symbol='BANKNIFTY24FEB46000PE')) == [InstrumentKey.for_token(202)]
    assert engine.resolve_keys(_signal('UNKNOWN', 0)) == []


def test_unresolved_signal_is_dropped():
    engine = _engine()
    assert engine.process(_signal('UNKNOWN', 0, stop=100.0)) == []
    assert len(engine.store) == 0


def test_cooldown_reactivation_through_engine():
    engine = _engine()
    transitions = []
    engine.add_transition_listener(transitions.append)

    engine.process(_signal('BTCUSDT', 0, stop=100.0))
    engine.process(_feed(99.0, 1))
    snapshot = engine.published()['BTCUSDT']
    assert snapshot.fsm.state == InstrumentState.BLOCKED
    assert snapshot.fsm.last_blocked_at_ms == 1

    engine.process(_feed(150.0, 2))
    assert engine.published()['BTCUSDT'].fsm.state == InstrumentState.BLOCKED

    engine.process(_feed(150.0, 60_000))
    snapshot = engine.published()['BTCUSDT']
    assert snapshot.fsm.state == InstrumentState.IN_POSITION
    assert [(t.from_state, t.to_state) for t in transitions[-2:]] == [
        (InstrumentState.BLOCKED, InstrumentState.AWAITING_ENTRY),
        (InstrumentState.AWAITING_ENTRY, InstrumentState.IN_POSITION),
    ]
    assert snapshot.paper_open_trade['entry_price'] == 150.0
    assert snapshot.paper_open_trade['quantity'] == 667


def test_redelivery_and_stale_events_are_dropped():
    engine = _engine()
    engine.process(_signal('BTCUSDT', 0, stop=100.0))
    entry = _feed(101.0, 1)
    assert len(engine.process(entry)) == 1
    assert engine.process(entry) == []
    assert engine.process(_feed(50.0, 0)) == []

    snapshot = engine.published()['BTCUSDT']
    assert snapshot.fsm.state == InstrumentState.IN_POSITION
    assert len([row for row in snapshot.paper_trades if row['closed_at_ms'] is None]) == 1

    # Same timestamp, different content is a distinct event
    assert len(engine.process(_feed(99.0, 1))) == 1
    assert engine.published()['BTCUSDT'].fsm.state == InstrumentState.BLOCKED


def test_signal_and_price_at_same_timestamp():
    engine = _engine()
    engine.process(_signal('BTCUSDT', 5, stop=100.0))
    engine.process(_feed(101.0, 5))
    assert engine.published()['BTCUSDT'].fsm.state == InstrumentState.IN_POSITION


def test_sell_signal_threshold_uses_tick_price():
    engine = _engine()
    engine.process(TickEvent(101, 50.0, 0))
    engine.process(_signal('NIFTY240222000CE', 1, intent='SELL'))
    snapshot = engine.published()['NIFTY24FEB22000CE']
    assert snapshot.fsm.state == InstrumentState.AWAITING_ENTRY
    assert snapshot.fsm.threshold == 50.0
    assert snapshot.kind == 'token'
    assert snapshot.order_index == 0
    assert snapshot.lot == 50


def test_unclassified_signal_changes_nothing():
    engine = _engine()
    assert engine.process(_signal('BTCUSDT', 0, intent='HOLD', stop=100.0)) == []
    assert 'BTCUSDT' not in engine.published()


def test_live_orders_follow_paper_pnl():
    engine = _engine(notional=1_000)
    notifications = []
    engine.add_notification_listener(notifications.append)

    engine.process(_signal('BTCUSDT', 0, stop=100.0))
    engine.process(_feed(101.0, 1))
    engine.process(_feed(101.5, 2))
    assert [n.action for n in notifications] == [OrderAction.ENTRY]

    engine.process(_feed(100.95, 3))
    assert engine.published()['BTCUSDT'].live_state == 'POSITION'

    engine.process(_feed(99.0, 4))
    assert [(n.action, n.reason) for n in notifications] == [
        (OrderAction.ENTRY, 'threshold_crossed'),
        (OrderAction.EXIT, 'paper_close'),
    ]
    snapshot = engine.published()['BTCUSDT']
    assert snapshot.paper_cumulative_pnl == pytest.approx(-20.0)
    assert snapshot.live_state == 'NO_POSITION'
    assert snapshot.live_cumulative_pnl == pytest.approx(-25.0)


def test_published_mapping_is_replaced_not_mutated():
    engine = _engine()
    before = engine.published()
    engine.process(_signal('BTCUSDT', 0, stop=100.0))
    after = engine.published()
    assert 'BTCUSDT' not in before
    assert after['BTCUSDT'].fsm.state == InstrumentState.AWAITING_ENTRY
    with pytest.raises(TypeError):
        after['BTCUSDT'] = None

    engine.process(_feed(101.0, 1))
    assert after['BTCUSDT'].fsm.state == InstrumentState.AWAITING_ENTRY
    assert engine.published()['BTCUSDT'].fsm.state == InstrumentState.IN_POSITION


def test_clear_resets_history_but_not_fsm():
    engine = _engine(notional=1_000)
    engine.process(_signal('BTCUSDT', 0, stop=100.0))
    engine.process(_feed(101.0, 1))
    engine.process(_feed(99.0, 2))
    assert engine.published()['BTCUSDT'].paper_cumulative_pnl == pytest.approx(-20.0)

    assert engine.clear('btcusdt') == 1
    snapshot = engine.published()['BTCUSDT']
    assert snapshot.paper_cumulative_pnl == 0.0
    assert snapshot.paper_trades == ()
    assert snapshot.live_total_pnl == 0.0
    assert snapshot.fsm.state == InstrumentState.BLOCKED
    assert engine.clear('NOPE') == 0


def test_signal_exit_closes_paper_trade_at_last_price():
    engine = _engine(notional=1_000)
    notifications = []
    engine.add_notification_listener(notifications.append)

    engine.process(_signal('BTCUSDT', 0, stop=100.0))
    engine.process(_feed(101.0, 1))
    engine.process(_feed(105.0, 2))
    assert engine.published()['BTCUSDT'].live_state == 'POSITION'

    engine.process(_signal('BTCUSDT', 3, intent='SELL'))
    snapshot = engine.published()['BTCUSDT']
    assert snapshot.fsm.state == InstrumentState.AWAITING_ENTRY
    assert snapshot.fsm.threshold == 105.0
    assert snapshot.paper_open_trade is None
    # qty = ceil(1000 / 101) = 10
    assert snapshot.paper_cumulative_pnl == pytest.approx((105.0 - 101.0) * 10)
    assert snapshot.paper_unrealized_pnl == 0.0
    assert snapshot.live_state == 'NO_POSITION'
    assert [(n.action, n.reason, n.reference_price) for n in notifications] == [
        (OrderAction.ENTRY, 'threshold_crossed', 105.0),
        (OrderAction.EXIT, 'paper_close', 105.0),
    ]


def test_clear_resyncs_live_drivers_with_ledger():
    engine = _engine(notional=1_000)
    notifications = []
    engine.add_notification_listener(notifications.append)

    engine.process(_signal('BTCUSDT', 0, stop=100.0))
    engine.process(_feed(101.0, 1))
    engine.process(_feed(110.0, 2))
    engine.process(_signal('BTCUSDT', 3, intent='SELL'))
    assert engine.published()['BTCUSDT'].live_total_pnl == pytest.approx(90.0)
    assert len(notifications) == 2

    engine.clear('BTCUSDT')
    snapshot = engine.published()['BTCUSDT']
    assert snapshot.paper_cumulative_pnl == 0.0
    assert snapshot.live_total_pnl == 0.0

    # Re-entry on the next price: total PnL is back to zero, so live waits
    engine.process(_feed(111.0, 4))
    snapshot = engine.published()['BTCUSDT']
    assert snapshot.paper_open_trade is not None
    assert snapshot.live_state == 'NO_POSITION'
    assert len(notifications) == 2


def test_ledger_invariant_violation_propagates():
    engine = _engine()
    engine.process(_signal('BTCUSDT', 0, stop=100.0))
    record = engine.store.get(InstrumentKey.for_symbol('BTCUSDT'))
    record.ledger.open(90.0, 1, 0)
    with pytest.raises(LedgerInvariantError):
        engine.process(_feed(101.0, 1))


def test_invalid_thresholds_fail_at_construction():
    with pytest.raises(RuntimeError):
        DecisionEngine(make_directory(), make_config(live={'open_threshold': -1}))
