import sys

sys.path.insert(0, '.')

import pytest

from strategy.instrument_fsm import InstrumentState
from strategy.paper_ledger import LedgerInvariantError, PaperTradeLedger, position_quantity


def test_position_quantity_rounds_up():
    assert position_quantity(100_000, 25, 101) == 40
    assert position_quantity(1_000, 1, 100) == 10


def test_mark_and_close_pnl():
    ledger = PaperTradeLedger('BTCUSDT', notional=1_000)
    update = ledger.apply(InstrumentState.AWAITING_ENTRY, InstrumentState.IN_POSITION, 100.0, 1, 0)
    assert update.action == 'open'
    assert update.trade.quantity == 10

    update = ledger.apply(InstrumentState.IN_POSITION, InstrumentState.IN_POSITION, 105.0, 1, 1)
    assert update.action == 'mark'
    assert ledger.unrealized_pnl == pytest.approx(50.0)
    assert update.trade.current_price == 105.0

    update = ledger.apply(InstrumentState.IN_POSITION, InstrumentState.BLOCKED, 103.0, 1, 2)
    assert update.action == 'close'
    assert update.trade.realized_pnl == pytest.approx(30.0)
    assert ledger.cumulative_pnl == pytest.approx(30.0)
    assert ledger.unrealized_pnl == 0.0
    assert ledger.open_trade is None


def test_non_position_changes_leave_ledger_alone():
    ledger = PaperTradeLedger('X')
    update = ledger.apply(InstrumentState.BLOCKED, InstrumentState.AWAITING_ENTRY, 100.0, 1, 0)
    assert update.action is None
    assert ledger.rows() == []


def test_second_open_is_rejected():
    ledger = PaperTradeLedger('X')
    ledger.open(100.0, 1, 0)
    with pytest.raises(LedgerInvariantError):
        ledger.open(101.0, 1, 1)


def test_close_without_open_trade_is_rejected():
    ledger = PaperTradeLedger('X')
    with pytest.raises(LedgerInvariantError):
        ledger.close(100.0, 0)


def test_close_without_price_uses_last_mark():
    ledger = PaperTradeLedger('X', notional=1_000)
    ledger.open(100.0, 1, 0)
    ledger.mark(104.0)
    trade = ledger.close(None, 5)
    assert trade.exit_price == 104.0
    assert trade.realized_pnl == pytest.approx(40.0)


def test_lot_scales_pnl():
    ledger = PaperTradeLedger('NIFTY', notional=100_000)
    trade = ledger.open(200.0, 50, 0)
    assert trade.quantity == 10
    assert ledger.mark(210.0) == pytest.approx(5_000.0)


def test_rows_and_clear_keep_open_trade():
    ledger = PaperTradeLedger('X', notional=1_000, closed_rows=2)
    for i in range(3):
        ledger.open(100.0, 1, i * 10)
        ledger.close(101.0, i * 10 + 1)
    assert len(ledger.closed_trades) == 2
    ledger.open(100.0, 1, 100)
    rows = ledger.rows()
    assert rows[0]['closed_at_ms'] is None
    assert len(rows) == 3

    ledger.clear()
    assert ledger.cumulative_pnl == 0.0
    assert ledger.closed_trades == []
    assert ledger.open_trade is not None
