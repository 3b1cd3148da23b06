#!/usr/bin/env python
import asyncio
import json
import sys

sys.path.insert(0, '.')

from ingest.replay import ReplaySimulator
from orchestration.engine import DecisionEngine
from strategy.instrument_fsm import InstrumentState
from tests.scenario_fixtures import make_config, make_directory


def test_replay_orders_records_before_applying():
    async def _run():
        engine = DecisionEngine(make_directory(), make_config())
        sim = ReplaySimulator(engine)
        # Out of file order: the price arrives first but is stamped after the signal
        sim.load_from_list([
            {'ts_ms': 10, 'type': 'ticks', 'payload': {'instrument_token': 101, 'last_price': 210}},
            {'ts_ms': 10, 'type': 'webhook', 'payload': {'symbol': 'NIFTY240222000CE', 'intent': 'BUY', 'stopPrice': 200}},
            {'type': 'ticks'},
            {'ts_ms': 5},
        ])
        assert [e.stream for e in sim.events] == ['signal', 'tick']
        applied = await sim.replay(realtime=False)
        assert applied == 2
        snapshot = engine.published()['NIFTY24FEB22000CE']
        assert snapshot.fsm.state == InstrumentState.IN_POSITION

    asyncio.run(_run())


def test_replay_from_jsonl(tmp_path):
    path = tmp_path / 'events.jsonl'
    lines = [
        {'ts_ms': 0, 'type': 'webhook', 'payload': {'symbol': 'BTCUSDT', 'intent': 'BUY', 'stopPrice': 100}},
        {'ts_ms': 1, 'type': 'binance:ws', 'payload': {'symbol': 'BTCUSDT', 'price': 99}},
    ]
    path.write_text('\n'.join(json.dumps(line) for line in lines) + '\n\nnot json\n')

    async def _run():
        engine = DecisionEngine(make_directory(), make_config())
        sim = ReplaySimulator(engine)
        sim.load_from_jsonl(path)
        await sim.replay()
        return engine

    engine = asyncio.run(_run())
    assert engine.published()['BTCUSDT'].fsm.state == InstrumentState.BLOCKED


def test_payload_timestamp_wins_over_record_timestamp():
    sim = ReplaySimulator(DecisionEngine(make_directory(), make_config()))
    sim.load_from_list([
        {'ts_ms': 99, 'type': 'binance:ws', 'payload': {'symbol': 'BTCUSDT', 'price': 1, 'timestamp': 7}},
    ])
    assert sim.events[0].received_at_ms == 7
