import asyncio
import sys

sys.path.insert(0, '.')

import pytest

from ingest.replay import ReplaySimulator
from orchestration.engine import DecisionEngine
from tests.scenario_fixtures import SCENARIO_FIXTURES, make_config, make_directory


@pytest.mark.parametrize('fixture', SCENARIO_FIXTURES, ids=lambda f: f.fixture_id)
def test_scenario_fixture_replays(fixture):
    async def _run():
        engine = DecisionEngine(make_directory(), make_config(notional=fixture.notional))
        transitions = []
        engine.add_transition_listener(transitions.append)
        sim = ReplaySimulator(engine)
        sim.load_from_list(fixture.events)
        await sim.replay(realtime=False)
        fixture.assertion(engine, transitions)

    asyncio.run(_run())
