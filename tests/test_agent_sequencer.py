import asyncio

import pytest

from fleet_core.agent_sequencer import AgentSequencer
from fleet_core.mission_message_defs import Envelope


async def run_for(sequencer, seconds):
    task = asyncio.create_task(sequencer.run())
    await asyncio.sleep(seconds)
    sequencer.stop()
    await asyncio.wait_for(task, timeout=1.0)


@pytest.mark.asyncio
async def test_ticks_without_messages():
    ticks = []
    sequencer = AgentSequencer(lambda ch, env: None, lambda: ticks.append(1), tick_period=0.01)

    await run_for(sequencer, 0.1)

    assert sequencer.ticks == len(ticks)
    assert len(ticks) >= 3


@pytest.mark.asyncio
async def test_messages_handled_in_order_between_ticks():
    events = []
    sequencer = AgentSequencer(lambda ch, env: events.append(("msg", env.mission_id)),
                               lambda: events.append(("tick",)), tick_period=0.01)
    for mission_id in ("a", "b", "c"):
        sequencer.submit("mission.poll", Envelope.poll("delegator", mission_id))

    await run_for(sequencer, 0.05)

    handled = [e[1] for e in events if e[0] == "msg"]
    assert handled == ["a", "b", "c"]
    assert ("tick",) in events


@pytest.mark.asyncio
async def test_errors_do_not_stop_the_sequence():
    errors = []

    def failing_tick():
        raise RuntimeError("boom")

    sequencer = AgentSequencer(lambda ch, env: None, failing_tick, tick_period=0.01, on_error=errors.append)

    await run_for(sequencer, 0.05)

    assert len(errors) >= 2
    assert all(isinstance(e, RuntimeError) for e in errors)
