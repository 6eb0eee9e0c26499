import asyncio
import json
import os

import pytest
import pytest_asyncio

from fleet_core.delegator import DelegatorState
from fleet_core.fleet_node import DelegatorNode, NodeStatus, WorkerNode
from fleet_core.mission_message_defs import MissionStatus, status_channel
from fleet_core.task_graph import SequenceGraphEngine, build_default_provider
from fleet_core.transport import InMemoryTransport
from fleet_core.utils.config_loader import DelegatorSettings, NodeEnvironment, WorkerSettings
from fleet_core.utils.errors import FleetError, InvalidMission, NoRespondentError

FAST = dict(tick_period=0.01, claim_timeout=0.5)


@pytest.fixture
def environment(tmp_path):
    return NodeEnvironment(logs_dir=str(tmp_path / "logs"), metrics_dir=str(tmp_path / "metrics"))


@pytest_asyncio.fixture
async def fleet(environment):
    bus = InMemoryTransport()
    workers = [
        WorkerNode(WorkerSettings(worker_id, tag, plugins=("fleet_builtin",), **FAST),
                   SequenceGraphEngine(build_default_provider()), bus, environment)
        for worker_id, tag in (("robot1", "patrol-1"), ("robot2", "patrol-1"), ("robot3", "inspect-1"))
    ]
    delegator = DelegatorNode(DelegatorSettings("delegator", poll_interval=0.1, **FAST), bus, environment)
    nodes = workers + [delegator]
    for node in nodes:
        await node.start()
    yield delegator, workers
    for node in nodes:
        await node.stop()


def graph(*nodes):
    return json.dumps({"sequence": list(nodes)})


@pytest.mark.asyncio
async def test_mission_runs_to_success(fleet):
    delegator, workers = fleet

    status = await asyncio.wait_for(
        delegator.delegate("patrol-1", graph({"type": "wait", "params": {"ticks": 3}}, "succeed")),
        timeout=5.0,
    )

    assert status == MissionStatus.SUCCESS
    assert delegator.delegator.last_claimed_by in ("robot1", "robot2")
    assert not any(node.worker.busy for node in workers)
    assert workers[2].metrics.get_counter("claims_published") == 0


@pytest.mark.asyncio
async def test_failing_graph_reports_failure(fleet):
    delegator, _ = fleet

    status = await asyncio.wait_for(delegator.delegate("inspect-1", graph("fail")), timeout=5.0)

    assert status == MissionStatus.FAILURE
    assert delegator.delegator.last_claimed_by == "robot3"


@pytest.mark.asyncio
async def test_unbuildable_graph_reports_failure(fleet):
    delegator, workers = fleet

    status = await asyncio.wait_for(delegator.delegate("inspect-1", graph("teleport")), timeout=5.0)

    assert status == MissionStatus.FAILURE
    assert workers[2].metrics.get_counter("mission_build_failures") == 1


@pytest.mark.asyncio
async def test_missions_delegated_back_to_back(fleet):
    delegator, _ = fleet

    for _ in range(3):
        status = await asyncio.wait_for(delegator.delegate("patrol-1", graph("succeed")), timeout=5.0)
        assert status == MissionStatus.SUCCESS


@pytest.mark.asyncio
async def test_nobody_claims(fleet):
    delegator, _ = fleet

    with pytest.raises(NoRespondentError):
        await asyncio.wait_for(delegator.delegate("dig-1", graph("succeed")), timeout=5.0)


@pytest.mark.asyncio
async def test_cancelled_delegate_before_claim_frees_the_delegator(fleet):
    delegator, _ = fleet

    with pytest.raises(asyncio.TimeoutError):
        await asyncio.wait_for(delegator.delegate("dig-1", graph("succeed")), timeout=0.1)

    assert delegator.delegator.state == DelegatorState.ABANDONED
    status = await asyncio.wait_for(delegator.delegate("patrol-1", graph("succeed")), timeout=5.0)
    assert status == MissionStatus.SUCCESS


@pytest.mark.asyncio
async def test_cancelled_delegate_while_bound_frees_the_delegator(fleet):
    delegator, workers = fleet
    long_graph = graph({"type": "wait", "params": {"ticks": 100000}})

    with pytest.raises(asyncio.TimeoutError):
        await asyncio.wait_for(delegator.delegate("inspect-1", long_graph), timeout=0.3)

    assert workers[2].worker.busy
    assert delegator.delegator.state == DelegatorState.ABANDONED
    assert delegator.sequencer.submit not in delegator.transport.subscribers.get(status_channel("robot3"), [])
    assert delegator.metrics.get_counter("missions_abandoned") == 1

    status = await asyncio.wait_for(delegator.delegate("patrol-1", graph("succeed")), timeout=5.0)
    assert status == MissionStatus.SUCCESS
    assert delegator.delegator.last_claimed_by in ("robot1", "robot2")


@pytest.mark.asyncio
async def test_invalid_mission_raises_immediately(fleet):
    delegator, _ = fleet

    with pytest.raises(InvalidMission):
        await delegator.delegate("patrol-1", "   ")


@pytest.mark.asyncio
async def test_delegate_requires_running_node(environment):
    node = DelegatorNode(DelegatorSettings("idle-delegator"), InMemoryTransport(), environment)

    with pytest.raises(FleetError):
        await node.delegate("patrol-1", graph("succeed"))


@pytest.mark.asyncio
async def test_stop_saves_metrics_and_log_file(environment):
    node = WorkerNode(WorkerSettings("robot9", "patrol-1", **FAST),
                      SequenceGraphEngine(build_default_provider()), InMemoryTransport(), environment)
    await node.start()
    await asyncio.sleep(0.05)
    await node.stop()

    assert node.status == NodeStatus.STOPPED
    assert os.path.exists(os.path.join(environment.metrics_dir, "worker_robot9_metrics.json"))
    assert os.path.exists(os.path.join(environment.logs_dir, "worker_robot9.log"))


@pytest.mark.asyncio
async def test_run_returns_after_shutdown(environment):
    node = WorkerNode(WorkerSettings("robot8", "patrol-1", **FAST),
                      SequenceGraphEngine(build_default_provider()), InMemoryTransport(), environment)
    task = asyncio.create_task(node.run(install_signal_handlers=False))
    await asyncio.sleep(0.05)

    node.shutdown()
    await asyncio.wait_for(task, timeout=2.0)

    assert node.status == NodeStatus.STOPPED
