import pytest

from conftest import SIMPLE_GRAPH
from fleet_core.delegator import DelegatorState, MissionDelegator
from fleet_core.mission_message_defs import (
    POLL_CHANNEL,
    Envelope,
    MessageKind,
    MissionStatus,
    command_channel,
    status_channel,
)
from fleet_core.utils.errors import InvalidMission, MissionError, NoRespondentError
from fleet_core.utils.metrics import MetricsCollector


@pytest.fixture
def metrics():
    return MetricsCollector("delegator_test")


@pytest.fixture
def delegator(transport, clock, metrics):
    return MissionDelegator("delegator", transport, claim_timeout=5.0, poll_interval=0.5,
                            clock=clock, metrics=metrics)


def bind(delegator, worker_id="robot1", mission_id="patrol-1"):
    delegator.start_mission(mission_id, SIMPLE_GRAPH, ["fleet_builtin"])
    assert delegator.on_claim(Envelope.claim(worker_id, mission_id))


def test_start_mission_broadcasts_poll(delegator, transport):
    mission = delegator.start_mission("patrol-1", SIMPLE_GRAPH, ["fleet_builtin"])

    assert delegator.state == DelegatorState.AWAITING_CLAIM
    assert mission.required_plugins == ("fleet_builtin",)
    assert transport.published == [(POLL_CHANNEL, Envelope.poll("delegator", "patrol-1"))]
    assert delegator.handle_envelope in transport.subscriptions[POLL_CHANNEL]


@pytest.mark.parametrize("mission_id, graph_definition", [("", SIMPLE_GRAPH), ("patrol-1", ""), ("patrol-1", "  \n")])
def test_invalid_missions_are_rejected_before_polling(delegator, transport, mission_id, graph_definition):
    with pytest.raises(InvalidMission):
        delegator.start_mission(mission_id, graph_definition)

    assert transport.published == []
    assert delegator.state == DelegatorState.IDLE


def test_one_round_at_a_time(delegator):
    delegator.start_mission("patrol-1", SIMPLE_GRAPH)

    with pytest.raises(MissionError):
        delegator.start_mission("inspect-1", SIMPLE_GRAPH)


def test_first_claim_wins(delegator, transport, metrics):
    delegator.start_mission("patrol-1", SIMPLE_GRAPH, ["fleet_builtin"])

    assert delegator.on_claim(Envelope.claim("robot1", "patrol-1"))
    assert not delegator.on_claim(Envelope.claim("robot2", "patrol-1"))

    commands = transport.sent(MessageKind.COMMAND)
    assert len(commands) == 1
    assert transport.sent(MessageKind.COMMAND, channel=command_channel("robot1")) == commands
    assert commands[0].target_worker_id == "robot1"
    assert commands[0].required_plugins == ("fleet_builtin",)
    assert delegator.state == DelegatorState.BOUND
    assert delegator.claimed_by == "robot1"
    assert delegator.binding.bound_at == 100.0
    assert delegator.handle_envelope in transport.subscriptions[status_channel("robot1")]
    assert metrics.get_counter("claims_accepted") == 1
    assert metrics.get_counter("claims_ignored") == 1


def test_claim_for_another_mission_is_ignored(delegator, transport):
    delegator.start_mission("patrol-1", SIMPLE_GRAPH)

    assert not delegator.on_claim(Envelope.claim("robot3", "inspect-1"))
    assert delegator.state == DelegatorState.AWAITING_CLAIM
    assert transport.sent(MessageKind.COMMAND) == []


def test_claim_while_idle_is_ignored(delegator, transport):
    assert not delegator.on_claim(Envelope.claim("robot1", "patrol-1"))
    assert transport.published == []


def test_progress_then_completion(delegator, transport):
    bind(delegator)

    assert delegator.on_status(Envelope.status_report("robot1", "patrol-1", MissionStatus.RUNNING)) is None
    assert delegator.state == DelegatorState.BOUND
    assert delegator.binding.last_status == MissionStatus.RUNNING

    result = delegator.on_status(Envelope.status_report("robot1", "patrol-1", MissionStatus.SUCCESS))

    assert result == MissionStatus.SUCCESS
    assert delegator.state == DelegatorState.COMPLETE
    assert delegator.last_result == MissionStatus.SUCCESS
    assert delegator.last_claimed_by == "robot1"
    assert delegator.binding is None
    assert status_channel("robot1") not in transport.subscriptions


def test_failure_is_terminal(delegator):
    bind(delegator)

    assert delegator.on_status(Envelope.status_report("robot1", "patrol-1", MissionStatus.FAILURE)) == MissionStatus.FAILURE
    assert delegator.state == DelegatorState.COMPLETE


@pytest.mark.parametrize("envelope", [
    Envelope.status_report("robot2", "patrol-1", MissionStatus.SUCCESS),
    Envelope.status_report("robot1", "inspect-1", MissionStatus.SUCCESS),
])
def test_status_from_outside_the_binding_is_stale(delegator, metrics, envelope):
    bind(delegator)

    assert delegator.on_status(envelope) is None
    assert delegator.state == DelegatorState.BOUND
    assert metrics.get_counter("stale_messages") == 1


def test_late_status_after_completion_is_dropped(delegator, metrics):
    bind(delegator)
    delegator.on_status(Envelope.status_report("robot1", "patrol-1", MissionStatus.SUCCESS))

    assert delegator.on_status(Envelope.status_report("robot1", "patrol-1", MissionStatus.FAILURE)) is None
    assert delegator.last_result == MissionStatus.SUCCESS
    assert metrics.get_counter("stale_messages") == 1


def test_poll_is_rebroadcast_while_awaiting_claim(delegator, transport, clock):
    delegator.start_mission("patrol-1", SIMPLE_GRAPH)

    clock.advance(0.2)
    delegator.tick()
    assert len(transport.sent(MessageKind.POLL)) == 1

    clock.advance(0.6)
    delegator.tick()
    assert len(transport.sent(MessageKind.POLL)) == 2


def test_no_claim_abandons_the_round(delegator, transport, clock, metrics):
    delegator.start_mission("patrol-1", SIMPLE_GRAPH)
    clock.advance(5.0)

    with pytest.raises(NoRespondentError):
        delegator.tick()

    assert delegator.state == DelegatorState.ABANDONED
    assert delegator.binding is None
    assert metrics.get_counter("missions_abandoned") == 1
    # A claim arriving after the deadline binds nobody
    assert not delegator.on_claim(Envelope.claim("robot1", "patrol-1"))
    assert transport.sent(MessageKind.COMMAND) == []


def test_bound_round_never_times_out(delegator, clock):
    bind(delegator)
    clock.advance(60.0)

    delegator.tick()

    assert delegator.state == DelegatorState.BOUND


def test_new_round_after_completion_or_abandonment(delegator, clock):
    bind(delegator)
    delegator.on_status(Envelope.status_report("robot1", "patrol-1", MissionStatus.SUCCESS))
    delegator.start_mission("inspect-1", SIMPLE_GRAPH)
    assert delegator.state == DelegatorState.AWAITING_CLAIM
    assert delegator.last_result is None

    clock.advance(5.0)
    with pytest.raises(NoRespondentError):
        delegator.tick()
    delegator.start_mission("inspect-1", SIMPLE_GRAPH)
    assert delegator.state == DelegatorState.AWAITING_CLAIM


def test_abandon_while_awaiting_claim(delegator, transport, clock, metrics):
    delegator.start_mission("dig-1", SIMPLE_GRAPH)

    assert delegator.abandon()

    assert delegator.state == DelegatorState.ABANDONED
    assert delegator.binding is None
    assert metrics.get_counter("missions_abandoned") == 1
    clock.advance(1.0)
    delegator.tick()
    assert len(transport.sent(MessageKind.POLL)) == 1
    assert not delegator.on_claim(Envelope.claim("robot1", "dig-1"))
    assert transport.sent(MessageKind.COMMAND) == []

    delegator.start_mission("patrol-1", SIMPLE_GRAPH)
    assert delegator.state == DelegatorState.AWAITING_CLAIM


def test_abandon_while_bound(delegator, transport, metrics):
    bind(delegator)

    assert delegator.abandon()

    assert delegator.state == DelegatorState.ABANDONED
    assert delegator.claimed_by == ""
    assert status_channel("robot1") not in transport.subscriptions
    assert delegator.on_status(Envelope.status_report("robot1", "patrol-1", MissionStatus.SUCCESS)) is None
    assert delegator.last_result is None

    bind(delegator, worker_id="robot2")
    assert delegator.claimed_by == "robot2"


def test_abandon_without_open_round_is_a_noop(delegator, metrics):
    assert not delegator.abandon()
    bind(delegator)
    delegator.on_status(Envelope.status_report("robot1", "patrol-1", MissionStatus.SUCCESS))

    assert not delegator.abandon()
    assert delegator.state == DelegatorState.COMPLETE
    assert metrics.get_counter("missions_abandoned") == 0


def test_handle_envelope_routes_claims_and_statuses(delegator):
    delegator.start_mission("patrol-1", SIMPLE_GRAPH)

    delegator.handle_envelope(POLL_CHANNEL, Envelope.poll("delegator", "patrol-1"))
    assert delegator.state == DelegatorState.AWAITING_CLAIM

    delegator.handle_envelope(POLL_CHANNEL, Envelope.claim("robot1", "patrol-1"))
    assert delegator.state == DelegatorState.BOUND

    delegator.handle_envelope(status_channel("robot1"),
                              Envelope.status_report("robot1", "patrol-1", MissionStatus.SUCCESS))
    assert delegator.state == DelegatorState.COMPLETE
