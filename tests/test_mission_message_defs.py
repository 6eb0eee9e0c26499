import pytest

from fleet_core.mission_message_defs import (
    POLL_CHANNEL,
    Envelope,
    MessageKind,
    Mission,
    MissionStatus,
    command_channel,
    status_channel,
)
from fleet_core.utils.errors import MessageFormatError


def test_channel_names():
    assert POLL_CHANNEL == "mission.poll"
    assert command_channel("robot1") == "robot1.command"
    assert status_channel("robot1") == "robot1.status"


def test_terminal_statuses():
    assert MissionStatus.SUCCESS.is_terminal
    assert MissionStatus.FAILURE.is_terminal
    assert not MissionStatus.RUNNING.is_terminal
    assert not MissionStatus.IDLE.is_terminal


def test_poll_wire_shape_has_only_required_fields():
    assert Envelope.poll("delegator", "patrol-1").to_dict() == {
        "kind": "POLL", "sender_id": "delegator", "mission_id": "patrol-1",
    }


def test_command_carries_the_bound_mission():
    mission = Mission("patrol-1", '{"sequence": ["succeed"]}', ("fleet_builtin",)).bound_to("robot1")
    data = Envelope.command("delegator", mission).to_dict()

    assert data["kind"] == "COMMAND"
    assert data["target_worker_id"] == "robot1"
    assert data["required_plugins"] == ["fleet_builtin"]

    decoded = Envelope.from_dict(data)
    assert decoded.mission() == mission


def test_status_report_decodes_status_enum():
    env = Envelope.from_dict({"kind": "STATUS", "sender_id": "robot1", "mission_id": "m", "status": "RUNNING"})
    assert env.status is MissionStatus.RUNNING


def test_mission_only_available_on_commands():
    with pytest.raises(MessageFormatError):
        Envelope.claim("robot1", "m").mission()


@pytest.mark.parametrize("payload", [
    ["not", "a", "dict"],
    {"kind": "POLL", "sender_id": "d"},
    {"kind": "HELLO", "sender_id": "d", "mission_id": "m"},
    {"kind": "POLL", "sender_id": 7, "mission_id": "m"},
    {"kind": "STATUS", "sender_id": "w", "mission_id": "m"},
    {"kind": "STATUS", "sender_id": "w", "mission_id": "m", "status": "DONE"},
    {"kind": "COMMAND", "sender_id": "d", "mission_id": "m", "required_plugins": "fleet_builtin"},
])
def test_malformed_payloads_are_rejected(payload):
    with pytest.raises(MessageFormatError):
        Envelope.from_dict(payload)
