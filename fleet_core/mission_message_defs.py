# Mission Delegation Message Definitions
# Version: 1.0

# Every message on the mission bus is an envelope. Required keys are
# kind, sender_id and mission_id; the rest depend on the kind.

# --- POLL ---
# Channel: mission.poll (broadcast)
# Sender: delegator
# Payload: {"kind": "POLL", "sender_id": "string", "mission_id": "string"}
# Purpose: Asks every worker whether it can take mission_id.

# --- CLAIM ---
# Channel: mission.poll (broadcast)
# Sender: worker
# Payload: {"kind": "CLAIM", "sender_id": "string (worker id)", "mission_id": "string"}
# Purpose: Worker asserts it is eligible and willing. First claim wins.

# --- COMMAND ---
# Channel: <worker_id>.command (unicast)
# Sender: delegator
# Payload: {
#   "kind": "COMMAND",
#   "sender_id": "string (delegator id)",
#   "mission_id": "string",
#   "target_worker_id": "string (bound worker id)",
#   "graph_definition": "string (opaque, consumed by the task-graph engine)",
#   "required_plugins": ["string"]   # ordered; empty means worker defaults
# }
# Purpose: Transfers the mission body to the bound worker.

# --- STATUS ---
# Channel: <worker_id>.status (unicast)
# Sender: worker
# Payload: {
#   "kind": "STATUS",
#   "sender_id": "string (worker id)",
#   "mission_id": "string (empty for IDLE liveness reports)",
#   "status": "IDLE | RUNNING | SUCCESS | FAILURE"
# }
# Purpose: Periodic progress report, one per worker tick.

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, Optional, Sequence, Tuple

from fleet_core.utils.errors import MessageFormatError

POLL_CHANNEL = "mission.poll"

class MessageKind(Enum):
    POLL = "POLL"
    CLAIM = "CLAIM"
    COMMAND = "COMMAND"
    STATUS = "STATUS"

class MissionStatus(Enum):
    IDLE = "IDLE"
    RUNNING = "RUNNING"
    SUCCESS = "SUCCESS"
    FAILURE = "FAILURE"

    @property
    def is_terminal(self) -> bool:
        return self in (MissionStatus.SUCCESS, MissionStatus.FAILURE)


def command_channel(worker_id: str) -> str:
    return f"{worker_id}.command"


def status_channel(worker_id: str) -> str:
    return f"{worker_id}.status"


@dataclass(frozen=True)
class Mission:
    """A unit of delegable work. Immutable for the lifetime of a handshake round."""
    mission_id: str
    graph_definition: str
    required_plugins: Tuple[str, ...] = ()
    target_worker_id: str = ""

    def bound_to(self, worker_id: str) -> 'Mission':
        return replace(self, target_worker_id=worker_id)


@dataclass(frozen=True)
class Envelope:
    kind: MessageKind
    sender_id: str
    mission_id: str
    target_worker_id: Optional[str] = None
    status: Optional[MissionStatus] = None
    graph_definition: Optional[str] = None
    required_plugins: Optional[Tuple[str, ...]] = field(default=None)

    @classmethod
    def poll(cls, sender_id: str, mission_id: str) -> 'Envelope':
        return cls(MessageKind.POLL, sender_id, mission_id)

    @classmethod
    def claim(cls, sender_id: str, mission_id: str) -> 'Envelope':
        return cls(MessageKind.CLAIM, sender_id, mission_id)

    @classmethod
    def command(cls, sender_id: str, mission: Mission) -> 'Envelope':
        return cls(
            MessageKind.COMMAND,
            sender_id,
            mission.mission_id,
            target_worker_id=mission.target_worker_id,
            graph_definition=mission.graph_definition,
            required_plugins=tuple(mission.required_plugins),
        )

    @classmethod
    def status_report(cls, sender_id: str, mission_id: str, status: MissionStatus) -> 'Envelope':
        return cls(MessageKind.STATUS, sender_id, mission_id, status=status)

    def mission(self) -> Mission:
        """Rebuilds the Mission carried by a COMMAND envelope."""
        if self.kind != MessageKind.COMMAND:
            raise MessageFormatError(f"{self.kind.value} envelope carries no mission")
        return Mission(
            mission_id=self.mission_id,
            graph_definition=self.graph_definition or "",
            required_plugins=tuple(self.required_plugins or ()),
            target_worker_id=self.target_worker_id or "",
        )

    def to_dict(self) -> Dict[str, Any]:
        """Wire shape. Optional fields are only present when set."""
        data: Dict[str, Any] = {
            "kind": self.kind.value,
            "sender_id": self.sender_id,
            "mission_id": self.mission_id,
        }
        if self.target_worker_id is not None:
            data["target_worker_id"] = self.target_worker_id
        if self.status is not None:
            data["status"] = self.status.value
        if self.graph_definition is not None:
            data["graph_definition"] = self.graph_definition
        if self.required_plugins is not None:
            data["required_plugins"] = list(self.required_plugins)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Envelope':
        if not isinstance(data, dict):
            raise MessageFormatError(f"Envelope must be a JSON object, got {type(data).__name__}")
        try:
            kind = MessageKind(data["kind"])
            sender_id = data["sender_id"]
            mission_id = data["mission_id"]
        except KeyError as e:
            raise MessageFormatError(f"Envelope missing required field {e}", details={"payload": data})
        except ValueError:
            raise MessageFormatError(f"Unknown envelope kind: {data.get('kind')!r}", details={"payload": data})
        if not isinstance(sender_id, str) or not isinstance(mission_id, str):
            raise MessageFormatError("sender_id and mission_id must be strings", details={"payload": data})

        status = data.get("status")
        if status is not None:
            try:
                status = MissionStatus(status)
            except ValueError:
                raise MessageFormatError(f"Unknown mission status: {status!r}", details={"payload": data})
        elif kind == MessageKind.STATUS:
            raise MessageFormatError("STATUS envelope without status", details={"payload": data})

        plugins = data.get("required_plugins")
        if plugins is not None:
            if isinstance(plugins, str) or not isinstance(plugins, Sequence):
                raise MessageFormatError("required_plugins must be a list of names", details={"payload": data})
            plugins = tuple(str(p) for p in plugins)

        return cls(
            kind=kind,
            sender_id=sender_id,
            mission_id=mission_id,
            target_worker_id=data.get("target_worker_id"),
            status=status,
            graph_definition=data.get("graph_definition"),
            required_plugins=plugins,
        )
