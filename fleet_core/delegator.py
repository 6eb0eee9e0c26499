"""
Delegator side of the mission handshake.

One MissionDelegator runs one handshake round at a time:

    IDLE -> AWAITING_CLAIM -> BOUND -> COMPLETE
                     \\-> ABANDONED (no claim before claim_timeout)

The first CLAIM for the pending mission binds its sender; the mission body is
then sent on that worker's command channel only. All state changes happen in
handle_envelope() and tick(), which the owning node calls from a single
sequence, so no locking is needed.
"""

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional, Sequence

from fleet_core.mission_message_defs import (
    POLL_CHANNEL,
    Envelope,
    MessageKind,
    Mission,
    MissionStatus,
    command_channel,
    status_channel,
)
from fleet_core.transport import EnvelopeCallback, MissionTransport
from fleet_core.utils.errors import InvalidMission, MissionError, NoRespondentError, StaleMessage

DEFAULT_CLAIM_TIMEOUT = 5.0
DEFAULT_POLL_INTERVAL = 0.5


class DelegatorState(Enum):
    IDLE = "idle"
    AWAITING_CLAIM = "awaiting_claim"
    BOUND = "bound"
    COMPLETE = "complete"
    ABANDONED = "abandoned"


@dataclass
class WorkerBinding:
    """Delegator-side record of one handshake round."""
    mission: Mission
    polled_at: float
    last_poll_at: float
    claimed_by: str = ""
    bound_at: Optional[float] = None
    last_status: Optional[MissionStatus] = None


class MissionDelegator:

    def __init__(self, delegator_id: str, transport: MissionTransport,
                 inbox: Optional[EnvelopeCallback] = None,
                 claim_timeout: float = DEFAULT_CLAIM_TIMEOUT,
                 poll_interval: float = DEFAULT_POLL_INTERVAL,
                 clock: Callable[[], float] = time.monotonic,
                 logger=None, metrics=None):
        """
        Args:
            delegator_id: sender_id stamped on every envelope this delegator publishes
            transport: bus used for polls, commands and status subscriptions
            inbox: where subscribed envelopes are delivered; defaults to
                handle_envelope (direct, synchronous dispatch)
            claim_timeout: seconds to wait for a claim before abandoning the round
            poll_interval: seconds between poll re-broadcasts while awaiting a claim
            clock: monotonic time source, also used for bound_at
        """
        self.delegator_id = delegator_id
        self.transport = transport
        self.inbox = inbox or self.handle_envelope
        self.claim_timeout = claim_timeout
        self.poll_interval = poll_interval
        self.clock = clock
        self.logger = logger or logging.getLogger(f"MissionDelegator_{delegator_id}")
        self.metrics = metrics

        self.state = DelegatorState.IDLE
        self.binding: Optional[WorkerBinding] = None
        self.last_result: Optional[MissionStatus] = None
        self.last_claimed_by = ""

        self.transport.subscribe(POLL_CHANNEL, self.inbox)

    def start_mission(self, mission_id: str, graph_definition: str,
                      required_plugins: Sequence[str] = ()) -> Mission:
        """Open a handshake round by broadcasting a POLL for mission_id."""
        if not mission_id:
            raise InvalidMission("mission_id must not be empty")
        if not graph_definition or not graph_definition.strip():
            raise InvalidMission(f"Mission {mission_id} has an empty graph definition")
        if self.state in (DelegatorState.AWAITING_CLAIM, DelegatorState.BOUND):
            raise MissionError(
                f"Round for mission {self.binding.mission.mission_id} still {self.state.value}",
                details={"state": self.state.value},
            )

        mission = Mission(
            mission_id=mission_id,
            graph_definition=graph_definition,
            required_plugins=tuple(required_plugins),
        )
        now = self.clock()
        self.binding = WorkerBinding(mission=mission, polled_at=now, last_poll_at=now)
        self.last_result = None
        self.last_claimed_by = ""
        self.state = DelegatorState.AWAITING_CLAIM
        self._publish_poll()
        self.logger.info(f"Mission {mission_id} polled, awaiting claim")
        return mission

    def handle_envelope(self, channel: str, envelope: Envelope) -> None:
        if envelope.kind == MessageKind.CLAIM:
            self.on_claim(envelope)
        elif envelope.kind == MessageKind.STATUS:
            self.on_status(envelope)

    def on_claim(self, envelope: Envelope) -> bool:
        """Bind the first claimant of the pending round. Returns True only for that claim."""
        if self.state != DelegatorState.AWAITING_CLAIM:
            self._count("claims_ignored")
            self.logger.debug(f"claim from {envelope.sender_id} ignored: {self.state.value}")
            return False
        mission = self.binding.mission
        if envelope.mission_id != mission.mission_id:
            self._count("claims_ignored")
            self.logger.debug(f"claim from {envelope.sender_id} ignored: mission {envelope.mission_id!r}")
            return False

        worker_id = envelope.sender_id
        bound_mission = mission.bound_to(worker_id)
        # Bind before publishing: the transport may deliver synchronously
        self.binding.mission = bound_mission
        self.binding.claimed_by = worker_id
        self.binding.bound_at = self.clock()
        self.last_claimed_by = worker_id
        self.state = DelegatorState.BOUND
        self.logger.info(f"remote identified: {worker_id}")

        self.transport.subscribe(status_channel(worker_id), self.inbox)
        self.transport.publish(command_channel(worker_id), Envelope.command(self.delegator_id, bound_mission))
        self._count("claims_accepted")
        self.logger.info(f"Mission {mission.mission_id} sent on {command_channel(worker_id)}, "
                         f"status in {status_channel(worker_id)}")
        return True

    def on_status(self, envelope: Envelope) -> Optional[MissionStatus]:
        """Record a claimant status report. Returns the terminal status once reached."""
        try:
            self._check_current(envelope)
        except StaleMessage as e:
            # Late or duplicate deliveries are expected; never an error
            self.logger.debug(f"Dropped stale STATUS from {envelope.sender_id}: {e.message}")
            self._count("stale_messages")
            return None

        self.binding.last_status = envelope.status
        self.logger.debug(f"remote status: {envelope.status.value}")
        if not envelope.status.is_terminal:
            return None

        self.logger.info(f"Mission {envelope.mission_id} finished on {envelope.sender_id}: {envelope.status.value}")
        self.last_result = envelope.status
        self.state = DelegatorState.COMPLETE
        self._release()
        return envelope.status

    def _check_current(self, envelope: Envelope):
        if self.state != DelegatorState.BOUND:
            raise StaleMessage(f"not bound ({self.state.value})")
        if envelope.sender_id != self.binding.claimed_by:
            raise StaleMessage(f"status from {envelope.sender_id}, bound to {self.binding.claimed_by}")
        if envelope.mission_id != self.binding.mission.mission_id:
            raise StaleMessage(f"status for mission {envelope.mission_id!r}")

    def tick(self) -> None:
        """Re-broadcast the poll while awaiting a claim; abandon the round on timeout.

        Raises NoRespondentError when the round is abandoned.
        """
        if self.state != DelegatorState.AWAITING_CLAIM:
            return
        now = self.clock()
        if now - self.binding.polled_at >= self.claim_timeout:
            mission_id = self.binding.mission.mission_id
            self.abandon(f"no claim within {self.claim_timeout}s")
            raise NoRespondentError(
                f"No worker claimed mission {mission_id} within {self.claim_timeout}s",
                details={"mission_id": mission_id},
            )
        if now - self.binding.last_poll_at >= self.poll_interval:
            self.binding.last_poll_at = now
            self._publish_poll()

    def abandon(self, reason: str = "cancelled") -> bool:
        """Close the open round, if any. Late claims and statuses are then ignored.

        Returns True when a round awaiting a claim or bound to a worker was closed.
        """
        if self.state not in (DelegatorState.AWAITING_CLAIM, DelegatorState.BOUND):
            return False
        mission_id = self.binding.mission.mission_id
        self.state = DelegatorState.ABANDONED
        self._release()
        self._count("missions_abandoned")
        self.logger.warning(f"Mission {mission_id} round abandoned: {reason}")
        return True

    @property
    def claimed_by(self) -> str:
        return self.binding.claimed_by if self.binding else ""

    def _publish_poll(self):
        self.transport.publish(POLL_CHANNEL, Envelope.poll(self.delegator_id, self.binding.mission.mission_id))
        self._count("polls_published")

    def _release(self):
        if self.binding and self.binding.claimed_by:
            self.transport.unsubscribe(status_channel(self.binding.claimed_by), self.inbox)
        self.binding = None

    def _count(self, name):
        if self.metrics:
            self.metrics.inc_counter(name)
