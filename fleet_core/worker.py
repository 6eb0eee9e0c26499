"""
Worker side of the mission handshake.

    IDLE -> IDENTIFIED -> EXECUTING -> (SUCCESS | FAILURE) -> IDLE

A worker claims polls matching its capability tag, accepts a single COMMAND
addressed to it, and then advances the mission one engine step per tick(),
publishing a STATUS after every step. Losing a claim race is silent: an
IDENTIFIED worker that never receives its command falls back to IDLE once
claim_timeout has passed.
"""

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional, Sequence

from fleet_core.mission_message_defs import (
    POLL_CHANNEL,
    Envelope,
    MessageKind,
    Mission,
    MissionStatus,
    command_channel,
    status_channel,
)
from fleet_core.task_graph import ExecutionStatus, TaskGraphEngine
from fleet_core.transport import EnvelopeCallback, MissionTransport
from fleet_core.utils.errors import MissionBuildError

DEFAULT_CLAIM_TIMEOUT = 5.0

_STATUS_FOR_RESULT = {
    ExecutionStatus.RUNNING: MissionStatus.RUNNING,
    ExecutionStatus.SUCCESS: MissionStatus.SUCCESS,
    ExecutionStatus.FAILURE: MissionStatus.FAILURE,
}


class WorkerState(Enum):
    IDLE = "idle"
    IDENTIFIED = "identified"
    EXECUTING = "executing"


@dataclass
class WorkerExecutionContext:
    """Everything one worker knows about the mission it holds. Owned by that worker only."""
    busy: bool = False
    current_mission: Optional[Mission] = None
    engine_state: Any = None
    claimed_mission_id: str = ""
    claimed_at: Optional[float] = None
    accepted_at: Optional[float] = None

    def reset(self):
        self.busy = False
        self.current_mission = None
        self.engine_state = None
        self.claimed_mission_id = ""
        self.claimed_at = None
        self.accepted_at = None


def tag_matches(capability_tag: str, mission_id: str) -> bool:
    return capability_tag == mission_id


class MissionWorker:

    def __init__(self, worker_id: str, capability_tag: str, engine: TaskGraphEngine,
                 transport: MissionTransport, inbox: Optional[EnvelopeCallback] = None,
                 default_plugins: Sequence[str] = (),
                 claim_timeout: float = DEFAULT_CLAIM_TIMEOUT,
                 publish_idle_status: bool = False,
                 eligibility: Callable[[str, str], bool] = tag_matches,
                 clock: Callable[[], float] = time.monotonic,
                 logger=None, metrics=None):
        """
        Args:
            worker_id: sender_id of this worker; also names its private channels
            capability_tag: the mission_id this worker accepts (see eligibility)
            engine: task-graph engine that builds and steps missions
            transport: bus for polls, claims, commands and status reports
            inbox: where subscribed envelopes are delivered; defaults to
                handle_envelope (direct, synchronous dispatch)
            default_plugins: used when a command carries no required_plugins
            claim_timeout: seconds an IDENTIFIED worker waits for its command
            publish_idle_status: report IDLE on every idle tick as a liveness signal
            eligibility: policy(capability_tag, mission_id) -> bool
        """
        self.worker_id = worker_id
        self.capability_tag = capability_tag
        self.engine = engine
        self.transport = transport
        self.inbox = inbox or self.handle_envelope
        self.default_plugins = tuple(default_plugins)
        self.claim_timeout = claim_timeout
        self.publish_idle_status = publish_idle_status
        self.eligibility = eligibility
        self.clock = clock
        self.logger = logger or logging.getLogger(f"MissionWorker_{worker_id}")
        self.metrics = metrics

        self.state = WorkerState.IDLE
        self.context = WorkerExecutionContext()

        self.command_channel = command_channel(worker_id)
        self.status_channel = status_channel(worker_id)
        self.transport.subscribe(POLL_CHANNEL, self.inbox)
        self.logger.info(f"subscribed to {POLL_CHANNEL}")
        self.transport.subscribe(self.command_channel, self.inbox)
        self.logger.info(f"subscribed to {self.command_channel}")

    @property
    def busy(self) -> bool:
        return self.context.busy

    def handle_envelope(self, channel: str, envelope: Envelope) -> None:
        if envelope.kind == MessageKind.POLL:
            self.on_poll(envelope)
        elif envelope.kind == MessageKind.COMMAND:
            self.on_command(envelope)
        # CLAIMs from peers share the poll channel; STATUS is not ours to read

    def on_poll(self, envelope: Envelope) -> bool:
        """Claim the polled mission if eligible. Returns True when a CLAIM was published."""
        if self.context.busy:
            self.logger.info(f"action request ignored ({self.worker_id}): busy")
            return False
        if envelope.target_worker_id and envelope.target_worker_id != self.worker_id:
            self.logger.info(f"action request ignored: not for me ({self.worker_id})")
            return False
        if not self.eligibility(self.capability_tag, envelope.mission_id):
            self.logger.debug(f"unable to execute mission: {envelope.mission_id}")
            return False

        # Identify before publishing: the command may arrive during publish()
        self.state = WorkerState.IDENTIFIED
        self.context.claimed_mission_id = envelope.mission_id
        self.context.claimed_at = self.clock()
        self.transport.publish(POLL_CHANNEL, Envelope.claim(self.worker_id, envelope.mission_id))
        self._count("claims_published")
        self.logger.info(f"claim published ({self.worker_id}): {envelope.mission_id}")
        return True

    def on_command(self, envelope: Envelope) -> bool:
        """Accept a mission addressed to this worker. Returns True when it started executing."""
        if envelope.target_worker_id != self.worker_id:
            self.logger.debug(f"mission {envelope.mission_id} received but not for this worker")
            return False
        if self.context.busy:
            current = self.context.current_mission
            if current is not None and current.mission_id == envelope.mission_id:
                self.logger.debug(f"duplicate command for {envelope.mission_id} ignored")
            else:
                self.logger.info(f"mission {envelope.mission_id} received but worker is busy")
            self._count("commands_ignored")
            return False

        mission = envelope.mission()
        plugins = mission.required_plugins
        if not plugins:
            self.logger.info("plugins not in the mission command, using defaults")
            plugins = self.default_plugins

        self.context.busy = True
        self.context.current_mission = mission
        self.context.accepted_at = self.clock()
        self._set_busy_gauge()
        self.logger.info(f"mission {mission.mission_id} received")

        try:
            self.context.engine_state = self.engine.build(mission.graph_definition, plugins)
        except MissionBuildError as e:
            self.logger.error(f"ERROR creating mission {mission.mission_id}: {e.message}")
            self._count("mission_build_failures")
            self._finish(MissionStatus.FAILURE)
            return False

        self.state = WorkerState.EXECUTING
        self._count("commands_accepted")
        self.logger.info(f"mission {mission.mission_id} executing")
        return True

    def tick(self) -> Optional[MissionStatus]:
        """One control cycle. Returns the status published, if any."""
        if self.state == WorkerState.EXECUTING:
            return self._step()

        if self.context.busy:
            # Holding a mission without an engine handle: report it failed once.
            self.logger.warning(f"mission {self.context.current_mission.mission_id} has no execution, failing it")
            self._finish(MissionStatus.FAILURE)
            return MissionStatus.FAILURE

        if self.state == WorkerState.IDENTIFIED:
            if self.clock() - self.context.claimed_at >= self.claim_timeout:
                self.logger.info(f"no command for {self.context.claimed_mission_id}, back to idle")
                self.state = WorkerState.IDLE
                self.context.reset()
            return None

        if self.publish_idle_status:
            self._publish_status("", MissionStatus.IDLE)
            return MissionStatus.IDLE
        return None

    def _step(self) -> MissionStatus:
        mission_id = self.context.current_mission.mission_id
        try:
            result = self.engine.step(self.context.engine_state)
        except Exception as e:
            self.logger.error(f"engine step failed for {mission_id}: {e}", exc_info=True)
            result = ExecutionStatus.FAILURE

        status = _STATUS_FOR_RESULT.get(result, MissionStatus.FAILURE)
        self.logger.debug(status.value)
        if status.is_terminal:
            self.logger.info(f"mission {mission_id}: {status.value}")
            self._finish(status)
        else:
            self._publish_status(mission_id, status)
        return status

    def _finish(self, status: MissionStatus):
        mission = self.context.current_mission
        self._publish_status(mission.mission_id, status)
        if self.metrics and self.context.accepted_at is not None:
            self.metrics.observe("mission_duration", self.clock() - self.context.accepted_at)
        self.context.reset()
        self.state = WorkerState.IDLE
        self._set_busy_gauge()

    def _publish_status(self, mission_id: str, status: MissionStatus):
        self.transport.publish(self.status_channel, Envelope.status_report(self.worker_id, mission_id, status))
        if self.metrics:
            self.metrics.inc_counter("status_published", labels={"status": status.value})

    def _set_busy_gauge(self):
        if self.metrics:
            self.metrics.set_gauge("busy", 1 if self.context.busy else 0)

    def _count(self, name):
        if self.metrics:
            self.metrics.inc_counter(name)
