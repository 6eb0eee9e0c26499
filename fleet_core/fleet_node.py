import asyncio
import os
import signal
from enum import Enum
from typing import Optional, Sequence

from fleet_core.agent_sequencer import AgentSequencer
from fleet_core.delegator import DelegatorState, MissionDelegator
from fleet_core.mission_message_defs import Envelope, MissionStatus
from fleet_core.task_graph import TaskGraphEngine
from fleet_core.transport import MissionTransport
from fleet_core.utils.config_loader import (
    DelegatorSettings,
    NodeEnvironment,
    WorkerSettings,
    load_node_environment,
)
from fleet_core.utils.errors import FleetError, NoRespondentError
from fleet_core.utils.logger import parse_log_level, setup_logger
from fleet_core.utils.metrics import MetricsCollector
from fleet_core.worker import MissionWorker


class NodeStatus(Enum):
    INITIALIZING = "initializing"
    RUNNING = "running"
    SHUTTING_DOWN = "shutting_down"
    STOPPED = "stopped"


class FleetNode:
    """Async runtime shared by workers and delegators.

    Owns the transport, the agent sequencer and the periodic metrics task.
    Subclasses provide the state machine and its handle/tick functions.
    """

    role = "node"

    def __init__(self, node_id: str, transport: MissionTransport, tick_period: float,
                 environment: Optional[NodeEnvironment] = None):
        self.node_id = node_id
        self.transport = transport
        self.environment = environment or load_node_environment()

        log_file = os.path.join(self.environment.logs_dir, f"{self.role}_{node_id}.log")
        self.logger = setup_logger(f"{self.role.capitalize()}_{node_id}", log_file,
                                   level=parse_log_level(self.environment.log_level))
        self.metrics = MetricsCollector(
            component_name=f"{self.role}_{node_id}",
            storage_dir=self.environment.metrics_dir,
            logger=self.logger,
        )
        self.sequencer = AgentSequencer(self._handle, self._tick, tick_period=tick_period,
                                        logger=self.logger)

        self.status = NodeStatus.INITIALIZING
        self.shutdown_event: Optional[asyncio.Event] = None
        self.periodic_tasks = []

    def _handle(self, channel: str, envelope: Envelope):
        raise NotImplementedError("Subclasses must implement _handle")

    def _tick(self):
        raise NotImplementedError("Subclasses must implement _tick")

    async def start(self):
        """Connect the transport and start the sequence and metrics loops."""
        self.shutdown_event = asyncio.Event()
        await self.transport.start()
        self.periodic_tasks.append(asyncio.create_task(self.sequencer.run()))
        if self.environment.metrics_dir:
            self.periodic_tasks.append(asyncio.create_task(self._update_metrics()))
        self.status = NodeStatus.RUNNING
        self.logger.info(f"{self.role} {self.node_id} running")

    async def stop(self):
        """Gracefully shut down the node."""
        if self.status in (NodeStatus.SHUTTING_DOWN, NodeStatus.STOPPED):
            return
        self.logger.info("Shutting down...")
        self.status = NodeStatus.SHUTTING_DOWN
        if self.shutdown_event:
            self.shutdown_event.set()

        self.sequencer.stop()
        for task in self.periodic_tasks:
            if not task.done():
                task.cancel()
        await asyncio.gather(*self.periodic_tasks, return_exceptions=True)
        self.periodic_tasks = []

        await self.transport.stop()
        self.metrics.save_metrics()
        self.status = NodeStatus.STOPPED

    def shutdown(self):
        """Ask run() to return. Safe to call from a signal handler."""
        if self.shutdown_event:
            self.shutdown_event.set()

    async def run(self, install_signal_handlers: bool = True):
        """Run until shutdown() is called or SIGINT/SIGTERM arrives."""
        await self.start()
        if install_signal_handlers:
            loop = asyncio.get_running_loop()
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.add_signal_handler(sig, self.shutdown_event.set)
        try:
            await self.shutdown_event.wait()
        finally:
            await self.stop()

    async def _update_metrics(self):
        """Periodic task to save metrics."""
        while True:
            await asyncio.sleep(self.environment.metrics_save_interval)
            self.metrics.save_metrics()


class WorkerNode(FleetNode):
    role = "worker"

    def __init__(self, settings: WorkerSettings, engine: TaskGraphEngine,
                 transport: MissionTransport, environment: Optional[NodeEnvironment] = None):
        super().__init__(settings.worker_id, transport, settings.tick_period, environment)
        self.settings = settings
        self.worker = MissionWorker(
            worker_id=settings.worker_id,
            capability_tag=settings.capability_tag,
            engine=engine,
            transport=transport,
            inbox=self.sequencer.submit,
            default_plugins=settings.plugins,
            claim_timeout=settings.claim_timeout,
            publish_idle_status=settings.publish_idle_status,
            logger=self.logger,
            metrics=self.metrics,
        )
        self.logger.info(f"Worker {settings.worker_id} accepts missions tagged '{settings.capability_tag}'")

    def _handle(self, channel: str, envelope: Envelope):
        self.worker.handle_envelope(channel, envelope)

    def _tick(self):
        self.worker.tick()


class DelegatorNode(FleetNode):
    role = "delegator"

    def __init__(self, settings: DelegatorSettings, transport: MissionTransport,
                 environment: Optional[NodeEnvironment] = None):
        super().__init__(settings.delegator_id, transport, settings.tick_period, environment)
        self.settings = settings
        self.delegator = MissionDelegator(
            delegator_id=settings.delegator_id,
            transport=transport,
            inbox=self.sequencer.submit,
            claim_timeout=settings.claim_timeout,
            poll_interval=settings.poll_interval,
            logger=self.logger,
            metrics=self.metrics,
        )
        self._outcome: Optional[asyncio.Future] = None

    async def delegate(self, mission_id: str, graph_definition: str,
                       required_plugins: Sequence[str] = ()) -> MissionStatus:
        """Delegate one mission and wait for its terminal status.

        Raises InvalidMission before anything is published, and
        NoRespondentError when nobody claims within the claim timeout.
        Cancelling the call abandons the round so the next delegate() can start.
        """
        if self.status != NodeStatus.RUNNING:
            raise FleetError(f"Delegator {self.node_id} is not running")

        self._outcome = asyncio.get_running_loop().create_future()
        timer_id = self.metrics.start_timer("mission_duration")
        try:
            self.delegator.start_mission(mission_id, graph_definition, required_plugins)
            return await self._outcome
        finally:
            if not self._outcome.done():
                self.delegator.abandon(f"delegate() for {mission_id} cancelled")
            self.metrics.stop_timer(timer_id)
            self._outcome = None

    def _handle(self, channel: str, envelope: Envelope):
        self.delegator.handle_envelope(channel, envelope)
        if self.delegator.state == DelegatorState.COMPLETE and self._outcome and not self._outcome.done():
            self._outcome.set_result(self.delegator.last_result)

    def _tick(self):
        try:
            self.delegator.tick()
        except NoRespondentError as e:
            if self._outcome and not self._outcome.done():
                self._outcome.set_exception(e)
