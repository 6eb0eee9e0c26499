# Built-in node types, published as the "fleet_builtin" plugin.
import logging

from fleet_core.task_graph import ExecutionStatus, GraphNode

PLUGIN_NAME = "fleet_builtin"

logger = logging.getLogger("FleetBuiltinCapabilities")


class WaitNode(GraphNode):
    """RUNNING for `ticks` steps, then SUCCESS."""

    def __init__(self, ticks: int = 1):
        if int(ticks) < 0:
            raise ValueError("ticks must be >= 0")
        self.remaining = int(ticks)

    def tick(self) -> ExecutionStatus:
        if self.remaining > 0:
            self.remaining -= 1
            return ExecutionStatus.RUNNING
        return ExecutionStatus.SUCCESS


class ConstantNode(GraphNode):
    def __init__(self, result: ExecutionStatus):
        self.result = result

    def tick(self) -> ExecutionStatus:
        return self.result


class LogNode(GraphNode):
    def __init__(self, message: str, level: str = "INFO"):
        self.message = message
        self.level = logging.getLevelName(level.upper())
        if not isinstance(self.level, int):
            raise ValueError(f"unknown log level {level!r}")

    def tick(self) -> ExecutionStatus:
        logger.log(self.level, self.message)
        return ExecutionStatus.SUCCESS


PLUGIN = {
    "wait": lambda params: WaitNode(**params),
    "succeed": lambda params: ConstantNode(ExecutionStatus.SUCCESS),
    "fail": lambda params: ConstantNode(ExecutionStatus.FAILURE),
    "log": lambda params: LogNode(**params),
}
