"""
Task-graph engine contract and a reference sequence engine.

A worker only needs two calls from an engine: ``build`` turns a mission's
serialized graph and an ordered list of plugin names into an execution
handle, and ``step`` advances that handle once per worker tick. Plugins are
named bundles of node types served by a CapabilityProvider; the protocol
itself never loads code.
"""

import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from importlib.metadata import entry_points
from typing import Any, Callable, Dict, List, Optional, Sequence

from fleet_core.utils.errors import (
    CapabilityError,
    MissionBuildError,
    PluginNotFoundError,
)

PLUGIN_ENTRY_POINT_GROUP = "fleet_core.plugins"


class ExecutionStatus(Enum):
    RUNNING = "RUNNING"
    SUCCESS = "SUCCESS"
    FAILURE = "FAILURE"


class GraphNode:
    """A leaf of a task graph. Subclasses advance one step per tick()."""

    def tick(self) -> ExecutionStatus:
        raise NotImplementedError("Subclasses must implement tick")


# A node factory receives the node's params dict and returns a GraphNode.
NodeFactory = Callable[[Dict[str, Any]], GraphNode]


class CapabilityProvider:
    """Interface for anything that can serve plugins by name."""

    def load_plugin(self, plugin_name: str) -> Dict[str, NodeFactory]:
        """Return the node factories a plugin contributes, keyed by node type."""
        raise NotImplementedError("Subclasses must implement load_plugin")


class CapabilityRegistry(CapabilityProvider):
    """In-process plugin registry."""

    def __init__(self, logger=None):
        self.logger = logger or logging.getLogger("CapabilityRegistry")
        self.plugins: Dict[str, Dict[str, NodeFactory]] = {}

    def register_plugin(self, plugin_name: str, node_factories: Dict[str, NodeFactory]):
        self.plugins[plugin_name] = dict(node_factories)
        self.logger.info(f"Registered plugin {plugin_name} with node types: {sorted(node_factories)}")

    def load_plugin(self, plugin_name: str) -> Dict[str, NodeFactory]:
        if plugin_name not in self.plugins:
            raise PluginNotFoundError(f"Plugin '{plugin_name}' is not registered")
        return self.plugins[plugin_name]


class EntryPointCapabilityProvider(CapabilityProvider):
    """Loads plugins published by installed distributions.

    A plugin is an entry point in the ``fleet_core.plugins`` group whose
    target is a ``{node_type: factory}`` mapping.
    """

    def __init__(self, group: str = PLUGIN_ENTRY_POINT_GROUP, logger=None):
        self.group = group
        self.logger = logger or logging.getLogger("EntryPointCapabilityProvider")
        self._cache: Dict[str, Dict[str, NodeFactory]] = {}

    def load_plugin(self, plugin_name: str) -> Dict[str, NodeFactory]:
        if plugin_name in self._cache:
            return self._cache[plugin_name]

        matches = [ep for ep in entry_points(group=self.group) if ep.name == plugin_name]
        if not matches:
            raise PluginNotFoundError(f"No '{self.group}' entry point named '{plugin_name}'")
        try:
            factories = matches[0].load()
        except Exception as e:
            raise PluginNotFoundError(f"Plugin '{plugin_name}' failed to load: {e}") from e
        if not isinstance(factories, dict):
            raise PluginNotFoundError(f"Plugin '{plugin_name}' does not expose a node factory mapping")

        self.logger.info(f"Plugin {plugin_name} loaded")
        self._cache[plugin_name] = factories
        return factories


class TaskGraphEngine:
    """Interface of the external executor a worker drives."""

    def build(self, graph_definition: str, required_plugins: Sequence[str]) -> Any:
        """Return an execution handle or raise MissionBuildError."""
        raise NotImplementedError("Subclasses must implement build")

    def step(self, handle: Any) -> ExecutionStatus:
        raise NotImplementedError("Subclasses must implement step")


@dataclass
class SequenceExecution:
    """Execution handle of SequenceGraphEngine."""
    nodes: List[GraphNode]
    cursor: int = 0
    status: ExecutionStatus = ExecutionStatus.RUNNING
    plugins: List[str] = field(default_factory=list)


class SequenceGraphEngine(TaskGraphEngine):
    """Runs a JSON sequence of capability nodes in order.

    Graph definition::

        {"sequence": [{"type": "wait", "params": {"ticks": 3}}, "succeed"]}

    Each step ticks the current node once. A node returning SUCCESS hands over
    to the next one on the following step; the sequence succeeds after its
    last node does and fails on the first FAILURE.
    """

    def __init__(self, provider: CapabilityProvider, logger=None):
        self.provider = provider
        self.logger = logger or logging.getLogger("SequenceGraphEngine")

    def build(self, graph_definition: str, required_plugins: Sequence[str]) -> SequenceExecution:
        node_types: Dict[str, NodeFactory] = {}
        for plugin_name in required_plugins:
            try:
                node_types.update(self.provider.load_plugin(plugin_name))
            except CapabilityError as e:
                raise MissionBuildError(f"Cannot load plugin '{plugin_name}': {e.message}") from e
            self.logger.info(f"plugin {plugin_name} loaded")

        try:
            graph = json.loads(graph_definition)
        except (TypeError, ValueError) as e:
            raise MissionBuildError(f"Graph definition is not valid JSON: {e}") from e

        if not isinstance(graph, dict) or not isinstance(graph.get("sequence"), list):
            raise MissionBuildError("Graph definition must be an object with a 'sequence' list")
        if not graph["sequence"]:
            raise MissionBuildError("Graph sequence is empty")

        nodes = []
        for index, spec in enumerate(graph["sequence"]):
            node_type, params = self._parse_node(index, spec)
            factory = node_types.get(node_type)
            if factory is None:
                raise MissionBuildError(
                    f"Node {index}: unknown node type '{node_type}'",
                    details={"available": sorted(node_types)},
                )
            try:
                nodes.append(factory(params))
            except (TypeError, ValueError, KeyError) as e:
                raise MissionBuildError(f"Node {index} ('{node_type}') rejected its params: {e}") from e

        self.logger.info(f"tree created with {len(nodes)} node(s)")
        return SequenceExecution(nodes=nodes, plugins=list(required_plugins))

    def step(self, handle: SequenceExecution) -> ExecutionStatus:
        if handle.status != ExecutionStatus.RUNNING:
            return handle.status

        result = handle.nodes[handle.cursor].tick()
        if result == ExecutionStatus.FAILURE:
            handle.status = ExecutionStatus.FAILURE
        elif result == ExecutionStatus.SUCCESS:
            handle.cursor += 1
            if handle.cursor >= len(handle.nodes):
                handle.status = ExecutionStatus.SUCCESS
        return handle.status

    @staticmethod
    def _parse_node(index: int, spec: Any):
        if isinstance(spec, str):
            return spec, {}
        if isinstance(spec, dict) and isinstance(spec.get("type"), str):
            params = spec.get("params") or {}
            if not isinstance(params, dict):
                raise MissionBuildError(f"Node {index}: params must be an object")
            return spec["type"], params
        raise MissionBuildError(f"Node {index}: expected a node type name or {{'type': ..., 'params': ...}}")


def build_default_provider(extra_plugins: Optional[Dict[str, Dict[str, NodeFactory]]] = None,
                           logger=None) -> CapabilityRegistry:
    """Registry preloaded with the built-in plugin and any extra plugins."""
    from fleet_core.builtin_capabilities import PLUGIN, PLUGIN_NAME

    registry = CapabilityRegistry(logger=logger)
    registry.register_plugin(PLUGIN_NAME, PLUGIN)
    for name, factories in (extra_plugins or {}).items():
        registry.register_plugin(name, factories)
    return registry
