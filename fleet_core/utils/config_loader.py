import os
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from system_configs.config_manager import config as global_config
from fleet_core.utils.errors import ConfigError


@dataclass
class WorkerSettings:
    worker_id: str
    capability_tag: str
    tick_period: float = 0.05
    claim_timeout: float = 5.0
    publish_idle_status: bool = False
    plugins: Tuple[str, ...] = ()


@dataclass
class DelegatorSettings:
    delegator_id: str
    tick_period: float = 0.05
    claim_timeout: float = 5.0
    poll_interval: float = 0.5


@dataclass
class NodeEnvironment:
    """Paths and levels shared by every node of one process."""
    logs_dir: str
    log_level: str = "INFO"
    metrics_dir: Optional[str] = None
    metrics_save_interval: float = 30.0
    bus_url: str = "http://127.0.0.1:8090"


def _positive(name: str, value: Optional[float]) -> float:
    if value is None or value <= 0:
        raise ConfigError(f"{name} must be a positive number, got {value!r}", details={"key": name})
    return value


def load_worker_settings(worker_id: str, capability_tag: Optional[str] = None,
                         config=None, **overrides) -> WorkerSettings:
    """
    Worker settings from the [worker] section, then overrides.
    A per-worker capability tag from [fleet_spawner].workers wins over the
    section default; an explicit capability_tag argument wins over both.
    """
    config = config or global_config
    if not worker_id:
        raise ConfigError("worker_id must not be empty")

    if capability_tag is None:
        definition = next((w for w in config.get_list("fleet_spawner.workers", []) or []
                           if isinstance(w, dict) and w.get("id") == worker_id), None)
        if definition and definition.get("capability_tag"):
            capability_tag = definition["capability_tag"]
        else:
            capability_tag = config.get_str("worker.capability_tag", "generic")

    settings = WorkerSettings(
        worker_id=worker_id,
        capability_tag=capability_tag,
        tick_period=_positive("worker.tick_period_seconds",
                              config.get_float("worker.tick_period_seconds", 0.05)),
        claim_timeout=_positive("worker.claim_timeout_seconds",
                                config.get_float("worker.claim_timeout_seconds", 5.0)),
        publish_idle_status=config.get_bool("worker.publish_idle_status", False),
        plugins=tuple(config.get_list("worker.plugins", []) or []),
    )
    for key, value in overrides.items():
        if value is None:
            continue
        if not hasattr(settings, key):
            raise ConfigError(f"Unknown worker setting: {key}")
        setattr(settings, key, tuple(value) if key == "plugins" else value)
    return settings


def load_delegator_settings(delegator_id: Optional[str] = None, config=None, **overrides) -> DelegatorSettings:
    config = config or global_config
    settings = DelegatorSettings(
        delegator_id=delegator_id or config.get_str("delegator.id", "delegator"),
        tick_period=_positive("delegator.tick_period_seconds",
                              config.get_float("delegator.tick_period_seconds", 0.05)),
        claim_timeout=_positive("delegator.claim_timeout_seconds",
                                config.get_float("delegator.claim_timeout_seconds", 5.0)),
        poll_interval=_positive("delegator.poll_interval_seconds",
                                config.get_float("delegator.poll_interval_seconds", 0.5)),
    )
    for key, value in overrides.items():
        if value is None:
            continue
        if not hasattr(settings, key):
            raise ConfigError(f"Unknown delegator setting: {key}")
        setattr(settings, key, value)
    return settings


def load_fleet_definitions(config=None) -> List[Dict[str, Any]]:
    """[fleet_spawner].workers entries that carry at least an id."""
    config = config or global_config
    return [w for w in config.get_list("fleet_spawner.workers", []) or []
            if isinstance(w, dict) and w.get("id")]


def load_node_environment(config=None) -> NodeEnvironment:
    config = config or global_config
    host = config.get_str("mission_bus.host", "127.0.0.1")
    port = config.get_int("mission_bus.port", 8090)
    return NodeEnvironment(
        logs_dir=config.get_path("global.logs_dir", os.path.join(config.get_project_root(), "logs")),
        log_level=config.get_str("global.log_level", "INFO"),
        metrics_dir=config.get_path("metrics.storage_dir"),
        metrics_save_interval=config.get_float("metrics.save_interval_seconds", 30.0),
        bus_url=f"http://{host}:{port}",
    )
