import argparse
import asyncio
import os
import signal
import sys

from system_configs.config_manager import config
from fleet_core.fleet_node import WorkerNode
from fleet_core.task_graph import EntryPointCapabilityProvider, SequenceGraphEngine, build_default_provider
from fleet_core.transport import HttpBusTransport
from fleet_core.utils.config_loader import load_fleet_definitions, load_node_environment, load_worker_settings
from fleet_core.utils.errors import FleetError
from fleet_core.utils.logger import setup_logger

PROJECT_ROOT = config.get_project_root()
LOGS_DIR = config.get_path("global.logs_dir", "logs")

logger = setup_logger("FleetSpawner", os.path.join(LOGS_DIR, "fleet_spawner.log"))


def create_workers(count, bus_url, use_entry_points=False):
    """Builds one WorkerNode per [fleet_spawner].workers entry, up to count (0 means all)."""
    definitions = load_fleet_definitions()
    if not definitions:
        logger.error("No worker definitions found under [fleet_spawner].workers. Cannot spawn workers.")
        return []

    if count > len(definitions):
        logger.warning(f"Requested {count} workers, but only {len(definitions)} are defined. Spawning {len(definitions)}.")
    elif count == 0:
        logger.info(f"--count is 0, spawning all {len(definitions)} defined workers.")
    to_spawn = definitions[:count] if count > 0 else definitions

    environment = load_node_environment()
    environment.bus_url = bus_url
    nodes = []
    for definition in to_spawn:
        worker_id = definition["id"]
        try:
            settings = load_worker_settings(worker_id, capability_tag=definition.get("capability_tag"))
            provider = EntryPointCapabilityProvider() if use_entry_points else build_default_provider()
            transport = HttpBusTransport(worker_id, bus_url)
            engine = SequenceGraphEngine(provider)
            node = WorkerNode(settings, engine, transport, environment)
            # Node logger only exists once the node is built
            for component in (transport, provider, engine):
                component.logger = node.logger
            nodes.append(node)
            logger.info(f"Created worker {worker_id} (capability tag: {settings.capability_tag})")
        except FleetError as e:
            logger.error(f"Failed to create worker {worker_id}: {e.message}")
    return nodes


async def run_workers(nodes):
    """Run every worker concurrently until SIGINT/SIGTERM."""
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, lambda: [node.shutdown() for node in nodes])

    logger.info(f"Starting {len(nodes)} workers...")
    results = await asyncio.gather(*(node.run(install_signal_handlers=False) for node in nodes),
                                   return_exceptions=True)
    for node, result in zip(nodes, results):
        if isinstance(result, Exception):
            logger.error(f"Worker {node.node_id} stopped with error: {result}")
    logger.info("All workers have stopped")


def main(argv=None):
    default_bus_url = load_node_environment().bus_url

    parser = argparse.ArgumentParser(description="Spawn the configured worker fleet in one process.")
    parser.add_argument("--count", type=int, default=0,
                        help="Number of workers to spawn from [fleet_spawner].workers. 0 spawns all.")
    parser.add_argument("--bus-url", type=str, default=default_bus_url,
                        help=f"URL of the mission bus. Default from config: {default_bus_url}")
    parser.add_argument("--entry-point-plugins", action="store_true",
                        help="Load capability plugins from installed 'fleet_core.plugins' entry points.")
    args = parser.parse_args(argv)

    logger.info("Fleet spawner initializing...")
    logger.info(f"Project Root: {PROJECT_ROOT}")
    if not args.bus_url.startswith(("http://", "https://")):
        logger.error(f"Mission bus URL '{args.bus_url}' should start with http:// or https://.")
        sys.exit(1)

    nodes = create_workers(args.count, args.bus_url, use_entry_points=args.entry_point_plugins)
    if not nodes:
        logger.error("No workers were created. Exiting.")
        sys.exit(1)

    logger.info(f"Targeting mission bus at {args.bus_url}. Press Ctrl+C to stop.")
    try:
        asyncio.run(run_workers(nodes))
    except KeyboardInterrupt:
        logger.info("Spawner received KeyboardInterrupt.")
    finally:
        logger.info("Fleet spawner shut down.")


if __name__ == "__main__":
    main()
