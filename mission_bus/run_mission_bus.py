import logging
import os
import sys

from system_configs.config_manager import config
from mission_bus.server import MissionBusServer

project_root = config.get_project_root()
logs_dir = config.get_path("global.logs_dir", "logs")
mission_bus_log_file = os.path.join(logs_dir, "mission_bus.log")

if not os.path.exists(logs_dir):
    try:
        os.makedirs(logs_dir)
    except OSError as e:
        print(f"CRITICAL: Could not create logs directory {logs_dir}. Error: {e}", file=sys.stderr)
        sys.exit(1)

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - MISSION_BUS_RUNNER - %(levelname)s - %(message)s',
    handlers=[
        logging.FileHandler(mission_bus_log_file, encoding='utf-8'),
        logging.StreamHandler(sys.stdout)
    ]
)
logger = logging.getLogger(__name__)


def main():
    logger.info("Mission bus runner initializing...")
    logger.info(f"Using Project Root: {project_root}")
    logger.info(f"Logs Directory: {logs_dir}")

    host = config.get_str("mission_bus.host", "127.0.0.1")
    port = config.get_int("mission_bus.port", 8090)
    component_log_level = config.get_str(
        "mission_bus.log_level",
        config.get_str("global.log_level", "INFO")
    ).upper()
    logging.getLogger("mission_bus").setLevel(getattr(logging, component_log_level, logging.INFO))
    logger.info(f"Mission bus config: Host={host}, Port={port}, ComponentLogLevel={component_log_level}")

    server = MissionBusServer(host=host, port=port)
    try:
        logger.info(f"Starting mission bus on http://{host}:{port}...")
        server.start()
        logger.info("Mission bus has stopped.")
    except KeyboardInterrupt:
        logger.info("Mission bus runner received KeyboardInterrupt. Shutting down.")
    finally:
        logger.info("Mission bus runner finished.")


if __name__ == "__main__":
    main()
