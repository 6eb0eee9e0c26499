import argparse
import asyncio
import sys

from fleet_core.fleet_node import DelegatorNode
from fleet_core.mission_message_defs import MissionStatus
from fleet_core.transport import HttpBusTransport
from fleet_core.utils.config_loader import load_delegator_settings, load_node_environment
from fleet_core.utils.errors import FleetError, NoRespondentError


def read_graph_file(path):
    try:
        with open(path, 'r', encoding='utf-8') as f:
            return f.read()
    except OSError as e:
        raise FleetError(f"Cannot read graph file {path}: {e}") from e


async def delegate(args, graph_definition):
    """Connects a delegator to the bus and waits for one mission's terminal status."""
    settings = load_delegator_settings(args.delegator_id, claim_timeout=args.claim_timeout)
    environment = load_node_environment()
    environment.bus_url = args.bus_url
    transport = HttpBusTransport(settings.delegator_id, args.bus_url)
    node = DelegatorNode(settings, transport, environment)
    transport.logger = node.logger

    await node.start()
    try:
        return await asyncio.wait_for(
            node.delegate(args.mission_id, graph_definition, args.plugins),
            timeout=args.timeout,
        )
    finally:
        await node.stop()


def main(argv=None):
    default_bus_url = load_node_environment().bus_url

    parser = argparse.ArgumentParser(description="Delegate one mission to the worker fleet.")
    parser.add_argument("--mission-id", required=True,
                        help="Mission id. Workers claim it when it matches their capability tag.")
    parser.add_argument("--graph-file", required=True, help="File holding the serialized task graph.")
    parser.add_argument("--plugins", nargs="*", default=[],
                        help="Ordered plugin names the mission needs. Empty means worker defaults.")
    parser.add_argument("--delegator-id", default=None, help="Delegator id. Default from [delegator].id.")
    parser.add_argument("--claim-timeout", type=float, default=None,
                        help="Seconds to wait for a claim. Default from config.")
    parser.add_argument("--timeout", type=float, default=None,
                        help="Overall seconds to wait for a terminal status. Waits forever by default.")
    parser.add_argument("--bus-url", default=default_bus_url,
                        help=f"URL of the mission bus. Default from config: {default_bus_url}")
    args = parser.parse_args(argv)

    try:
        graph_definition = read_graph_file(args.graph_file)
        status = asyncio.run(delegate(args, graph_definition))
    except NoRespondentError as e:
        print(f"No worker claimed mission '{args.mission_id}': {e.message}", file=sys.stderr)
        sys.exit(2)
    except asyncio.TimeoutError:
        print(f"Mission '{args.mission_id}' did not finish within {args.timeout}s", file=sys.stderr)
        sys.exit(3)
    except FleetError as e:
        print(f"Delegation failed: {e.message}", file=sys.stderr)
        sys.exit(1)

    print(f"Mission '{args.mission_id}' finished: {status.value}")
    sys.exit(0 if status == MissionStatus.SUCCESS else 1)


if __name__ == "__main__":
    main()
