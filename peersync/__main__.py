"""CLI entry point for peersync."""

import argparse
import asyncio
import json
import logging
import sys
from datetime import datetime
from pathlib import Path

from .config import load_config
from .errors import ConfigurationError
from .node import MeshNode, run_node
from .resolution import ConflictResolver
from .transport import MQTTTransport

LOG_LEVELS = {
    "warning": logging.WARNING,
    "info": logging.INFO,
    "debug": logging.DEBUG,
}


class JSONFormatter(logging.Formatter):
    """Renders each record as one JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created).isoformat(),
            "level": record.levelname,
            "component": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def setup_logging(verbose: bool = False, log_level: str | None = None, json_output: bool = False) -> None:
    """Configure root logging.

    Args:
        verbose: Log at DEBUG instead of INFO. Ignored when log_level is set.
        log_level: One of "warning", "info", "debug".
        json_output: Emit JSON lines instead of plain text.
    """
    if log_level:
        level = LOG_LEVELS.get(log_level, logging.INFO)
    else:
        level = logging.DEBUG if verbose else logging.INFO

    handler = logging.StreamHandler()
    handler.setFormatter(
        JSONFormatter()
        if json_output
        else logging.Formatter(
            fmt="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    )
    logging.basicConfig(level=level, handlers=[handler])


async def cmd_run(args: argparse.Namespace) -> int:
    """Run a peer without the HTTP API."""
    config = load_config(args.config)

    print(f"Starting peer: {config.node.peer_id} (namespace: {config.node.namespace})")
    print(f"Strategy: {config.reconciliation.strategy}")
    if config.mqtt.enabled:
        print(f"MQTT: {config.mqtt.broker}:{config.mqtt.port}")

    try:
        await run_node(config)
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 2
    except RuntimeError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    return 0


async def cmd_serve(args: argparse.Namespace) -> int:
    """Run a peer together with its HTTP state API."""
    config = load_config(args.config)
    config.http.enabled = True
    if args.port:
        config.http.port = args.port
    if args.host:
        config.http.host = args.host

    try:
        from .api import create_app

        import uvicorn
    except ImportError as e:
        print(f"API dependencies not installed: {e}", file=sys.stderr)
        print("Install with: pip install peersync[api]", file=sys.stderr)
        return 1

    try:
        node = MeshNode(config)
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 2

    print(f"Starting peer: {config.node.peer_id} (namespace: {config.node.namespace})")
    print(f"URL: http://{config.http.host}:{config.http.port}")

    app = create_app(config, node.engine)

    try:
        await node.start()
        verbose = getattr(args, "verbose", False)
        config_uvicorn = uvicorn.Config(
            app,
            host=config.http.host,
            port=config.http.port,
            log_level="info" if verbose else "warning",
        )
        server = uvicorn.Server(config_uvicorn)
        await server.serve()
    except RuntimeError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        await node.stop()

    return 0


async def cmd_status(args: argparse.Namespace) -> int:
    """Check configuration and broker connectivity."""
    config = load_config(args.config)

    status_data = {
        "timestamp": datetime.now().isoformat(),
        "node": {
            "peer_id": config.node.peer_id,
            "namespace": config.node.namespace,
        },
    }

    try:
        ConflictResolver(config.reconciliation.strategy)
        strategy_error = None
    except ConfigurationError as e:
        strategy_error = str(e)

    status_data["reconciliation"] = {
        "strategy": config.reconciliation.strategy,
        "strategy_valid": strategy_error is None,
        "sync_interval_seconds": config.reconciliation.sync_interval_seconds,
    }

    mqtt_status = {
        "enabled": config.mqtt.enabled,
        "broker": config.mqtt.broker,
        "port": config.mqtt.port,
        "reachable": False,
    }
    if config.mqtt.enabled:
        transport = MQTTTransport(config.mqtt, config.node.peer_id, config.node.namespace)
        mqtt_status["reachable"] = await transport.check_connection()
        mqtt_status["subscriptions"] = transport.subscriptions
    status_data["mqtt"] = mqtt_status

    status_data["discovery"] = {
        "enabled": config.discovery.enabled,
        "service_type": config.discovery.service_type,
    }
    status_data["http"] = {
        "enabled": config.http.enabled,
        "port": config.http.port,
    }

    if args.json:
        print(json.dumps(status_data, indent=2))
    else:
        print("peersync Status Check")
        print("=====================")
        print(f"Peer: {config.node.peer_id} (namespace: {config.node.namespace})")
        print()

        print("Reconciliation:")
        print(f"  Strategy: {config.reconciliation.strategy}")
        if strategy_error:
            print(f"  Invalid: {strategy_error}")
        print(f"  Sync interval: {config.reconciliation.sync_interval_seconds}s")
        print()

        print(f"MQTT ({mqtt_status['broker']}:{mqtt_status['port']}):")
        if not mqtt_status["enabled"]:
            print("  Status: Disabled")
        elif mqtt_status["reachable"]:
            print("  Status: Reachable")
            print(f"  Subscriptions: {', '.join(mqtt_status['subscriptions'])}")
        else:
            print("  Status: Not reachable")
            print("  Make sure the MQTT broker is running")
        print()

        print(f"Discovery: {'Enabled' if config.discovery.enabled else 'Disabled'}")
        print(f"HTTP API: {'Enabled' if config.http.enabled else 'Disabled'} (port {config.http.port})")

    return 0 if strategy_error is None else 2


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="peersync",
        description="Causal state reconciliation for leaderless peer networks",
    )
    parser.add_argument("-c", "--config", type=Path, help="YAML config file")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    parser.add_argument(
        "--log-level",
        choices=sorted(LOG_LEVELS),
        help="Log level, takes precedence over --verbose",
    )
    parser.add_argument("--json-logs", action="store_true", help="Log JSON lines")

    commands = parser.add_subparsers(dest="command", metavar="COMMAND")

    run = commands.add_parser("run", help="Run a peer over MQTT/mDNS")
    run.set_defaults(func=cmd_run)

    serve = commands.add_parser("serve", help="Run a peer with its HTTP state API")
    serve.add_argument("-p", "--port", type=int, help="API port (default: http.port)")
    serve.add_argument("--host", help="API bind address (default: http.host)")
    serve.set_defaults(func=cmd_serve)

    status = commands.add_parser("status", help="Validate config and check the broker")
    status.add_argument("--json", action="store_true", help="Print status as JSON")
    status.set_defaults(func=cmd_status)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    setup_logging(args.verbose, args.log_level, args.json_logs)

    if not args.command:
        parser.print_help()
        return 1

    try:
        return asyncio.run(args.func(args))
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 2
    except KeyboardInterrupt:
        print("\nShutting down...")
        return 0


if __name__ == "__main__":
    sys.exit(main())
