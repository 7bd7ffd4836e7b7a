"""svcwatch command line.

Examples:
    svcwatch list --query name=worker
    svcwatch watch --query region=us
    svcwatch register --id i1 --name worker --version 1.0 --region us --addr 10.0.0.1:9000 --active
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import signal
import sys
from typing import Any, Dict, List, Optional

from prometheus_client import start_http_server

from svcwatch import __version__
from svcwatch.core.config import Settings, get_settings
from svcwatch.core.errors import CoordinationError, RegistryError
from svcwatch.core.logging.structured import setup_structured_logging
from svcwatch.core.service_registry.core import (
    BindAddr,
    MatchMode,
    ServiceDescriptor,
    ServiceQuery,
)
from svcwatch.core.service_registry.registry import ServiceRegistry
from svcwatch.core.service_registry.router import Subscription
from svcwatch.core.service_registry.watcher import WatcherState

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="svcwatch",
        description="Service registry and membership watcher",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--zk-hosts", help="ZooKeeper connection string (overrides ZK_HOSTS)")
    parser.add_argument(
        "--backend",
        choices=["zookeeper", "memory"],
        help="Coordination backend (overrides COORDINATION_BACKEND)",
    )
    parser.add_argument(
        "--match-mode",
        choices=[mode.value for mode in MatchMode],
        help="How query fields combine (overrides QUERY_MATCH_MODE)",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    list_parser = subparsers.add_parser("list", help="List registered instances")
    list_parser.add_argument("--query", default="", help='Filter, e.g. "name=worker,region=us"')
    list_parser.add_argument("--fresh", action="store_true", help="Read the store instead of the snapshot")

    subparsers.add_parser("services", help="List service names")
    subparsers.add_parser("regions", help="List regions")
    subparsers.add_parser("hosts", help="List hosts")

    watch_parser = subparsers.add_parser("watch", help="Stream membership changes as JSON lines")
    watch_parser.add_argument("--query", default="", help='Filter, e.g. "name=worker"')

    register_parser = subparsers.add_parser("register", help="Register an instance until interrupted")
    register_parser.add_argument("--id", required=True, dest="instance_id")
    register_parser.add_argument("--name", required=True)
    register_parser.add_argument("--version", required=True, dest="service_version")
    register_parser.add_argument("--region", required=True)
    register_parser.add_argument("--addr", required=True, help="host:port")
    register_parser.add_argument("--active", action="store_true", help="Advertise as active immediately")

    return parser


def resolve_settings(args: argparse.Namespace, base: Optional[Settings] = None) -> Settings:
    """Apply command line overrides to the environment settings."""
    settings = base or get_settings()
    update: Dict[str, Any] = {}
    if args.zk_hosts:
        update["ZK_HOSTS"] = args.zk_hosts
    if args.backend:
        update["COORDINATION_BACKEND"] = args.backend
    if args.match_mode:
        update["QUERY_MATCH_MODE"] = args.match_mode
    return settings.model_copy(update=update) if update else settings


def _emit(payload: Any) -> None:
    print(json.dumps(payload), flush=True)


def _install_signal_handlers(stop: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            # Windows event loops; KeyboardInterrupt still ends asyncio.run
            pass


async def _close_on(stop: asyncio.Event, subscription: Subscription) -> None:
    await stop.wait()
    subscription.close()


async def _watch(registry: ServiceRegistry, query: ServiceQuery, stop: asyncio.Event) -> int:
    subscription = await registry.subscribe(query)
    closer = asyncio.create_task(_close_on(stop, subscription))
    try:
        async for record in subscription:
            _emit(record.to_dict())
    finally:
        closer.cancel()
    return 1 if registry.state is WatcherState.FATAL else 0


async def _register(registry: ServiceRegistry, args: argparse.Namespace, stop: asyncio.Event) -> int:
    descriptor = ServiceDescriptor(
        instance_id=args.instance_id,
        name=args.name,
        version=args.service_version,
        region=args.region,
        address=BindAddr.from_string(args.addr),
    )
    await registry.register(descriptor, active=args.active)
    _emit({"registered": descriptor.to_dict(), "active": args.active})
    await stop.wait()
    return 1 if registry.state is WatcherState.FATAL else 0


async def run(args: argparse.Namespace, settings: Settings) -> int:
    """Execute one command against a started registry."""
    registry = ServiceRegistry.from_settings(settings)
    stop = asyncio.Event()
    _install_signal_handlers(stop)

    def on_state(old: WatcherState, new: WatcherState) -> None:
        if new is WatcherState.FATAL:
            stop.set()

    registry.watcher.add_state_listener(on_state)

    async with registry:
        if args.command == "list":
            query = ServiceQuery.parse(args.query)
            descriptors = await registry.list_instances(query, fresh=args.fresh)
            _emit([descriptor.to_dict() for descriptor in descriptors])
            return 0
        if args.command == "services":
            _emit(await registry.list_services())
            return 0
        if args.command == "regions":
            _emit(await registry.list_regions())
            return 0
        if args.command == "hosts":
            _emit(await registry.list_hosts())
            return 0
        if args.command == "watch":
            return await _watch(registry, ServiceQuery.parse(args.query), stop)
        if args.command == "register":
            return await _register(registry, args, stop)

    raise ValueError(f"Unknown command: {args.command}")


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    settings = resolve_settings(args)

    setup_structured_logging(
        service_name=settings.SERVICE_NAME,
        environment=settings.ENVIRONMENT,
        level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
        json_output=settings.LOG_JSON,
    )

    if settings.METRICS_PORT:
        start_http_server(settings.METRICS_PORT)
        logger.info(f"Prometheus metrics on port {settings.METRICS_PORT}")

    try:
        return asyncio.run(run(args, settings))
    except ValueError as e:
        parser.error(str(e))
    except (RegistryError, CoordinationError) as e:
        logger.error(f"{e.code.value}: {e}")
        return 1
    except KeyboardInterrupt:
        return 130
    return 1


if __name__ == "__main__":
    sys.exit(main())
