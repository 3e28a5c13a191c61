"""Command line entry point.

Usage:
    buildfleet build 4.1.13 --source-path /tmp/tw --target-arch linux-arm64
    buildfleet build 4.1.13 --source-path /tmp/tw --strategy remote_only --plugin daisyui@^5
    buildfleet strategy --target-arch darwin-arm64
    buildfleet architectures
    buildfleet queue
    buildfleet health

Coordinator settings come from BUILDFLEET_* environment variables
(BUILDFLEET_COORDINATOR_URL, BUILDFLEET_API_KEY, ...) or the flags below.
"""

import argparse
import asyncio
import json
import logging
import sys
from typing import Any, Optional

import structlog

from buildfleet import __version__
from buildfleet.builds.remote import RemoteBuildClient
from buildfleet.builds.strategy import StrategyOverride, StrategySelector
from buildfleet.config import FleetSettings
from buildfleet.errors import FleetError


def configure_logging(verbose: bool = False) -> None:
    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(logging.DEBUG if verbose else logging.INFO),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )


def parse_plugin(value: str) -> dict[str, str]:
    """``name`` or ``name@version`` (a leading ``@`` belongs to the name)."""
    scoped = value.startswith("@")
    head, sep, version = value[1 if scoped else 0:].rpartition("@")
    if not sep:
        return {"name": value, "version": "latest"}
    return {"name": ("@" if scoped else "") + head, "version": version or "latest"}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="buildfleet",
        description="Build fleet: local, remote and CI builds with automatic fallback",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--coordinator-url", help="Coordinator base URL (default: $BUILDFLEET_COORDINATOR_URL)")
    parser.add_argument("--api-key", help="Coordinator API key (default: $BUILDFLEET_API_KEY)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")

    sub = parser.add_subparsers(dest="command", required=True)

    build = sub.add_parser("build", help="Build a version with the selected strategy")
    build.add_argument("build_version", metavar="VERSION")
    build.add_argument("--source-path", required=True)
    build.add_argument("--target-arch")
    build.add_argument("--strategy", choices=[s.value for s in StrategyOverride])
    build.add_argument("--plugin", action="append", default=[], type=parse_plugin, metavar="NAME[@VERSION]")
    build.add_argument("--priority")
    build.add_argument("--timeout", type=float, help="Remote build timeout in seconds")
    build.add_argument("--no-fallback", action="store_true", help="Do not retry a failed local build remotely")

    strategy = sub.add_parser("strategy", help="Show which strategy a build would use")
    strategy.add_argument("--target-arch")
    strategy.add_argument("--strategy", choices=[s.value for s in StrategyOverride])

    sub.add_parser("architectures", help="Architectures the coordinator can build")
    sub.add_parser("queue", help="Coordinator queue status")
    sub.add_parser("health", help="Check coordinator health")
    return parser


def _emit(payload: Any) -> None:
    print(json.dumps(payload, indent=2, default=str))


async def run(args: argparse.Namespace, settings: FleetSettings) -> int:
    async with RemoteBuildClient(settings) as client:
        selector = StrategySelector(settings, remote_client=client)

        if args.command == "build":
            outcome = await selector.build(
                version=args.build_version,
                source_path=args.source_path,
                target_arch=args.target_arch,
                strategy=args.strategy,
                plugins=args.plugin,
                priority=args.priority,
                auto_fallback=False if args.no_fallback else None,
                timeout=args.timeout,
            )
            _emit(outcome.model_dump(mode="json"))
        elif args.command == "strategy":
            _emit(
                {
                    "strategy": selector.determine_strategy(args.strategy, args.target_arch).value,
                    "capabilities": await selector.build_capabilities(),
                }
            )
        elif args.command == "architectures":
            _emit({"architectures": await client.supported_architectures()})
        elif args.command == "queue":
            _emit(await client.queue_status())
        elif args.command == "health":
            available = await client.coordinator_available()
            _emit({"coordinator_url": settings.coordinator_url, "available": available})
            return 0 if available else 1
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(args.verbose)
    settings = FleetSettings.from_env(coordinator_url=args.coordinator_url, api_key=args.api_key)
    try:
        return asyncio.run(run(args, settings))
    except FleetError as e:
        print(json.dumps(e.to_dict()), file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
