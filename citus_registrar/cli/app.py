"""``citus-registrar`` command: discover workers and register them once.

Exit codes:
  0  the run completed (even if some workers failed to register)
  1  the coordinator never became reachable
  2  configuration is unusable (nothing was attempted)
"""

import argparse
import asyncio
import logging
import sys
from typing import Optional, Sequence

import structlog

from citus_registrar.cli.formatter import ReportFormatter
from citus_registrar.cluster.controller import (
    CoordinatorUnavailableError,
    ReconciliationController,
)
from citus_registrar.cluster.models import DiscoveryReport
from citus_registrar.cluster.prober import ReadinessProber
from citus_registrar.cluster.resolver import Resolver
from citus_registrar.config import ConfigurationError, RegistrarSettings, load_settings
from citus_registrar.storage.database import Database, build_url
from citus_registrar.storage.membership import MembershipStore

EXIT_OK = 0
EXIT_COORDINATOR_UNAVAILABLE = 1
EXIT_CONFIGURATION_ERROR = 2

logger = structlog.get_logger(__name__)


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="citus-registrar",
        description="Discover Citus workers on the private network and register them",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=(
            "Examples:\n"
            "  %(prog)s                          # settings from the environment\n"
            "  %(prog)s --config registrar.yaml  # YAML defaults, env overrides\n"
            "  %(prog)s --json                   # machine-readable summary\n"
        ),
    )
    parser.add_argument("--config", metavar="PATH", help="YAML settings file")
    parser.add_argument(
        "--max-index",
        type=int,
        help="Highest worker index to look for (default: 20)",
    )
    parser.add_argument(
        "--json",
        dest="json_output",
        action="store_true",
        help="Print the summary as JSON instead of tables",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Log verbosity (default: INFO)",
    )
    parser.add_argument(
        "--json-logs",
        action="store_true",
        help="Emit logs as JSON lines",
    )
    return parser.parse_args(argv)


def configure_logging(level: str = "INFO", json_logs: bool = False) -> None:
    """Send structured logs to stderr so stdout carries only the summary."""
    renderer = (
        structlog.processors.JSONRenderer()
        if json_logs
        else structlog.dev.ConsoleRenderer()
    )
    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(getattr(logging, level.upper())),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )


async def reconcile(settings: RegistrarSettings) -> DiscoveryReport:
    """Wire up the components from settings and run one pass."""
    database = Database(
        build_url(
            host=settings.coordinator_host,
            port=settings.coordinator_port,
            user=settings.user,
            password=settings.password.get_secret_value(),
            database=settings.database,
        ),
        pool_size=settings.concurrency,
        connect_timeout=settings.connect_timeout,
    )
    await database.connect()
    try:
        controller = ReconciliationController(
            settings=settings,
            resolver=Resolver(
                domain_suffix=settings.domain_suffix,
                port=settings.worker_port,
                concurrency=settings.concurrency,
                lookup_timeout=settings.lookup_timeout,
            ),
            prober=ReadinessProber(settings),
            store=MembershipStore(database),
        )
        return await controller.run()
    finally:
        await database.disconnect()


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    configure_logging(args.log_level, args.json_logs)
    formatter = ReportFormatter()

    try:
        settings = load_settings(args.config)
        if args.max_index is not None:
            settings = RegistrarSettings.model_validate(
                {**settings.model_dump(), "max_index": args.max_index}
            )
    except ConfigurationError as exc:
        formatter.error(str(exc))
        return EXIT_CONFIGURATION_ERROR
    except ValueError as exc:
        formatter.error(f"Invalid --max-index: {exc}")
        return EXIT_CONFIGURATION_ERROR

    if not args.json_output:
        formatter.print_banner(
            settings.naming_schemes,
            f"{settings.coordinator_host}:{settings.coordinator_port}",
        )

    try:
        report = asyncio.run(reconcile(settings))
    except CoordinatorUnavailableError as exc:
        logger.error("coordinator_unavailable", error=str(exc))
        formatter.error(str(exc))
        return EXIT_COORDINATOR_UNAVAILABLE
    except KeyboardInterrupt:
        logger.info("registration_interrupted")
        return 130

    if args.json_output:
        formatter.print_json(report.to_dict())
    else:
        formatter.print_report(report)
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
