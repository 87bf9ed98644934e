"""
Command line interface.

Usage:
    standby-verifier standby --topology topology.yaml
    standby-verifier standby --skip-cross-region --test-promotion
    standby-verifier resiliency --enable-chaos
    standby-verifier all --enable-chaos --test-promotion --no-cleanup
    standby-verifier cleanup --all-clusters --dry-run

Exit codes:
    0: All scenarios passed (or all cleanup deletions succeeded)
    N: Number of failed or timed out scenarios (failed deletions for cleanup)
    78: Configuration error, nothing was run
"""

import argparse
import asyncio
import sys
from collections.abc import Sequence
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from standby_verifier import __version__
from standby_verifier.cleanup import TEST_QUEUE_PATTERNS, cleanup_queues
from standby_verifier.config import Settings, get_settings, resolve_password
from standby_verifier.errors import ConfigurationError
from standby_verifier.logging import clear_run_id, get_logger, setup_logging
from standby_verifier.management.client import ManagementClient
from standby_verifier.orchestrator import ScenarioOrchestrator, generate_run_id
from standby_verifier.report import log_summary, write_report
from standby_verifier.scenarios import GROUPS, ScenarioContext, scenarios_for
from standby_verifier.topology.registry import TopologyRegistry

logger = get_logger(__name__)

EXIT_CONFIGURATION_ERROR = 78  # sysexits EX_CONFIG

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def build_parser() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--topology", type=Path, help="Topology file (YAML or JSON)")
    common.add_argument("--user", help="Management / AMQP user")
    common.add_argument(
        "--password", help="Management / AMQP password (else SV_PASSWORD or RMQ_PASSWORD)"
    )
    common.add_argument("--ssh-user", help="SSH user for remote commands")
    common.add_argument(
        "--log-level", type=str.upper, choices=LOG_LEVELS, help="Log level (default INFO)"
    )
    common.add_argument("--json-logs", action="store_true", default=None, help="JSON log lines")

    parser = argparse.ArgumentParser(
        prog="standby-verifier",
        description="Verify warm standby replication, lag, promotion and restoration",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    sub = parser.add_subparsers(dest="command", required=True)

    for group in GROUPS:
        run = sub.add_parser(group, parents=[common], help=f"Run the {group} scenarios")
        run.add_argument(
            "--skip-cross-region",
            action="store_true",
            default=None,
            help="Only verify the regional downstream",
        )
        run.add_argument(
            "--test-promotion",
            action="store_true",
            default=None,
            help="Actually promote the regional standby, then restore it",
        )
        run.add_argument(
            "--enable-chaos",
            action="store_true",
            default=None,
            help="Run fault injection scenarios (kills nodes, drops traffic)",
        )
        run.add_argument(
            "--no-cleanup",
            dest="cleanup",
            action="store_false",
            default=None,
            help="Leave test queues and exchanges for analysis",
        )
        run.add_argument("--results-dir", type=Path, help="Directory for result files")

    cleanup = sub.add_parser("cleanup", parents=[common], help="Delete leftover test queues")
    cleanup.add_argument(
        "--all-clusters", action="store_true", help="Clean every cluster, not only the upstream"
    )
    cleanup.add_argument("--pattern", help="Regex to match instead of the built-in patterns")
    cleanup.add_argument("--dry-run", action="store_true", help="List matches only")

    return parser


_SETTING_ARGS = (
    "topology",
    "user",
    "ssh_user",
    "log_level",
    "json_logs",
    "skip_cross_region",
    "test_promotion",
    "enable_chaos",
    "cleanup",
    "results_dir",
)


def apply_args(settings: Settings, args: argparse.Namespace) -> Settings:
    """Override settings with the flags that were actually given."""
    update: dict[str, Any] = {}
    for name in _SETTING_ARGS:
        value = getattr(args, name, None)
        if value is None:
            continue
        update["topology_file" if name == "topology" else name] = value
    return settings.model_copy(update=update)


async def run_verification(settings: Settings, group: str) -> int:
    """Run a scenario group; returns the number of failed scenarios."""
    registry = TopologyRegistry.load(settings.topology_file)
    # Both groups target the regional downstream; fail before anything runs
    registry.regional_downstream()
    ctx = ScenarioContext.create(settings, registry, run_id=generate_run_id(group))

    try:
        report = await ScenarioOrchestrator(ctx).run(scenarios_for(group, ctx), group)
    finally:
        await ctx.close()

    log_summary(report)
    write_report(
        report,
        settings.results_dir,
        settings_snapshot=settings.get_redacted_config(),
        extra={"promotions": [r.to_dict() for r in ctx.promotions.records]},
    )
    return report.failed_count


async def run_cleanup(settings: Settings, args: argparse.Namespace) -> int:
    """Delete test queues; returns the number of failed deletions."""
    registry = TopologyRegistry.load(settings.topology_file)
    clusters = registry.all_clusters() if args.all_clusters else [registry.upstream]
    patterns = [args.pattern] if args.pattern else list(TEST_QUEUE_PATTERNS)

    async with ManagementClient(
        settings, get_logger("standby_verifier.management"), registry.ports.management
    ) as management:
        result = await cleanup_queues(
            management,
            [c.primary_address for c in clusters],
            patterns=patterns,
            dry_run=args.dry_run,
        )
    return result.failed


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point for the ``standby-verifier`` command."""
    args = build_parser().parse_args(argv)

    try:
        settings = apply_args(get_settings(), args)
    except ValidationError as e:
        setup_logging()
        logger.error("Invalid environment configuration: %s", e)
        return EXIT_CONFIGURATION_ERROR

    setup_logging(level=settings.log_level, json_output=settings.json_logs)
    logger.info("Settings: %s", settings.get_redacted_config())

    try:
        settings = resolve_password(settings, cli_password=args.password)
        if args.command == "cleanup":
            return asyncio.run(run_cleanup(settings, args))
        return asyncio.run(run_verification(settings, args.command))
    except ConfigurationError as e:
        logger.error("Configuration error: %s", e)
        return EXIT_CONFIGURATION_ERROR
    finally:
        clear_run_id()


if __name__ == "__main__":
    sys.exit(main())
