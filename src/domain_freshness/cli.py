"""
Command-line interface for the domain freshness system.

Commands:
- decay: Show the decay multiplier and stop decision for a section
- lookup: Read sections for a domain through the SWR path (records access)
- sweep: Run one warm-cache sweep
- serve: Run the HTTP API with uvicorn
- run: Cron-scheduled sweeps plus draining of due in-process events
- config: Configuration management

Every command that builds the runtime honours --dry-run (simulated fetchers).
"""

import argparse
import asyncio
import json
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional

from . import __version__
from .audit_logger import AuditLogger
from .config import (
    SystemConfig,
    apply_env_overrides,
    config_to_dict,
    create_default_config,
    load_config_from_file,
    save_config_to_file,
)
from .decay import (
    get_base_ttl_seconds,
    get_decay_multiplier,
    is_fast_changing,
    should_stop_revalidation,
)
from .enums import ALL_SECTIONS, BackendKind, Section
from .exceptions import FreshnessError
from .orchestrator import FreshnessOrchestrator
from .scheduler import CronParseError, Scheduler


DEFAULT_CONFIG_PATH = Path.home() / ".domain_freshness" / "config.json"


def load_config(args: argparse.Namespace) -> Optional[SystemConfig]:
    """
    Load configuration from --config (or defaults) and overlay the environment.

    Returns:
        SystemConfig, or None after printing an error
    """
    config_path = getattr(args, "config", None)
    try:
        if config_path:
            config = load_config_from_file(Path(config_path))
        else:
            config = create_default_config()
        config = apply_env_overrides(config)
    except FreshnessError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        return None

    if getattr(args, "dry_run", False):
        config.simulation_mode = True
    return config


def create_logger(config: SystemConfig, verbose: bool = False) -> AuditLogger:
    """Audit logger writing to stderr at the configured level."""
    return AuditLogger(
        output_format=config.logging.output_format,
        min_level="debug" if verbose else config.logging.level,
    )


def cmd_decay(args: argparse.Namespace) -> int:
    """Handle the 'decay' command."""
    try:
        section = Section.parse(args.section)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    now = datetime.now(timezone.utc)
    last_accessed = None
    if args.inactive_days is not None:
        last_accessed = now - timedelta(days=args.inactive_days)

    base = get_base_ttl_seconds(section)
    multiplier = get_decay_multiplier(section, last_accessed, now)
    result = {
        "section": section.value,
        "fast_changing": is_fast_changing(section),
        "inactive_days": args.inactive_days,
        "base_ttl_seconds": base,
        "multiplier": multiplier,
        "decayed_ttl_seconds": base * multiplier,
        "stop_revalidation": should_stop_revalidation(section, last_accessed, now),
    }

    if args.json:
        print(json.dumps(result, indent=2))
        return 0

    print(f"Section: {result['section']} ({'fast' if result['fast_changing'] else 'slow'}-changing)")
    if args.inactive_days is None:
        print("  Inactive: no access on record")
    else:
        print(f"  Inactive: {args.inactive_days:g} day(s)")
    print(f"  Base TTL: {base}s")
    print(f"  Multiplier: {multiplier}x")
    print(f"  Decayed TTL: {result['decayed_ttl_seconds']}s")
    print(f"  Stop revalidation: {'yes' if result['stop_revalidation'] else 'no'}")
    return 0


async def lookup_domain(
    domain: str,
    sections: list[Section],
    config: SystemConfig,
    logger: Optional[AuditLogger] = None,
) -> dict:
    """Read each section through the SWR path and record the access."""
    async with FreshnessOrchestrator(config, logger=logger) as orchestrator:
        results = {}
        for section in sections:
            result = await orchestrator.get_section(section, domain)
            results[section.value] = result.to_dict()
        await orchestrator.access_recorder.record_access_now(domain)
    return results


def cmd_lookup(args: argparse.Namespace) -> int:
    """Handle the 'lookup' command."""
    config = load_config(args)
    if config is None:
        return 1

    try:
        sections = [Section.parse(s) for s in args.section] if args.section else list(ALL_SECTIONS)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    if config.simulation_mode:
        print("Simulation mode: no real network requests.", file=sys.stderr)

    logger = create_logger(config, args.verbose)
    try:
        results = asyncio.run(lookup_domain(args.domain, sections, config, logger))
    except FreshnessError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        return 1

    print(json.dumps(results, indent=2, default=str))
    return 0 if all(r["success"] for r in results.values()) else 1


async def run_sweep(config: SystemConfig, logger: Optional[AuditLogger] = None) -> dict:
    async with FreshnessOrchestrator(config, logger=logger) as orchestrator:
        summary = await orchestrator.sweep()
    return summary.to_response()


def cmd_sweep(args: argparse.Namespace) -> int:
    """Handle the 'sweep' command."""
    config = load_config(args)
    if config is None:
        return 1

    logger = create_logger(config, args.verbose)
    try:
        result = asyncio.run(run_sweep(config, logger))
    except Exception as e:
        print(f"Error: Failed to warm cache: {e}", file=sys.stderr)
        return 1

    print(json.dumps(result, indent=2))
    return 0


def cmd_serve(args: argparse.Namespace) -> int:
    """Handle the 'serve' command."""
    import uvicorn

    from .app import create_app

    config = load_config(args)
    if config is None:
        return 1
    if not config.cron.secret:
        print("Warning: CRON_SECRET is not set; protected endpoints will reject all requests.",
              file=sys.stderr)

    logger = create_logger(config, args.verbose)
    try:
        orchestrator = FreshnessOrchestrator(config, logger=logger)
    except FreshnessError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        return 1

    uvicorn.run(create_app(orchestrator, logger), host=args.host, port=args.port, log_level="info")
    return 0


async def run_scheduler(
    config: SystemConfig,
    logger: Optional[AuditLogger] = None,
    stop_event: Optional[asyncio.Event] = None,
) -> None:
    """Run sweeps on the configured cron expression until stopped."""
    async with FreshnessOrchestrator(config, logger=logger) as orchestrator:
        scheduler = Scheduler(logger=logger)

        async def sweep_job() -> None:
            await orchestrator.sweep()

        scheduler.schedule("warm-cache", config.cron.sweep_expression, sweep_job)

        if config.backend.kind is BackendKind.PUSH and not config.backend.event_api_url:
            async def drain_job() -> None:
                await orchestrator.drain_due()

            scheduler.schedule("drain-events", "* * * * *", drain_job)

        await scheduler.run(stop_event)


def cmd_run(args: argparse.Namespace) -> int:
    """Handle the 'run' command."""
    config = load_config(args)
    if config is None:
        return 1
    if args.schedule:
        config.cron.sweep_expression = args.schedule

    try:
        Scheduler().parse_cron(config.cron.sweep_expression)
    except CronParseError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    print(f"Running warm-cache sweeps on '{config.cron.sweep_expression}' (Ctrl+C to stop)")
    logger = create_logger(config, args.verbose)
    try:
        asyncio.run(run_scheduler(config, logger))
    except KeyboardInterrupt:
        print("Stopped.")
    return 0


def cmd_config(args: argparse.Namespace) -> int:
    """Handle the 'config' command."""
    config_path = Path(args.path) if args.path else DEFAULT_CONFIG_PATH

    if args.action == "show":
        try:
            config = load_config_from_file(config_path)
        except FreshnessError:
            print(f"No configuration found at: {config_path}")
            print("Use 'config init' to create a default configuration.")
            return 1

        print(f"Configuration from: {config_path}")
        print(json.dumps(config_to_dict(config), indent=2))
        return 0

    elif args.action == "init":
        if config_path.exists() and not args.force:
            print(f"Configuration already exists at: {config_path}")
            print("Use --force to overwrite.")
            return 1

        try:
            save_config_to_file(create_default_config(), config_path)
        except FreshnessError as e:
            print(f"Error: {e.message}", file=sys.stderr)
            return 1
        print(f"Configuration created at: {config_path}")
        return 0

    elif args.action == "validate":
        try:
            load_config_from_file(config_path)
        except FreshnessError as e:
            print(f"Error: {e.message}", file=sys.stderr)
            return 1

        print(f"Configuration at {config_path} is valid.")
        return 0

    return 1


def _add_runtime_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--config", "-c",
        help="Path to configuration file",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Simulation mode - simulated section fetchers, no real network requests",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Log at debug level",
    )


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser for the CLI."""
    parser = argparse.ArgumentParser(
        prog="domain-freshness",
        description="Access-driven revalidation and decay scheduling for cached domain data",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # 'decay' command
    decay_parser = subparsers.add_parser(
        "decay",
        help="Show the decay multiplier and stop decision for a section",
    )
    decay_parser.add_argument(
        "section",
        choices=[s.value for s in ALL_SECTIONS],
        help="Section name",
    )
    decay_parser.add_argument(
        "--inactive-days", "-d",
        type=float,
        default=None,
        help="Days since the last human access (omit for no access on record)",
    )
    decay_parser.add_argument(
        "--json",
        action="store_true",
        help="Print the result as JSON",
    )
    decay_parser.set_defaults(func=cmd_decay)

    # 'lookup' command
    lookup_parser = subparsers.add_parser(
        "lookup",
        help="Read a domain's sections through the cache",
    )
    lookup_parser.add_argument(
        "domain",
        help="Domain to read (e.g., example.com)",
    )
    lookup_parser.add_argument(
        "--section", "-s",
        action="append",
        help="Section to read (repeatable; default: all)",
    )
    _add_runtime_arguments(lookup_parser)
    lookup_parser.set_defaults(func=cmd_lookup)

    # 'sweep' command
    sweep_parser = subparsers.add_parser(
        "sweep",
        help="Run one warm-cache sweep",
    )
    _add_runtime_arguments(sweep_parser)
    sweep_parser.set_defaults(func=cmd_sweep)

    # 'serve' command
    serve_parser = subparsers.add_parser(
        "serve",
        help="Run the HTTP API",
    )
    serve_parser.add_argument(
        "--host",
        default="127.0.0.1",
        help="Bind address (default: 127.0.0.1)",
    )
    serve_parser.add_argument(
        "--port", "-p",
        type=int,
        default=8000,
        help="Port (default: 8000)",
    )
    _add_runtime_arguments(serve_parser)
    serve_parser.set_defaults(func=cmd_serve)

    # 'run' command
    run_parser = subparsers.add_parser(
        "run",
        help="Run cron-scheduled warm-cache sweeps",
    )
    run_parser.add_argument(
        "--schedule",
        help="Cron expression overriding the configured sweep schedule",
    )
    _add_runtime_arguments(run_parser)
    run_parser.set_defaults(func=cmd_run)

    # 'config' command
    config_parser = subparsers.add_parser(
        "config",
        help="Configuration management",
    )
    config_parser.add_argument(
        "action",
        choices=["show", "init", "validate"],
        help="Configuration action",
    )
    config_parser.add_argument(
        "--path", "-p",
        help="Path to configuration file",
    )
    config_parser.add_argument(
        "--force", "-f",
        action="store_true",
        help="Force overwrite existing configuration",
    )
    config_parser.set_defaults(func=cmd_config)

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    """
    Main entry point for the CLI.

    Args:
        argv: Command line arguments (defaults to sys.argv[1:])

    Returns:
        Exit code
    """
    parser = create_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0

    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
