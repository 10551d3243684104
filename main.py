"""CLI entry point for the search journey worker."""

import argparse
import asyncio
import json
import logging
import signal
import sys
from datetime import datetime, timedelta

from src.browser.provisioning import GoLoginProvisioner
from src.browser.solver import TwoCaptchaSolver
from src.core.config import Settings
from src.core.db import enqueue_job, fail_stale_jobs, init_db
from src.journeys import available_journeys
from src.journeys.driver import JourneyDriver, browser_session_factory
from src.pipeline.orchestrator import Orchestrator

logger = logging.getLogger(__name__)


def _add_common(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--config",
        default="config/settings.yaml",
        help="Path to settings YAML file (default: config/settings.yaml)",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable verbose (DEBUG) logging",
    )


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Search journey worker - run queued search sessions",
    )
    subparsers = parser.add_subparsers(dest="command")

    # --- run subcommand (default) ---
    run_parser = subparsers.add_parser("run", help="Poll the queue and run journeys")
    _add_common(run_parser)
    run_parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single poll cycle, wait for its jobs, then exit",
    )

    # --- enqueue subcommand ---
    enqueue_parser = subparsers.add_parser("enqueue", help="Add a job to the queue")
    _add_common(enqueue_parser)
    enqueue_parser.add_argument(
        "--params",
        required=True,
        help='Job parameters as JSON, e.g. \'{"keyword": "pizza", "targetBusiness": "Joe\'s"}\'',
    )
    enqueue_parser.add_argument(
        "--priority",
        type=int,
        default=0,
        help="Higher runs first (default: 0)",
    )
    enqueue_parser.add_argument(
        "--delay-s",
        type=float,
        default=0.0,
        help="Schedule the job this many seconds from now (default: 0)",
    )

    # --- recover subcommand ---
    recover_parser = subparsers.add_parser(
        "recover",
        help="Fail jobs stuck in running past the staleness threshold",
    )
    _add_common(recover_parser)

    # --- backward compat: top-level flags for run ---
    parser.add_argument("--config", default="config/settings.yaml", help=argparse.SUPPRESS)
    parser.add_argument("--once", action="store_true", help=argparse.SUPPRESS)
    parser.add_argument("--verbose", "-v", action="store_true", help=argparse.SUPPRESS)

    args = parser.parse_args(argv)

    # Default to run when no subcommand given
    if args.command is None:
        args.command = "run"

    return args


def setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )
    # Request lines from the HTTP clients are noise at INFO.
    logging.getLogger("httpx").setLevel(logging.WARNING)


def build_orchestrator(settings: Settings) -> tuple[Orchestrator, GoLoginProvisioner]:
    conn = init_db(settings.database.path)
    provisioner = GoLoginProvisioner(settings.provisioning)
    solver = TwoCaptchaSolver(settings.captcha)
    driver = JourneyDriver(settings, browser_session_factory(settings, provisioner), solver)
    return Orchestrator(conn, settings, driver), provisioner


async def run(settings: Settings, once: bool) -> None:
    """Run the worker loop until interrupted."""
    orchestrator, provisioner = build_orchestrator(settings)
    if not await provisioner.check_account():
        logger.warning("Provisioning account check failed - jobs will fail until fixed")
    logger.info("Journeys available: %s", ", ".join(available_journeys()))

    if once:
        orchestrator.recover_stale()
        started = await orchestrator.poll_once()
        await orchestrator.drain()
        print(f"Poll complete: {started} job(s) processed.")
        return

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            logger.debug("Signal handlers unavailable on this platform")
    await orchestrator.run_forever(stop)


def cmd_enqueue(args: argparse.Namespace, settings: Settings) -> None:
    """Handle enqueue subcommand."""
    params = json.loads(args.params)
    if not isinstance(params, dict):
        msg = "--params must be a JSON object"
        raise ValueError(msg)
    scheduled_for = datetime.now() + timedelta(seconds=args.delay_s)
    conn = init_db(settings.database.path)
    job_id = enqueue_job(conn, params, priority=args.priority, scheduled_for=scheduled_for)
    conn.close()
    print(f"Enqueued job {job_id} (priority {args.priority}, due {scheduled_for:%H:%M:%S})")


def cmd_recover(settings: Settings) -> None:
    """Handle recover subcommand."""
    conn = init_db(settings.database.path)
    minutes = settings.worker.stale_after_minutes
    ids = fail_stale_jobs(conn, timedelta(minutes=minutes))
    conn.close()
    print(f"Recovered {len(ids)} stale job(s) older than {minutes} minutes: {ids}")


def main(argv: list[str] | None = None) -> None:
    args = parse_args(argv)
    setup_logging(args.verbose)

    try:
        settings = Settings.from_yaml(args.config)
    except (FileNotFoundError, ValueError) as e:
        print(f"Error loading config: {e}", file=sys.stderr)
        sys.exit(1)

    if args.command == "enqueue":
        try:
            cmd_enqueue(args, settings)
        except ValueError as e:
            print(f"Error: {e}", file=sys.stderr)
            sys.exit(1)
    elif args.command == "recover":
        cmd_recover(settings)
    else:
        # run (default)
        asyncio.run(run(settings, args.once))


if __name__ == "__main__":
    main()
