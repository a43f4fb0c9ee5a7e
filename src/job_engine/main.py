import argparse
import asyncio
import logging
import signal
import sys
from datetime import UTC, datetime, timedelta

from job_engine import config
from job_engine.db import Database
from job_engine.exceptions import RunAlreadyActiveError
from job_engine.formatter import RunFormatter
from job_engine.models import LlmMode, RunFamily
from job_engine.orchestrator import Orchestrator
from job_engine.profile import load_profile

# Set up logging once, in the application entry point only
logging.basicConfig(
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s", level=logging.INFO
)
logger = logging.getLogger(__name__)

DEFAULT_FAMILIES = [RunFamily.CORE, RunFamily.EXTERNAL, RunFamily.BIGTECH]


def build_orchestrator(db: Database, llm_mode: LlmMode | None = None) -> Orchestrator:
    """Wire an Orchestrator from the environment configuration."""
    return Orchestrator(
        db=db,
        profile=load_profile(config.PROFILE_PATH),
        gate_options=config.GATE_OPTIONS,
        llm_options=config.LLM_OPTIONS,
        source_settings=config.SOURCE_SETTINGS,
        default_llm_mode=llm_mode or config.LLM_MODE,
        webhook_url=config.PD_WEBHOOK_URL,
        webhook_token=config.PD_WEBHOOK_TOKEN,
    )


async def run_families(
    orchestrator: Orchestrator,
    families: list[RunFamily],
    trigger_type: str = "manual",
) -> None:
    """Run each family once, in order. A family already in progress is skipped."""
    for family in families:
        try:
            summary = await orchestrator.trigger_run(family, trigger_type=trigger_type)
        except RunAlreadyActiveError as e:
            logger.warning(f"{e}, skipping")
            continue
        print(RunFormatter.format_summary(summary))


async def run_once(families: list[RunFamily], llm_mode: LlmMode | None = None) -> None:
    logger.info("Starting job ingestion pipeline...")
    with Database(db_path=config.DB_PATH) as db:
        orchestrator = build_orchestrator(db, llm_mode)
        await run_families(orchestrator, families)
        await orchestrator.drain()


async def _wait_or_shutdown(shutdown_event: asyncio.Event, minutes: int) -> None:
    try:
        await asyncio.wait_for(shutdown_event.wait(), timeout=minutes * 60)
    except TimeoutError:
        # The interval elapsed without a shutdown signal
        pass


async def _schedule_runs(
    orchestrator: Orchestrator,
    families: list[RunFamily],
    interval_minutes: int,
    shutdown_event: asyncio.Event,
) -> None:
    while not shutdown_event.is_set():
        try:
            await run_families(orchestrator, families, trigger_type="scheduled")
        except Exception as e:
            logger.error(f"Pipeline error (will retry next cycle): {e}")

        if shutdown_event.is_set():
            break

        next_run = datetime.now(tz=UTC) + timedelta(minutes=interval_minutes)
        logger.info(f"Next run at {next_run.strftime('%Y-%m-%d %H:%M:%S UTC')}")
        await _wait_or_shutdown(shutdown_event, interval_minutes)


async def _poll_batches(
    orchestrator: Orchestrator, poll_minutes: int, shutdown_event: asyncio.Event
) -> None:
    while not shutdown_event.is_set():
        try:
            await orchestrator.poll_batches()
        except Exception as e:
            logger.error(f"Batch polling error (will retry next cycle): {e}")
        await _wait_or_shutdown(shutdown_event, poll_minutes)


async def run_loop(
    interval_minutes: int,
    families: list[RunFamily],
    poll_minutes: int | None = None,
    llm_mode: LlmMode | None = None,
) -> None:
    """
    Run the configured families every interval and poll batches on an
    independent timer.

    Handles SIGINT/SIGTERM for graceful shutdown. Errors in a single run or
    poll cycle are logged but do not crash the loop.
    """
    shutdown_event = asyncio.Event()

    def _signal_handler() -> None:
        logger.info("Shutdown signal received. Finishing current cycle...")
        shutdown_event.set()

    # Register signal handlers on the running event loop
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _signal_handler)

    poll_minutes = poll_minutes or config.BATCH_POLL_INTERVAL
    logger.info(
        f"Starting continuous loop (interval: {interval_minutes} min, "
        f"batch poll: {poll_minutes} min). Press Ctrl+C to stop."
    )

    with Database(db_path=config.DB_PATH) as db:
        orchestrator = build_orchestrator(db, llm_mode)
        await asyncio.gather(
            _schedule_runs(orchestrator, families, interval_minutes, shutdown_event),
            _poll_batches(orchestrator, poll_minutes, shutdown_event),
        )
        await orchestrator.drain()

    logger.info("Shutting down gracefully.")


async def poll_once() -> None:
    with Database(db_path=config.DB_PATH) as db:
        result = await build_orchestrator(db).poll_batches()
    print(f"Checked {result.checked} batch(es): {result.completed} completed, {result.failed} failed")


async def requeue_failed() -> None:
    with Database(db_path=config.DB_PATH) as db:
        result = await build_orchestrator(db).requeue_failed_batch_items()
    print(f"Requeued {result['queued']} job(s) for batch classification")


def list_runs(limit: int) -> None:
    with Database(db_path=config.DB_PATH) as db:
        for row in db.list_runs(limit):
            print(RunFormatter.format_run_row(row))


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        prog="job-engine",
        description=(
            "Fetch job postings from configured boards, deduplicate them, "
            "and classify which ones reach the review inbox."
        ),
    )

    mode = parser.add_mutually_exclusive_group()
    mode.add_argument(
        "--once",
        action="store_true",
        help="Run the selected families once and exit.",
    )
    mode.add_argument(
        "--loop",
        action="store_true",
        default=True,
        help="Run in a continuous loop with independent batch polling (default).",
    )
    mode.add_argument(
        "--poll-batches",
        action="store_true",
        help="Poll pending LLM batches once and exit.",
    )
    mode.add_argument(
        "--requeue-failed",
        action="store_true",
        help="Requeue failed LLM batch items and exit.",
    )
    mode.add_argument(
        "--list-runs",
        type=int,
        nargs="?",
        const=20,
        default=None,
        metavar="LIMIT",
        help="Print the most recent runs and exit.",
    )

    parser.add_argument(
        "--interval",
        type=int,
        default=None,
        metavar="MINUTES",
        help=(
            "Run interval in minutes (overrides SCRAPE_INTERVAL env var). "
            "Must be a positive integer."
        ),
    )
    parser.add_argument(
        "--family",
        action="append",
        choices=[f.value for f in RunFamily],
        default=None,
        help="Run family to execute; repeatable. Defaults to core, external and bigtech.",
    )
    parser.add_argument(
        "--llm-mode",
        choices=[m.value for m in LlmMode],
        default=None,
        help="LLM classification mode (overrides LLM_MODE env var).",
    )

    return parser.parse_args(argv)


def cli(argv: list[str] | None = None) -> None:
    """CLI entry point for the package."""
    args = parse_args(argv)

    families = [RunFamily(f) for f in args.family] if args.family else DEFAULT_FAMILIES
    llm_mode = LlmMode(args.llm_mode) if args.llm_mode else None

    if args.list_runs is not None:
        list_runs(args.list_runs)
        return
    if args.poll_batches:
        asyncio.run(poll_once())
        return
    if args.requeue_failed:
        asyncio.run(requeue_failed())
        return

    # Determine interval: CLI flag > env var > default (360)
    if args.interval is not None:
        if args.interval <= 0:
            logger.error("--interval must be a positive integer.")
            sys.exit(1)
        interval = args.interval
    else:
        interval = config.SCRAPE_INTERVAL

    if args.once:
        asyncio.run(run_once(families, llm_mode))
    else:
        asyncio.run(run_loop(interval, families, llm_mode=llm_mode))


if __name__ == "__main__":
    cli()
