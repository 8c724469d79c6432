"""CLI entry point."""

import argparse
import logging
import os
import signal
import sys

from dotenv import load_dotenv

from .config import load_config
from .db import RunStateStore
from .errors import ConfigError
from .fetcher import FetchClient
from .logger import setup_logger
from .models import STAGE_ORDER, Stage
from .orchestrator import StageOrchestrator
from .plans import load_site_plan
from .sink import FileSink


def show_stats(store: RunStateStore):
    """Display per-stage unit counts."""
    print("\n" + "=" * 60)
    print("  RUN STATE")
    print("=" * 60)
    print(f"{'Stage':<12} {'Status':<12} {'Count':>8} {'Attempts':>10}")
    print("-" * 60)

    total = 0
    for stage, status, count, attempts in store.get_stats():
        print(f"{stage:<12} {status:<12} {count:>8} {attempts:>10}")
        total += count

    print("-" * 60)
    print(f"{'TOTAL':<12} {'':12} {total:>8}")
    print()


def show_failures(store: RunStateStore, limit: int = 20):
    failed = [u for u in store.snapshot() if u.status.value == "failed"]
    if not failed:
        return
    print(f"Failed units ({len(failed)}):")
    for unit in failed[:limit]:
        print(f"  [{unit.stage.value}] {unit.source_url} (attempts {unit.attempts}): {unit.last_error}")
    if len(failed) > limit:
        print(f"  ... {len(failed) - limit} more")
    print()


def main(argv=None):
    load_dotenv()

    parser = argparse.ArgumentParser(description="Resumable listing -> detail -> document harvester")
    parser.add_argument("--config", type=str, default=os.environ.get("DOCHARVEST_CONFIG", "config.yaml"),
                        help="Path to config file")
    parser.add_argument("--site", type=str, default=None,
                        help="Site plan YAML (overrides the config's 'site')")
    parser.add_argument("--stage", type=str, default="all",
                        choices=["all"] + [s.value for s in STAGE_ORDER],
                        help="Run a single stage instead of all three in order")
    parser.add_argument("--seed", action="append", default=[],
                        help="Query signature to enumerate (repeatable)")
    parser.add_argument("--concurrency", type=int, default=None,
                        help="Worker count for the stage(s) being run")
    parser.add_argument("--retry-failed", action="store_true",
                        help="Reset failed units to pending before running")
    parser.add_argument("--stats", action="store_true",
                        help="Show run state statistics and exit")
    parser.add_argument("--verbose", "-v", action="store_true")
    args = parser.parse_args(argv)

    try:
        config = load_config(args.config)
        site = load_site_plan(args.site or config.site)
    except ConfigError as e:
        print(f"error: {e}", file=sys.stderr)
        return 2

    logger = setup_logger(config.log_dir, logging.DEBUG if args.verbose else logging.INFO)
    store = RunStateStore(config.db_path, max_attempts=config.stages.max_attempts)

    if args.stats:
        show_stats(store)
        show_failures(store)
        return 0

    if args.retry_failed:
        stage = None if args.stage == "all" else Stage(args.stage)
        reset = store.reset_failed(stage)
        logger.info(f"Reset {reset} failed unit(s) to pending")

    print(f"Site: {site.name} (plan v{site.version})")
    print(f"Data directory: {config.data_dir}")
    print(f"Database: {config.db_path}")

    orchestrator = StageOrchestrator(
        config=config,
        site=site,
        store=store,
        fetcher=FetchClient(config.fetch),
        sink=FileSink(config.data_dir),
    )

    def _interrupt(signum, frame):
        logger.warning("Interrupt received; finishing in-flight work and stopping")
        orchestrator.cancel()
        signal.signal(signal.SIGINT, signal.default_int_handler)

    signal.signal(signal.SIGINT, _interrupt)

    orchestrator.seed(args.seed or None)
    if args.stage == "all":
        for stage in STAGE_ORDER:
            if orchestrator.cancelled:
                break
            orchestrator.run_stage(stage, args.concurrency)
    else:
        orchestrator.run_stage(Stage(args.stage), args.concurrency)

    show_stats(store)
    show_failures(store)
    return 130 if orchestrator.cancelled else 0


if __name__ == "__main__":
    sys.exit(main())
