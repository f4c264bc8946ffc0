"""Command-line entry point: `python -m bitredict_sync {run,init-db,stats}`."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import signal
import sys

from bitredict_sync.config import Settings, get_settings
from bitredict_sync.pipeline import Pipeline, PipelineError
from bitredict_sync.storage.database import DatabaseManager
from bitredict_sync.storage.persistence import EventStore

logger = logging.getLogger("bitredict_sync")


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="bitredict-sync",
        description="Sync Bitredict contract events into the database and broadcast them.",
    )
    parser.add_argument(
        "command",
        nargs="?",
        default="run",
        choices=["run", "init-db", "stats"],
        help="run the pipeline (default), create the schema, or print bet statistics",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="override LOG_LEVEL",
    )
    return parser.parse_args(argv)


def setup_logging(settings: Settings, override: str | None = None) -> None:
    level = getattr(logging, override) if override else settings.get_logging_level()
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
    )


async def run_pipeline(settings: Settings) -> None:
    pipeline = Pipeline(settings)
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, pipeline.request_stop)
    await pipeline.run()


async def init_db(settings: Settings) -> None:
    db = DatabaseManager.from_settings(settings.database)
    try:
        await db.init_schema_async()
    finally:
        await db.shutdown()


async def print_stats(settings: Settings) -> None:
    db = DatabaseManager.from_settings(settings.database)
    try:
        stats = await EventStore(db).get_bet_stats()
    finally:
        await db.shutdown()
    print(
        json.dumps(
            {
                "totalBets": stats.total_bets,
                "totalVolume": str(stats.total_volume),
                "uniqueBettors": stats.unique_bettors,
                "poolsWithBets": stats.pools_with_bets,
            },
            indent=2,
        )
    )


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    settings = get_settings()
    setup_logging(settings, args.log_level)
    logger.info("Configuration: %s", settings.redacted_summary())

    commands = {"run": run_pipeline, "init-db": init_db, "stats": print_stats}
    try:
        asyncio.run(commands[args.command](settings))
    except PipelineError as e:
        logger.error("Pipeline failed to start: %s", e)
        return 1
    except KeyboardInterrupt:
        pass
    return 0


if __name__ == "__main__":
    sys.exit(main())
