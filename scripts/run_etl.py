"""
Run or administer a pipeline stage from the command line.

Examples:
    python scripts/run_etl.py extract                  # interval loop from the cursor
    python scripts/run_etl.py extract -s 100 -e 200    # one-shot range
    python scripts/run_etl.py transform -t 2d          # one-shot lookback
    python scripts/run_etl.py extract -r               # resume latest running/paused batch
    python scripts/run_etl.py transform -b             # show the last batch
    python scripts/run_etl.py extract -p <batch key>   # pause a running batch
    python scripts/run_etl.py reconcile                # replay fallback status files
"""

import argparse
import asyncio
import json
import sys
import os
import logging
import uuid
from contextlib import AsyncExitStack
from typing import List, Optional

# Add current directory to path to allow imports from core, models, etc.
sys.path.append(os.getcwd())

from pydantic import ValidationError
from core.config import settings
from core.database import dispose_engine, get_session_maker
from core.exceptions import BatchStateError, ConnectivityExhaustedError, TimeRangeError
from core.logging import setup_logging
from ingestion.batch_admin import cancel_batch, pause_batch, resume_batch, show_last_batch
from ingestion.block_range import parse_time_range
from ingestion.extractors.rpc_client import SubstrateRPCClient
from ingestion.pipelines import build_runner, interval_ms
from ingestion.progress import ProgressTracker
from ingestion.scheduler import ETLScheduler
from models.base import StageType
from schemas.batch import RunBounds

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Chain ETL batch runner")
    subparsers = parser.add_subparsers(dest="command", required=True)

    for stage_type in StageType:
        stage = subparsers.add_parser(stage_type.value, help=f"Run the {stage_type.value} stage")
        stage.add_argument("-s", "--start-block", type=int, help="First block to process")
        stage.add_argument("-e", "--end-block", type=int, help="Last block to process")
        stage.add_argument("-t", "--time-range", help="Lookback such as 2h, 3d, 1w, 1m, 1y")
        stage.add_argument("-b", "--batchlog", action="store_true", help="Show the last batch")
        stage.add_argument("-r", "--resume", action="store_true", help="Resume the latest unfinished batch")
        stage.add_argument("-p", "--pause", metavar="BATCH_KEY", type=uuid.UUID, help="Pause a running batch")
        stage.add_argument("-c", "--cancel", metavar="BATCH_KEY", type=uuid.UUID, help="Cancel an unfinished batch")

    subparsers.add_parser("reconcile", help="Apply status files left by failed final writes")
    return parser


def print_record(record) -> None:
    print(json.dumps(record.to_dict(), indent=2, default=str))


async def run_stage(args: argparse.Namespace) -> int:
    """Execute a stage subcommand. Returns the process exit code."""
    stage_type = StageType(args.command)
    session_maker = get_session_maker()

    if args.batchlog:
        record = await show_last_batch(session_maker, stage_type)
        if record is None:
            print(f"No {stage_type.value} batches found")
            return 1
        print_record(record)
        return 0

    if args.pause:
        print_record(await pause_batch(session_maker, args.pause))
        return 0

    if args.cancel:
        print_record(await cancel_batch(session_maker, args.cancel))
        return 0

    if args.time_range is not None:
        parse_time_range(args.time_range)
    bounds = RunBounds(start=args.start_block, end=args.end_block, time_range=args.time_range)

    resume_key = None
    if args.resume:
        resume_key = (await resume_batch(session_maker, stage_type)).batch_key

    async with AsyncExitStack() as stack:
        rpc_client = None
        if stage_type == StageType.EXTRACT:
            rpc_client = await stack.enter_async_context(SubstrateRPCClient())

        scheduler = ETLScheduler()
        scheduler.add_stage(
            stage_type.value,
            build_runner(stage_type, session_maker, rpc_client),
            interval_ms(stage_type),
            bounds=bounds if bounds.is_bounded else None,
            resume=resume_key,
        )
        scheduler.start()
        try:
            await scheduler.wait()
        finally:
            scheduler.stop()

    if scheduler.fatal_error is not None:
        return 1
    if bounds.is_bounded and scheduler.errors:
        return 1
    return 0


async def reconcile() -> int:
    replayed = await ProgressTracker(get_session_maker()).replay_fallback()
    logger.info(f"Replayed {replayed} fallback status file(s)")
    return 0


async def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command != "reconcile" and args.time_range and (
        args.start_block is not None or args.end_block is not None
    ):
        parser.error("--time-range cannot be combined with --start-block/--end-block")

    setup_logging()
    logger.info(f"Environment: {settings.ENVIRONMENT}")

    try:
        if args.command == "reconcile":
            return await reconcile()
        return await run_stage(args)
    except (BatchStateError, TimeRangeError, ValidationError) as e:
        logger.error(str(e))
        return 1
    except ConnectivityExhaustedError as e:
        logger.critical(f"Giving up: {e}")
        return 1
    finally:
        await dispose_engine()


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
