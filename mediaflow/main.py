"""
mediaflow worker - runs the processing engine until interrupted.

Media paths given on the command line are submitted as jobs and their
progress is logged; without paths the worker only keeps the watchdog
running. SIGINT/SIGTERM trigger the shutdown drain.
"""

import argparse
import asyncio
import signal
import sys
import uuid
from pathlib import Path

import structlog

from mediaflow.core.config import settings
from mediaflow.core.logging import configure_logging
from mediaflow.engine import MediaEngine
from mediaflow.models import JobState, engine, init_db
from mediaflow.services import SqlRecordStore, Subscription

logger = structlog.get_logger()


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="mediaflow-worker", description=__doc__.splitlines()[1])
    parser.add_argument("media", nargs="*", help="media files to submit")
    parser.add_argument("--owner", default="local-user", help="owner ID for submitted jobs")
    parser.add_argument("--group", default="local-org", help="group ID for submitted jobs")
    return parser.parse_args(argv)


async def relay_events(subscription: Subscription) -> None:
    async for event in subscription:
        logger.info(
            "job_progress",
            job_id=event.job_id,
            progress=event.progress,
            state=event.state.value,
            result_status=event.result_status.value if event.result_status else None,
            message=event.message,
        )


async def run_worker(media: list[str], owner_id: str, group_id: str) -> int:
    shutdown_requested = asyncio.Event()

    def signal_handler(signum: int) -> None:
        logger.info("shutdown_requested", signal=signum)
        shutdown_requested.set()

    loop = asyncio.get_running_loop()
    for signum in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(signum, signal_handler, signum)

    init_db(engine)
    media_engine = MediaEngine(SqlRecordStore(engine))
    await media_engine.start()

    subscription = media_engine.subscribe(owner_id, group_id)
    relay = asyncio.create_task(relay_events(subscription))

    handles = []
    for path in media:
        handles.append(
            await media_engine.submit(uuid.uuid4().hex, owner_id, group_id, path, Path(path).name)
        )

    logger.info("worker_ready", jobs=len(handles))

    stop = asyncio.create_task(shutdown_requested.wait())
    if handles:
        finished = asyncio.gather(*(handle.wait() for handle in handles))
        await asyncio.wait({stop, finished}, return_when=asyncio.FIRST_COMPLETED)
    else:
        await stop

    await media_engine.shutdown()
    stop.cancel()
    await relay

    outcomes = [handle.runner.outcome for handle in handles]
    failed = [o for o in outcomes if o is None or o.state != JobState.COMPLETED]
    logger.info("worker_stopped", completed=len(outcomes) - len(failed), failed=len(failed))
    return 1 if failed else 0


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    configure_logging(settings.log_level, settings.log_json)
    logger.info("worker_starting", jobs=len(args.media), stage_delay=settings.stage_delay_seconds)
    return asyncio.run(run_worker(args.media, args.owner, args.group))


if __name__ == "__main__":
    sys.exit(main())
