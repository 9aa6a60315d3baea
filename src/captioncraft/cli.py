import argparse
import asyncio
import json
import logging
import signal
import sys

from .config import resolve_config
from .errors import CaptionCraftError
from .media import FfmpegToolkit
from .models import CaptionCraftConfig
from .queue.connection import ConnectionPool
from .queue.sqlite_backend import SQLiteBroker
from .runtime import STAGES, Runtime

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(level: str = "info") -> None:
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)


async def run_worker(config: CaptionCraftConfig, stage: str) -> None:
    """Consume one stage queue until SIGINT/SIGTERM."""
    async with Runtime(config) as runtime:
        worker = runtime.worker(stage)

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, worker.stop)

        if stage == "cleanup":
            await runtime.schedule_cleanup()

        runtime.start_monitoring()
        await worker.run()


async def queue_status(config: CaptionCraftConfig, queue_name: str = None) -> dict:
    pool = ConnectionPool(config.broker)
    try:
        broker = SQLiteBroker(pool.get_connection())
        return await broker.counts(queue_name)
    finally:
        await pool.shutdown()


async def queue_recover(config: CaptionCraftConfig, timeout_s: int) -> int:
    pool = ConnectionPool(config.broker)
    try:
        broker = SQLiteBroker(pool.get_connection())
        return await broker.reset_stale_running(timeout_s)
    finally:
        await pool.shutdown()


async def retry_video(config: CaptionCraftConfig, video_id: str, user_id: str):
    async with Runtime(config) as runtime:
        return await runtime.lifecycle.retry(video_id, user_id)


async def collect_stats(config: CaptionCraftConfig) -> dict:
    runtime = Runtime(config)
    try:
        stats = runtime.stats()
        stats["jobs"] = await runtime.broker.counts()
        return stats
    finally:
        await runtime.shutdown()


def print_queue_status(counts: dict) -> None:
    print("\n" + "=" * 60)
    print("QUEUE STATUS")
    print("=" * 60)
    if not counts:
        print("No jobs.")
    for name, per_status in sorted(counts.items()):
        print(f"{name}")
        print(f"  Pending:            {per_status.get('pending', 0)}")
        print(f"  Running:            {per_status.get('running', 0)}")
        print(f"  Completed:          {per_status.get('completed', 0)}")
        print(f"  Failed:             {per_status.get('failed', 0)}")
    print("=" * 60)


def main(argv=None):
    parser = argparse.ArgumentParser(
        prog="captioncraft", description="Caption pipeline job orchestration"
    )
    parser.add_argument(
        "--log-level",
        choices=["debug", "info", "warning", "error"],
        default="info",
        help="Logging level",
    )
    parser.add_argument("--db", type=str, help="Broker database path")
    parser.add_argument("--records-url", type=str, help="Record store URL")
    parser.add_argument("--tmp-dir", type=str, help="Shared temporary directory")
    subparsers = parser.add_subparsers(dest="command", help="Subcommands")

    # WORKER
    worker_parser = subparsers.add_parser("worker", help="Run one stage consumer")
    worker_parser.add_argument("stage", choices=STAGES, help="Stage queue to consume")
    worker_parser.add_argument(
        "--poll-interval", type=float, help="Seconds between polls of an empty queue"
    )

    # QUEUE subcommands (status, recover)
    queue_parser = subparsers.add_parser("queue", help="Inspect the job queue")
    queue_subparsers = queue_parser.add_subparsers(dest="queue_command", help="Queue commands")

    status_parser = queue_subparsers.add_parser("status", help="Show job counts per queue")
    status_parser.add_argument("--queue", type=str, help="Only this queue")

    recover_parser = queue_subparsers.add_parser("recover", help="Reset stale running jobs")
    recover_parser.add_argument(
        "--timeout", type=int, default=7200, help="Seconds after which a running job is stale"
    )

    # RETRY
    retry_parser = subparsers.add_parser("retry", help="Retry a failed video")
    retry_parser.add_argument("video_id", help="Video identifier")
    retry_parser.add_argument("--user", required=True, help="Owner of the video")

    # STATS
    subparsers.add_parser("stats", help="Connection, cache and queue statistics")

    # CHECK FFMPEG
    subparsers.add_parser("check", help="Verify dependencies")

    args = parser.parse_args(argv)
    configure_logging(args.log_level)

    cli_dict = {k: v for k, v in vars(args).items() if v is not None}

    if args.command == "check":
        print("Checking dependencies...")
        try:
            version = FfmpegToolkit().version()
        except Exception as e:
            print(f"❌ ffmpeg NOT available: {e}")
            sys.exit(1)
        print(f"✅ {version}")
        return

    if args.command is None:
        parser.print_help()
        return

    config = resolve_config(cli_dict)

    if args.command == "worker":
        asyncio.run(run_worker(config, args.stage))

    elif args.command == "queue":
        if args.queue_command == "status":
            print_queue_status(asyncio.run(queue_status(config, args.queue)))

        elif args.queue_command == "recover":
            reset = asyncio.run(queue_recover(config, args.timeout))
            print(f"Reset {reset} stale running job(s) to pending.")

        else:
            queue_parser.print_help()

    elif args.command == "retry":
        try:
            handle = asyncio.run(retry_video(config, args.video_id, args.user))
        except CaptionCraftError as e:
            print(f"❌ {e}")
            sys.exit(1)
        print(f"Queued {handle.job_type} job {handle.job_id} on {handle.queue_name}")

    elif args.command == "stats":
        print(json.dumps(asyncio.run(collect_stats(config)), indent=2, default=str))


if __name__ == "__main__":
    main()
