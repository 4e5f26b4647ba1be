"""CLI utility for inspecting and maintaining a Redis-backed PlanFlow queue."""

from __future__ import annotations

import argparse
import asyncio
import json

from planflow.config import Settings
from planflow.execution.registry import ProcessorRegistry
from planflow.queue import DistributedJobQueue
from planflow.storage.redis_storage import RedisStorage


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Maintain a PlanFlow job queue")
    parser.add_argument(
        "--redis-url",
        default=None,
        help="Redis URL (defaults to PLANFLOW_REDIS_URL or redis://localhost:6379/0)",
    )
    parser.add_argument("--queue", default=None, help="Queue name (defaults to PLANFLOW_QUEUE_NAME)")

    commands = parser.add_subparsers(dest="command", required=True)
    commands.add_parser("stats", help="Print job counts per state.")
    drain = commands.add_parser("drain", help="Purge finished jobs older than the grace period.")
    drain.add_argument(
        "--grace-ms",
        type=int,
        default=None,
        help="Only purge jobs finished more than this many milliseconds ago.",
    )
    commands.add_parser("pause", help="Stop workers from claiming jobs.")
    commands.add_parser("resume", help="Let workers claim jobs again.")
    show = commands.add_parser("show", help="Print the status of one job.")
    show.add_argument("job_id")
    stalled = commands.add_parser("recover-stalled", help="Requeue jobs whose heartbeat expired.")
    stalled.add_argument("--json", action="store_true", help="Print recovered ids as JSON.")
    return parser


async def run(args: argparse.Namespace) -> None:
    overrides = {}
    if args.redis_url:
        overrides["redis_url"] = args.redis_url
    if args.queue:
        overrides["queue_name"] = args.queue
    settings = Settings(**overrides)

    storage = RedisStorage(queue_name=settings.queue_name, url=settings.redis_url)
    queue = DistributedJobQueue(storage, ProcessorRegistry(), settings=settings)
    try:
        if args.command == "stats":
            print(json.dumps(await queue.stats(), indent=2))
        elif args.command == "drain":
            removed = await queue.drain_old_jobs(args.grace_ms)
            print(f"Removed {removed} finished jobs.")
        elif args.command == "pause":
            if await queue.pause():
                print(f"Queue '{settings.queue_name}' paused.")
            else:
                print(f"Could not pause queue '{settings.queue_name}'; see the log.")
        elif args.command == "resume":
            if await queue.resume():
                print(f"Queue '{settings.queue_name}' resumed.")
            else:
                print(f"Could not resume queue '{settings.queue_name}'; see the log.")
        elif args.command == "show":
            status = await queue.status(args.job_id)
            if status is None:
                print(f"Job {args.job_id} not found.")
                return
            print(json.dumps(status.to_dict(), indent=2, default=str))
        elif args.command == "recover-stalled":
            recovered = await queue.check_stalled()
            if args.json:
                print(json.dumps(recovered))
            elif not recovered:
                print("No stalled jobs recovered.")
            else:
                print(f"Recovered {len(recovered)} stalled jobs:")
                for job_id in recovered:
                    print(f"- {job_id}")
    finally:
        await queue.close()


def main() -> None:
    args = build_arg_parser().parse_args()
    asyncio.run(run(args))


if __name__ == "__main__":
    main()
