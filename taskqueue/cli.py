"""
Task Queue Command Line Interface

Operator access to a task queue backed by Redis and SQLite. Connection
settings come from TASKQUEUE_* environment variables.
"""

from __future__ import annotations

import argparse
import asyncio
import importlib
import json
import signal
import sys
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Optional

import structlog

from taskqueue.broker.redis import RedisBroker
from taskqueue.config import TaskQueueConfig
from taskqueue.errors import TaskQueueError
from taskqueue.log import setup_logging
from taskqueue.manager import TaskManager
from taskqueue.models import TaskFilter, TaskStatus
from taskqueue.store.sqlite import SQLiteTaskStore
from taskqueue.worker import Handler

logger = structlog.get_logger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="taskqueue",
        description="Priority task queue with retries and orphan recovery",
    )
    parser.add_argument("--log-level", default="INFO", help="Log level")
    parser.add_argument("--console-logs", action="store_true", help="Human-readable logs")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # Worker command
    worker_parser = subparsers.add_parser("worker", help="Run a worker pool")
    worker_parser.add_argument("handler", help="Job handler as module:function")
    worker_parser.add_argument("--workers", type=int, help="Override worker count")
    worker_parser.add_argument(
        "--no-recover", action="store_true", help="Skip orphan recovery at startup",
    )

    # Submit command
    submit_parser = subparsers.add_parser("submit", help="Submit a task")
    submit_parser.add_argument("payload", help="Opaque request payload")
    submit_parser.add_argument("--priority", type=int, default=5, help="Task priority")
    submit_parser.add_argument("--account", help="Owning account id")

    # Task commands
    for name, help_text in (
        ("get", "Show a task"),
        ("cancel", "Cancel a pending or queued task"),
        ("retry", "Retry a failed task"),
    ):
        task_parser = subparsers.add_parser(name, help=help_text)
        task_parser.add_argument("task_id", help="Task id")

    # History command
    history_parser = subparsers.add_parser("history", help="List tasks")
    history_parser.add_argument("--account", help="Filter by account id")
    history_parser.add_argument(
        "--status", choices=[s.value for s in TaskStatus], help="Filter by status",
    )
    history_parser.add_argument("--limit", type=int, default=50)
    history_parser.add_argument("--offset", type=int, default=0)

    subparsers.add_parser("stats", help="Show queue statistics")
    subparsers.add_parser("recover", help="Recover orphaned tasks")

    return parser


def load_handler(target: str) -> Handler:
    """Import a handler given as ``package.module:function``."""
    module_name, sep, attr = target.partition(":")
    if not sep or not module_name or not attr:
        raise ValueError(f"Handler must look like module:function, got {target!r}")

    module = importlib.import_module(module_name)
    handler = getattr(module, attr, None)
    if handler is None or not callable(handler):
        raise ValueError(f"{target!r} is not a callable")
    return handler


@asynccontextmanager
async def open_manager(
    config: TaskQueueConfig,
    handler: Optional[Handler] = None,
) -> AsyncGenerator[TaskManager, None]:
    """Build a manager over Redis and SQLite from config."""
    broker = RedisBroker(config.redis_url)
    store = SQLiteTaskStore(config.database_path)
    await store.initialize()
    try:
        yield TaskManager(config, broker, store, handler)
    finally:
        await broker.close()
        await store.close()


def _print(data: Any) -> None:
    print(json.dumps(data, indent=2, default=str))


async def cmd_worker(config: TaskQueueConfig, handler: Handler, recover: bool) -> None:
    """Run workers until SIGINT/SIGTERM."""
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            pass

    async with open_manager(config, handler) as manager:
        if recover:
            recovered = await manager.recover_orphaned_tasks()
            logger.info("Startup orphan recovery finished", recovered=recovered)

        await manager.start()
        await stop.wait()
        await manager.shutdown()


async def cmd_submit(config: TaskQueueConfig, payload: str, priority: int, account: Optional[str]) -> None:
    async with open_manager(config) as manager:
        task_id = await manager.submit_task_with_priority(payload, priority, account)
        _print({"task_id": task_id})


async def cmd_get(config: TaskQueueConfig, task_id: str) -> None:
    async with open_manager(config) as manager:
        _print((await manager.get_task(task_id)).to_dict())


async def cmd_cancel(config: TaskQueueConfig, task_id: str) -> None:
    async with open_manager(config) as manager:
        await manager.cancel_task(task_id)
        _print({"task_id": task_id, "status": TaskStatus.CANCELED.value})


async def cmd_retry(config: TaskQueueConfig, task_id: str) -> None:
    async with open_manager(config) as manager:
        await manager.retry_task(task_id)
        _print({"task_id": task_id, "status": TaskStatus.QUEUED.value})


async def cmd_history(config: TaskQueueConfig, task_filter: TaskFilter) -> None:
    async with open_manager(config) as manager:
        tasks = await manager.get_task_history(task_filter)
        _print([t.to_dict() for t in tasks])


async def cmd_stats(config: TaskQueueConfig) -> None:
    async with open_manager(config) as manager:
        _print((await manager.get_stats()).to_dict())


async def cmd_recover(config: TaskQueueConfig) -> None:
    async with open_manager(config) as manager:
        _print({"recovered": await manager.recover_orphaned_tasks()})


def main(argv: Optional[list] = None) -> int:
    """Main CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    setup_logging(args.log_level, json_logs=not args.console_logs)

    try:
        config = TaskQueueConfig.from_env()
        if args.command == "worker":
            if args.workers:
                config = config.model_copy(update={"worker_count": args.workers})
            asyncio.run(cmd_worker(config, load_handler(args.handler), not args.no_recover))
        elif args.command == "submit":
            asyncio.run(cmd_submit(config, args.payload, args.priority, args.account))
        elif args.command == "get":
            asyncio.run(cmd_get(config, args.task_id))
        elif args.command == "cancel":
            asyncio.run(cmd_cancel(config, args.task_id))
        elif args.command == "retry":
            asyncio.run(cmd_retry(config, args.task_id))
        elif args.command == "history":
            task_filter = TaskFilter(
                account_id=args.account,
                status=TaskStatus(args.status) if args.status else None,
                limit=args.limit,
                offset=args.offset,
            )
            asyncio.run(cmd_history(config, task_filter))
        elif args.command == "stats":
            asyncio.run(cmd_stats(config))
        elif args.command == "recover":
            asyncio.run(cmd_recover(config))
    except (TaskQueueError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())
