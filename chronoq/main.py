#!/usr/bin/env python3
"""
chronoq process entry point.

    chronoq scheduler     claim due jobs and hand them to the task queue
    chronoq worker        execute queued jobs
    chronoq all           both, in one process

Settings come from the environment / .env (see chronoq.config).
"""
import argparse
import asyncio
import signal
from typing import List, Optional

import structlog

from .config import ChronoqSettings
from .runtime import open_runtime
from .utils.logger import bind_process_context, configure_logging

logger = structlog.get_logger(__name__)

ROLES = ("scheduler", "worker", "all")


def _parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="chronoq", description="Distributed job scheduler")
    parser.add_argument("role", choices=ROLES, help="which loops this process runs")
    parser.add_argument(
        "--create-schema",
        action="store_true",
        help="create the job tables at startup instead of relying on alembic",
    )
    return parser.parse_args(argv)


async def run(role: str, settings: ChronoqSettings, create_schema: bool = False) -> None:
    async with open_runtime(settings, create_schema=create_schema) as runtime:
        loops = []
        if role in ("scheduler", "all"):
            loops.append(runtime.scheduler())
        if role in ("worker", "all"):
            loops.append(runtime.worker_pool())

        def request_stop() -> None:
            logger.info("shutdown_requested", role=role)
            for loop in loops:
                loop.stop()

        event_loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                event_loop.add_signal_handler(sig, request_stop)
            except NotImplementedError:
                # Windows: KeyboardInterrupt still cancels asyncio.run
                pass

        await asyncio.gather(*(loop.run() for loop in loops))


def cli(argv: Optional[List[str]] = None) -> None:
    args = _parse_args(argv)
    settings = ChronoqSettings()
    configure_logging(settings.log_level, json=settings.log_json, log_file=settings.log_file)
    bind_process_context(role=args.role, instance_id=settings.instance_id)

    try:
        asyncio.run(run(args.role, settings, create_schema=args.create_schema))
    except KeyboardInterrupt:
        logger.info("shutting_down")


if __name__ == "__main__":
    cli()
