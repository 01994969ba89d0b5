#!/usr/bin/env python3
"""Stand-alone worker process for distributed mode."""

import argparse
import asyncio
import signal

import structlog

from uptime_scheduler.config import load_config
from uptime_scheduler.errors import InfrastructureError
from uptime_scheduler.runtime import build_runtime, configure_logging
from uptime_scheduler.scheduler import WorkerPool, connect_queue

logger = structlog.get_logger(__name__)


async def run(config_path, concurrency):
    config = load_config(config_path)
    if concurrency:
        config = config.model_copy(update={"worker_concurrency": concurrency})
    configure_logging(config.log_level)

    runtime = build_runtime(config)
    try:
        queue = await connect_queue(config)
    except InfrastructureError as e:
        logger.error("Cannot start worker without the job broker", error=str(e))
        return 1

    pool = WorkerPool(queue, runtime.store, runtime.sink, runtime.run_check, config)
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    await pool.start()
    try:
        await stop.wait()
    finally:
        logger.info("Draining worker")
        await pool.stop()
        await queue.close()
        await runtime.close()
    return 0


def main():
    """Consume monitor-check jobs until SIGINT/SIGTERM."""
    parser = argparse.ArgumentParser(description="Run a monitor-check worker")
    parser.add_argument("--config", default=None, help="Path to the scheduler YAML config")
    parser.add_argument("--concurrency", type=int, default=None, help="Override QUEUE_CONCURRENCY")
    args = parser.parse_args()

    raise SystemExit(asyncio.run(run(args.config, args.concurrency)))


if __name__ == "__main__":
    main()
