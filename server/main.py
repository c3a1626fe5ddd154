"""
Workflow engine worker process.

Starts the database, job queues, engagement listener and worker pool, then
runs until SIGINT/SIGTERM.
"""

import asyncio
import signal

from core.container import container
from core.logging import configure_logging, get_logger

settings = container.settings()
configure_logging(settings)
logger = get_logger(__name__)


def _uses_redis() -> bool:
    return settings.queue_backend == "redis" or settings.engagement_backend == "redis"


async def serve(stop_event: asyncio.Event) -> None:
    """Run the engine until ``stop_event`` is set."""
    logger.info("Starting workflow engine",
                queue_backend=settings.queue_backend,
                engagement_backend=settings.engagement_backend)

    database = container.database()
    await database.startup()

    redis_service = container.redis() if _uses_redis() else None
    if redis_service:
        await redis_service.startup()

    job_queue = container.job_queue()
    await job_queue.startup()

    engagement_source = container.engagement_source()
    listener = container.engagement_listener()
    listener.start()
    await engagement_source.start()

    worker = container.worker()
    await worker.start()

    logger.info("Workflow engine started")
    try:
        await stop_event.wait()
    finally:
        logger.info("Shutting down workflow engine")
        await worker.stop()
        listener.stop()
        await engagement_source.stop()
        await job_queue.shutdown()
        if redis_service:
            await redis_service.shutdown()
        await database.shutdown()
        logger.info("Workflow engine stopped")


async def _main() -> None:
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Windows event loops have no signal handlers; Ctrl+C still raises KeyboardInterrupt
            pass
    await serve(stop_event)


def run() -> None:
    try:
        asyncio.run(_main())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    run()
