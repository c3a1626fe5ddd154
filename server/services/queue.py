"""Job queues for node dispatch.

Two logical queues feed the worker pool:
- immediate: run a node now
- delayed: resume an execution once ``resume_at`` has passed

Backends:
- MemoryJobQueue: asyncio queues, delayed jobs released by APScheduler
  date triggers (single-process deployments and tests)
- RedisJobQueue: Redis lists and a sorted set, so jobs survive restarts and
  can be shared by several worker processes
"""

import asyncio
import time
from datetime import datetime, timezone
from typing import Optional, Protocol

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.date import DateTrigger

from core.logging import get_logger
from services.execution.models import DelayedNodeJob, NodeJob, ensure_utc

logger = get_logger(__name__)


class JobQueue(Protocol):
    """Interface shared by queue backends."""

    async def startup(self) -> None: ...

    async def shutdown(self) -> None: ...

    async def enqueue_now(self, job: NodeJob) -> None: ...

    async def enqueue_at(self, job: DelayedNodeJob) -> None: ...

    async def next_job(self, timeout: float) -> Optional[NodeJob]: ...

    async def next_delayed_job(self, timeout: float) -> Optional[DelayedNodeJob]: ...

    async def ack(self, job: NodeJob) -> None: ...

    async def ack_delayed(self, job: DelayedNodeJob) -> None: ...


# =============================================================================
# MEMORY BACKEND
# =============================================================================

class MemoryJobQueue:
    """In-process queues. Pending delayed jobs are lost on restart."""

    def __init__(self, scheduler: Optional[AsyncIOScheduler] = None):
        self._ready: "asyncio.Queue[NodeJob]" = asyncio.Queue()
        self._due: "asyncio.Queue[DelayedNodeJob]" = asyncio.Queue()
        self._scheduler = scheduler or AsyncIOScheduler(timezone="UTC")

    async def startup(self) -> None:
        if not self._scheduler.running:
            self._scheduler.start()
            logger.info("Delayed job scheduler started")

    async def shutdown(self) -> None:
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
            logger.info("Delayed job scheduler stopped")

    async def enqueue_now(self, job: NodeJob) -> None:
        await self._ready.put(job)

    async def enqueue_at(self, job: DelayedNodeJob) -> None:
        """Release the job into the due queue at ``resume_at``."""
        resume_at = ensure_utc(job.resume_at)
        if resume_at <= datetime.now(timezone.utc):
            await self._due.put(job)
            return

        self._scheduler.add_job(
            self._release,
            trigger=DateTrigger(run_date=resume_at, timezone="UTC"),
            id=job.job_id,
            replace_existing=True,
            misfire_grace_time=None,
            kwargs={"job": job},
        )
        logger.debug("Delayed job scheduled", job_id=job.job_id, resume_at=resume_at.isoformat())

    async def _release(self, job: DelayedNodeJob) -> None:
        await self._due.put(job)

    async def next_job(self, timeout: float) -> Optional[NodeJob]:
        try:
            return await asyncio.wait_for(self._ready.get(), timeout)
        except asyncio.TimeoutError:
            return None

    async def next_delayed_job(self, timeout: float) -> Optional[DelayedNodeJob]:
        try:
            return await asyncio.wait_for(self._due.get(), timeout)
        except asyncio.TimeoutError:
            return None

    async def ack(self, job: NodeJob) -> None:
        self._ready.task_done()

    async def ack_delayed(self, job: DelayedNodeJob) -> None:
        self._due.task_done()

    def pending_counts(self) -> dict:
        return {
            "ready": self._ready.qsize(),
            "due": self._due.qsize(),
            "scheduled": len(self._scheduler.get_jobs()),
        }


# =============================================================================
# REDIS BACKEND
# =============================================================================

# Claim the earliest due member and push its score out by the lease so that a
# crashed consumer's job becomes due again once the lease expires.
CLAIM_DUE_SCRIPT = """
local due = redis.call('ZRANGEBYSCORE', KEYS[1], '-inf', ARGV[1], 'LIMIT', 0, 1)
if #due == 0 then
    return nil
end
redis.call('ZADD', KEYS[1], ARGV[2], due[1])
return due[1]
"""


class RedisJobQueue:
    """Reliable queues on Redis.

    Immediate jobs move from a ready list to a processing list with BLMOVE and
    are removed from it on ack. Delayed jobs live in a sorted set scored by
    resume time; a claim leases the member, ack removes it.
    """

    def __init__(self, redis_service, prefix: str = "workflow",
                 lease_seconds: int = 300, poll_interval: float = 1.0):
        self.redis_service = redis_service
        self.ready_key = f"{prefix}:jobs:ready"
        self.processing_key = f"{prefix}:jobs:processing"
        self.delayed_key = f"{prefix}:jobs:delayed"
        self.lease_seconds = lease_seconds
        self.poll_interval = poll_interval
        self._claim_script = None

    @property
    def redis(self):
        return self.redis_service.client

    async def startup(self) -> None:
        """Requeue immediate jobs left unacked by a previous process."""
        self._claim_script = self.redis.register_script(CLAIM_DUE_SCRIPT)

        requeued = 0
        while await self.redis.lmove(self.processing_key, self.ready_key, "RIGHT", "RIGHT"):
            requeued += 1
        if requeued:
            logger.warning("Requeued unacknowledged jobs", count=requeued)
        logger.info("Redis job queue ready", ready_key=self.ready_key, delayed_key=self.delayed_key)

    async def shutdown(self) -> None:
        self._claim_script = None

    async def enqueue_now(self, job: NodeJob) -> None:
        await self.redis.lpush(self.ready_key, job.to_json())

    async def enqueue_at(self, job: DelayedNodeJob) -> None:
        score = ensure_utc(job.resume_at).timestamp()
        await self.redis.zadd(self.delayed_key, {job.to_json(): score})

    async def next_job(self, timeout: float) -> Optional[NodeJob]:
        raw = await self.redis.blmove(self.ready_key, self.processing_key, timeout, "RIGHT", "LEFT")
        if raw is None:
            return None
        return NodeJob.from_json(raw)

    async def next_delayed_job(self, timeout: float) -> Optional[DelayedNodeJob]:
        """Poll the sorted set for a due job until ``timeout`` elapses."""
        deadline = time.monotonic() + timeout
        while True:
            now = time.time()
            raw = await self._claim_script(
                keys=[self.delayed_key],
                args=[now, now + self.lease_seconds],
            )
            if raw is not None:
                return DelayedNodeJob.from_json(raw)

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return None
            await asyncio.sleep(min(self.poll_interval, remaining))

    async def ack(self, job: NodeJob) -> None:
        await self.redis.lrem(self.processing_key, 1, job.to_json())

    async def ack_delayed(self, job: DelayedNodeJob) -> None:
        await self.redis.zrem(self.delayed_key, job.to_json())
