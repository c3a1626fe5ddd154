"""Worker pool draining the immediate and delayed job queues.

Runs as background asyncio tasks:
- immediate consumers execute one node per job through NodeExecutor
- delayed consumers hand due jobs back to the runtime for resumption
"""

import asyncio
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import List, Optional, TYPE_CHECKING

from core.logging import get_logger, job_log_context
from services.execution.errors import (
    ConcurrentModificationError,
    DefinitionNotFoundError,
    ExecutionNotFoundError,
    NodeNotFoundError,
)
from services.execution.models import DelayedNodeJob, NodeJob

if TYPE_CHECKING:
    from services.execution.runtime import WorkflowRuntime
    from services.node_executor import NodeExecutor

logger = get_logger(__name__)

# Back-off before a failed resume is offered again
DELAYED_RETRY_SECONDS = 30


class WorkflowWorker:
    """Background consumers for node jobs.

    Error policy for immediate jobs:
    - ConcurrentModificationError: another writer won, drop the job
    - ExecutionNotFoundError: nothing to run, drop the job
    - NodeNotFoundError / DefinitionNotFoundError: the execution can never
      progress, fail it
    - anything else: count the attempt and redeliver with exponential backoff
      until attempts run out
    """

    def __init__(self, queue, executor: "NodeExecutor", runtime: "WorkflowRuntime",
                 concurrency: int = 10,
                 delayed_concurrency: int = 5,
                 max_attempts: int = 3,
                 poll_timeout: float = 1.0,
                 retry_backoff_seconds: float = 2.0):
        """Initialize worker pool.

        Args:
            queue: JobQueue to consume from
            executor: NodeExecutor that runs immediate jobs
            runtime: WorkflowRuntime used for resumption and failure bookkeeping
            concurrency: Number of immediate consumers
            delayed_concurrency: Number of delayed consumers
            max_attempts: Attempts per execution before it is marked failed
            poll_timeout: Seconds each consumer blocks waiting for a job
            retry_backoff_seconds: Delay before the first redelivery, doubled per attempt
        """
        self.queue = queue
        self.executor = executor
        self.runtime = runtime
        self.concurrency = concurrency
        self.delayed_concurrency = delayed_concurrency
        self.max_attempts = max_attempts
        self.poll_timeout = poll_timeout
        self.retry_backoff_seconds = retry_backoff_seconds
        self._running = False
        self._tasks: List[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start the consumer tasks."""
        if self._running:
            logger.warning("Workflow worker already running")
            return

        self._running = True
        self._tasks = [
            asyncio.create_task(self._immediate_loop(i), name=f"workflow-worker-{i}")
            for i in range(self.concurrency)
        ] + [
            asyncio.create_task(self._delayed_loop(i), name=f"workflow-delayed-worker-{i}")
            for i in range(self.delayed_concurrency)
        ]
        logger.info("Workflow worker started",
                    concurrency=self.concurrency,
                    delayed_concurrency=self.delayed_concurrency)

    async def stop(self) -> None:
        """Stop the consumer tasks."""
        self._running = False
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info("Workflow worker stopped")

    # =========================================================================
    # LOOPS
    # =========================================================================

    async def _immediate_loop(self, index: int) -> None:
        while self._running:
            try:
                job = await self.queue.next_job(self.poll_timeout)
                if job is not None:
                    with job_log_context(execution_id=job.execution_id, node_id=job.node_id,
                                         attempt=job.attempt):
                        await self.process_job(job)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("Immediate consumer iteration failed", consumer=index, error=str(e))
                await asyncio.sleep(self.poll_timeout)

    async def _delayed_loop(self, index: int) -> None:
        while self._running:
            try:
                job = await self.queue.next_delayed_job(self.poll_timeout)
                if job is not None:
                    with job_log_context(execution_id=job.execution_id, node_id=job.node_id):
                        await self.process_delayed_job(job)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("Delayed consumer iteration failed", consumer=index, error=str(e))
                await asyncio.sleep(self.poll_timeout)

    # =========================================================================
    # JOB HANDLING
    # =========================================================================

    async def process_job(self, job: NodeJob) -> str:
        """Execute one immediate job and apply the error policy.

        Returns:
            What happened: "executed", "dropped", "failed" or "retried"
        """
        try:
            await self.executor.execute(job)
            return "executed"

        except ConcurrentModificationError as e:
            logger.warning("Concurrent modification, dropping job",
                           execution_id=job.execution_id, node_id=job.node_id, error=str(e))
            return "dropped"

        except ExecutionNotFoundError:
            logger.error("Execution not found, dropping job",
                         execution_id=job.execution_id, node_id=job.node_id)
            return "dropped"

        except (NodeNotFoundError, DefinitionNotFoundError) as e:
            await self._fail_execution(job, str(e))
            return "failed"

        except Exception as e:
            return await self._retry_or_fail(job, e)

        finally:
            await self.queue.ack(job)

    async def process_delayed_job(self, job: DelayedNodeJob) -> str:
        """Resume an execution whose delay has elapsed.

        Returns:
            "resumed", "skipped" or "rescheduled"
        """
        try:
            resumed = await self.runtime.resume_workflow(job.execution_id, job.org_id, job.node_id,
                                                         job.attempt)
            return "resumed" if resumed else "skipped"

        except ConcurrentModificationError as e:
            logger.warning("Concurrent modification on resume, dropping job",
                           execution_id=job.execution_id, error=str(e))
            return "skipped"

        except Exception as e:
            logger.error("Resume failed, rescheduling",
                         execution_id=job.execution_id, node_id=job.node_id, error=str(e))
            retry_at = datetime.now(timezone.utc) + timedelta(seconds=DELAYED_RETRY_SECONDS)
            await self.queue.enqueue_at(replace(job, resume_at=retry_at))
            return "rescheduled"

        finally:
            await self.queue.ack_delayed(job)

    def retry_delay(self, attempt: int) -> float:
        """Seconds to wait before redelivering a job whose ``attempt`` failed."""
        return self.retry_backoff_seconds * 2 ** (max(attempt, 1) - 1)

    async def _fail_execution(self, job: NodeJob, error: str) -> None:
        try:
            await self.runtime.handle_workflow_failure(job.execution_id, job.org_id, error)
        except ConcurrentModificationError:
            logger.warning("Execution changed before it could be failed", execution_id=job.execution_id)

    async def _retry_or_fail(self, job: NodeJob, error: Exception) -> str:
        try:
            redeliver = await self.runtime.record_node_failure(
                job.execution_id, job.org_id, str(error), self.max_attempts
            )
        except ConcurrentModificationError:
            logger.warning("Execution changed before failure was recorded", execution_id=job.execution_id)
            return "dropped"

        if not redeliver:
            return "failed"

        retry_at = datetime.now(timezone.utc) + timedelta(seconds=self.retry_delay(job.attempt))
        await self.queue.enqueue_at(DelayedNodeJob(
            execution_id=job.execution_id,
            org_id=job.org_id,
            node_id=job.node_id,
            resume_at=retry_at,
            attempt=job.attempt + 1,
        ))
        logger.info("Job redelivery scheduled", execution_id=job.execution_id,
                    node_id=job.node_id, attempt=job.attempt + 1, retry_at=retry_at.isoformat())
        return "retried"
