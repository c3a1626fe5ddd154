"""Dependency injection container for the workflow engine."""

from dependency_injector import containers, providers

from core.config import Settings
from core.database import Database
from core.redis_client import RedisService
from services.definitions import DefinitionService
from services.engagement import (
    EngagementListener,
    InMemoryEngagementEventSource,
    RedisEngagementEventSource,
)
from services.execution.runtime import WorkflowRuntime
from services.generation import HttpGenerationService
from services.node_executor import NodeExecutor
from services.queue import MemoryJobQueue, RedisJobQueue
from services.worker import WorkflowWorker


class Container(containers.DeclarativeContainer):
    """Application dependency injection container."""

    # Settings
    settings = providers.Singleton(
        Settings,
    )

    # Storage
    database = providers.Singleton(
        Database,
        settings=settings
    )

    redis = providers.Singleton(
        RedisService,
        settings=settings
    )

    # Job queues (QUEUE_BACKEND=memory|redis)
    job_queue = providers.Selector(
        settings.provided.queue_backend,
        memory=providers.Singleton(MemoryJobQueue),
        redis=providers.Singleton(
            RedisJobQueue,
            redis_service=redis,
            prefix=settings.provided.queue_prefix,
            lease_seconds=settings.provided.delayed_claim_lease_seconds,
            poll_interval=settings.provided.queue_poll_interval,
        ),
    )

    # Engagement events (ENGAGEMENT_BACKEND=memory|redis)
    engagement_source = providers.Selector(
        settings.provided.engagement_backend,
        memory=providers.Singleton(InMemoryEngagementEventSource),
        redis=providers.Singleton(
            RedisEngagementEventSource,
            redis_service=redis,
            stream=settings.provided.engagement_stream,
        ),
    )

    # External services
    generation_service = providers.Singleton(
        HttpGenerationService,
        base_url=settings.provided.generation_service_url,
        timeout=settings.provided.generation_timeout,
    )

    # Engine
    runtime = providers.Singleton(
        WorkflowRuntime,
        database=database,
        queue=job_queue
    )

    definition_service = providers.Singleton(
        DefinitionService,
        database=database
    )

    node_executor = providers.Singleton(
        NodeExecutor,
        database=database,
        runtime=runtime,
        generation_service=generation_service
    )

    worker = providers.Singleton(
        WorkflowWorker,
        queue=job_queue,
        executor=node_executor,
        runtime=runtime,
        concurrency=settings.provided.worker_concurrency,
        delayed_concurrency=settings.provided.delayed_worker_concurrency,
        max_attempts=settings.provided.max_node_attempts,
        poll_timeout=settings.provided.queue_poll_interval,
        retry_backoff_seconds=settings.provided.retry_backoff_seconds,
    )

    engagement_listener = providers.Singleton(
        EngagementListener,
        source=engagement_source,
        database=database,
        runtime=runtime
    )


# Global container instance
container = Container()
