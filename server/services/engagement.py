"""Engagement events - stop outreach when a lead responds.

A ConversationEngagedEvent is published whenever a lead replies through any
channel. The listener terminates every running execution for that
conversation. Termination is cooperative: a node already mid-flight finishes
and the next dispatch sees the terminal status.

Event sources are injected:
- InMemoryEngagementEventSource: asyncio fan-out inside one process
- RedisEngagementEventSource: Redis Streams consumer group shared by processes
"""

import asyncio
import socket
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, TYPE_CHECKING

from core.logging import get_logger
from core.redis_client import RedisService, decode_fields
from services.execution.errors import ConcurrentModificationError
from services.execution.models import ensure_utc

if TYPE_CHECKING:
    from core.database import Database
    from services.execution.runtime import WorkflowRuntime

logger = get_logger(__name__)

EngagementHandler = Callable[["ConversationEngagedEvent"], Awaitable[Any]]


@dataclass
class ConversationEngagedEvent:
    """A lead responded in a conversation."""
    conversation_id: str
    lead_id: str
    org_id: str
    source: str
    engaged_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "conversation_id": self.conversation_id,
            "lead_id": self.lead_id,
            "org_id": self.org_id,
            "source": self.source,
            "engaged_at": ensure_utc(self.engaged_at).isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ConversationEngagedEvent":
        engaged_at = data.get("engaged_at")
        if isinstance(engaged_at, str):
            engaged_at = datetime.fromisoformat(engaged_at)
        return cls(
            conversation_id=str(data["conversation_id"]),
            lead_id=str(data["lead_id"]),
            org_id=str(data["org_id"]),
            source=str(data.get("source", "unknown")),
            engaged_at=ensure_utc(engaged_at) or datetime.now(timezone.utc),
        )


@dataclass
class EngagementSummary:
    terminated: int = 0
    skipped: int = 0
    failed: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {"terminated": self.terminated, "skipped": self.skipped, "failed": self.failed}


class EngagementEventSource(Protocol):
    async def start(self) -> None: ...

    async def stop(self) -> None: ...

    async def publish(self, event: ConversationEngagedEvent) -> None: ...

    def subscribe(self, handler: EngagementHandler) -> Callable[[], None]: ...


# =============================================================================
# EVENT SOURCES
# =============================================================================

class InMemoryEngagementEventSource:
    """Delivers events to subscribers in the publishing process."""

    def __init__(self):
        self._handlers: List[EngagementHandler] = []

    async def start(self) -> None:
        return None

    async def stop(self) -> None:
        self._handlers.clear()

    def subscribe(self, handler: EngagementHandler) -> Callable[[], None]:
        """Register a handler. Returns a callable that unsubscribes it."""
        self._handlers.append(handler)

        def unsubscribe() -> None:
            if handler in self._handlers:
                self._handlers.remove(handler)

        return unsubscribe

    async def publish(self, event: ConversationEngagedEvent) -> None:
        await _dispatch(list(self._handlers), event)


class RedisEngagementEventSource:
    """Events carried on a Redis Stream.

    All processes share one consumer group, so each event is handled once.
    """

    GROUP = "workflow-engagement"

    def __init__(self, redis_service: "RedisService", stream: str = "workflow:events:engaged",
                 block_ms: int = 5000):
        self.redis_service = redis_service
        self.stream = stream
        self.block_ms = block_ms
        self.consumer = f"{socket.gethostname()}-{uuid.uuid4().hex[:8]}"
        self._handlers: List[EngagementHandler] = []
        self._running = False
        self._task: Optional[asyncio.Task] = None

    def subscribe(self, handler: EngagementHandler) -> Callable[[], None]:
        self._handlers.append(handler)

        def unsubscribe() -> None:
            if handler in self._handlers:
                self._handlers.remove(handler)

        return unsubscribe

    async def publish(self, event: ConversationEngagedEvent) -> None:
        msg_id = await self.redis_service.stream_add(self.stream, event.to_dict())
        logger.debug("Engagement event published", stream=self.stream, msg_id=msg_id)

    async def start(self) -> None:
        if self._running:
            return
        await self.redis_service.stream_create_group(self.stream, self.GROUP)
        self._running = True
        self._task = asyncio.create_task(self._read_loop())
        logger.info("Engagement stream reader started", stream=self.stream, consumer=self.consumer)

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Engagement stream reader stopped")

    async def _read_loop(self) -> None:
        while self._running:
            try:
                await self.read_once()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("Engagement stream read failed", error=str(e))
                await asyncio.sleep(1)

    async def read_once(self) -> int:
        """Read and dispatch one batch. Returns the number of messages handled."""
        result = await self.redis_service.stream_read_group(
            self.GROUP, self.consumer, {self.stream: '>'}, count=10, block=self.block_ms
        )
        handled = 0
        for _stream, messages in result:
            for msg_id, fields in messages:
                try:
                    event = ConversationEngagedEvent.from_dict(decode_fields(fields))
                except (KeyError, ValueError) as e:
                    logger.warning("Malformed engagement event", msg_id=msg_id, error=str(e))
                else:
                    await _dispatch(list(self._handlers), event)
                    handled += 1
                await self.redis_service.stream_ack(self.stream, self.GROUP, msg_id)
        return handled


async def _dispatch(handlers: List[EngagementHandler], event: ConversationEngagedEvent) -> None:
    """Call every handler; one failing handler does not stop the others."""
    for handler in handlers:
        try:
            await handler(event)
        except Exception as e:
            logger.error("Engagement handler failed",
                         conversation_id=event.conversation_id, error=str(e))


# =============================================================================
# LISTENER
# =============================================================================

class EngagementListener:
    """Terminates running executions when their conversation is engaged."""

    def __init__(self, source, database: "Database", runtime: "WorkflowRuntime"):
        self.source = source
        self.database = database
        self.runtime = runtime
        self._unsubscribe: Optional[Callable[[], None]] = None

    def start(self) -> None:
        if self._unsubscribe is None:
            self._unsubscribe = self.source.subscribe(self.handle_event)
            logger.info("Engagement listener subscribed")

    def stop(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
            logger.info("Engagement listener unsubscribed")

    async def handle_event(self, event: ConversationEngagedEvent) -> EngagementSummary:
        """Terminate every running execution of the engaged conversation.

        Each execution is handled independently: a CAS miss means it already
        moved on and is skipped, any other failure is logged and the rest
        are still processed.
        """
        summary = EngagementSummary()
        executions = await self.database.list_running_executions_for_conversation(
            event.org_id, event.conversation_id
        )
        if not executions:
            logger.debug("No running executions for engaged conversation",
                         conversation_id=event.conversation_id, org_id=event.org_id)
            return summary

        for execution in executions:
            try:
                await self.runtime.terminate_for_engagement(execution)
                summary.terminated += 1
            except ConcurrentModificationError:
                logger.info("Execution changed before termination, skipping",
                            execution_id=execution.id)
                summary.skipped += 1
            except Exception as e:
                logger.error("Failed to terminate execution",
                             execution_id=execution.id, error=str(e))
                summary.failed += 1

        logger.info("Engagement processed",
                    conversation_id=event.conversation_id,
                    source=event.source,
                    **summary.to_dict())
        return summary
