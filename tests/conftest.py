"""
Common fixtures for workflow engine tests.

Provides an in-memory SQLite database, a recording job queue, a fake
generation service and builders for definitions and leads.
"""

import asyncio
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import pytest
import pytest_asyncio

from core.config import Settings
from core.database import Database
from models.database import Lead
from services.definitions import DefinitionService
from services.execution.models import DelayedNodeJob, NodeJob
from services.execution.runtime import WorkflowRuntime
from services.generation import GenerationResult
from services.node_executor import NodeExecutor

ORG_ID = "org-1"
LEAD_ID = "lead-1"
CONVERSATION_ID = "conv-1"
FIXED_NOW = datetime(2024, 1, 15, 10, 0, tzinfo=timezone.utc)  # Monday


class RecordingQueue:
    """JobQueue double that records jobs instead of delivering them."""

    def __init__(self):
        self.jobs: List[NodeJob] = []
        self.delayed: List[DelayedNodeJob] = []
        self.acked: List[NodeJob] = []
        self.acked_delayed: List[DelayedNodeJob] = []

    async def startup(self):
        return None

    async def shutdown(self):
        return None

    async def enqueue_now(self, job: NodeJob) -> None:
        self.jobs.append(job)

    async def enqueue_at(self, job: DelayedNodeJob) -> None:
        self.delayed.append(job)

    async def next_job(self, timeout: float) -> Optional[NodeJob]:
        if not self.jobs:
            await asyncio.sleep(timeout)
            return None
        return self.jobs.pop(0)

    async def next_delayed_job(self, timeout: float) -> Optional[DelayedNodeJob]:
        if not self.delayed:
            await asyncio.sleep(timeout)
            return None
        return self.delayed.pop(0)

    async def ack(self, job: NodeJob) -> None:
        self.acked.append(job)

    async def ack_delayed(self, job: DelayedNodeJob) -> None:
        self.acked_delayed.append(job)


class FakeGenerationService:
    def __init__(self, result: Optional[GenerationResult] = None):
        self.result = result or GenerationResult(success=True, text="Hi Ada, still need a quote?", tier="primary")
        self.calls: List[Dict[str, Any]] = []

    async def generate(self, org_id, lead_id, conversation_id, hints):
        self.calls.append({
            "org_id": org_id,
            "lead_id": lead_id,
            "conversation_id": conversation_id,
            "hints": hints,
        })
        return self.result


# =============================================================================
# GRAPH BUILDERS
# =============================================================================

def node(node_id: str, node_type: str, **config) -> Dict[str, Any]:
    return {"id": node_id, "type": node_type, "config": {"label": node_id, **config}}


def edge(source: str, target: str, label: Optional[str] = None) -> Dict[str, Any]:
    data = {"id": f"e-{source}-{target}", "source": source, "target": target}
    if label is not None:
        data["label"] = label
    return data


def linear_graph(*middle: Dict[str, Any]) -> Dict[str, List[Dict[str, Any]]]:
    """START -> middle... -> END."""
    nodes = [node("start", "START"), *middle, node("end", "END")]
    edges = [edge(a["id"], b["id"]) for a, b in zip(nodes, nodes[1:])]
    return {"nodes": nodes, "edges": edges}


def condition_graph(field: str = "status", operator: str = "equals",
                    value: Optional[str] = "active") -> Dict[str, List[Dict[str, Any]]]:
    """START -> check -(true)-> hot -> END, check -(false)-> cold -> END."""
    config = {"field": field, "operator": operator}
    if value is not None:
        config["value"] = value
    nodes = [
        node("start", "START"),
        node("check", "CONDITION", **config),
        node("hot", "SMS_TEMPLATE", template="Hi {{lead.firstName}}, ready to book?"),
        node("cold", "SMS_TEMPLATE", template="Hi {{lead.firstName}}, any questions?"),
        node("end", "END"),
    ]
    edges = [
        edge("start", "check"),
        edge("check", "hot", "true"),
        edge("check", "cold", "false"),
        edge("hot", "end"),
        edge("cold", "end"),
    ]
    return {"nodes": nodes, "edges": edges}


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def settings():
    return Settings(
        database_url="sqlite+aiosqlite:///:memory:",
        log_format="console",
        log_level="WARNING",
    )


@pytest_asyncio.fixture
async def database(settings):
    db = Database(settings)
    await db.startup()
    yield db
    await db.shutdown()


@pytest.fixture
def queue():
    return RecordingQueue()


@pytest.fixture
def generation_service():
    return FakeGenerationService()


@pytest.fixture
def runtime(database, queue):
    return WorkflowRuntime(database=database, queue=queue)


@pytest.fixture
def definitions(database):
    return DefinitionService(database)


@pytest.fixture
def executor(database, runtime, generation_service):
    return NodeExecutor(
        database=database,
        runtime=runtime,
        generation_service=generation_service,
        clock=lambda: FIXED_NOW,
    )


@pytest_asyncio.fixture
async def lead(database):
    return await database.save_lead(Lead(
        id=LEAD_ID,
        org_id=ORG_ID,
        phone="+15555550100",
        first_name="Ada",
        last_name="Lovelace",
        city="Austin",
        status="active",
        metadata_={"campaign": "spring"},
    ))


@pytest.fixture
def make_active_definition(definitions):
    """Create and activate a definition from a ``{nodes, edges}`` graph."""
    async def _make(graph: Dict[str, List[Dict[str, Any]]], name: str = "Outreach"):
        created = await definitions.create(ORG_ID, name, graph["nodes"], graph["edges"])
        return await definitions.activate(created.id, ORG_ID)
    return _make


async def drain(queue: RecordingQueue, executor: NodeExecutor, limit: int = 50) -> List[str]:
    """Run queued immediate jobs until the queue is empty. Returns node ids run."""
    ran = []
    while queue.jobs and len(ran) < limit:
        job = queue.jobs.pop(0)
        await executor.execute(job)
        ran.append(job.node_id)
    return ran
