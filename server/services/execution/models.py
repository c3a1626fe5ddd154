"""Execution engine state models.

Queue jobs are JSON-serializable so that the same payload works for the
in-memory queue and the Redis-backed queue.
"""

import json
from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Any, FrozenSet, Optional


class ExecutionStatus(str, Enum):
    """Workflow execution states.

    State transitions:
        RUNNING -> COMPLETED
                -> FAILED
                -> TERMINATED_ENGAGED
    Every state other than RUNNING is terminal.
    """
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    TERMINATED_ENGAGED = "terminated_engaged"


TERMINAL_STATUSES: FrozenSet[str] = frozenset([
    ExecutionStatus.COMPLETED.value,
    ExecutionStatus.FAILED.value,
    ExecutionStatus.TERMINATED_ENGAGED.value,
])


class StepStatus(str, Enum):
    """Outcome of one node attempt in the step log."""
    SUCCESS = "success"
    ERROR = "error"


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on read)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass
class NodeJob:
    """Immediate job: run ``node_id`` for an execution now."""
    execution_id: str
    org_id: str
    lead_id: str
    node_id: str
    conversation_id: Optional[str] = None
    attempt: int = 1

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "NodeJob":
        return cls(
            execution_id=data["execution_id"],
            org_id=data["org_id"],
            lead_id=data["lead_id"],
            node_id=data["node_id"],
            conversation_id=data.get("conversation_id"),
            attempt=data.get("attempt", 1),
        )

    @classmethod
    def from_json(cls, raw: str) -> "NodeJob":
        return cls.from_dict(json.loads(raw))


@dataclass
class DelayedNodeJob:
    """Delayed job: resume an execution at ``node_id`` once ``resume_at`` passes."""
    execution_id: str
    org_id: str
    node_id: str
    resume_at: datetime
    attempt: int = 1

    @property
    def job_id(self) -> str:
        """Stable identity of a delayed job, one per (execution, node)."""
        return f"{self.execution_id}:{self.node_id}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "execution_id": self.execution_id,
            "org_id": self.org_id,
            "node_id": self.node_id,
            "resume_at": ensure_utc(self.resume_at).isoformat(),
            "attempt": self.attempt,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DelayedNodeJob":
        resume_at = data["resume_at"]
        if isinstance(resume_at, str):
            resume_at = datetime.fromisoformat(resume_at)
        return cls(
            execution_id=data["execution_id"],
            org_id=data["org_id"],
            node_id=data["node_id"],
            resume_at=ensure_utc(resume_at),
            attempt=data.get("attempt", 1),
        )

    @classmethod
    def from_json(cls, raw: str) -> "DelayedNodeJob":
        return cls.from_dict(json.loads(raw))


@dataclass
class NodeOutcome:
    """What a node handler decided.

    Exactly one transition applies: ``resume_at`` set means schedule a delayed
    job for ``next_node_id``; otherwise advance to ``next_node_id`` (None
    completes the execution).
    """
    next_node_id: Optional[str] = None
    branch: Optional[str] = None
    resume_at: Optional[datetime] = None
    data: Optional[Dict[str, Any]] = None


@dataclass
class NodeContext:
    """Identity of the execution a node runs in."""
    execution_id: str
    org_id: str
    lead_id: str
    conversation_id: Optional[str] = None
    attempt: int = 1

    @classmethod
    def from_job(cls, job: NodeJob) -> "NodeContext":
        return cls(
            execution_id=job.execution_id,
            org_id=job.org_id,
            lead_id=job.lead_id,
            conversation_id=job.conversation_id,
            attempt=job.attempt,
        )
