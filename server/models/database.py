"""SQLModel database models and tables."""

from datetime import datetime, timezone
from typing import Optional, Dict, Any, List
from sqlmodel import SQLModel, Field, Column, DateTime, JSON
from sqlalchemy import Index, func


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class WorkflowDefinitionRecord(SQLModel, table=True):
    """Workflow definitions (graph stored as JSON)."""

    __tablename__ = "workflow_definitions"

    id: str = Field(primary_key=True, max_length=255)
    org_id: str = Field(index=True, max_length=255)
    name: str = Field(max_length=255)
    description: Optional[str] = Field(default=None, max_length=1000)
    industry: Optional[str] = Field(default=None, max_length=100)
    is_active: bool = Field(default=False)
    version: int = Field(default=1)
    nodes: List[Dict[str, Any]] = Field(default_factory=list, sa_column=Column(JSON))
    edges: List[Dict[str, Any]] = Field(default_factory=list, sa_column=Column(JSON))
    created_at: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(DateTime(timezone=True), server_default=func.now())
    )
    updated_at: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(DateTime(timezone=True), onupdate=func.now())
    )


class WorkflowExecutionRecord(SQLModel, table=True):
    """One running instance of a definition for one lead/conversation."""

    __tablename__ = "workflow_executions"
    __table_args__ = (
        Index("ix_workflow_executions_org_conversation_status", "org_id", "conversation_id", "status"),
    )

    id: str = Field(primary_key=True, max_length=255)
    org_id: str = Field(index=True, max_length=255)
    workflow_definition_id: str = Field(foreign_key="workflow_definitions.id", index=True, max_length=255)
    lead_id: str = Field(index=True, max_length=255)
    conversation_id: Optional[str] = Field(default=None, max_length=255)
    status: str = Field(default="running", max_length=50)
    current_node_id: str = Field(max_length=255)
    resume_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    last_error: Optional[str] = Field(default=None, max_length=2000)
    attempts: int = Field(default=0)
    version: int = Field(default=1)
    created_at: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(DateTime(timezone=True), server_default=func.now())
    )
    updated_at: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(DateTime(timezone=True), onupdate=func.now())
    )


class WorkflowStepExecutionRecord(SQLModel, table=True):
    """Append-only audit trail of node attempts."""

    __tablename__ = "workflow_step_executions"

    id: Optional[int] = Field(default=None, primary_key=True)
    workflow_execution_id: str = Field(index=True, max_length=255)
    org_id: str = Field(max_length=255)
    node_id: str = Field(max_length=255)
    node_type: str = Field(max_length=50)
    status: str = Field(max_length=50)
    branch: Optional[str] = Field(default=None, max_length=50)
    error: Optional[str] = Field(default=None, max_length=2000)
    created_at: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(DateTime(timezone=True), server_default=func.now())
    )


class Lead(SQLModel, table=True):
    """Tenant-scoped lead record read by CONDITION and SMS nodes."""

    __tablename__ = "leads"

    id: str = Field(primary_key=True, max_length=255)
    org_id: str = Field(index=True, max_length=255)
    phone: str = Field(max_length=50)
    email: Optional[str] = Field(default=None, max_length=255)
    first_name: Optional[str] = Field(default=None, max_length=255)
    last_name: Optional[str] = Field(default=None, max_length=255)
    city: Optional[str] = Field(default=None, max_length=255)
    state: Optional[str] = Field(default=None, max_length=50)
    zip: Optional[str] = Field(default=None, max_length=20)
    service_type: Optional[str] = Field(default=None, max_length=255)
    source: str = Field(default="manual", max_length=100)
    status: str = Field(default="new", max_length=50)
    metadata_: Dict[str, Any] = Field(default_factory=dict, sa_column=Column("metadata", JSON))
    created_at: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(DateTime(timezone=True), server_default=func.now())
    )


class Message(SQLModel, table=True):
    """Outbound messages created by SMS nodes."""

    __tablename__ = "messages"

    id: str = Field(primary_key=True, max_length=255)
    org_id: str = Field(index=True, max_length=255)
    lead_id: str = Field(index=True, max_length=255)
    conversation_id: Optional[str] = Field(default=None, index=True, max_length=255)
    message_type: str = Field(default="sms", max_length=50)
    channel: str = Field(default="sms", max_length=50)
    direction: str = Field(default="outbound", max_length=20)
    sender: str = Field(max_length=50)
    body: str
    status: str = Field(default="pending", max_length=50)
    metadata_: Dict[str, Any] = Field(default_factory=dict, sa_column=Column("metadata", JSON))
    idempotency_key: str = Field(unique=True, index=True, max_length=255)
    created_at: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(DateTime(timezone=True), server_default=func.now())
    )
