"""Async database service with SQLModel and SQLAlchemy 2.0."""

import logging
from datetime import datetime, timezone
from typing import Dict, Any, List, Optional
from sqlmodel import SQLModel, select
from sqlalchemy import event, func, update
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.exc import IntegrityError
from sqlalchemy.pool import StaticPool
from contextlib import asynccontextmanager

from core.config import Settings
from models.database import (
    Lead,
    Message,
    WorkflowDefinitionRecord,
    WorkflowExecutionRecord,
    WorkflowStepExecutionRecord,
)
from core.logging import get_logger

logger = get_logger(__name__)


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
    """SQLite leaves foreign keys off per connection unless asked."""
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def lead_to_dict(lead: Lead) -> Dict[str, Any]:
    """Flatten a lead row into the dot-path addressable record nodes read."""
    return {
        "id": lead.id,
        "orgId": lead.org_id,
        "phone": lead.phone,
        "email": lead.email,
        "firstName": lead.first_name,
        "lastName": lead.last_name,
        "city": lead.city,
        "state": lead.state,
        "zip": lead.zip,
        "serviceType": lead.service_type,
        "source": lead.source,
        "status": lead.status,
        "metadata": lead.metadata_ or {},
    }


class Database:
    """Async database service with SQLModel."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.engine = None
        self.async_session = None

    def _engine_options(self) -> Dict[str, Any]:
        url = self.settings.database_url
        if url.startswith("sqlite"):
            options: Dict[str, Any] = {"connect_args": {"check_same_thread": False}}
            if ":memory:" in url:
                # Share one connection so every session sees the same database
                options["poolclass"] = StaticPool
            return options
        return {
            "pool_size": self.settings.database_pool_size,
            "max_overflow": self.settings.database_max_overflow,
        }

    async def startup(self):
        """Initialize database connection and create tables."""
        try:
            logging.getLogger("aiosqlite").setLevel(logging.WARNING)
            logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
            logging.getLogger("sqlalchemy.pool").setLevel(logging.WARNING)

            self.engine = create_async_engine(
                self.settings.database_url,
                echo=self.settings.database_echo,
                **self._engine_options()
            )
            if self.settings.is_sqlite:
                event.listen(self.engine.sync_engine, "connect", _enable_sqlite_foreign_keys)

            self.async_session = async_sessionmaker(
                bind=self.engine,
                class_=AsyncSession,
                expire_on_commit=False
            )

            async with self.engine.begin() as conn:
                await conn.run_sync(SQLModel.metadata.create_all)

            logger.info("Database initialized successfully")

        except Exception as e:
            logger.error("Database startup failed", error=str(e))
            raise

    async def shutdown(self):
        """Close database connections."""
        if self.engine:
            await self.engine.dispose()
            logger.info("Database connections closed")

    @asynccontextmanager
    async def get_session(self):
        """Get async database session."""
        if not self.async_session:
            raise RuntimeError("Database not initialized")

        async with self.async_session() as session:
            try:
                yield session
            except Exception:
                await session.rollback()
                raise
            finally:
                await session.close()

    # ============================================================================
    # Workflow Definitions
    # ============================================================================

    async def save_definition(self, definition: WorkflowDefinitionRecord) -> WorkflowDefinitionRecord:
        """Insert or replace a workflow definition."""
        definition.updated_at = datetime.now(timezone.utc)
        async with self.get_session() as session:
            merged = await session.merge(definition)
            await session.commit()
            return merged

    async def get_definition(self, definition_id: str,
                             org_id: Optional[str] = None) -> Optional[WorkflowDefinitionRecord]:
        """Get a definition, scoped to ``org_id`` when given."""
        async with self.get_session() as session:
            stmt = select(WorkflowDefinitionRecord).where(WorkflowDefinitionRecord.id == definition_id)
            if org_id is not None:
                stmt = stmt.where(WorkflowDefinitionRecord.org_id == org_id)
            result = await session.execute(stmt)
            return result.scalar_one_or_none()

    async def list_definitions(self, org_id: str, active_only: bool = False) -> List[WorkflowDefinitionRecord]:
        async with self.get_session() as session:
            stmt = select(WorkflowDefinitionRecord).where(WorkflowDefinitionRecord.org_id == org_id)
            if active_only:
                stmt = stmt.where(WorkflowDefinitionRecord.is_active == True)  # noqa: E712
            stmt = stmt.order_by(WorkflowDefinitionRecord.name)
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def delete_definition(self, definition_id: str, org_id: str) -> bool:
        async with self.get_session() as session:
            stmt = select(WorkflowDefinitionRecord).where(
                WorkflowDefinitionRecord.id == definition_id,
                WorkflowDefinitionRecord.org_id == org_id,
            )
            result = await session.execute(stmt)
            definition = result.scalar_one_or_none()

            if not definition:
                return False

            await session.delete(definition)
            await session.commit()
            return True

    # ============================================================================
    # Workflow Executions
    # ============================================================================

    async def create_execution(self, execution: WorkflowExecutionRecord) -> WorkflowExecutionRecord:
        async with self.get_session() as session:
            session.add(execution)
            await session.commit()
            return execution

    async def get_execution(self, execution_id: str,
                            org_id: Optional[str] = None) -> Optional[WorkflowExecutionRecord]:
        async with self.get_session() as session:
            stmt = select(WorkflowExecutionRecord).where(WorkflowExecutionRecord.id == execution_id)
            if org_id is not None:
                stmt = stmt.where(WorkflowExecutionRecord.org_id == org_id)
            result = await session.execute(stmt)
            return result.scalar_one_or_none()

    async def list_running_executions_for_conversation(self, org_id: str,
                                                       conversation_id: str) -> List[WorkflowExecutionRecord]:
        async with self.get_session() as session:
            stmt = select(WorkflowExecutionRecord).where(
                WorkflowExecutionRecord.org_id == org_id,
                WorkflowExecutionRecord.conversation_id == conversation_id,
                WorkflowExecutionRecord.status == "running",
            )
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def count_running_executions_for_definition(self, definition_id: str) -> int:
        return await self.count_executions_for_definition(definition_id, status="running")

    async def count_executions_for_definition(self, definition_id: str,
                                              status: Optional[str] = None) -> int:
        """Count executions of a definition, optionally only those in ``status``."""
        async with self.get_session() as session:
            stmt = select(func.count()).select_from(WorkflowExecutionRecord).where(
                WorkflowExecutionRecord.workflow_definition_id == definition_id,
            )
            if status is not None:
                stmt = stmt.where(WorkflowExecutionRecord.status == status)
            result = await session.execute(stmt)
            return int(result.scalar_one())

    async def compare_and_swap_execution(self, execution_id: str, org_id: str,
                                         expected_version: int, **changes: Any) -> bool:
        """Apply ``changes`` only if the row is still at ``expected_version``.

        The version is incremented as part of the same statement.

        Returns:
            True if exactly one row was updated, False if another writer won
        """
        async with self.get_session() as session:
            stmt = (
                update(WorkflowExecutionRecord)
                .where(
                    WorkflowExecutionRecord.id == execution_id,
                    WorkflowExecutionRecord.org_id == org_id,
                    WorkflowExecutionRecord.version == expected_version,
                )
                .values(
                    version=expected_version + 1,
                    updated_at=datetime.now(timezone.utc),
                    **changes
                )
            )
            result = await session.execute(stmt)
            await session.commit()
            return result.rowcount == 1

    # ============================================================================
    # Step Log
    # ============================================================================

    async def add_step_execution(self, step: WorkflowStepExecutionRecord) -> WorkflowStepExecutionRecord:
        async with self.get_session() as session:
            session.add(step)
            await session.commit()
            return step

    async def list_step_executions(self, execution_id: str) -> List[WorkflowStepExecutionRecord]:
        async with self.get_session() as session:
            stmt = (
                select(WorkflowStepExecutionRecord)
                .where(WorkflowStepExecutionRecord.workflow_execution_id == execution_id)
                .order_by(WorkflowStepExecutionRecord.id)
            )
            result = await session.execute(stmt)
            return list(result.scalars().all())

    # ============================================================================
    # Leads
    # ============================================================================

    async def save_lead(self, lead: Lead) -> Lead:
        async with self.get_session() as session:
            merged = await session.merge(lead)
            await session.commit()
            return merged

    async def get_lead(self, org_id: str, lead_id: str) -> Optional[Dict[str, Any]]:
        """Get a tenant-scoped lead as a flat dict."""
        async with self.get_session() as session:
            stmt = select(Lead).where(Lead.id == lead_id, Lead.org_id == org_id)
            result = await session.execute(stmt)
            lead = result.scalar_one_or_none()
            return lead_to_dict(lead) if lead else None

    # ============================================================================
    # Messages
    # ============================================================================

    async def create_message(self, message: Message) -> bool:
        """Insert an outbound message.

        Returns:
            False if a message with the same idempotency key already exists
        """
        try:
            async with self.get_session() as session:
                session.add(message)
                await session.commit()
                return True
        except IntegrityError:
            logger.info("Duplicate message suppressed", idempotency_key=message.idempotency_key)
            return False

    async def get_message_by_idempotency_key(self, idempotency_key: str) -> Optional[Message]:
        async with self.get_session() as session:
            stmt = select(Message).where(Message.idempotency_key == idempotency_key)
            result = await session.execute(stmt)
            return result.scalar_one_or_none()

    async def list_messages(self, org_id: str, lead_id: str) -> List[Message]:
        async with self.get_session() as session:
            stmt = (
                select(Message)
                .where(Message.org_id == org_id, Message.lead_id == lead_id)
                .order_by(Message.created_at)
            )
            result = await session.execute(stmt)
            return list(result.scalars().all())
