"""Tests for the execution lifecycle and version compare-and-swap."""

import asyncio
from datetime import datetime, timezone

import pytest

from conftest import CONVERSATION_ID, LEAD_ID, ORG_ID, linear_graph, node
from services.execution.errors import (
    ConcurrentModificationError,
    DefinitionNotActiveError,
    DefinitionNotFoundError,
)
from services.execution.models import StepStatus

pytestmark = pytest.mark.asyncio


class TestStartWorkflow:
    async def test_start_creates_running_execution_at_start(self, runtime, queue, database,
                                                            make_active_definition):
        definition = await make_active_definition(linear_graph())

        execution_id = await runtime.start_workflow(ORG_ID, definition.id, LEAD_ID, CONVERSATION_ID)

        execution = await database.get_execution(execution_id)
        assert execution.status == "running"
        assert execution.version == 1
        assert execution.attempts == 0
        assert execution.current_node_id == "start"
        assert execution.conversation_id == CONVERSATION_ID

        assert len(queue.jobs) == 1
        job = queue.jobs[0]
        assert job.node_id == "start"
        assert job.execution_id == execution_id
        assert job.lead_id == LEAD_ID
        assert job.attempt == 1

    async def test_inactive_definition_rejected(self, runtime, queue, definitions):
        created = await definitions.create(ORG_ID, "Draft", **linear_graph())

        with pytest.raises(DefinitionNotActiveError):
            await runtime.start_workflow(ORG_ID, created.id, LEAD_ID)
        assert queue.jobs == []

    async def test_definition_scoped_to_org(self, runtime, make_active_definition):
        definition = await make_active_definition(linear_graph())

        with pytest.raises(DefinitionNotFoundError):
            await runtime.start_workflow("other-org", definition.id, LEAD_ID)


class TestAdvanceWorkflow:
    async def test_advance_moves_and_enqueues(self, runtime, queue, database, make_active_definition):
        definition = await make_active_definition(
            linear_graph(node("msg", "SMS_TEMPLATE", template="hi"))
        )
        execution_id = await runtime.start_workflow(ORG_ID, definition.id, LEAD_ID)
        queue.jobs.clear()

        assert await runtime.advance_workflow(execution_id, ORG_ID, "start", "msg") is True

        execution = await database.get_execution(execution_id)
        assert execution.current_node_id == "msg"
        assert execution.version == 2
        assert [job.node_id for job in queue.jobs] == ["msg"]

    async def test_advance_to_none_completes(self, runtime, queue, database, make_active_definition):
        definition = await make_active_definition(linear_graph())
        execution_id = await runtime.start_workflow(ORG_ID, definition.id, LEAD_ID)
        queue.jobs.clear()

        await runtime.advance_workflow(execution_id, ORG_ID, "end", None)

        execution = await database.get_execution(execution_id)
        assert execution.status == "completed"
        assert queue.jobs == []

    async def test_terminal_execution_is_not_advanced(self, runtime, queue, database,
                                                      make_active_definition):
        definition = await make_active_definition(linear_graph())
        execution_id = await runtime.start_workflow(ORG_ID, definition.id, LEAD_ID)
        await runtime.handle_workflow_failure(execution_id, ORG_ID, "boom")
        queue.jobs.clear()

        assert await runtime.advance_workflow(execution_id, ORG_ID, "start", "end") is False

        execution = await database.get_execution(execution_id)
        assert execution.status == "failed"
        assert execution.current_node_id == "start"
        assert queue.jobs == []


class TestOptimisticConcurrency:
    async def test_only_one_writer_wins(self, runtime, database, make_active_definition):
        definition = await make_active_definition(linear_graph())
        execution_id = await runtime.start_workflow(ORG_ID, definition.id, LEAD_ID)
        snapshot = await database.get_execution(execution_id)

        first = await database.compare_and_swap_execution(execution_id, ORG_ID, snapshot.version,
                                                          current_node_id="end")
        second = await database.compare_and_swap_execution(execution_id, ORG_ID, snapshot.version,
                                                           status="terminated_engaged")

        assert first is True
        assert second is False
        execution = await database.get_execution(execution_id)
        assert execution.version == snapshot.version + 1
        assert execution.status == "running"
        assert execution.current_node_id == "end"

    async def test_stale_advance_raises(self, runtime, database, make_active_definition, monkeypatch):
        definition = await make_active_definition(linear_graph())
        execution_id = await runtime.start_workflow(ORG_ID, definition.id, LEAD_ID)
        stale = await database.get_execution(execution_id)

        # A concurrent writer bumps the version after the advancer has read it
        await database.compare_and_swap_execution(execution_id, ORG_ID, stale.version,
                                                  status="terminated_engaged")

        async def stale_read(*args, **kwargs):
            return stale

        monkeypatch.setattr(database, "get_execution", stale_read)

        with pytest.raises(ConcurrentModificationError) as exc_info:
            await runtime.advance_workflow(execution_id, ORG_ID, "start", "end")

        assert exc_info.value.expected_version == stale.version
        monkeypatch.undo()
        execution = await database.get_execution(execution_id)
        assert execution.status == "terminated_engaged"

    async def test_concurrent_advances_single_winner(self, runtime, queue, database,
                                                     make_active_definition, monkeypatch):
        definition = await make_active_definition(linear_graph())
        execution_id = await runtime.start_workflow(ORG_ID, definition.id, LEAD_ID)
        queue.jobs.clear()

        # Both advancers read version 1 before either writes
        real_get_execution = database.get_execution
        both_read = asyncio.Event()
        reads = []

        async def gated_read(*args, **kwargs):
            execution = await real_get_execution(*args, **kwargs)
            reads.append(execution.version)
            if len(reads) == 2:
                both_read.set()
            await both_read.wait()
            return execution

        monkeypatch.setattr(database, "get_execution", gated_read)

        results = await asyncio.gather(
            runtime.advance_workflow(execution_id, ORG_ID, "start", "end"),
            runtime.advance_workflow(execution_id, ORG_ID, "start", "end"),
            return_exceptions=True,
        )

        monkeypatch.undo()
        assert reads == [1, 1]
        assert results.count(True) == 1
        assert sum(isinstance(r, ConcurrentModificationError) for r in results) == 1
        execution = await database.get_execution(execution_id)
        assert execution.version == 2
        assert execution.current_node_id == "end"
        assert [job.node_id for job in queue.jobs] == ["end"]

    async def test_cas_is_tenant_scoped(self, runtime, database, make_active_definition):
        definition = await make_active_definition(linear_graph())
        execution_id = await runtime.start_workflow(ORG_ID, definition.id, LEAD_ID)

        assert await database.compare_and_swap_execution(execution_id, "other-org", 1,
                                                          status="failed") is False


class TestDelayAndResume:
    async def test_schedule_delay_records_resume_at(self, runtime, queue, database,
                                                    make_active_definition):
        definition = await make_active_definition(linear_graph())
        execution_id = await runtime.start_workflow(ORG_ID, definition.id, LEAD_ID)
        resume_at = datetime(2024, 1, 15, 10, 5, tzinfo=timezone.utc)

        await runtime.schedule_delay(execution_id, ORG_ID, "end", resume_at)

        execution = await database.get_execution(execution_id)
        assert execution.resume_at.replace(tzinfo=timezone.utc) == resume_at
        assert len(queue.delayed) == 1
        assert queue.delayed[0].node_id == "end"
        assert queue.delayed[0].resume_at == resume_at

    async def test_resume_enqueues_when_running(self, runtime, queue, database, make_active_definition):
        definition = await make_active_definition(linear_graph())
        execution_id = await runtime.start_workflow(ORG_ID, definition.id, LEAD_ID)
        queue.jobs.clear()

        assert await runtime.resume_workflow(execution_id, ORG_ID, "end") is True

        assert [job.node_id for job in queue.jobs] == ["end"]
        execution = await database.get_execution(execution_id)
        assert execution.current_node_id == "end"
        assert execution.resume_at is None

    async def test_resume_carries_retry_attempt(self, runtime, queue, make_active_definition):
        definition = await make_active_definition(linear_graph())
        execution_id = await runtime.start_workflow(ORG_ID, definition.id, LEAD_ID)
        queue.jobs.clear()

        assert await runtime.resume_workflow(execution_id, ORG_ID, "end", attempt=3) is True

        assert [(job.node_id, job.attempt) for job in queue.jobs] == [("end", 3)]

    async def test_resume_after_termination_is_noop(self, runtime, queue, database,
                                                    make_active_definition):
        definition = await make_active_definition(linear_graph())
        execution_id = await runtime.start_workflow(ORG_ID, definition.id, LEAD_ID)
        await runtime.terminate_for_engagement(await database.get_execution(execution_id))
        queue.jobs.clear()

        assert await runtime.resume_workflow(execution_id, ORG_ID, "end") is False
        assert queue.jobs == []


class TestFailures:
    async def test_record_node_failure_until_exhausted(self, runtime, database, make_active_definition):
        definition = await make_active_definition(linear_graph())
        execution_id = await runtime.start_workflow(ORG_ID, definition.id, LEAD_ID)

        assert await runtime.record_node_failure(execution_id, ORG_ID, "timeout", max_attempts=3) is True
        assert await runtime.record_node_failure(execution_id, ORG_ID, "timeout", max_attempts=3) is True
        assert await runtime.record_node_failure(execution_id, ORG_ID, "timeout", max_attempts=3) is False

        execution = await database.get_execution(execution_id)
        assert execution.attempts == 3
        assert execution.status == "failed"
        assert execution.last_error == "timeout"

    async def test_handle_failure_is_terminal(self, runtime, database, make_active_definition):
        definition = await make_active_definition(linear_graph())
        execution_id = await runtime.start_workflow(ORG_ID, definition.id, LEAD_ID)

        assert await runtime.handle_workflow_failure(execution_id, ORG_ID, "node missing") is True
        assert await runtime.handle_workflow_failure(execution_id, ORG_ID, "again") is False

        execution = await database.get_execution(execution_id)
        assert execution.status == "failed"
        assert execution.last_error == "node missing"

    async def test_log_step_appends(self, runtime, make_active_definition):
        definition = await make_active_definition(linear_graph())
        execution_id = await runtime.start_workflow(ORG_ID, definition.id, LEAD_ID)

        await runtime.log_step(execution_id, ORG_ID, "start", "START", StepStatus.SUCCESS)
        await runtime.log_step(execution_id, ORG_ID, "end", "END", StepStatus.ERROR, error="x")

        steps = await runtime.list_steps(execution_id)
        assert [(s.node_id, s.status, s.error) for s in steps] == [
            ("start", "success", None),
            ("end", "error", "x"),
        ]
