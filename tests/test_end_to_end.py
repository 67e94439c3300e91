"""
End-to-end workflow through a fully wired set of components.
"""

import pytest
from unittest.mock import AsyncMock

from reliable_actions import (
    Decision,
    EscalationStatus,
    Priority,
    ReliabilityConfig,
    RiskLevel,
    UnitOfWorkState,
)
from reliable_actions.models import ActionDescriptor


def action(action_type, target, **parameters):
    return ActionDescriptor(correlation_id="sig-42", action_type=action_type,
                            target=target, parameters=parameters)


@pytest.mark.integration
class TestWorkflow:

    @pytest.mark.asyncio
    async def test_failed_workflow_rolls_back(self):
        components = ReliabilityConfig().build()
        executor, ledger = components.executor, components.ledger

        executor.register_handler("create_task", AsyncMock(return_value={"task_id": "t1"}))
        executor.register_handler("update_cell", AsyncMock(return_value={"cell": "B2"}))
        executor.register_handler("send_message", AsyncMock(return_value={"ts": "1.2"}))

        deleted = []
        ledger.register_inverse("create_task", lambda entry, restore: deleted.append(entry.result["task_id"]))
        restored = AsyncMock(return_value={"ok": True})
        ledger.register_inverse("update_cell", restored)

        ledger.begin("uow-1", "triage signal 42")
        await executor.execute(action("create_task", "notion", name="Follow up"), unit_of_work_id="uow-1")
        await executor.execute(action("update_cell", "sheets", value="done", previous_value="todo"),
                               unit_of_work_id="uow-1")
        await executor.execute(action("send_message", "slack", message="Task created"),
                               unit_of_work_id="uow-1")

        # A replay of the first step is served from the cache and not recorded again
        await executor.execute(action("create_task", "notion", name="Follow up"), unit_of_work_id="uow-1")
        assert len(ledger.get_unit("uow-1").entries) == 3

        report = ledger.validate("uow-1")
        assert report.can_compensate

        result = await ledger.compensate("uow-1")

        assert deleted == ["t1"]
        assert restored.await_args.args[1] == {"value": "todo"}
        assert len(result.compensated) == 2
        assert len(result.manual_steps_required) == 1
        assert "Task created" in result.manual_instructions[0]
        assert not result.success
        assert ledger.get_unit("uow-1").state == UnitOfWorkState.PARTIALLY_COMPENSATED

        assert components.cache.get_statistics()["duplicates_prevented"] == 1
        sources = {e.source for e in components.events.recent(limit=100)}
        assert {"retry", "idempotency", "ledger"} <= sources

    @pytest.mark.asyncio
    async def test_escalated_action_joins_unit(self):
        components = ReliabilityConfig().build()
        handler = AsyncMock(return_value={"task_id": "t9"})
        components.executor.register_handler("create_task", handler)
        components.ledger.begin("uow-2")
        queue = components.escalations

        approval_id = await queue.enqueue(action("create_task", "notion", name="Draft"),
                                          "low classification confidence",
                                          Priority.HIGH, RiskLevel.MEDIUM, unit_of_work_id="uow-2")
        entry = await queue.resolve(approval_id, Decision.MODIFY, "alice",
                                    modifications={"name": "Final"})

        assert entry.status == EscalationStatus.COMPLETED
        assert handler.await_args.args[0].parameters == {"name": "Final"}
        assert [e.parameters for e in components.ledger.get_unit("uow-2").entries] == [{"name": "Final"}]
        assert components.metrics.get_metric("escalation_decisions_total").get_value(
            {"decision": "modify", "risk_level": "medium"}
        ) == 1
        queue.destroy()
