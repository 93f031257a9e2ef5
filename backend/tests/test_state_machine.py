"""
Generic state machine: registration, guards, handler errors, edge lookup.
"""
import pytest

from core.state_machine import (
    StateMachine, StateMachineError, InvalidTransitionError, GuardConditionError
)


def build_machine(calls):
    async def approve(doc, context):
        calls.append(("approve", doc["id"], context.get("actor")))
        return {**doc, "status": "approved"}

    async def explode(doc, context):
        raise RuntimeError("write failed")

    async def needs_reason(doc, context):
        if not context.get("reason"):
            return False, "reason required"
        return True, ""

    async def reject(doc, context):
        return {**doc, "status": "rejected"}

    machine = StateMachine("ticket")
    machine.register("open", "approved", approve)
    machine.register("open", "rejected", reject, guard=needs_reason)
    machine.register("approved", "archived", explode)
    return machine


class TestStateMachine:

    async def test_registered_transition_runs_handler(self):
        calls = []
        machine = build_machine(calls)

        result = await machine.transition({"id": 1, "status": "open"}, "approved", {"actor": "u1"})

        assert result["status"] == "success"
        assert result["from_state"] == "open"
        assert result["handler_result"]["status"] == "approved"
        assert calls == [("approve", 1, "u1")]

    async def test_unregistered_transition(self):
        machine = build_machine([])

        with pytest.raises(InvalidTransitionError) as exc:
            await machine.transition({"id": 1, "status": "approved"}, "rejected")

        assert exc.value.from_state == "approved"
        assert exc.value.allowed == ["archived"]

    async def test_guard_rejection(self):
        machine = build_machine([])

        with pytest.raises(GuardConditionError) as exc:
            await machine.transition({"id": 1, "status": "open"}, "rejected", {})
        assert exc.value.reason == "reason required"

        result = await machine.transition({"id": 1, "status": "open"}, "rejected", {"reason": "spam"})
        assert result["to_state"] == "rejected"

    async def test_handler_errors_propagate_unchanged(self):
        machine = build_machine([])

        with pytest.raises(RuntimeError, match="write failed"):
            await machine.transition({"id": 1, "status": "approved"}, "archived")

    async def test_missing_status_field(self):
        with pytest.raises(StateMachineError):
            await build_machine([]).transition({"id": 1}, "approved")

    def test_edge_lookup(self):
        machine = build_machine([])
        assert sorted(machine.get_allowed_transitions("open")) == ["approved", "rejected"]
        assert machine.get_allowed_transitions("archived") == []
        assert machine.get_source_states("approved") == ["open"]

    def test_history_entry(self):
        machine = build_machine([])
        entry = machine.get_history_entry("open", "approved", "u1", {"note": "ok"})
        assert entry["from_state"] == "open"
        assert entry["transitioned_by"] == "u1"
        assert entry["metadata"] == {"note": "ok"}
        assert entry["transitioned_at"].tzinfo is None
