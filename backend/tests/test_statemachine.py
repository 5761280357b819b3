"""Tests for state machine enforcement."""

from datetime import datetime, timezone

import pytest

from entityforge.auth import UserContext
from entityforge.errors import EngineError, ErrorCode
from entityforge.metadata import StateMachineDefinition
from entityforge.statemachine import GUARD_FAILED, INVALID_TRANSITION, StateMachineEngine, TransitionError

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def machine(registry):
    return registry.state_machines_for("invoice")[0]


@pytest.fixture
def engine():
    return StateMachineEngine()


def user(*roles):
    return UserContext(user_id="u1", roles=list(roles))


# =============================================================================
# Create
# =============================================================================


class TestCreate:
    def test_injects_initial_state(self, engine, machine):
        outcome = engine.apply_transition(machine, "create", {"number": "INV-1"})

        assert outcome.record["status"] == "draft"
        assert outcome.events[0].from_state is None
        assert outcome.events[0].to_state == "draft"

    def test_explicit_initial_state_accepted(self, engine, machine):
        outcome = engine.apply_transition(machine, "create", {"status": "draft"})

        assert outcome.record["status"] == "draft"

    def test_other_state_rejected(self, engine, machine):
        with pytest.raises(TransitionError) as exc_info:
            engine.apply_transition(machine, "create", {"status": "paid"})

        assert exc_info.value.kind == INVALID_TRANSITION
        assert exc_info.value.code is ErrorCode.VALIDATION_FAILED
        assert exc_info.value.details[0].field == "status"

    def test_input_not_mutated(self, engine, machine):
        record = {"number": "INV-1"}

        engine.apply_transition(machine, "create", record)

        assert "status" not in record


# =============================================================================
# Update
# =============================================================================


class TestUpdate:
    def test_unchanged_state_is_noop(self, engine, machine):
        outcome = engine.apply_transition(machine, "update", {"status": "draft", "total": 0}, old={"status": "draft"})

        assert outcome.events == []
        assert outcome.actions == []

    def test_guard_passes_and_set_field_runs(self, engine, machine):
        outcome = engine.apply_transition(
            machine, "update", {"status": "sent", "total": 10}, old={"status": "draft"}, user=user("sales"), now=NOW
        )

        assert outcome.record["issued_at"] == NOW.isoformat()
        assert outcome.events[0].from_state == "draft"
        assert outcome.events[0].to_state == "sent"

    def test_guard_blocks(self, engine, machine):
        with pytest.raises(TransitionError) as exc_info:
            engine.apply_transition(machine, "update", {"status": "sent", "total": 0}, old={"status": "draft"})

        assert exc_info.value.kind == GUARD_FAILED
        assert exc_info.value.details[0].rule == GUARD_FAILED

    def test_undeclared_transition(self, engine, machine):
        with pytest.raises(TransitionError) as exc_info:
            engine.apply_transition(machine, "update", {"status": "paid"}, old={"status": "draft"}, user=user("admin"))

        assert exc_info.value.kind == INVALID_TRANSITION
        assert "from 'draft' to 'paid'" in exc_info.value.message

    def test_role_required(self, engine, machine):
        with pytest.raises(EngineError) as exc_info:
            engine.apply_transition(machine, "update", {"status": "paid"}, old={"status": "sent"}, user=user("sales"))

        assert exc_info.value.code is ErrorCode.FORBIDDEN

    def test_role_granted(self, engine, machine):
        outcome = engine.apply_transition(
            machine, "update", {"status": "paid"}, old={"status": "sent"}, user=user("Accountant")
        )

        assert outcome.record["status"] == "paid"

    def test_admin_bypasses_roles(self, engine, machine):
        outcome = engine.apply_transition(machine, "update", {"status": "void"}, old={"status": "draft"}, user=user("admin"))

        assert outcome.events[0].to_state == "void"

    def test_multiple_from_states(self, engine, machine):
        for start in ("draft", "sent"):
            outcome = engine.apply_transition(
                machine, "update", {"status": "void"}, old={"status": start}, user=user("accountant")
            )
            assert outcome.record["status"] == "void"

    def test_send_event_is_deferred(self, engine, machine):
        outcome = engine.apply_transition(
            machine, "update", {"status": "paid"}, old={"status": "sent"}, user=user("accountant")
        )

        assert len(outcome.actions) == 1
        action = outcome.actions[0]
        assert action.type == "send_event"
        assert action.entity == "invoice"
        assert action.config["event"] == "invoice.paid"

    def test_guard_error_reported_as_guard_failure(self, engine):
        machine = StateMachineDefinition.from_dict({
            "entity": "invoice",
            "field": "status",
            "initial": "draft",
            "transitions": [{"from": "draft", "to": "sent", "guard": "total / 0 > 1"}],
        })

        with pytest.raises(TransitionError) as exc_info:
            engine.apply_transition(machine, "update", {"status": "sent", "total": 5}, old={"status": "draft"})

        assert exc_info.value.kind == GUARD_FAILED
        assert "guard evaluation error" in exc_info.value.message


# =============================================================================
# apply_all
# =============================================================================


class TestApplyAll:
    @pytest.fixture
    def machines(self, machine):
        payment = StateMachineDefinition.from_dict({
            "entity": "invoice",
            "field": "number",
            "initial": "INV-0",
            "transitions": [{"from": "INV-0", "to": "INV-1"}],
        })
        return [machine, payment]

    def test_merges_outcomes(self, engine, machines):
        outcome = engine.apply_all(machines, "create", {})

        assert outcome.record == {"status": "draft", "number": "INV-0"}
        assert [e.field for e in outcome.events] == ["status", "number"]

    def test_collects_failures_from_every_machine(self, engine, machines):
        with pytest.raises(EngineError) as exc_info:
            engine.apply_all(machines, "update", {"status": "paid", "number": "INV-9"}, old={"status": "draft", "number": "INV-0"})

        assert exc_info.value.code is ErrorCode.VALIDATION_FAILED
        assert [d.field for d in exc_info.value.details] == ["status", "number"]
        assert exc_info.value.message == "state transition rejected"

    def test_no_machines(self, engine):
        outcome = engine.apply_all([], "update", {"a": 1}, old={"a": 0})

        assert outcome.record == {"a": 1}
        assert outcome.events == []
