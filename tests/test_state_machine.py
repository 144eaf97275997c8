"""Tests for payroll run state machine."""

from types import SimpleNamespace
from uuid import uuid4

import pytest

from payroll_compute.services.state_machine import (
    InvalidTransitionError,
    PayrollRunStateMachine,
    PayrollRunStatus,
)


class TestPayrollRunStateMachine:
    """Test state machine transitions."""

    def test_valid_transitions(self):
        """Test that the forward path is allowed."""
        assert PayrollRunStateMachine.can_transition("DRAFT", "CALCULATED") is True
        assert PayrollRunStateMachine.can_transition("CALCULATED", "APPROVED") is True
        assert PayrollRunStateMachine.can_transition("APPROVED", "POSTED") is True

    def test_invalid_transitions(self):
        """Test that skipping or going backwards is blocked."""
        # Can't skip calculation or approval
        assert PayrollRunStateMachine.can_transition("DRAFT", "APPROVED") is False
        assert PayrollRunStateMachine.can_transition("CALCULATED", "POSTED") is False

        # No direct backward moves
        assert PayrollRunStateMachine.can_transition("APPROVED", "CALCULATED") is False
        assert PayrollRunStateMachine.can_transition("CALCULATED", "DRAFT") is False

        # Posted is terminal
        assert PayrollRunStateMachine.can_transition("POSTED", "DRAFT") is False
        assert PayrollRunStateMachine.get_next_statuses("POSTED") == []

    def test_validate_transition_raises(self):
        with pytest.raises(InvalidTransitionError) as exc_info:
            PayrollRunStateMachine.validate_transition("DRAFT", "POSTED")

        assert exc_info.value.from_status == "DRAFT"
        assert exc_info.value.to_status == "POSTED"
        assert exc_info.value.code == "INVALID_TRANSITION"

    def test_enum_and_string_statuses_are_interchangeable(self):
        assert PayrollRunStateMachine.can_transition(PayrollRunStatus.DRAFT, "CALCULATED") is True
        assert PayrollRunStateMachine.can_transition("DRAFT", PayrollRunStatus.CALCULATED) is True

    def test_reset_allowed_until_posted(self):
        """Recalculation may reset any status except POSTED."""
        for status in ("DRAFT", "CALCULATED", "APPROVED"):
            assert PayrollRunStateMachine.can_reset(status) is True
        assert PayrollRunStateMachine.can_reset("POSTED") is False

        with pytest.raises(InvalidTransitionError, match="cannot be recalculated"):
            PayrollRunStateMachine.validate_reset("POSTED")

    def test_calculation_allowed_from_draft_or_calculated(self):
        PayrollRunStateMachine.validate_calculation("DRAFT")
        PayrollRunStateMachine.validate_calculation(PayrollRunStatus.CALCULATED)

        for status in ("APPROVED", "POSTED"):
            with pytest.raises(InvalidTransitionError, match="DRAFT or CALCULATED"):
                PayrollRunStateMachine.validate_calculation(status)

    def test_results_immutable_only_when_posted(self):
        assert PayrollRunStateMachine.are_results_immutable("POSTED") is True
        assert PayrollRunStateMachine.are_results_immutable("APPROVED") is False

    def test_posting_requires_approver(self):
        run = SimpleNamespace(status="APPROVED", approved_by=None)
        errors = PayrollRunStateMachine.validate_run_for_transition(run, PayrollRunStatus.POSTED)
        assert errors == ["Run has no recorded approver"]

        run.approved_by = uuid4()
        assert PayrollRunStateMachine.validate_run_for_transition(run, PayrollRunStatus.POSTED) == []

    def test_validate_run_reports_bad_transition(self):
        run = SimpleNamespace(status="DRAFT", approved_by=None)
        errors = PayrollRunStateMachine.validate_run_for_transition(run, PayrollRunStatus.POSTED)
        assert len(errors) == 1
        assert "Cannot transition from 'DRAFT' to 'POSTED'" in errors[0]
