"""Payroll run state machine with transition validation."""

from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING

from payroll_compute.errors import BusinessRuleViolation

if TYPE_CHECKING:
    from payroll_compute.models import PayrollRun


class PayrollRunStatus(str, Enum):
    """Payroll run status values."""

    DRAFT = "DRAFT"
    CALCULATED = "CALCULATED"
    APPROVED = "APPROVED"
    POSTED = "POSTED"


class InvalidTransitionError(BusinessRuleViolation):
    """Raised when an invalid state transition is attempted."""

    code = "INVALID_TRANSITION"

    def __init__(self, from_status: str, to_status: str, reason: str | None = None):
        self.from_status = str(getattr(from_status, "value", from_status))
        self.to_status = str(getattr(to_status, "value", to_status))
        self.reason = reason
        msg = f"Invalid transition from '{self.from_status}' to '{self.to_status}'"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class PayrollRunStateMachine:
    """State machine for payroll run status transitions.

    Allowed transitions:
    - DRAFT → CALCULATED (calculate; a CALCULATED run is reset to DRAFT first)
    - CALCULATED → APPROVED (approve)
    - APPROVED → POSTED (post)
    - DRAFT / CALCULATED / APPROVED → DRAFT (recalculate resets first)

    POSTED is terminal.
    """

    VALID_TRANSITIONS: dict[str, list[str]] = {
        PayrollRunStatus.DRAFT: [PayrollRunStatus.CALCULATED],
        PayrollRunStatus.CALCULATED: [PayrollRunStatus.APPROVED],
        PayrollRunStatus.APPROVED: [PayrollRunStatus.POSTED],
        PayrollRunStatus.POSTED: [],  # Terminal state
    }

    # Statuses a recalculation may reset to DRAFT
    RESET_ALLOWED = {
        PayrollRunStatus.DRAFT,
        PayrollRunStatus.CALCULATED,
        PayrollRunStatus.APPROVED,
    }

    # Statuses calculate() accepts; a CALCULATED run goes back to DRAFT first
    CALCULABLE = {PayrollRunStatus.DRAFT, PayrollRunStatus.CALCULATED}

    # Statuses whose results may not change
    RESULTS_IMMUTABLE = {PayrollRunStatus.POSTED}

    @classmethod
    def can_transition(cls, from_status: str, to_status: str) -> bool:
        """Check if a transition is valid."""
        allowed = cls.VALID_TRANSITIONS.get(from_status, [])
        return to_status in allowed

    @classmethod
    def validate_transition(cls, from_status: str, to_status: str) -> None:
        """Validate a transition, raising InvalidTransitionError if invalid."""
        if not cls.can_transition(from_status, to_status):
            raise InvalidTransitionError(from_status, to_status)

    @classmethod
    def can_reset(cls, status: str) -> bool:
        """Check if a run in this status may be reset to DRAFT for recalculation."""
        return status in cls.RESET_ALLOWED

    @classmethod
    def validate_reset(cls, status: str) -> None:
        if not cls.can_reset(status):
            raise InvalidTransitionError(
                status,
                PayrollRunStatus.DRAFT,
                "Posted payroll runs cannot be recalculated",
            )

    @classmethod
    def validate_calculation(cls, status: str) -> None:
        if status not in cls.CALCULABLE:
            raise InvalidTransitionError(
                status,
                PayrollRunStatus.CALCULATED,
                "Only DRAFT or CALCULATED runs can be calculated",
            )

    @classmethod
    def are_results_immutable(cls, status: str) -> bool:
        return status in cls.RESULTS_IMMUTABLE

    @classmethod
    def get_next_statuses(cls, current_status: str) -> list[str]:
        """Get list of valid next statuses from current status."""
        return cls.VALID_TRANSITIONS.get(current_status, [])

    @classmethod
    def validate_run_for_transition(cls, run: PayrollRun, to_status: str) -> list[str]:
        """Validate a run for a specific transition, returning any errors.

        Returns list of error messages (empty if valid).
        """
        errors: list[str] = []
        from_status = run.status

        if not cls.can_transition(from_status, to_status):
            errors.append(f"Cannot transition from '{from_status}' to '{getattr(to_status, 'value', to_status)}'")
            return errors

        if to_status == PayrollRunStatus.POSTED and run.approved_by is None:
            errors.append("Run has no recorded approver")

        return errors
