"""Payroll computation services."""

from payroll_compute.services.state_machine import (
    InvalidTransitionError,
    PayrollRunStateMachine,
    PayrollRunStatus,
)
from payroll_compute.services.pay_run_service import PayrollRunService, RunCalculationReport, RunSummary
from payroll_compute.services.locking_service import RunLockRegistry, RunLockedError
from payroll_compute.services.compensation_service import CompensationService
from payroll_compute.services.configuration_service import ConfigurationService
from payroll_compute.services.input_service import PayrollInputService
from payroll_compute.services.period_service import PayrollCalendarService

__all__ = [
    "PayrollRunStateMachine",
    "PayrollRunStatus",
    "InvalidTransitionError",
    "PayrollRunService",
    "RunCalculationReport",
    "RunSummary",
    "RunLockRegistry",
    "RunLockedError",
    "CompensationService",
    "ConfigurationService",
    "PayrollInputService",
    "PayrollCalendarService",
]
