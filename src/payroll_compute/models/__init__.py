"""SQLAlchemy ORM models for the payroll computation engine."""

from payroll_compute.models.base import Base, EffectiveDatedMixin, TimestampMixin
from payroll_compute.models.compensation import (
    Bonus,
    Compensation,
    Deduction,
    EmployeeBenefit,
    TaxWithholding,
)
from payroll_compute.models.employee import Employee
from payroll_compute.models.payroll import (
    PayComponent,
    PayrollCalendar,
    PayrollInput,
    PayrollLine,
    PayrollPeriod,
    PayrollResult,
    PayrollRun,
    PayrollRunError,
    PayRule,
)
from payroll_compute.models.reference import ExchangeRate, TaxBracket

__all__ = [
    "Base",
    "TimestampMixin",
    "EffectiveDatedMixin",
    "Employee",
    "Compensation",
    "Deduction",
    "TaxWithholding",
    "EmployeeBenefit",
    "Bonus",
    "PayComponent",
    "PayRule",
    "PayrollCalendar",
    "PayrollPeriod",
    "PayrollInput",
    "PayrollRun",
    "PayrollRunError",
    "PayrollResult",
    "PayrollLine",
    "TaxBracket",
    "ExchangeRate",
]
