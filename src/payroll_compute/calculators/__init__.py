"""Payroll calculation engine."""

from payroll_compute.calculators.components import PayComponentRegistry
from payroll_compute.calculators.effective_dating import DuplicateActiveRecordError, EffectiveDatedManager
from payroll_compute.calculators.engine import EmployeePayrollCalculator, MissingCompensationError
from payroll_compute.calculators.exchange_rates import ExchangeRateNotFoundError, ExchangeRateResolver
from payroll_compute.calculators.formula import FormulaEvaluator
from payroll_compute.calculators.line_builder import LineBuilder
from payroll_compute.calculators.tax_calculator import NoActiveBracketsError, ProgressiveTaxCalculator

__all__ = [
    "PayComponentRegistry",
    "EffectiveDatedManager",
    "DuplicateActiveRecordError",
    "EmployeePayrollCalculator",
    "MissingCompensationError",
    "ExchangeRateResolver",
    "ExchangeRateNotFoundError",
    "FormulaEvaluator",
    "LineBuilder",
    "ProgressiveTaxCalculator",
    "NoActiveBracketsError",
]
