"""Error taxonomy shared by calculators and services.

- NotFoundError: a required record is missing (compensation, exchange rate,
  run, period, ...).
- BusinessRuleViolation: the request breaks a rule and is refused as-is;
  never silently corrected.
- FormulaEvaluationError: a pay rule formula could not be parsed or
  evaluated; handled at single-component level.
"""

from __future__ import annotations

from typing import Any


class PayrollError(Exception):
    """Base class for payroll computation errors."""

    code = "PAYROLL_ERROR"


class NotFoundError(PayrollError):
    """Raised when a required record does not exist."""

    code = "NOT_FOUND"

    def __init__(self, entity: str, identifier: Any = None, message: str | None = None):
        self.entity = entity
        self.identifier = identifier
        if message is None:
            message = f"{entity} not found" if identifier is None else f"{entity} {identifier} not found"
        super().__init__(message)


class BusinessRuleViolation(PayrollError):
    """Raised when an operation would break a business rule."""

    code = "BUSINESS_RULE_VIOLATION"


class FormulaEvaluationError(PayrollError):
    """Raised when a formula cannot be parsed or evaluated."""

    code = "FORMULA_ERROR"

    def __init__(self, formula: str, reason: str):
        self.formula = formula
        self.reason = reason
        super().__init__(f"Cannot evaluate formula '{formula}': {reason}")


class FormulaTimeoutError(FormulaEvaluationError):
    """Raised when formula evaluation exceeds its time or step budget."""

    code = "FORMULA_TIMEOUT"
