"""Type definitions for the calculation pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Any, Iterator, Mapping
from uuid import UUID

# Components without a configured phase run last.
DEFAULT_CALC_PHASE = 999


class ComponentKind(str, Enum):
    """How a component contributes to the totals."""

    EARNING = "EARNING"
    DEDUCTION = "DEDUCTION"
    EMPLOYER_CHARGE = "EMPLOYER_CHARGE"


class CompensationBasis(str, Enum):
    """Period a compensation amount is expressed in."""

    MONTHLY = "MONTHLY"
    ANNUAL = "ANNUAL"
    HOURLY = "HOURLY"


class OutcomeStatus(str, Enum):
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"


@dataclass(frozen=True)
class RuleDefinition:
    """Snapshot of a pay rule, detached from the session."""

    rule_id: UUID
    formula: str
    priority: int = 0
    effective_from: date | None = None
    effective_to: date | None = None
    active: bool = True

    def is_valid_on(self, as_of_date: date) -> bool:
        if not self.active:
            return False
        if self.effective_from is not None and self.effective_from > as_of_date:
            return False
        if self.effective_to is not None and self.effective_to < as_of_date:
            return False
        return True


@dataclass(frozen=True)
class ComponentDefinition:
    """Snapshot of a pay component and its rules."""

    component_id: UUID
    code: str
    name: str
    kind: ComponentKind
    calc_phase: int | None = None
    taxable: bool = True
    contributes_to_social: bool = False
    rules: tuple[RuleDefinition, ...] = ()

    @property
    def sort_phase(self) -> int:
        return self.calc_phase if self.calc_phase is not None else DEFAULT_CALC_PHASE


@dataclass(frozen=True)
class InputValue:
    """Variable input for one component in one period."""

    component_code: str
    quantity: Decimal | None = None
    rate: Decimal | None = None
    amount: Decimal | None = None
    input_id: UUID | None = None

    @property
    def resolved_amount(self) -> Decimal | None:
        """Explicit amount, else quantity x rate, else None."""
        if self.amount is not None:
            return self.amount
        if self.quantity is not None and self.rate is not None:
            return self.quantity * self.rate
        return None


@dataclass
class CalculationContext:
    """Ordered accumulator of named values for one employee calculation.

    Values keep insertion order; a later write to an existing name replaces
    the value in place. Running totals are updated as components are
    recorded so that later phases see the gross computed so far.

    grossSalary, taxableGross and socialContributionBase start out as the
    normalized base salary and are replaced by the accumulated totals at
    each phase boundary (refresh_gross), so formulas in the first phase
    see the base salary under all three names.
    """

    employee_id: UUID
    period_start: date
    period_end: date
    country_code: str = "US"
    currency: str = "USD"
    values: dict[str, Any] = field(default_factory=dict)

    earnings: Decimal = Decimal("0")
    deductions: Decimal = Decimal("0")
    employer_charges: Decimal = Decimal("0")
    taxable_gross: Decimal = Decimal("0")
    social_base: Decimal = Decimal("0")

    def set(self, name: str, value: Any) -> None:
        self.values[name] = value

    def get(self, name: str, default: Any = None) -> Any:
        return self.values.get(name, default)

    def __contains__(self, name: object) -> bool:
        return name in self.values

    def __iter__(self) -> Iterator[str]:
        return iter(self.values)

    def as_mapping(self) -> Mapping[str, Any]:
        return dict(self.values)

    def record(self, component: ComponentDefinition, amount: Decimal) -> None:
        """Write a computed amount under the component code and update totals."""
        self.values[component.code] = amount
        if component.kind == ComponentKind.EARNING:
            self.earnings += amount
            if component.taxable:
                self.taxable_gross += amount
            if component.contributes_to_social:
                self.social_base += amount
        elif component.kind == ComponentKind.DEDUCTION:
            self.deductions += abs(amount)
        else:
            self.employer_charges += amount

    def refresh_gross(self) -> None:
        """Expose the earnings computed so far to later phases."""
        self.values["grossSalary"] = self.earnings
        self.values["taxableGross"] = self.taxable_gross
        self.values["socialContributionBase"] = self.social_base


@dataclass
class LineCandidate:
    """A candidate line before persistence."""

    component_id: UUID
    component_code: str
    kind: ComponentKind
    amount: Decimal
    sequence: int
    quantity: Decimal | None = None
    rate: Decimal | None = None

    def to_canonical_dict(self) -> dict[str, Any]:
        """Return canonical dict for hashing (deterministic ordering)."""
        return {
            "component_code": self.component_code,
            "kind": self.kind.value,
            "amount": str(self.amount),
            "sequence": self.sequence,
            "quantity": str(self.quantity) if self.quantity is not None else None,
            "rate": str(self.rate) if self.rate is not None else None,
        }


@dataclass(frozen=True)
class BracketApplication:
    """Tax contributed by one bracket.

    rate is the stored fraction (0.20); rate_percent is the same rate as a
    percentage (20) for reporting.
    """

    lower_bound: Decimal
    upper_bound: Decimal | None
    rate: Decimal
    rate_percent: Decimal
    taxable_amount: Decimal
    tax: Decimal


@dataclass(frozen=True)
class TaxCalculation:
    """Result of a progressive tax computation."""

    taxable_income: Decimal
    total_tax: Decimal
    effective_rate: Decimal  # percent, 2 dp
    breakdown: tuple[BracketApplication, ...] = ()


@dataclass
class EmployeeCalculation:
    """Totals and lines computed for one employee."""

    employee_id: UUID
    currency: str
    gross: Decimal
    total_deductions: Decimal
    net: Decimal
    employer_cost: Decimal
    lines: list[LineCandidate] = field(default_factory=list)


@dataclass(frozen=True)
class PayrollValidationError:
    """Per-employee failure reported by a run calculation."""

    employee_id: UUID
    employee_name: str
    code: str
    message: str
    severity: str = "ERROR"


@dataclass(frozen=True)
class EmployeeOutcome:
    """Discriminated result of one employee's calculation."""

    employee_id: UUID
    status: OutcomeStatus
    result_id: UUID | None = None
    result_hash: str | None = None
    error: PayrollValidationError | None = None

    @classmethod
    def succeeded(cls, employee_id: UUID, result_id: UUID, result_hash: str | None = None) -> EmployeeOutcome:
        return cls(
            employee_id=employee_id,
            status=OutcomeStatus.SUCCEEDED,
            result_id=result_id,
            result_hash=result_hash,
        )

    @classmethod
    def failed(cls, error: PayrollValidationError) -> EmployeeOutcome:
        return cls(employee_id=error.employee_id, status=OutcomeStatus.FAILED, error=error)

    @classmethod
    def skipped(cls, employee_id: UUID) -> EmployeeOutcome:
        return cls(employee_id=employee_id, status=OutcomeStatus.SKIPPED)
