"""Pydantic schemas for API request/response models."""

from datetime import date, datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from payroll_compute.models import PayrollLine, PayrollResult, PayrollRun
from payroll_compute.services.pay_run_service import RunCalculationReport, RunSummary, RunTotals


# ============================================================================
# Payroll run schemas
# ============================================================================


class PayrollRunCreate(BaseModel):
    """Schema for initiating a payroll run."""

    payroll_period_id: UUID
    scope: str = "ALL"
    allow_coexisting: bool = False


class PayrollRunErrorResponse(BaseModel):
    """One employee that could not be calculated."""

    model_config = ConfigDict(from_attributes=True)

    employee_id: UUID
    employee_name: str
    code: str
    message: str
    severity: str = "ERROR"


class TotalsResponse(BaseModel):
    gross: Decimal
    total_deductions: Decimal
    net: Decimal
    employer_cost: Decimal

    @classmethod
    def from_totals(cls, totals: RunTotals) -> "TotalsResponse":
        return cls(
            gross=totals.gross,
            total_deductions=totals.total_deductions,
            net=totals.net,
            employer_cost=totals.employer_cost,
        )


class PayrollRunResponse(BaseModel):
    """Schema for payroll run response."""

    model_config = ConfigDict(from_attributes=True)

    payroll_run_id: UUID
    payroll_period_id: UUID
    scope: str
    status: str
    run_hash: str | None = None
    approved_by: UUID | None = None
    approved_at: datetime | None = None
    posted_at: datetime | None = None
    created_at: datetime | None = None
    period_code: str | None = None
    period_start: date | None = None
    period_end: date | None = None
    employee_count: int = 0
    totals_by_currency: dict[str, TotalsResponse] = Field(default_factory=dict)
    errors: list[PayrollRunErrorResponse] = []

    @classmethod
    def from_run(cls, run: PayrollRun, summary: RunSummary) -> "PayrollRunResponse":
        """Run status and error list with the totals of its stored results."""
        response = cls.model_validate(run)
        return response.model_copy(
            update={
                "period_code": run.period.code,
                "period_start": run.period.start_date,
                "period_end": run.period.end_date,
                "employee_count": summary.employee_count,
                "totals_by_currency": {
                    currency: TotalsResponse.from_totals(totals)
                    for currency, totals in summary.totals_by_currency.items()
                },
            }
        )


class ApprovalRequest(BaseModel):
    """Schema for approval request."""

    approver_id: UUID


class CalculationResponse(BaseModel):
    """Outcome of a calculate or recalculate call."""

    payroll_run_id: UUID
    status: str
    succeeded: int
    failed: int
    skipped: int
    cancelled: bool
    errors: list[PayrollRunErrorResponse]

    @classmethod
    def from_report(cls, report: RunCalculationReport) -> "CalculationResponse":
        return cls(
            payroll_run_id=report.payroll_run_id,
            status=report.status,
            succeeded=report.succeeded,
            failed=report.failed,
            skipped=report.skipped,
            cancelled=report.cancelled,
            errors=[PayrollRunErrorResponse.model_validate(e) for e in report.errors],
        )


class CancellationResponse(BaseModel):
    payroll_run_id: UUID
    cancellation_requested: bool


# ============================================================================
# Result schemas
# ============================================================================


class PayrollLineResponse(BaseModel):
    """Schema for a single result line."""

    sequence: int
    component_code: str
    amount: Decimal
    quantity: Decimal | None = None
    rate: Decimal | None = None

    @classmethod
    def from_line(cls, line: PayrollLine) -> "PayrollLineResponse":
        return cls(
            sequence=line.sequence,
            component_code=line.component.code,
            amount=line.amount,
            quantity=line.quantity,
            rate=line.rate,
        )


class PayrollResultResponse(BaseModel):
    """Schema for one employee's result."""

    payroll_result_id: UUID
    payroll_run_id: UUID
    employee_id: UUID
    currency: str
    gross: Decimal
    total_deductions: Decimal
    net: Decimal
    employer_cost: Decimal
    lines: list[PayrollLineResponse]

    @classmethod
    def from_result(cls, result: PayrollResult) -> "PayrollResultResponse":
        return cls(
            payroll_result_id=result.payroll_result_id,
            payroll_run_id=result.payroll_run_id,
            employee_id=result.employee_id,
            currency=result.currency,
            gross=result.gross,
            total_deductions=result.total_deductions,
            net=result.net,
            employer_cost=result.employer_cost,
            lines=[PayrollLineResponse.from_line(line) for line in result.lines],
        )


# ============================================================================
# Summary schemas
# ============================================================================


class RunSummaryResponse(BaseModel):
    """Aggregated run totals."""

    payroll_run_id: UUID
    status: str
    employee_count: int
    error_count: int
    totals_by_currency: dict[str, TotalsResponse] = Field(default_factory=dict)
    amounts_by_component: dict[str, Decimal] = Field(default_factory=dict)
    reporting_currency: str | None = None
    reporting_totals: TotalsResponse | None = None

    @classmethod
    def from_summary(cls, summary: RunSummary) -> "RunSummaryResponse":
        return cls(
            payroll_run_id=summary.payroll_run_id,
            status=summary.status,
            employee_count=summary.employee_count,
            error_count=summary.error_count,
            totals_by_currency={
                currency: TotalsResponse.from_totals(totals)
                for currency, totals in summary.totals_by_currency.items()
            },
            amounts_by_component=summary.amounts_by_component,
            reporting_currency=summary.reporting_currency,
            reporting_totals=(
                TotalsResponse.from_totals(summary.reporting_totals)
                if summary.reporting_totals is not None
                else None
            ),
        )


# ============================================================================
# Error schemas
# ============================================================================


class ErrorResponse(BaseModel):
    """Schema for error response."""

    detail: str
    code: str | None = None
    context: dict[str, Any] | None = None
