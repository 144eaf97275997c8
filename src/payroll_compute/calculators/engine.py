"""Per-employee payroll calculation: context building and the phase loop."""

from __future__ import annotations

import logging
import re
from datetime import date, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Mapping
from uuid import UUID

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from payroll_compute.calculators.components import PayComponentRegistry
from payroll_compute.calculators.effective_dating import EffectiveDatedManager
from payroll_compute.calculators.exchange_rates import ExchangeRateResolver
from payroll_compute.calculators.formula import FormulaFunction
from payroll_compute.calculators.line_builder import LineBuilder
from payroll_compute.calculators.tax_calculator import ProgressiveTaxCalculator
from payroll_compute.calculators.types import (
    CalculationContext,
    CompensationBasis,
    EmployeeCalculation,
    InputValue,
)
from payroll_compute.errors import NotFoundError
from payroll_compute.models import (
    Bonus,
    Compensation,
    Deduction,
    Employee,
    EmployeeBenefit,
    PayComponent,
    PayrollInput,
    PayrollLine,
    PayrollPeriod,
    PayrollResult,
    TaxWithholding,
)

logger = logging.getLogger(__name__)

BONUS_COMPONENT_CODE = "BONUS"
MONTHS_PER_YEAR = Decimal("12")
CENTS = Decimal("0.01")


class MissingCompensationError(NotFoundError):
    """Raised when an employee has no compensation covering the period end."""

    code = "MISSING_COMPENSATION"

    def __init__(self, employee_id: UUID, as_of_date: date):
        self.employee_id = employee_id
        self.as_of_date = as_of_date
        super().__init__(
            "Compensation",
            employee_id,
            message=f"No active compensation for employee {employee_id} on {as_of_date}",
        )


def normalize_base_salary(
    amount: Decimal,
    basis: str,
    standard_monthly_hours: Decimal = Decimal("160"),
) -> Decimal:
    """Express a compensation amount as a monthly salary."""
    basis = CompensationBasis(basis)
    if basis == CompensationBasis.ANNUAL:
        return (amount / MONTHS_PER_YEAR).quantize(CENTS, rounding=ROUND_HALF_UP)
    if basis == CompensationBasis.HOURLY:
        return amount * standard_monthly_hours
    return amount


def count_work_days(start: date, end: date) -> int:
    """Weekdays (Monday to Friday) in [start, end]."""
    days = 0
    current = start
    while current <= end:
        if current.weekday() < 5:
            days += 1
        current += timedelta(days=1)
    return days


def context_key(kind: str) -> str:
    """Identifier-safe context name for a record type."""
    return re.sub(r"\W", "_", kind.strip().upper())


class EmployeePayrollCalculator:
    """Calculates and stores one employee's result for a period.

    Pipeline (stable order per employee):
    1) Active compensation on the period end date (missing = failure)
    2) Normalize base salary to a monthly amount
    3) Load period inputs and unpaid bonuses due in the period
    4) Build the calculation context
    5) Compute components in phase order, emitting lines
    6) Derive gross, deductions, net and employer cost
    """

    def __init__(
        self,
        session: AsyncSession,
        registry: PayComponentRegistry,
        standard_monthly_hours: Decimal = Decimal("160"),
    ):
        self.session = session
        self.registry = registry
        self.standard_monthly_hours = standard_monthly_hours
        self.exchange_rates = ExchangeRateResolver(session)
        self.tax_calculator = ProgressiveTaxCalculator(session)
        self.compensations = EffectiveDatedManager(session, Compensation)
        self.deductions = EffectiveDatedManager(session, Deduction)
        self.withholdings = EffectiveDatedManager(session, TaxWithholding)
        self.benefits = EffectiveDatedManager(session, EmployeeBenefit)

    async def calculate(self, employee: Employee, period: PayrollPeriod) -> EmployeeCalculation:
        """Compute an employee's lines and totals for a period.

        Raises:
            MissingCompensationError: If no compensation covers the period end
        """
        compensation = await self.compensations.find_active(employee.employee_id, period.end_date)
        if compensation is None:
            raise MissingCompensationError(employee.employee_id, period.end_date)

        base_salary = normalize_base_salary(
            compensation.base_amount,
            compensation.basis,
            self.standard_monthly_hours,
        )
        inputs = await self.load_inputs(employee.employee_id, period, compensation.currency)
        context = await self.build_context(employee, period, compensation, base_salary, inputs)
        return await self.compute(context, inputs, period.end_date)

    async def compute(
        self,
        context: CalculationContext,
        inputs: Mapping[str, InputValue],
        as_of_date: date,
    ) -> EmployeeCalculation:
        """Run the phase loop over a prepared context."""
        builder = LineBuilder()
        functions = self.formula_functions(context, as_of_date)

        current_phase: int | None = None
        for component in self.registry.components:
            if component.sort_phase != current_phase:
                if current_phase is not None:
                    context.refresh_gross()
                current_phase = component.sort_phase

            amount = await self.registry.calculate_component(
                component, context, inputs, as_of_date, functions
            )
            if amount is None:
                continue
            rounded = LineBuilder.round_to_cents(amount)
            context.record(component, rounded)
            builder.add(component, rounded, inputs.get(component.code))

        gross = context.earnings
        total_deductions = context.deductions
        return EmployeeCalculation(
            employee_id=context.employee_id,
            currency=context.currency,
            gross=gross,
            total_deductions=total_deductions,
            net=gross - total_deductions,
            employer_cost=gross + context.employer_charges,
            lines=builder.lines,
        )

    def formula_functions(self, context: CalculationContext, as_of_date: date) -> dict[str, FormulaFunction]:
        """tax() and convert() bound to the employee's country and the period end."""

        async def tax(tax_code: Any, income: Decimal) -> Decimal:
            calculation = await self.tax_calculator.calculate(
                context.country_code, str(tax_code), income, as_of_date
            )
            return calculation.total_tax

        async def convert(amount: Decimal, from_currency: Any, to_currency: Any) -> Decimal:
            return await self.exchange_rates.convert(
                amount, str(from_currency), str(to_currency), as_of_date
            )

        return {"tax": tax, "convert": convert}

    async def build_context(
        self,
        employee: Employee,
        period: PayrollPeriod,
        compensation: Compensation,
        base_salary: Decimal,
        inputs: Mapping[str, InputValue],
    ) -> CalculationContext:
        """Seed the context with base values, inputs and active employee records."""
        context = CalculationContext(
            employee_id=employee.employee_id,
            period_start=period.start_date,
            period_end=period.end_date,
            country_code=employee.country_code,
            currency=compensation.currency,
        )
        context.set("employeeId", str(employee.employee_id))
        context.set("baseSalary", base_salary)
        context.set("grossSalary", base_salary)
        context.set("taxableGross", base_salary)
        context.set("socialContributionBase", base_salary)
        context.set("periodStartDate", period.start_date)
        context.set("periodEndDate", period.end_date)
        context.set("workDays", Decimal(count_work_days(period.start_date, period.end_date)))
        context.set("standardHours", self.standard_monthly_hours)

        for code, value in inputs.items():
            if value.quantity is not None:
                context.set(f"{code}_QTY", value.quantity)
            if value.rate is not None:
                context.set(f"{code}_RATE", value.rate)
            amount = value.resolved_amount
            if amount is not None:
                context.set(code, amount)

        as_of = period.end_date
        for deduction in await self.deductions.find_all_active(employee.employee_id, as_of):
            key = context_key(deduction.deduction_type)
            if deduction.amount is not None:
                context.set(f"DED_{key}", deduction.amount)
            if deduction.percentage is not None:
                context.set(f"DED_{key}_PCT", deduction.percentage)

        for withholding in await self.withholdings.find_all_active(employee.employee_id, as_of):
            context.set(f"WHT_{context_key(withholding.tax_type)}", withholding.rate)

        for benefit in await self.benefits.find_all_active(employee.employee_id, as_of):
            if benefit.status == "PENDING":
                continue
            key = context_key(benefit.benefit_type)
            context.set(f"BEN_{key}_EE", benefit.employee_cost)
            context.set(f"BEN_{key}_ER", benefit.employer_cost)

        return context

    async def load_inputs(
        self,
        employee_id: UUID,
        period: PayrollPeriod,
        currency: str,
    ) -> dict[str, InputValue]:
        """Period inputs keyed by component code, with due bonuses folded into BONUS."""
        result = await self.session.execute(
            select(PayrollInput, PayComponent.code)
            .join(PayComponent, PayComponent.pay_component_id == PayrollInput.pay_component_id)
            .where(
                PayrollInput.employee_id == employee_id,
                PayrollInput.payroll_period_id == period.payroll_period_id,
            )
        )
        inputs: dict[str, InputValue] = {}
        for payroll_input, code in result.all():
            inputs[code] = InputValue(
                component_code=code,
                quantity=payroll_input.quantity,
                rate=payroll_input.rate,
                amount=payroll_input.amount,
                input_id=payroll_input.payroll_input_id,
            )

        bonus_total = Decimal("0")
        for bonus in await self.due_bonuses(employee_id, period):
            bonus_total += await self.exchange_rates.convert(
                bonus.amount, bonus.currency, currency, period.end_date
            )
        if bonus_total:
            existing = inputs.get(BONUS_COMPONENT_CODE)
            previous = existing.resolved_amount if existing is not None else None
            inputs[BONUS_COMPONENT_CODE] = InputValue(
                component_code=BONUS_COMPONENT_CODE,
                amount=(previous or Decimal("0")) + bonus_total,
                input_id=existing.input_id if existing is not None else None,
            )
        return inputs

    async def due_bonuses(self, employee_id: UUID, period: PayrollPeriod) -> list[Bonus]:
        """Unpaid bonuses whose payment date falls in the period."""
        result = await self.session.execute(
            select(Bonus)
            .where(
                Bonus.employee_id == employee_id,
                Bonus.is_paid.is_(False),
                Bonus.payment_date >= period.start_date,
                Bonus.payment_date <= period.end_date,
            )
            .order_by(Bonus.payment_date)
        )
        return list(result.scalars().all())

    async def save_result(
        self,
        payroll_run_id: UUID,
        period: PayrollPeriod,
        calculation: EmployeeCalculation,
    ) -> PayrollResult:
        """Get-or-create the employee's result and replace its lines."""
        result = await self.session.scalar(
            select(PayrollResult).where(
                PayrollResult.payroll_run_id == payroll_run_id,
                PayrollResult.employee_id == calculation.employee_id,
            )
        )
        if result is None:
            result = PayrollResult(
                payroll_run_id=payroll_run_id,
                employee_id=calculation.employee_id,
                payroll_period_id=period.payroll_period_id,
            )
            self.session.add(result)
            await self.session.flush()
        else:
            await self.session.execute(
                delete(PayrollLine).where(PayrollLine.payroll_result_id == result.payroll_result_id)
            )

        result.gross = calculation.gross
        result.total_deductions = calculation.total_deductions
        result.net = calculation.net
        result.employer_cost = calculation.employer_cost
        result.currency = calculation.currency

        for line in calculation.lines:
            self.session.add(
                PayrollLine(
                    payroll_result_id=result.payroll_result_id,
                    pay_component_id=line.component_id,
                    quantity=line.quantity,
                    rate=line.rate,
                    amount=line.amount,
                    sequence=line.sequence,
                )
            )
        await self.session.flush()
        logger.debug(
            "Stored result for employee %s: gross=%s net=%s lines=%d",
            calculation.employee_id,
            calculation.gross,
            calculation.net,
            len(calculation.lines),
        )
        return result
