"""Compensation, deduction, tax withholding and benefit records."""

from __future__ import annotations

import logging
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from payroll_compute.calculators.effective_dating import EffectiveDatedManager
from payroll_compute.calculators.types import CompensationBasis
from payroll_compute.errors import BusinessRuleViolation, NotFoundError
from payroll_compute.models import (
    Compensation,
    Deduction,
    Employee,
    EmployeeBenefit,
    TaxWithholding,
)

logger = logging.getLogger(__name__)

CENTS = Decimal("0.01")
HUNDRED = Decimal("100")


class CompensationService:
    """Effective-dated employee pay records.

    Every create goes through EffectiveDatedManager, so a new record
    effective from D closes the record it replaces at D - 1 day.
    """

    def __init__(self, session: AsyncSession):
        self.session = session
        self.compensations = EffectiveDatedManager(session, Compensation)
        self.deductions = EffectiveDatedManager(session, Deduction)
        self.withholdings = EffectiveDatedManager(session, TaxWithholding)
        self.benefits = EffectiveDatedManager(session, EmployeeBenefit)

    async def _require_employee(self, employee_id: UUID) -> Employee:
        employee = await self.session.get(Employee, employee_id)
        if employee is None:
            raise NotFoundError("Employee", employee_id)
        return employee

    # ===== Compensation =====

    async def create_compensation(
        self,
        employee_id: UUID,
        base_amount: Decimal,
        effective_from: date,
        basis: str = CompensationBasis.MONTHLY.value,
        currency: str = "USD",
        position: str | None = None,
        effective_to: date | None = None,
    ) -> Compensation:
        await self._require_employee(employee_id)
        if basis not in CompensationBasis.__members__:
            raise BusinessRuleViolation(f"Unknown compensation basis '{basis}'")
        if base_amount < 0:
            raise BusinessRuleViolation("Base amount cannot be negative")

        compensation = await self.compensations.create_with_closure(
            employee_id,
            effective_from,
            effective_to=effective_to,
            base_amount=base_amount,
            basis=basis,
            currency=currency,
            position=position,
        )
        logger.info(
            "Created compensation for employee %s: %s %s %s from %s",
            employee_id,
            base_amount,
            currency,
            basis,
            effective_from,
        )
        return compensation

    async def adjust_salary(
        self,
        employee_id: UUID,
        effective_from: date,
        new_amount: Decimal | None = None,
        percentage: Decimal | None = None,
    ) -> Compensation:
        """Replace the current compensation with an adjusted amount.

        Exactly one of new_amount and percentage (e.g. 5 for +5%) is given.
        """
        if (new_amount is None) == (percentage is None):
            raise BusinessRuleViolation("Provide either a new amount or a percentage")

        current = await self.compensations.find_active(employee_id, effective_from)
        if current is None:
            raise NotFoundError(
                "Compensation",
                employee_id,
                message=f"No active compensation for employee {employee_id} on {effective_from}",
            )

        if new_amount is not None:
            amount = new_amount
        else:
            amount = (current.base_amount * (HUNDRED + percentage) / HUNDRED).quantize(
                CENTS, rounding=ROUND_HALF_UP
            )
        if amount < 0:
            raise BusinessRuleViolation("Salary cannot be negative after adjustment")

        adjusted = await self.compensations.create_with_closure(
            employee_id,
            effective_from,
            base_amount=amount,
            basis=current.basis,
            currency=current.currency,
            position=current.position,
        )
        logger.info(
            "Adjusted salary of employee %s from %s to %s effective %s",
            employee_id,
            current.base_amount,
            amount,
            effective_from,
        )
        return adjusted

    async def terminate_compensation(self, employee_id: UUID, end_date: date) -> Compensation:
        current = await self.compensations.find_active(employee_id, end_date)
        if current is None:
            raise NotFoundError("Compensation", employee_id)
        return await self.compensations.terminate(current, end_date)

    async def current_compensation(self, employee_id: UUID, as_of_date: date) -> Compensation | None:
        return await self.compensations.find_active(employee_id, as_of_date)

    async def salary_history(self, employee_id: UUID) -> list[Compensation]:
        return await self.compensations.history(employee_id)

    # ===== Deductions =====

    async def add_deduction(
        self,
        employee_id: UUID,
        deduction_type: str,
        effective_from: date,
        amount: Decimal | None = None,
        percentage: Decimal | None = None,
        is_pre_tax: bool = False,
        currency: str = "USD",
        description: str | None = None,
        effective_to: date | None = None,
    ) -> Deduction:
        await self._require_employee(employee_id)
        if (amount is None) == (percentage is None):
            raise BusinessRuleViolation("A deduction has either a fixed amount or a percentage")
        if amount is not None and amount < 0:
            raise BusinessRuleViolation("Deduction amount cannot be negative")
        if percentage is not None and not (0 <= percentage <= 100):
            raise BusinessRuleViolation("Deduction percentage must be between 0 and 100")

        return await self.deductions.create_with_closure(
            employee_id,
            effective_from,
            kind=deduction_type,
            effective_to=effective_to,
            amount=amount,
            percentage=percentage,
            is_pre_tax=is_pre_tax,
            currency=currency,
            description=description,
        )

    async def terminate_deduction(self, employee_id: UUID, deduction_type: str, end_date: date) -> Deduction:
        current = await self.deductions.find_active(employee_id, end_date, kind=deduction_type)
        if current is None:
            raise NotFoundError("Deduction", f"{employee_id}/{deduction_type}")
        return await self.deductions.terminate(current, end_date)

    async def calculate_deductions(self, employee_id: UUID, gross: Decimal, as_of_date: date) -> dict[str, Decimal]:
        """Amount of each active deduction against a gross pay."""
        amounts: dict[str, Decimal] = {}
        for deduction in await self.deductions.find_all_active(employee_id, as_of_date):
            if deduction.amount is not None:
                amount = deduction.amount
            else:
                amount = (gross * deduction.percentage / HUNDRED).quantize(CENTS, rounding=ROUND_HALF_UP)
            amounts[deduction.deduction_type] = amount
        return amounts

    # ===== Tax withholding =====

    async def set_tax_withholding(
        self,
        employee_id: UUID,
        tax_type: str,
        rate: Decimal,
        effective_from: date,
        tax_authority: str | None = None,
        tax_identifier: str | None = None,
        effective_to: date | None = None,
    ) -> TaxWithholding:
        await self._require_employee(employee_id)
        if not (0 <= rate <= 100):
            raise BusinessRuleViolation("Withholding rate must be between 0 and 100")

        return await self.withholdings.create_with_closure(
            employee_id,
            effective_from,
            kind=tax_type,
            effective_to=effective_to,
            rate=rate,
            tax_authority=tax_authority,
            tax_identifier=tax_identifier,
        )

    async def terminate_tax_withholding(self, employee_id: UUID, tax_type: str, end_date: date) -> TaxWithholding:
        current = await self.withholdings.find_active(employee_id, end_date, kind=tax_type)
        if current is None:
            raise NotFoundError("TaxWithholding", f"{employee_id}/{tax_type}")
        return await self.withholdings.terminate(current, end_date)

    async def calculate_tax_liability(self, employee_id: UUID, gross: Decimal, as_of_date: date) -> dict[str, Decimal]:
        """Withholding per tax type: gross x rate / 100."""
        return {
            withholding.tax_type: (gross * withholding.rate / HUNDRED).quantize(CENTS, rounding=ROUND_HALF_UP)
            for withholding in await self.withholdings.find_all_active(employee_id, as_of_date)
        }

    # ===== Benefits =====

    async def enroll_benefit(
        self,
        employee_id: UUID,
        benefit_type: str,
        effective_from: date,
        employee_cost: Decimal = Decimal("0"),
        employer_cost: Decimal = Decimal("0"),
        currency: str = "USD",
        plan_name: str | None = None,
        effective_to: date | None = None,
    ) -> EmployeeBenefit:
        await self._require_employee(employee_id)
        if employee_cost < 0 or employer_cost < 0:
            raise BusinessRuleViolation("Benefit costs cannot be negative")

        return await self.benefits.create_with_closure(
            employee_id,
            effective_from,
            kind=benefit_type,
            effective_to=effective_to,
            employee_cost=employee_cost,
            employer_cost=employer_cost,
            currency=currency,
            status="ACTIVE",
            plan_name=plan_name,
        )

    async def terminate_benefit(self, employee_id: UUID, benefit_type: str, end_date: date) -> EmployeeBenefit:
        current = await self.benefits.find_active(employee_id, end_date, kind=benefit_type)
        if current is None:
            raise NotFoundError("EmployeeBenefit", f"{employee_id}/{benefit_type}")
        benefit = await self.benefits.terminate(current, end_date)
        benefit.status = "TERMINATED"
        await self.session.flush()
        return benefit
