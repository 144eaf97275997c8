"""Period-scoped payroll inputs and bonus awards."""

from __future__ import annotations

import logging
from datetime import date
from decimal import Decimal
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from payroll_compute.errors import BusinessRuleViolation, NotFoundError
from payroll_compute.models import Bonus, Employee, PayComponent, PayrollInput, PayrollPeriod

logger = logging.getLogger(__name__)

BONUS_TYPES = ("PERFORMANCE", "SIGNING", "RETENTION", "REFERRAL", "ANNUAL", "SPOT")


class PayrollInputService:
    """Variable inputs (overtime, allowances, ...) and bonus awards.

    Inputs belong to one (employee, period, component) and may only change
    while the period is open.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def _open_period(self, payroll_period_id: UUID) -> PayrollPeriod:
        period = await self.session.get(PayrollPeriod, payroll_period_id)
        if period is None:
            raise NotFoundError("PayrollPeriod", payroll_period_id)
        if period.closed:
            raise BusinessRuleViolation(f"Payroll period {period.code} is closed")
        return period

    async def _component(self, code: str) -> PayComponent:
        component = await self.session.scalar(select(PayComponent).where(PayComponent.code == code))
        if component is None:
            raise NotFoundError("PayComponent", code)
        return component

    async def _employee(self, employee_id: UUID) -> Employee:
        employee = await self.session.get(Employee, employee_id)
        if employee is None:
            raise NotFoundError("Employee", employee_id)
        return employee

    @staticmethod
    def _validate_values(quantity: Decimal | None, rate: Decimal | None, amount: Decimal | None) -> None:
        if amount is None and (quantity is None or rate is None):
            raise BusinessRuleViolation("An input needs an amount, or both a quantity and a rate")
        if quantity is not None and quantity < 0:
            raise BusinessRuleViolation("Input quantity cannot be negative")

    async def create_input(
        self,
        employee_id: UUID,
        payroll_period_id: UUID,
        component_code: str,
        quantity: Decimal | None = None,
        rate: Decimal | None = None,
        amount: Decimal | None = None,
        source: str = "MANUAL",
        replace_existing: bool = False,
    ) -> PayrollInput:
        """Record an input; an existing one is replaced only when asked to."""
        await self._employee(employee_id)
        period = await self._open_period(payroll_period_id)
        component = await self._component(component_code)
        self._validate_values(quantity, rate, amount)

        existing = await self.session.scalar(
            select(PayrollInput).where(
                PayrollInput.employee_id == employee_id,
                PayrollInput.payroll_period_id == payroll_period_id,
                PayrollInput.pay_component_id == component.pay_component_id,
            )
        )
        if existing is not None:
            if not replace_existing:
                raise BusinessRuleViolation(
                    f"Input for {component_code} already exists for this employee in period {period.code}"
                )
            existing.quantity = quantity
            existing.rate = rate
            existing.amount = amount
            existing.source = source
            await self.session.flush()
            logger.debug("Replaced %s input for employee %s in %s", component_code, employee_id, period.code)
            return existing

        payroll_input = PayrollInput(
            employee_id=employee_id,
            payroll_period_id=payroll_period_id,
            pay_component_id=component.pay_component_id,
            quantity=quantity,
            rate=rate,
            amount=amount,
            source=source,
        )
        self.session.add(payroll_input)
        await self.session.flush()
        return payroll_input

    async def get_input(self, payroll_input_id: UUID) -> PayrollInput:
        payroll_input = await self.session.get(PayrollInput, payroll_input_id)
        if payroll_input is None:
            raise NotFoundError("PayrollInput", payroll_input_id)
        return payroll_input

    async def update_input(
        self,
        payroll_input_id: UUID,
        quantity: Decimal | None = None,
        rate: Decimal | None = None,
        amount: Decimal | None = None,
    ) -> PayrollInput:
        payroll_input = await self.get_input(payroll_input_id)
        await self._open_period(payroll_input.payroll_period_id)
        self._validate_values(quantity, rate, amount)
        payroll_input.quantity = quantity
        payroll_input.rate = rate
        payroll_input.amount = amount
        await self.session.flush()
        return payroll_input

    async def delete_input(self, payroll_input_id: UUID) -> None:
        payroll_input = await self.get_input(payroll_input_id)
        await self._open_period(payroll_input.payroll_period_id)
        await self.session.delete(payroll_input)
        await self.session.flush()

    async def list_inputs(self, payroll_period_id: UUID, employee_id: UUID | None = None) -> list[PayrollInput]:
        stmt = select(PayrollInput).where(PayrollInput.payroll_period_id == payroll_period_id)
        if employee_id is not None:
            stmt = stmt.where(PayrollInput.employee_id == employee_id)
        result = await self.session.execute(stmt.order_by(PayrollInput.employee_id))
        return list(result.scalars().all())

    # ===== Bonuses =====

    async def award_bonus(
        self,
        employee_id: UUID,
        bonus_type: str,
        amount: Decimal,
        award_date: date,
        payment_date: date | None = None,
        currency: str = "USD",
        description: str | None = None,
    ) -> Bonus:
        """Award a bonus, paid by the run of the period containing payment_date."""
        await self._employee(employee_id)
        if bonus_type not in BONUS_TYPES:
            raise BusinessRuleViolation(f"Unknown bonus type '{bonus_type}'")
        if amount <= 0:
            raise BusinessRuleViolation("Bonus amount must be positive")
        payment_date = payment_date or award_date
        if payment_date < award_date:
            raise BusinessRuleViolation("Bonus payment date cannot precede the award date")

        bonus = Bonus(
            employee_id=employee_id,
            bonus_type=bonus_type,
            amount=amount,
            currency=currency,
            award_date=award_date,
            payment_date=payment_date,
            is_paid=False,
            description=description,
        )
        self.session.add(bonus)
        await self.session.flush()
        logger.info("Awarded %s bonus of %s %s to employee %s", bonus_type, amount, currency, employee_id)
        return bonus

    async def list_bonuses(self, employee_id: UUID, unpaid_only: bool = False) -> list[Bonus]:
        stmt = select(Bonus).where(Bonus.employee_id == employee_id)
        if unpaid_only:
            stmt = stmt.where(Bonus.is_paid.is_(False))
        result = await self.session.execute(stmt.order_by(Bonus.payment_date))
        return list(result.scalars().all())
