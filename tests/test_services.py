"""Tests for the compensation, calendar and input services."""

from datetime import date
from decimal import Decimal
from uuid import uuid4

import pytest

from payroll_compute.errors import BusinessRuleViolation, NotFoundError
from payroll_compute.services.compensation_service import CompensationService
from payroll_compute.services.input_service import PayrollInputService
from payroll_compute.services.period_service import (
    PayrollCalendarService,
    payment_date_for,
    period_end,
)


class TestCompensationService:
    @pytest.mark.asyncio
    async def test_adjust_salary_by_percentage_closes_previous(self, session, seed):
        service = CompensationService(session)

        adjusted = await service.adjust_salary(seed.alice.employee_id, date(2024, 3, 1), percentage=Decimal("5"))

        assert adjusted.base_amount == Decimal("3150.00")
        assert adjusted.basis == "MONTHLY"
        history = await service.salary_history(seed.alice.employee_id)
        assert [c.effective_to for c in history] == [date(2024, 2, 29), None]
        current = await service.current_compensation(seed.alice.employee_id, date(2024, 2, 29))
        assert current.base_amount == Decimal("3000.00")

    @pytest.mark.asyncio
    async def test_adjust_salary_needs_exactly_one_change(self, session, seed):
        service = CompensationService(session)

        with pytest.raises(BusinessRuleViolation):
            await service.adjust_salary(seed.alice.employee_id, date(2024, 3, 1))
        with pytest.raises(BusinessRuleViolation):
            await service.adjust_salary(
                seed.alice.employee_id, date(2024, 3, 1), new_amount=Decimal("1"), percentage=Decimal("1")
            )

    @pytest.mark.asyncio
    async def test_adjust_salary_without_compensation(self, session, seed):
        service = CompensationService(session)

        with pytest.raises(NotFoundError):
            await service.adjust_salary(seed.carol.employee_id, date(2024, 3, 1), new_amount=Decimal("2000"))

    @pytest.mark.asyncio
    async def test_create_compensation_validation(self, session, seed):
        service = CompensationService(session)

        with pytest.raises(NotFoundError):
            await service.create_compensation(uuid4(), Decimal("100"), date(2024, 1, 1))
        with pytest.raises(BusinessRuleViolation, match="basis"):
            await service.create_compensation(seed.carol.employee_id, Decimal("100"), date(2024, 1, 1), basis="DAILY")
        with pytest.raises(BusinessRuleViolation, match="negative"):
            await service.create_compensation(seed.carol.employee_id, Decimal("-1"), date(2024, 1, 1))

    @pytest.mark.asyncio
    async def test_deductions(self, session, seed):
        service = CompensationService(session)
        employee_id = seed.alice.employee_id
        await service.add_deduction(employee_id, "LOAN", date(2024, 1, 1), amount=Decimal("120"))
        await service.add_deduction(employee_id, "UNION", date(2024, 1, 1), percentage=Decimal("1.5"))

        amounts = await service.calculate_deductions(employee_id, Decimal("3000"), date(2024, 1, 31))

        assert amounts == {"LOAN": Decimal("120"), "UNION": Decimal("45.00")}

        await service.terminate_deduction(employee_id, "LOAN", date(2024, 1, 15))
        amounts = await service.calculate_deductions(employee_id, Decimal("3000"), date(2024, 1, 31))
        assert set(amounts) == {"UNION"}

    @pytest.mark.asyncio
    async def test_deduction_needs_amount_or_percentage(self, session, seed):
        service = CompensationService(session)

        with pytest.raises(BusinessRuleViolation):
            await service.add_deduction(seed.alice.employee_id, "LOAN", date(2024, 1, 1))
        with pytest.raises(BusinessRuleViolation):
            await service.add_deduction(seed.alice.employee_id, "LOAN", date(2024, 1, 1), percentage=Decimal("150"))

    @pytest.mark.asyncio
    async def test_tax_withholding(self, session, seed):
        service = CompensationService(session)
        employee_id = seed.alice.employee_id
        await service.set_tax_withholding(employee_id, "STATE", Decimal("4"), date(2024, 1, 1))
        await service.set_tax_withholding(employee_id, "STATE", Decimal("5"), date(2024, 2, 1))

        assert await service.calculate_tax_liability(employee_id, Decimal("3000"), date(2024, 1, 31)) == {
            "STATE": Decimal("120.00")
        }
        assert await service.calculate_tax_liability(employee_id, Decimal("3000"), date(2024, 2, 1)) == {
            "STATE": Decimal("150.00")
        }

    @pytest.mark.asyncio
    async def test_terminate_compensation(self, session, seed):
        service = CompensationService(session)

        ended = await service.terminate_compensation(seed.alice.employee_id, date(2024, 6, 30))

        assert ended.effective_to == date(2024, 6, 30)
        assert await service.current_compensation(seed.alice.employee_id, date(2024, 7, 1)) is None
        with pytest.raises(NotFoundError):
            await service.terminate_compensation(seed.carol.employee_id, date(2024, 6, 30))

    @pytest.mark.asyncio
    async def test_terminate_tax_withholding(self, session, seed):
        service = CompensationService(session)
        employee_id = seed.alice.employee_id
        await service.set_tax_withholding(employee_id, "STATE", Decimal("4"), date(2024, 1, 1))

        await service.terminate_tax_withholding(employee_id, "STATE", date(2024, 1, 31))

        assert await service.calculate_tax_liability(employee_id, Decimal("3000"), date(2024, 2, 1)) == {}

    @pytest.mark.asyncio
    async def test_benefit_enroll_and_terminate(self, session, seed):
        service = CompensationService(session)
        employee_id = seed.alice.employee_id
        await service.enroll_benefit(
            employee_id, "HEALTH", date(2024, 1, 1), employee_cost=Decimal("80"), employer_cost=Decimal("200")
        )

        benefit = await service.terminate_benefit(employee_id, "HEALTH", date(2024, 6, 30))

        assert benefit.status == "TERMINATED"
        assert benefit.effective_to == date(2024, 6, 30)
        with pytest.raises(BusinessRuleViolation):
            await service.enroll_benefit(employee_id, "DENTAL", date(2024, 1, 1), employee_cost=Decimal("-5"))


class TestPeriodHelpers:
    def test_period_end(self):
        assert period_end(date(2024, 1, 1), "WEEKLY") == date(2024, 1, 7)
        assert period_end(date(2024, 1, 1), "BIWEEKLY") == date(2024, 1, 14)
        assert period_end(date(2024, 2, 1), "SEMI_MONTHLY") == date(2024, 2, 15)
        assert period_end(date(2024, 2, 16), "SEMI_MONTHLY") == date(2024, 2, 29)
        assert period_end(date(2024, 2, 1), "MONTHLY") == date(2024, 2, 29)

    def test_payment_date_skips_weekend(self):
        # 2024-03-31 is a Sunday
        assert payment_date_for(date(2024, 3, 31), 0) == date(2024, 4, 1)
        assert payment_date_for(date(2024, 1, 31), 2) == date(2024, 2, 2)


class TestPayrollCalendarService:
    @pytest.mark.asyncio
    async def test_generate_monthly_periods(self, session):
        service = PayrollCalendarService(session)
        calendar = await service.create_calendar("Main", "MONTHLY")

        periods = await service.generate_periods(calendar.payroll_calendar_id, date(2024, 1, 1), date(2024, 3, 31))

        assert [p.code for p in periods] == [
            "MAIN-MONTHLY-2024-01-01",
            "MAIN-MONTHLY-2024-02-01",
            "MAIN-MONTHLY-2024-03-01",
        ]
        assert periods[1].end_date == date(2024, 2, 29)
        assert periods[2].payment_date == date(2024, 4, 1)

        again = await service.generate_periods(calendar.payroll_calendar_id, date(2024, 1, 1), date(2024, 4, 30))
        assert [p.code for p in again] == ["MAIN-MONTHLY-2024-04-01"]

        with pytest.raises(BusinessRuleViolation, match="already exists"):
            await service.generate_periods(
                calendar.payroll_calendar_id, date(2024, 1, 1), date(2024, 1, 31), skip_existing=False
            )

    @pytest.mark.asyncio
    async def test_calendar_validation(self, session):
        service = PayrollCalendarService(session)
        await service.create_calendar("Main", "MONTHLY")

        with pytest.raises(BusinessRuleViolation):
            await service.create_calendar("Main", "WEEKLY")
        with pytest.raises(BusinessRuleViolation):
            await service.create_calendar("Other", "DAILY")
        with pytest.raises(NotFoundError):
            await service.get_calendar(uuid4())

    @pytest.mark.asyncio
    async def test_close_and_reopen(self, session, seed):
        service = PayrollCalendarService(session)
        period_id = seed.period.payroll_period_id

        closed = await service.close_period(period_id)
        assert closed.closed is True
        with pytest.raises(BusinessRuleViolation, match="already closed"):
            await service.close_period(period_id)
        with pytest.raises(BusinessRuleViolation, match="closed"):
            await service.update_payment_date(period_id, date(2024, 2, 2))

        reopened = await service.reopen_period(period_id, "late overtime")
        assert reopened.closed is False
        updated = await service.update_payment_date(period_id, date(2024, 2, 2))
        assert updated.payment_date == date(2024, 2, 2)

    @pytest.mark.asyncio
    async def test_find_period_for_date(self, session, seed):
        service = PayrollCalendarService(session)

        found = await service.find_period_for_date(date(2024, 1, 15))

        assert found.payroll_period_id == seed.period.payroll_period_id
        assert await service.find_period_for_date(date(2024, 2, 15)) is None


class TestPayrollInputService:
    @pytest.mark.asyncio
    async def test_create_and_replace(self, session, seed):
        service = PayrollInputService(session)
        args = (seed.bob.employee_id, seed.period.payroll_period_id, "OVERTIME")

        created = await service.create_input(*args, quantity=Decimal("10"), rate=Decimal("18.75"))
        with pytest.raises(BusinessRuleViolation, match="already exists"):
            await service.create_input(*args, amount=Decimal("50"))
        replaced = await service.create_input(*args, amount=Decimal("50"), replace_existing=True)

        assert replaced.payroll_input_id == created.payroll_input_id
        assert replaced.amount == Decimal("50")
        assert replaced.quantity is None
        assert len(await service.list_inputs(seed.period.payroll_period_id)) == 1

    @pytest.mark.asyncio
    async def test_input_validation(self, session, seed):
        service = PayrollInputService(session)
        period_id = seed.period.payroll_period_id

        with pytest.raises(BusinessRuleViolation):
            await service.create_input(seed.bob.employee_id, period_id, "OVERTIME", quantity=Decimal("1"))
        with pytest.raises(BusinessRuleViolation, match="negative"):
            await service.create_input(
                seed.bob.employee_id, period_id, "OVERTIME", quantity=Decimal("-1"), rate=Decimal("10")
            )
        with pytest.raises(NotFoundError):
            await service.create_input(seed.bob.employee_id, period_id, "NO_SUCH", amount=Decimal("1"))
        with pytest.raises(NotFoundError):
            await service.create_input(uuid4(), period_id, "OVERTIME", amount=Decimal("1"))

    @pytest.mark.asyncio
    async def test_closed_period_rejects_changes(self, session, seed):
        service = PayrollInputService(session)
        created = await service.create_input(
            seed.bob.employee_id, seed.period.payroll_period_id, "OVERTIME", amount=Decimal("100")
        )
        await PayrollCalendarService(session).close_period(seed.period.payroll_period_id)

        with pytest.raises(BusinessRuleViolation, match="closed"):
            await service.update_input(created.payroll_input_id, amount=Decimal("200"))
        with pytest.raises(BusinessRuleViolation, match="closed"):
            await service.delete_input(created.payroll_input_id)

    @pytest.mark.asyncio
    async def test_update_and_delete(self, session, seed):
        service = PayrollInputService(session)
        created = await service.create_input(
            seed.bob.employee_id, seed.period.payroll_period_id, "OVERTIME", amount=Decimal("100")
        )

        updated = await service.update_input(created.payroll_input_id, quantity=Decimal("2"), rate=Decimal("30"))
        assert updated.amount is None
        assert updated.quantity == Decimal("2")

        await service.delete_input(created.payroll_input_id)
        with pytest.raises(NotFoundError):
            await service.get_input(created.payroll_input_id)

    @pytest.mark.asyncio
    async def test_award_bonus(self, session, seed):
        service = PayrollInputService(session)
        employee_id = seed.alice.employee_id

        bonus = await service.award_bonus(employee_id, "SPOT", Decimal("250"), date(2024, 1, 10))

        assert bonus.payment_date == date(2024, 1, 10)
        assert bonus.is_paid is False
        assert await service.list_bonuses(employee_id, unpaid_only=True) == [bonus]

        with pytest.raises(BusinessRuleViolation, match="Unknown bonus type"):
            await service.award_bonus(employee_id, "GIFT", Decimal("10"), date(2024, 1, 10))
        with pytest.raises(BusinessRuleViolation, match="positive"):
            await service.award_bonus(employee_id, "SPOT", Decimal("0"), date(2024, 1, 10))
        with pytest.raises(BusinessRuleViolation, match="precede"):
            await service.award_bonus(
                employee_id, "SPOT", Decimal("10"), date(2024, 1, 10), payment_date=date(2024, 1, 5)
            )


class TestAdHocPeriods:
    @pytest.mark.asyncio
    async def test_create_period(self, session, seed):
        service = PayrollCalendarService(session)

        period = await service.create_period("2024-02", date(2024, 2, 1), date(2024, 2, 29))

        assert period.payment_date == date(2024, 2, 29)
        assert period.closed is False
        with pytest.raises(BusinessRuleViolation, match="already exists"):
            await service.create_period("2024-01", date(2024, 1, 1), date(2024, 1, 31))
        with pytest.raises(BusinessRuleViolation, match="before"):
            await service.create_period("BAD", date(2024, 3, 31), date(2024, 3, 1))
