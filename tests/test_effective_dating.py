"""Tests for EffectiveDatedManager."""

from datetime import date
from decimal import Decimal

import pytest

from payroll_compute.calculators.effective_dating import DuplicateActiveRecordError, EffectiveDatedManager
from payroll_compute.errors import BusinessRuleViolation
from payroll_compute.models import Compensation, Deduction, Employee


@pytest.fixture
async def employee(session) -> Employee:
    employee = Employee(first_name="Erin", last_name="Ellis")
    session.add(employee)
    await session.flush()
    return employee


class TestCreateWithClosure:
    @pytest.mark.asyncio
    async def test_new_record_closes_predecessor(self, session, employee):
        manager = EffectiveDatedManager(session, Compensation)
        first = await manager.create_with_closure(
            employee.employee_id, date(2024, 1, 1), base_amount=Decimal("3000"), basis="MONTHLY"
        )
        second = await manager.create_with_closure(
            employee.employee_id, date(2024, 4, 1), base_amount=Decimal("3300"), basis="MONTHLY"
        )

        assert first.effective_to == date(2024, 3, 31)
        assert second.effective_to is None
        assert (await manager.find_active(employee.employee_id, date(2024, 3, 31))) is first
        assert (await manager.find_active(employee.employee_id, date(2024, 4, 1))) is second

    @pytest.mark.asyncio
    async def test_at_most_one_active_on_every_day(self, session, employee):
        manager = EffectiveDatedManager(session, Compensation)
        starts = [date(2024, 1, 1), date(2024, 2, 15), date(2024, 3, 1)]
        for i, start in enumerate(starts):
            await manager.create_with_closure(
                employee.employee_id, start, base_amount=Decimal(1000 + i), basis="MONTHLY"
            )

        history = await manager.history(employee.employee_id)
        for day in (date(2024, 1, 1), date(2024, 2, 14), date(2024, 2, 15), date(2024, 12, 31)):
            assert sum(1 for r in history if r.is_active_on(day)) == 1

    @pytest.mark.asyncio
    async def test_record_before_first_start_is_inactive(self, session, employee):
        manager = EffectiveDatedManager(session, Compensation)
        await manager.create_with_closure(employee.employee_id, date(2024, 1, 1), base_amount=Decimal("1"))

        assert await manager.find_active(employee.employee_id, date(2023, 12, 31)) is None

    @pytest.mark.asyncio
    async def test_inverted_range_rejected(self, session, employee):
        manager = EffectiveDatedManager(session, Compensation)

        with pytest.raises(BusinessRuleViolation, match="before effective_from"):
            await manager.create_with_closure(
                employee.employee_id,
                date(2024, 5, 1),
                effective_to=date(2024, 4, 30),
                base_amount=Decimal("1"),
            )

    @pytest.mark.asyncio
    async def test_backdated_insert_rejected(self, session, employee):
        """A record cannot be slotted in front of an existing one."""
        manager = EffectiveDatedManager(session, Compensation)
        await manager.create_with_closure(employee.employee_id, date(2024, 3, 1), base_amount=Decimal("1"))

        with pytest.raises(BusinessRuleViolation, match="already starts on 2024-03-01"):
            await manager.create_with_closure(employee.employee_id, date(2024, 3, 1), base_amount=Decimal("2"))

    @pytest.mark.asyncio
    async def test_streams_are_independent_per_type(self, session, employee):
        manager = EffectiveDatedManager(session, Deduction)
        loan = await manager.create_with_closure(
            employee.employee_id, date(2024, 1, 1), kind="LOAN", amount=Decimal("100")
        )
        await manager.create_with_closure(
            employee.employee_id, date(2024, 2, 1), kind="UNION", amount=Decimal("20")
        )

        assert loan.effective_to is None
        active = await manager.find_all_active(employee.employee_id, date(2024, 2, 15))
        assert [d.deduction_type for d in active] == ["LOAN", "UNION"]

    @pytest.mark.asyncio
    async def test_typed_stream_requires_type(self, session, employee):
        manager = EffectiveDatedManager(session, Deduction)

        with pytest.raises(ValueError, match="require a type"):
            await manager.find_active(employee.employee_id, date(2024, 1, 1))


class TestFindActive:
    @pytest.mark.asyncio
    async def test_duplicate_active_records_detected(self, session, employee):
        # Two overlapping rows written directly, bypassing the manager
        session.add_all(
            [
                Compensation(employee_id=employee.employee_id, base_amount=Decimal("1"), effective_from=date(2024, 1, 1)),
                Compensation(employee_id=employee.employee_id, base_amount=Decimal("2"), effective_from=date(2024, 2, 1)),
            ]
        )
        await session.flush()
        manager = EffectiveDatedManager(session, Compensation)

        with pytest.raises(DuplicateActiveRecordError) as exc_info:
            await manager.find_active(employee.employee_id, date(2024, 2, 10))

        assert exc_info.value.count == 2
        assert exc_info.value.code == "DUPLICATE_ACTIVE_RECORD"

    @pytest.mark.asyncio
    async def test_end_date_is_inclusive(self, session, employee):
        manager = EffectiveDatedManager(session, Compensation)
        record = await manager.create_with_closure(
            employee.employee_id,
            date(2024, 1, 1),
            effective_to=date(2024, 1, 31),
            base_amount=Decimal("1"),
        )

        assert await manager.find_active(employee.employee_id, date(2024, 1, 31)) is record
        assert await manager.find_active(employee.employee_id, date(2024, 2, 1)) is None


class TestTerminate:
    @pytest.mark.asyncio
    async def test_terminate_sets_end_date(self, session, employee):
        manager = EffectiveDatedManager(session, Compensation)
        record = await manager.create_with_closure(employee.employee_id, date(2024, 1, 1), base_amount=Decimal("1"))

        await manager.terminate(record, date(2024, 6, 30))

        assert record.effective_to == date(2024, 6, 30)

    @pytest.mark.asyncio
    async def test_terminate_before_start_rejected(self, session, employee):
        manager = EffectiveDatedManager(session, Compensation)
        record = await manager.create_with_closure(employee.employee_id, date(2024, 1, 1), base_amount=Decimal("1"))

        with pytest.raises(BusinessRuleViolation, match="before it starts"):
            await manager.terminate(record, date(2023, 12, 31))
