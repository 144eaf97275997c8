"""Payroll calendars and period lifecycle."""

from __future__ import annotations

import calendar as month_calendar
import logging
import re
from datetime import date, timedelta
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from payroll_compute.errors import BusinessRuleViolation, NotFoundError
from payroll_compute.models import PayrollCalendar, PayrollPeriod

logger = logging.getLogger(__name__)

FREQUENCIES = ("WEEKLY", "BIWEEKLY", "SEMI_MONTHLY", "MONTHLY")


def period_end(start: date, frequency: str) -> date:
    """Last day of the period starting on start."""
    if frequency == "WEEKLY":
        return start + timedelta(days=6)
    if frequency == "BIWEEKLY":
        return start + timedelta(days=13)
    last_day = month_calendar.monthrange(start.year, start.month)[1]
    if frequency == "SEMI_MONTHLY" and start.day <= 15:
        return start.replace(day=15)
    return start.replace(day=last_day)


def payment_date_for(end: date, offset_days: int) -> date:
    """Period end plus offset, moved forward past weekends."""
    payment = end + timedelta(days=offset_days)
    while payment.weekday() >= 5:
        payment += timedelta(days=1)
    return payment


def period_code(calendar: PayrollCalendar, start: date) -> str:
    slug = re.sub(r"\s+", "-", calendar.name.strip().upper())
    return f"{slug}-{calendar.frequency}-{start.isoformat()}"


class PayrollCalendarService:
    """Creates calendars, generates their periods and opens/closes periods."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create_calendar(self, name: str, frequency: str) -> PayrollCalendar:
        if frequency not in FREQUENCIES:
            raise BusinessRuleViolation(f"Unknown pay frequency '{frequency}'")
        existing = await self.session.scalar(select(PayrollCalendar).where(PayrollCalendar.name == name))
        if existing is not None:
            raise BusinessRuleViolation(f"Payroll calendar '{name}' already exists")

        calendar = PayrollCalendar(name=name, frequency=frequency, active=True)
        self.session.add(calendar)
        await self.session.flush()
        logger.info("Created %s payroll calendar '%s'", frequency, name)
        return calendar

    async def get_calendar(self, payroll_calendar_id: UUID) -> PayrollCalendar:
        calendar = await self.session.get(PayrollCalendar, payroll_calendar_id)
        if calendar is None:
            raise NotFoundError("PayrollCalendar", payroll_calendar_id)
        return calendar

    async def generate_periods(
        self,
        payroll_calendar_id: UUID,
        start_date: date,
        end_date: date,
        payment_day_offset: int = 0,
        skip_existing: bool = True,
    ) -> list[PayrollPeriod]:
        """Create consecutive periods covering [start_date, end_date].

        The last period is truncated at end_date. Periods whose code already
        exists are skipped when skip_existing is set, otherwise rejected.
        """
        calendar = await self.get_calendar(payroll_calendar_id)
        if not calendar.active:
            raise BusinessRuleViolation("Cannot generate periods for inactive calendar")
        if end_date < start_date:
            raise BusinessRuleViolation(f"End date {end_date} is before start date {start_date}")

        existing_codes = set(
            (
                await self.session.execute(
                    select(PayrollPeriod.code).where(
                        PayrollPeriod.payroll_calendar_id == payroll_calendar_id
                    )
                )
            ).scalars()
        )

        created: list[PayrollPeriod] = []
        current = start_date
        while current <= end_date:
            end = min(period_end(current, calendar.frequency), end_date)
            code = period_code(calendar, current)
            if code in existing_codes:
                if not skip_existing:
                    raise BusinessRuleViolation(f"Payroll period {code} already exists")
            else:
                period = PayrollPeriod(
                    payroll_calendar_id=payroll_calendar_id,
                    code=code,
                    start_date=current,
                    end_date=end,
                    payment_date=payment_date_for(end, payment_day_offset),
                    closed=False,
                )
                self.session.add(period)
                created.append(period)
            current = end + timedelta(days=1)

        await self.session.flush()
        logger.info("Generated %d payroll periods for calendar '%s'", len(created), calendar.name)
        return created

    async def create_period(
        self,
        code: str,
        start_date: date,
        end_date: date,
        payment_date: date | None = None,
        payroll_calendar_id: UUID | None = None,
    ) -> PayrollPeriod:
        """Create a single ad-hoc period."""
        if end_date < start_date:
            raise BusinessRuleViolation(f"End date {end_date} is before start date {start_date}")
        existing = await self.session.scalar(select(PayrollPeriod).where(PayrollPeriod.code == code))
        if existing is not None:
            raise BusinessRuleViolation(f"Payroll period {code} already exists")
        period = PayrollPeriod(
            payroll_calendar_id=payroll_calendar_id,
            code=code,
            start_date=start_date,
            end_date=end_date,
            payment_date=payment_date or end_date,
            closed=False,
        )
        self.session.add(period)
        await self.session.flush()
        return period

    async def get_period(self, payroll_period_id: UUID) -> PayrollPeriod:
        period = await self.session.get(PayrollPeriod, payroll_period_id)
        if period is None:
            raise NotFoundError("PayrollPeriod", payroll_period_id)
        return period

    async def find_period_for_date(self, day: date, payroll_calendar_id: UUID | None = None) -> PayrollPeriod | None:
        stmt = select(PayrollPeriod).where(PayrollPeriod.start_date <= day, PayrollPeriod.end_date >= day)
        if payroll_calendar_id is not None:
            stmt = stmt.where(PayrollPeriod.payroll_calendar_id == payroll_calendar_id)
        return await self.session.scalar(stmt.order_by(PayrollPeriod.start_date).limit(1))

    async def close_period(self, payroll_period_id: UUID) -> PayrollPeriod:
        period = await self.get_period(payroll_period_id)
        if period.closed:
            raise BusinessRuleViolation(f"Payroll period {period.code} is already closed")
        period.closed = True
        await self.session.flush()
        logger.info("Closed payroll period %s", period.code)
        return period

    async def reopen_period(self, payroll_period_id: UUID, reason: str) -> PayrollPeriod:
        """Reopen a closed period for corrections."""
        period = await self.get_period(payroll_period_id)
        if not period.closed:
            raise BusinessRuleViolation(f"Payroll period {period.code} is not closed")
        period.closed = False
        await self.session.flush()
        logger.warning("Reopened payroll period %s - reason: %s", period.code, reason)
        return period

    async def update_payment_date(self, payroll_period_id: UUID, payment_date: date) -> PayrollPeriod:
        period = await self.get_period(payroll_period_id)
        if period.closed:
            raise BusinessRuleViolation(f"Payroll period {period.code} is closed")
        if payment_date < period.end_date:
            raise BusinessRuleViolation("Payment date cannot be before the period end")
        period.payment_date = payment_date
        await self.session.flush()
        return period
