"""Pay component, calendar, run, result and line models."""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import TYPE_CHECKING
from uuid import UUID, uuid4

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from payroll_compute.models.base import Base, TimestampMixin

if TYPE_CHECKING:
    from payroll_compute.models.employee import Employee


# ===== Component configuration =====


class PayComponent(Base, TimestampMixin):
    """Named pay component computed during a run."""

    __tablename__ = "pay_component"

    pay_component_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    code: Mapped[str] = mapped_column(String, nullable=False, unique=True)
    name: Mapped[str] = mapped_column(String, nullable=False)
    kind: Mapped[str] = mapped_column(String, nullable=False)
    calc_phase: Mapped[int | None] = mapped_column(Integer, nullable=True)
    taxable: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    contributes_to_social: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        CheckConstraint(
            "kind IN ('EARNING', 'DEDUCTION', 'EMPLOYER_CHARGE')",
            name="pay_component_kind_check",
        ),
    )

    # Relationships
    rules: Mapped[list[PayRule]] = relationship(back_populates="component")


class PayRule(Base, TimestampMixin):
    """Formula computing a component, valid over an optional date range."""

    __tablename__ = "pay_rule"

    pay_rule_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    pay_component_id: Mapped[UUID] = mapped_column(
        ForeignKey("pay_component.pay_component_id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    formula: Mapped[str] = mapped_column(Text, nullable=False)
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    effective_from: Mapped[date | None] = mapped_column(Date, nullable=True)
    effective_to: Mapped[date | None] = mapped_column(Date, nullable=True)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    __table_args__ = (
        CheckConstraint(
            "effective_to IS NULL OR effective_from IS NULL OR effective_to >= effective_from",
            name="pay_rule_dates_check",
        ),
    )

    component: Mapped[PayComponent] = relationship(back_populates="rules")


# ===== Calendars & Periods =====


class PayrollCalendar(Base, TimestampMixin):
    """Pay calendar generating periods at a fixed frequency."""

    __tablename__ = "payroll_calendar"

    payroll_calendar_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    name: Mapped[str] = mapped_column(String, nullable=False, unique=True)
    frequency: Mapped[str] = mapped_column(String, nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    __table_args__ = (
        CheckConstraint(
            "frequency IN ('WEEKLY', 'BIWEEKLY', 'SEMI_MONTHLY', 'MONTHLY')",
            name="payroll_calendar_frequency_check",
        ),
    )

    periods: Mapped[list[PayrollPeriod]] = relationship(back_populates="calendar")


class PayrollPeriod(Base, TimestampMixin):
    """Pay period instance."""

    __tablename__ = "payroll_period"

    payroll_period_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    payroll_calendar_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("payroll_calendar.payroll_calendar_id", ondelete="CASCADE"),
        nullable=True,
    )
    code: Mapped[str] = mapped_column(String, nullable=False, unique=True)
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date] = mapped_column(Date, nullable=False)
    payment_date: Mapped[date] = mapped_column(Date, nullable=False)
    closed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    __table_args__ = (
        CheckConstraint("end_date >= start_date", name="payroll_period_dates_check"),
    )

    calendar: Mapped[PayrollCalendar | None] = relationship(back_populates="periods")

    def contains(self, day: date) -> bool:
        return self.start_date <= day <= self.end_date


class PayrollInput(Base, TimestampMixin):
    """Period-scoped variable input for one employee and component."""

    __tablename__ = "payroll_input"

    payroll_input_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    employee_id: Mapped[UUID] = mapped_column(
        ForeignKey("employee.employee_id", ondelete="CASCADE"),
        nullable=False,
    )
    payroll_period_id: Mapped[UUID] = mapped_column(
        ForeignKey("payroll_period.payroll_period_id", ondelete="CASCADE"),
        nullable=False,
    )
    pay_component_id: Mapped[UUID] = mapped_column(
        ForeignKey("pay_component.pay_component_id"),
        nullable=False,
    )
    quantity: Mapped[Decimal | None] = mapped_column(Numeric(12, 4), nullable=True)
    rate: Mapped[Decimal | None] = mapped_column(Numeric(14, 4), nullable=True)
    amount: Mapped[Decimal | None] = mapped_column(Numeric(14, 2), nullable=True)
    source: Mapped[str] = mapped_column(String, nullable=False, default="MANUAL")

    __table_args__ = (
        UniqueConstraint(
            "employee_id",
            "payroll_period_id",
            "pay_component_id",
            name="payroll_input_unique",
        ),
    )

    component: Mapped[PayComponent] = relationship()


# ===== Payroll Runs =====


class PayrollRun(Base, TimestampMixin):
    """One calculation of a period for a population of employees."""

    __tablename__ = "payroll_run"

    payroll_run_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    payroll_period_id: Mapped[UUID] = mapped_column(
        ForeignKey("payroll_period.payroll_period_id"),
        nullable=False,
        index=True,
    )
    scope: Mapped[str] = mapped_column(String, nullable=False, default="ALL")
    status: Mapped[str] = mapped_column(String, nullable=False, default="DRAFT")
    run_hash: Mapped[str | None] = mapped_column(String, nullable=True)
    approved_by: Mapped[UUID | None] = mapped_column(nullable=True)
    approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    posted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint(
            "status IN ('DRAFT', 'CALCULATED', 'APPROVED', 'POSTED')",
            name="payroll_run_status_check",
        ),
    )

    # Relationships
    period: Mapped[PayrollPeriod] = relationship()
    results: Mapped[list[PayrollResult]] = relationship(back_populates="run")
    errors: Mapped[list[PayrollRunError]] = relationship(
        back_populates="run",
        cascade="all, delete-orphan",
    )


class PayrollRunError(Base, TimestampMixin):
    """Per-employee failure recorded by the last calculation of a run."""

    __tablename__ = "payroll_run_error"

    payroll_run_error_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    payroll_run_id: Mapped[UUID] = mapped_column(
        ForeignKey("payroll_run.payroll_run_id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    employee_id: Mapped[UUID] = mapped_column(nullable=False)
    employee_name: Mapped[str] = mapped_column(String, nullable=False)
    code: Mapped[str] = mapped_column(String, nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    severity: Mapped[str] = mapped_column(String, nullable=False, default="ERROR")

    run: Mapped[PayrollRun] = relationship(back_populates="errors")


class PayrollResult(Base, TimestampMixin):
    """Computed pay of one employee in one run."""

    __tablename__ = "payroll_result"

    payroll_result_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    payroll_run_id: Mapped[UUID] = mapped_column(
        ForeignKey("payroll_run.payroll_run_id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    employee_id: Mapped[UUID] = mapped_column(
        ForeignKey("employee.employee_id"),
        nullable=False,
    )
    payroll_period_id: Mapped[UUID] = mapped_column(
        ForeignKey("payroll_period.payroll_period_id"),
        nullable=False,
    )
    gross: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=Decimal("0"))
    total_deductions: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=Decimal("0"))
    net: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=Decimal("0"))
    employer_cost: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=Decimal("0"))
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")

    __table_args__ = (
        UniqueConstraint("payroll_run_id", "employee_id", name="payroll_result_run_employee_unique"),
    )

    # Relationships
    run: Mapped[PayrollRun] = relationship(back_populates="results")
    employee: Mapped[Employee] = relationship()
    lines: Mapped[list[PayrollLine]] = relationship(
        back_populates="result",
        cascade="all, delete-orphan",
        order_by="PayrollLine.sequence",
    )


class PayrollLine(Base, TimestampMixin):
    """Single component amount of a result."""

    __tablename__ = "payroll_line"

    payroll_line_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    payroll_result_id: Mapped[UUID] = mapped_column(
        ForeignKey("payroll_result.payroll_result_id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    pay_component_id: Mapped[UUID] = mapped_column(
        ForeignKey("pay_component.pay_component_id"),
        nullable=False,
    )
    quantity: Mapped[Decimal | None] = mapped_column(Numeric(12, 4), nullable=True)
    rate: Mapped[Decimal | None] = mapped_column(Numeric(14, 4), nullable=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)

    result: Mapped[PayrollResult] = relationship(back_populates="lines")
    component: Mapped[PayComponent] = relationship()
