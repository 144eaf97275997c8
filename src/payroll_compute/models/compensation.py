"""Effective-dated employee pay records and bonus awards."""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import TYPE_CHECKING
from uuid import UUID, uuid4

from sqlalchemy import Boolean, CheckConstraint, Date, ForeignKey, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from payroll_compute.models.base import Base, EffectiveDatedMixin, TimestampMixin

if TYPE_CHECKING:
    from payroll_compute.models.employee import Employee


class Compensation(Base, EffectiveDatedMixin, TimestampMixin):
    """Base pay of an employee over an effective range.

    One stream per employee: a new compensation closes the previous one.
    """

    __tablename__ = "compensation"

    compensation_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    employee_id: Mapped[UUID] = mapped_column(
        ForeignKey("employee.employee_id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    base_amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    basis: Mapped[str] = mapped_column(String, nullable=False, default="MONTHLY")
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    position: Mapped[str | None] = mapped_column(String, nullable=True)

    __table_args__ = (
        CheckConstraint("basis IN ('MONTHLY', 'ANNUAL', 'HOURLY')", name="compensation_basis_check"),
        CheckConstraint("base_amount >= 0", name="compensation_amount_check"),
        CheckConstraint(
            "effective_to IS NULL OR effective_to >= effective_from",
            name="compensation_dates_check",
        ),
    )

    employee: Mapped[Employee] = relationship()


class Deduction(Base, EffectiveDatedMixin, TimestampMixin):
    """Recurring employee deduction (fixed amount or percentage)."""

    __tablename__ = "deduction"
    __kind_attr__ = "deduction_type"

    deduction_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    employee_id: Mapped[UUID] = mapped_column(
        ForeignKey("employee.employee_id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    deduction_type: Mapped[str] = mapped_column(String, nullable=False)
    amount: Mapped[Decimal | None] = mapped_column(Numeric(14, 2), nullable=True)
    percentage: Mapped[Decimal | None] = mapped_column(Numeric(7, 4), nullable=True)
    is_pre_tax: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        CheckConstraint(
            "effective_to IS NULL OR effective_to >= effective_from",
            name="deduction_dates_check",
        ),
    )


class TaxWithholding(Base, EffectiveDatedMixin, TimestampMixin):
    """Withholding instruction: a percentage rate per tax type."""

    __tablename__ = "tax_withholding"
    __kind_attr__ = "tax_type"

    tax_withholding_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    employee_id: Mapped[UUID] = mapped_column(
        ForeignKey("employee.employee_id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    tax_type: Mapped[str] = mapped_column(String, nullable=False)
    rate: Mapped[Decimal] = mapped_column(Numeric(7, 4), nullable=False)
    tax_authority: Mapped[str | None] = mapped_column(String, nullable=True)
    tax_identifier: Mapped[str | None] = mapped_column(String, nullable=True)

    __table_args__ = (
        CheckConstraint("rate >= 0 AND rate <= 100", name="tax_withholding_rate_check"),
        CheckConstraint(
            "effective_to IS NULL OR effective_to >= effective_from",
            name="tax_withholding_dates_check",
        ),
    )


class EmployeeBenefit(Base, EffectiveDatedMixin, TimestampMixin):
    """Benefit enrollment with employee and employer cost shares."""

    __tablename__ = "employee_benefit"
    __kind_attr__ = "benefit_type"

    employee_benefit_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    employee_id: Mapped[UUID] = mapped_column(
        ForeignKey("employee.employee_id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    benefit_type: Mapped[str] = mapped_column(String, nullable=False)
    employee_cost: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=Decimal("0"))
    employer_cost: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=Decimal("0"))
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    status: Mapped[str] = mapped_column(String, nullable=False, default="ACTIVE")
    plan_name: Mapped[str | None] = mapped_column(String, nullable=True)

    __table_args__ = (
        CheckConstraint(
            "status IN ('PENDING', 'ACTIVE', 'TERMINATED')",
            name="employee_benefit_status_check",
        ),
        CheckConstraint(
            "effective_to IS NULL OR effective_to >= effective_from",
            name="employee_benefit_dates_check",
        ),
    )


class Bonus(Base, TimestampMixin):
    """One-off bonus award, paid through the period containing its payment date."""

    __tablename__ = "bonus"

    bonus_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    employee_id: Mapped[UUID] = mapped_column(
        ForeignKey("employee.employee_id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    bonus_type: Mapped[str] = mapped_column(String, nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    award_date: Mapped[date] = mapped_column(Date, nullable=False)
    payment_date: Mapped[date] = mapped_column(Date, nullable=False)
    is_paid: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        CheckConstraint("amount > 0", name="bonus_amount_check"),
        CheckConstraint(
            "bonus_type IN ('PERFORMANCE', 'SIGNING', 'RETENTION', 'REFERRAL', 'ANNUAL', 'SPOT')",
            name="bonus_type_check",
        ),
    )
