"""Reference data: tax brackets and exchange rates."""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from uuid import UUID, uuid4

from sqlalchemy import CheckConstraint, Date, Index, Numeric, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from payroll_compute.models.base import Base, TimestampMixin


class TaxBracket(Base, TimestampMixin):
    """One marginal band of a progressive tax schedule.

    ``upper_bound`` is exclusive and null for the open top band. ``rate`` is a
    fraction (0.20 for 20%).
    """

    __tablename__ = "tax_bracket"

    tax_bracket_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    country_code: Mapped[str] = mapped_column(String(2), nullable=False)
    tax_code: Mapped[str] = mapped_column(String, nullable=False)
    lower_bound: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    upper_bound: Mapped[Decimal | None] = mapped_column(Numeric(14, 2), nullable=True)
    rate: Mapped[Decimal] = mapped_column(Numeric(7, 6), nullable=False)
    fixed_part: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=Decimal("0"))
    valid_from: Mapped[date] = mapped_column(Date, nullable=False)
    valid_to: Mapped[date | None] = mapped_column(Date, nullable=True)

    __table_args__ = (
        CheckConstraint("upper_bound IS NULL OR upper_bound > lower_bound", name="tax_bracket_range_check"),
        CheckConstraint("rate >= 0 AND rate <= 1", name="tax_bracket_rate_check"),
        Index("ix_tax_bracket_lookup", "country_code", "tax_code", "valid_from"),
    )

    def is_valid_on(self, as_of_date: date) -> bool:
        if self.valid_from > as_of_date:
            return False
        return self.valid_to is None or self.valid_to >= as_of_date


class ExchangeRate(Base, TimestampMixin):
    """Daily rate: one unit of from_currency costs ``rate`` to_currency."""

    __tablename__ = "exchange_rate"

    exchange_rate_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    from_currency: Mapped[str] = mapped_column(String(3), nullable=False)
    to_currency: Mapped[str] = mapped_column(String(3), nullable=False)
    rate_date: Mapped[date] = mapped_column(Date, nullable=False)
    rate: Mapped[Decimal] = mapped_column(Numeric(18, 6), nullable=False)
    source: Mapped[str | None] = mapped_column(String, nullable=True)

    __table_args__ = (
        UniqueConstraint("from_currency", "to_currency", "rate_date", name="exchange_rate_pair_date_unique"),
        CheckConstraint("rate > 0", name="exchange_rate_positive_check"),
        CheckConstraint("from_currency <> to_currency", name="exchange_rate_distinct_check"),
    )
