"""Progressive (marginal) tax calculation over dated brackets."""

from __future__ import annotations

from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from payroll_compute.calculators.types import BracketApplication, TaxCalculation
from payroll_compute.errors import BusinessRuleViolation
from payroll_compute.models import TaxBracket

CENTS = Decimal("0.01")
RATIO_PRECISION = Decimal("0.0001")


class NoActiveBracketsError(BusinessRuleViolation):
    """Raised when no bracket of a tax code is valid on the date."""

    code = "NO_ACTIVE_BRACKETS"

    def __init__(self, country_code: str, tax_code: str, as_of_date: date):
        self.country_code = country_code
        self.tax_code = tax_code
        self.as_of_date = as_of_date
        super().__init__(
            f"No tax brackets for {country_code}/{tax_code} valid on {as_of_date}"
        )


class ProgressiveTaxCalculator:
    """Computes marginal tax from the brackets valid on a date.

    Each bracket taxes only the slice of income between its lower bound and
    the lesser of its upper bound and the income. Per-bracket amounts are
    rounded to cents before summing. The bracket fixed part is stored but
    does not enter the computation.
    """

    def __init__(self, session: AsyncSession):
        self.session = session
        self._bracket_cache: dict[tuple[str, str, date], list[TaxBracket]] = {}

    async def calculate(
        self,
        country_code: str,
        tax_code: str,
        taxable_income: Decimal,
        as_of_date: date,
    ) -> TaxCalculation:
        """Calculate tax on taxable_income.

        Raises:
            NoActiveBracketsError: If no bracket is valid on as_of_date
        """
        brackets = await self.get_brackets(country_code, tax_code, as_of_date)
        if not brackets:
            raise NoActiveBracketsError(country_code, tax_code, as_of_date)
        return self.apply_brackets(brackets, taxable_income)

    async def get_brackets(self, country_code: str, tax_code: str, as_of_date: date) -> list[TaxBracket]:
        """Brackets valid on as_of_date, sorted by lower bound."""
        key = (country_code, tax_code, as_of_date)
        if key not in self._bracket_cache:
            result = await self.session.execute(
                select(TaxBracket)
                .where(
                    TaxBracket.country_code == country_code,
                    TaxBracket.tax_code == tax_code,
                    TaxBracket.valid_from <= as_of_date,
                    (TaxBracket.valid_to.is_(None) | (TaxBracket.valid_to >= as_of_date)),
                )
                .order_by(TaxBracket.lower_bound)
            )
            self._bracket_cache[key] = list(result.scalars().all())
        return self._bracket_cache[key]

    @staticmethod
    def apply_brackets(brackets: Iterable[TaxBracket], taxable_income: Decimal) -> TaxCalculation:
        """Apply brackets to an income (pure computation)."""
        ordered: Sequence[TaxBracket] = sorted(brackets, key=lambda b: b.lower_bound)
        income = Decimal(taxable_income)

        total = Decimal("0")
        breakdown: list[BracketApplication] = []
        for bracket in ordered:
            if income <= bracket.lower_bound:
                break
            top = income if bracket.upper_bound is None else min(income, bracket.upper_bound)
            taxable = top - bracket.lower_bound
            tax = (taxable * bracket.rate).quantize(CENTS, rounding=ROUND_HALF_UP)
            total += tax
            breakdown.append(
                BracketApplication(
                    lower_bound=bracket.lower_bound,
                    upper_bound=bracket.upper_bound,
                    rate=bracket.rate,
                    rate_percent=(bracket.rate * 100).quantize(CENTS, rounding=ROUND_HALF_UP),
                    taxable_amount=taxable,
                    tax=tax,
                )
            )

        return TaxCalculation(
            taxable_income=income,
            total_tax=total,
            effective_rate=ProgressiveTaxCalculator.effective_rate(total, income),
            breakdown=tuple(breakdown),
        )

    @staticmethod
    def effective_rate(total_tax: Decimal, income: Decimal) -> Decimal:
        """Effective rate in percent: tax / income at 4 dp, times 100."""
        if income <= 0:
            return Decimal("0.00")
        ratio = (total_tax / income).quantize(RATIO_PRECISION, rounding=ROUND_HALF_UP)
        return (ratio * 100).quantize(CENTS, rounding=ROUND_HALF_UP)
