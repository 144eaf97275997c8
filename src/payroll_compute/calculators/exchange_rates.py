"""Exchange rate resolution with date and inverse-pair fallbacks."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from decimal import ROUND_HALF_UP, Decimal

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from payroll_compute.errors import NotFoundError
from payroll_compute.models import ExchangeRate

logger = logging.getLogger(__name__)

RATE_PRECISION = Decimal("0.000001")  # 6 decimal places for rates
AMOUNT_PRECISION = Decimal("0.01")


class ExchangeRateNotFoundError(NotFoundError):
    """Raised when no direct or inverse rate exists on or before a date."""

    code = "EXCHANGE_RATE_NOT_FOUND"

    def __init__(self, from_currency: str, to_currency: str, as_of_date: date):
        self.from_currency = from_currency
        self.to_currency = to_currency
        self.as_of_date = as_of_date
        super().__init__(
            "ExchangeRate",
            f"{from_currency}->{to_currency}",
            message=(
                f"No exchange rate found for {from_currency}->{to_currency} "
                f"on or before {as_of_date}"
            ),
        )


@dataclass(frozen=True)
class RateQuote:
    """A resolved rate and the stored rate it came from."""

    from_currency: str
    to_currency: str
    rate: Decimal
    rate_date: date
    inverted: bool = False


class ExchangeRateResolver:
    """Resolves the rate converting one currency into another on a date.

    Resolution order:
    1. Rate for the pair on exactly the date
    2. Most recent rate for the pair before the date
    3. Most recent rate for the reverse pair on or before the date,
       inverted to 6 decimal places
    """

    def __init__(self, session: AsyncSession):
        self.session = session
        self._cache: dict[tuple[str, str, date], RateQuote] = {}

    async def quote(self, from_currency: str, to_currency: str, as_of_date: date) -> RateQuote:
        """Resolve a rate with its provenance.

        Raises:
            ExchangeRateNotFoundError: If neither the pair nor its reverse has a rate
        """
        key = (from_currency, to_currency, as_of_date)
        if key in self._cache:
            return self._cache[key]

        if from_currency == to_currency:
            quote = RateQuote(from_currency, to_currency, Decimal("1"), as_of_date)
            self._cache[key] = quote
            return quote

        direct = await self._latest_on_or_before(from_currency, to_currency, as_of_date)
        if direct is not None:
            quote = RateQuote(from_currency, to_currency, direct.rate, direct.rate_date)
            if direct.rate_date != as_of_date:
                logger.debug(
                    "Using %s->%s rate from %s for %s",
                    from_currency,
                    to_currency,
                    direct.rate_date,
                    as_of_date,
                )
        else:
            reverse = await self._latest_on_or_before(to_currency, from_currency, as_of_date)
            if reverse is None:
                raise ExchangeRateNotFoundError(from_currency, to_currency, as_of_date)
            quote = RateQuote(
                from_currency,
                to_currency,
                (Decimal("1") / reverse.rate).quantize(RATE_PRECISION, rounding=ROUND_HALF_UP),
                reverse.rate_date,
                inverted=True,
            )
            logger.debug(
                "Using inverse of %s->%s rate from %s",
                to_currency,
                from_currency,
                reverse.rate_date,
            )

        self._cache[key] = quote
        return quote

    async def resolve(self, from_currency: str, to_currency: str, as_of_date: date) -> Decimal:
        """Rate converting one unit of from_currency into to_currency."""
        return (await self.quote(from_currency, to_currency, as_of_date)).rate

    async def convert(
        self,
        amount: Decimal,
        from_currency: str,
        to_currency: str,
        as_of_date: date,
    ) -> Decimal:
        """Convert an amount, rounding once to 2 decimal places."""
        if from_currency == to_currency:
            return amount
        rate = await self.resolve(from_currency, to_currency, as_of_date)
        return (amount * rate).quantize(AMOUNT_PRECISION, rounding=ROUND_HALF_UP)

    async def _latest_on_or_before(
        self,
        from_currency: str,
        to_currency: str,
        as_of_date: date,
    ) -> ExchangeRate | None:
        result = await self.session.execute(
            select(ExchangeRate)
            .where(
                ExchangeRate.from_currency == from_currency,
                ExchangeRate.to_currency == to_currency,
                ExchangeRate.rate_date <= as_of_date,
            )
            .order_by(ExchangeRate.rate_date.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()
