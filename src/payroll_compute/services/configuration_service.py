"""Pay component, rule and reference data configuration."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Mapping
from uuid import UUID

from sqlalchemy import and_, or_, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from payroll_compute.calculators.components import PayComponentRegistry
from payroll_compute.calculators.formula import FormulaEvaluator, referenced_names, validate_formula
from payroll_compute.calculators.types import ComponentDefinition, ComponentKind
from payroll_compute.errors import BusinessRuleViolation, FormulaEvaluationError, NotFoundError
from payroll_compute.models import (
    ExchangeRate,
    PayComponent,
    PayrollLine,
    PayrollResult,
    PayrollRun,
    PayRule,
    TaxBracket,
)

logger = logging.getLogger(__name__)

RATE_PRECISION = Decimal("0.000001")
IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
CURRENCY = re.compile(r"^[A-Z]{3}$")


class FormulaValidationError(BusinessRuleViolation):
    """Raised when a rule formula is rejected at configuration time."""

    code = "INVALID_FORMULA"

    def __init__(self, formula: str, issues: list[str]):
        self.formula = formula
        self.issues = issues
        super().__init__(f"Invalid formula '{formula}': {'; '.join(issues)}")


@dataclass(frozen=True)
class FormulaCheck:
    """Outcome of trying a formula against a sample context."""

    valid: bool
    value: Decimal | None = None
    error: str | None = None
    missing_variables: tuple[str, ...] = ()


class ConfigurationService:
    """Maintains the data a run reads: components, rules, rates and brackets."""

    def __init__(self, session: AsyncSession, evaluator: FormulaEvaluator | None = None):
        self.session = session
        self.evaluator = evaluator or FormulaEvaluator()

    # ===== Components =====

    async def create_component(
        self,
        code: str,
        name: str,
        kind: str,
        calc_phase: int | None = None,
        taxable: bool = True,
        contributes_to_social: bool = False,
        description: str | None = None,
    ) -> PayComponent:
        """Create a component; its code doubles as a formula variable name."""
        if not IDENTIFIER.match(code):
            raise BusinessRuleViolation(f"Component code '{code}' is not a valid identifier")
        if kind not in ComponentKind.__members__:
            raise BusinessRuleViolation(f"Unknown component kind '{kind}'")
        existing = await self.session.scalar(select(PayComponent).where(PayComponent.code == code))
        if existing is not None:
            raise BusinessRuleViolation(f"Pay component '{code}' already exists")

        component = PayComponent(
            code=code,
            name=name,
            kind=kind,
            calc_phase=calc_phase,
            taxable=taxable,
            contributes_to_social=contributes_to_social,
            description=description,
        )
        self.session.add(component)
        await self.session.flush()
        logger.info("Created pay component %s (%s, phase %s)", code, kind, calc_phase)
        return component

    async def get_component(self, code: str) -> PayComponent:
        component = await self.session.scalar(
            select(PayComponent).options(selectinload(PayComponent.rules)).where(PayComponent.code == code)
        )
        if component is None:
            raise NotFoundError("PayComponent", code)
        return component

    async def is_referenced_by_posted_run(self, pay_component_id: UUID) -> bool:
        line_id = await self.session.scalar(
            select(PayrollLine.payroll_line_id)
            .join(PayrollResult, PayrollResult.payroll_result_id == PayrollLine.payroll_result_id)
            .join(PayrollRun, PayrollRun.payroll_run_id == PayrollResult.payroll_run_id)
            .where(
                PayrollLine.pay_component_id == pay_component_id,
                PayrollRun.status == "POSTED",
            )
            .limit(1)
        )
        return line_id is not None

    async def update_component(self, code: str, **changes: Any) -> PayComponent:
        """Update name, kind, phase or flags of a component.

        Components already paid out by a posted run are frozen.
        """
        allowed = {"name", "kind", "calc_phase", "taxable", "contributes_to_social", "description"}
        unknown = set(changes) - allowed
        if unknown:
            raise BusinessRuleViolation(f"Cannot update component fields: {', '.join(sorted(unknown))}")
        if "kind" in changes and changes["kind"] not in ComponentKind.__members__:
            raise BusinessRuleViolation(f"Unknown component kind '{changes['kind']}'")

        component = await self.get_component(code)
        if await self.is_referenced_by_posted_run(component.pay_component_id):
            raise BusinessRuleViolation(
                f"Pay component '{code}' is referenced by posted payroll results"
            )
        for field, value in changes.items():
            setattr(component, field, value)
        await self.session.flush()
        return component

    async def calculation_order(self) -> list[ComponentDefinition]:
        """Components in the order a run computes them."""
        registry = await PayComponentRegistry.load(self.session, self.evaluator)
        return list(registry.components)

    # ===== Rules =====

    async def create_rule(
        self,
        component_code: str,
        formula: str,
        priority: int = 0,
        effective_from: date | None = None,
        effective_to: date | None = None,
        active: bool = True,
    ) -> PayRule:
        component = await self.get_component(component_code)
        issues = validate_formula(formula)
        if issues:
            raise FormulaValidationError(formula, [issue.message for issue in issues])
        if effective_from and effective_to and effective_to < effective_from:
            raise BusinessRuleViolation("Rule effective_to cannot precede effective_from")

        rule = PayRule(
            component=component,
            formula=formula.strip(),
            priority=priority,
            effective_from=effective_from,
            effective_to=effective_to,
            active=active,
        )
        await self.session.flush()
        logger.info("Created rule for %s with priority %d", component_code, priority)
        return rule

    async def set_rule_active(self, pay_rule_id: UUID, active: bool) -> PayRule:
        rule = await self.session.get(PayRule, pay_rule_id)
        if rule is None:
            raise NotFoundError("PayRule", pay_rule_id)
        rule.active = active
        await self.session.flush()
        return rule

    async def validate_formula(self, formula: str, sample_context: Mapping[str, Any]) -> FormulaCheck:
        """Parse and evaluate a formula against sample variables.

        tax() and convert() are stubbed to return their income/amount
        argument so formulas using them can be checked without reference
        data.
        """
        issues = validate_formula(formula)
        if issues:
            return FormulaCheck(valid=False, error="; ".join(i.message for i in issues))

        missing = tuple(sorted(referenced_names(formula) - set(sample_context)))
        stubs = {
            "tax": lambda _code, income: income,
            "convert": lambda amount, _from, _to: amount,
        }
        try:
            value = await self.evaluator.evaluate(formula, sample_context, stubs)
        except FormulaEvaluationError as e:
            return FormulaCheck(valid=False, error=e.reason, missing_variables=missing)
        return FormulaCheck(valid=True, value=value, missing_variables=missing)

    # ===== Exchange rates =====

    async def create_exchange_rate(
        self,
        from_currency: str,
        to_currency: str,
        rate_date: date,
        rate: Decimal,
        replace_existing: bool = False,
        source: str | None = None,
    ) -> ExchangeRate:
        from_currency = from_currency.upper()
        to_currency = to_currency.upper()
        if not (CURRENCY.match(from_currency) and CURRENCY.match(to_currency)):
            raise BusinessRuleViolation("Currencies must be 3-letter codes")
        if from_currency == to_currency:
            raise BusinessRuleViolation("Exchange rate currencies must differ")
        if rate <= 0:
            raise BusinessRuleViolation("Exchange rate must be positive")
        rate = Decimal(rate).quantize(RATE_PRECISION, rounding=ROUND_HALF_UP)

        existing = await self.session.scalar(
            select(ExchangeRate).where(
                ExchangeRate.from_currency == from_currency,
                ExchangeRate.to_currency == to_currency,
                ExchangeRate.rate_date == rate_date,
            )
        )
        if existing is not None:
            if not replace_existing:
                raise BusinessRuleViolation(
                    f"Exchange rate {from_currency}->{to_currency} already exists for {rate_date}"
                )
            existing.rate = rate
            existing.source = source
            await self.session.flush()
            return existing

        exchange_rate = ExchangeRate(
            from_currency=from_currency,
            to_currency=to_currency,
            rate_date=rate_date,
            rate=rate,
            source=source,
        )
        self.session.add(exchange_rate)
        await self.session.flush()
        return exchange_rate

    async def create_bulk_rates(
        self,
        base_currency: str,
        rate_date: date,
        rates: Mapping[str, Decimal],
        source: str | None = None,
    ) -> list[ExchangeRate]:
        """Rates from one base currency to several targets on one date."""
        created = [
            await self.create_exchange_rate(
                base_currency, target, rate_date, rate, replace_existing=True, source=source
            )
            for target, rate in sorted(rates.items())
        ]
        logger.info("Stored %d %s exchange rates for %s", len(created), base_currency.upper(), rate_date)
        return created

    async def rate_history(
        self,
        from_currency: str,
        to_currency: str,
        start_date: date,
        end_date: date,
    ) -> list[ExchangeRate]:
        result = await self.session.execute(
            select(ExchangeRate)
            .where(
                ExchangeRate.from_currency == from_currency.upper(),
                ExchangeRate.to_currency == to_currency.upper(),
                ExchangeRate.rate_date >= start_date,
                ExchangeRate.rate_date <= end_date,
            )
            .order_by(ExchangeRate.rate_date)
        )
        return list(result.scalars().all())

    # ===== Tax brackets =====

    async def create_tax_bracket(
        self,
        country_code: str,
        tax_code: str,
        lower_bound: Decimal,
        rate: Decimal,
        valid_from: date,
        upper_bound: Decimal | None = None,
        valid_to: date | None = None,
        fixed_part: Decimal = Decimal("0"),
    ) -> TaxBracket:
        """Add a band to a tax schedule.

        Bands of the same country and code must not overlap in income while
        their validity ranges overlap.
        """
        if lower_bound < 0:
            raise BusinessRuleViolation("Bracket lower bound cannot be negative")
        if upper_bound is not None and upper_bound <= lower_bound:
            raise BusinessRuleViolation("Bracket upper bound must exceed its lower bound")
        if not (0 <= rate <= 1):
            raise BusinessRuleViolation("Bracket rate must be a fraction between 0 and 1")
        if valid_to is not None and valid_to < valid_from:
            raise BusinessRuleViolation("Bracket valid_to cannot precede valid_from")

        overlapping = await self._overlapping_brackets(
            country_code, tax_code, lower_bound, upper_bound, valid_from, valid_to
        )
        if overlapping:
            bracket = overlapping[0]
            raise BusinessRuleViolation(
                f"Bracket overlaps {bracket.lower_bound}-{bracket.upper_bound or 'open'} "
                f"of {country_code}/{tax_code}"
            )

        bracket = TaxBracket(
            country_code=country_code,
            tax_code=tax_code,
            lower_bound=lower_bound,
            upper_bound=upper_bound,
            rate=rate,
            fixed_part=fixed_part,
            valid_from=valid_from,
            valid_to=valid_to,
        )
        self.session.add(bracket)
        await self.session.flush()
        return bracket

    async def _overlapping_brackets(
        self,
        country_code: str,
        tax_code: str,
        lower_bound: Decimal,
        upper_bound: Decimal | None,
        valid_from: date,
        valid_to: date | None,
    ) -> list[TaxBracket]:
        conditions = [
            TaxBracket.country_code == country_code,
            TaxBracket.tax_code == tax_code,
            or_(TaxBracket.valid_to.is_(None), TaxBracket.valid_to >= valid_from),
            or_(TaxBracket.upper_bound.is_(None), TaxBracket.upper_bound > lower_bound),
        ]
        if valid_to is not None:
            conditions.append(TaxBracket.valid_from <= valid_to)
        if upper_bound is not None:
            conditions.append(TaxBracket.lower_bound < upper_bound)
        result = await self.session.execute(select(TaxBracket).where(and_(*conditions)))
        return list(result.scalars().all())
