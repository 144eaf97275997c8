"""Pay component registry: ordering, rule selection and amount resolution."""

from __future__ import annotations

import logging
from datetime import date
from decimal import Decimal
from typing import Iterable, Mapping

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from payroll_compute.calculators.formula import FormulaEvaluator, FormulaFunction
from payroll_compute.calculators.types import (
    CalculationContext,
    ComponentDefinition,
    ComponentKind,
    InputValue,
    RuleDefinition,
)
from payroll_compute.errors import FormulaEvaluationError
from payroll_compute.models import PayComponent

logger = logging.getLogger(__name__)


def component_definition(component: PayComponent) -> ComponentDefinition:
    """Snapshot an ORM component (with loaded rules)."""
    return ComponentDefinition(
        component_id=component.pay_component_id,
        code=component.code,
        name=component.name,
        kind=ComponentKind(component.kind),
        calc_phase=component.calc_phase,
        taxable=component.taxable,
        contributes_to_social=component.contributes_to_social,
        rules=tuple(
            RuleDefinition(
                rule_id=rule.pay_rule_id,
                formula=rule.formula,
                priority=rule.priority,
                effective_from=rule.effective_from,
                effective_to=rule.effective_to,
                active=rule.active,
            )
            for rule in component.rules
        ),
    )


class PayComponentRegistry:
    """Components in calculation order and the logic resolving their amounts.

    Resolution order for a component:
    1. Direct input for the period (amount, else quantity x rate)
    2. Winning rule: active, valid on the date, highest priority, lowest
       rule id on ties; evaluated against the context
    3. Base pay component without input or rule: the normalized base salary
    4. Otherwise no amount
    """

    def __init__(
        self,
        components: Iterable[ComponentDefinition],
        evaluator: FormulaEvaluator,
        base_component_code: str = "BASIC",
    ):
        self._components = tuple(sorted(components, key=lambda c: (c.sort_phase, c.code)))
        self._by_code = {c.code: c for c in self._components}
        self.evaluator = evaluator
        self.base_component_code = base_component_code

    @classmethod
    async def load(
        cls,
        session: AsyncSession,
        evaluator: FormulaEvaluator,
        base_component_code: str = "BASIC",
    ) -> PayComponentRegistry:
        """Snapshot all components and their rules from the database."""
        result = await session.execute(select(PayComponent).options(selectinload(PayComponent.rules)))
        components = [component_definition(c) for c in result.scalars().all()]
        return cls(components, evaluator, base_component_code)

    @property
    def components(self) -> tuple[ComponentDefinition, ...]:
        """Components ordered by calculation phase (unset phases last)."""
        return self._components

    def get(self, code: str) -> ComponentDefinition | None:
        return self._by_code.get(code)

    def __len__(self) -> int:
        return len(self._components)

    @staticmethod
    def select_rule(component: ComponentDefinition, as_of_date: date) -> RuleDefinition | None:
        """Highest-priority valid rule, lowest rule id on ties."""
        candidates = [r for r in component.rules if r.is_valid_on(as_of_date)]
        if not candidates:
            return None
        return min(candidates, key=lambda r: (-r.priority, r.rule_id))

    async def calculate_component(
        self,
        component: ComponentDefinition,
        context: CalculationContext,
        inputs: Mapping[str, InputValue],
        as_of_date: date,
        functions: Mapping[str, FormulaFunction] | None = None,
    ) -> Decimal | None:
        """Resolve the amount of one component, or None when it does not apply.

        Formula failures are logged and yield None so that one bad rule
        never fails the whole employee.
        """
        direct = inputs.get(component.code)
        if direct is not None and direct.resolved_amount is not None:
            return direct.resolved_amount

        rule = self.select_rule(component, as_of_date)
        if rule is not None:
            try:
                return await self.evaluator.evaluate(rule.formula, context.as_mapping(), functions)
            except FormulaEvaluationError as e:
                logger.warning(
                    "Formula for %s failed for employee %s: %s",
                    component.code,
                    context.employee_id,
                    e.reason,
                    extra={"rule_id": str(rule.rule_id), "component": component.code},
                )
                return None

        if component.code == self.base_component_code:
            return context.get("baseSalary")

        return None
