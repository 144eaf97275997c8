"""Tests for ConfigurationService."""

from datetime import date
from decimal import Decimal

import pytest

from payroll_compute.errors import BusinessRuleViolation, NotFoundError
from payroll_compute.services.configuration_service import ConfigurationService, FormulaValidationError


class TestComponents:
    @pytest.mark.asyncio
    async def test_create_and_order(self, session, seed):
        service = ConfigurationService(session)

        await service.create_component("MEAL", "Meal allowance", "EARNING", calc_phase=1, taxable=False)

        order = [c.code for c in await service.calculation_order()]
        assert order == ["BASIC", "BONUS", "MEAL", "OVERTIME", "INCOME_TAX", "PENSION", "EMPLOYER_SOCIAL"]

    @pytest.mark.asyncio
    async def test_create_validation(self, session, seed):
        service = ConfigurationService(session)

        with pytest.raises(BusinessRuleViolation, match="identifier"):
            await service.create_component("MEAL-ALLOWANCE", "Meal", "EARNING")
        with pytest.raises(BusinessRuleViolation, match="kind"):
            await service.create_component("MEAL", "Meal", "BENEFIT")
        with pytest.raises(BusinessRuleViolation, match="already exists"):
            await service.create_component("BASIC", "Base", "EARNING")

    @pytest.mark.asyncio
    async def test_update_component(self, session, seed):
        service = ConfigurationService(session)

        updated = await service.update_component("OVERTIME", name="Overtime pay", calc_phase=2)

        assert updated.name == "Overtime pay"
        assert updated.calc_phase == 2
        with pytest.raises(BusinessRuleViolation, match="code"):
            await service.update_component("OVERTIME", code="OT")
        with pytest.raises(NotFoundError):
            await service.update_component("MISSING", name="x")

    @pytest.mark.asyncio
    async def test_component_frozen_after_posting(self, run_service, session_factory, seed):
        run = await run_service.initiate_run(seed.period.payroll_period_id)
        await run_service.calculate(run.payroll_run_id)
        await run_service.approve(run.payroll_run_id, seed.alice.employee_id)
        await run_service.post(run.payroll_run_id)

        async with session_factory() as session:
            service = ConfigurationService(session)
            with pytest.raises(BusinessRuleViolation, match="posted"):
                await service.update_component("BASIC", name="Salary")
            # Never paid, so still editable
            await service.update_component("OVERTIME", name="Overtime pay")


class TestRules:
    @pytest.mark.asyncio
    async def test_create_rule(self, session, seed):
        service = ConfigurationService(session)

        rule = await service.create_rule("OVERTIME", "  workDays * 10 ", priority=3)

        assert rule.formula == "workDays * 10"
        component = await service.get_component("OVERTIME")
        assert [r.pay_rule_id for r in component.rules] == [rule.pay_rule_id]

        disabled = await service.set_rule_active(rule.pay_rule_id, False)
        assert disabled.active is False

    @pytest.mark.asyncio
    async def test_invalid_formula_rejected(self, session, seed):
        service = ConfigurationService(session)

        with pytest.raises(FormulaValidationError) as exc_info:
            await service.create_rule("OVERTIME", "__import__('os')")

        assert exc_info.value.code == "INVALID_FORMULA"
        assert exc_info.value.issues

    @pytest.mark.asyncio
    async def test_deeply_nested_formula_rejected(self, session, seed):
        service = ConfigurationService(session)

        with pytest.raises(FormulaValidationError) as exc_info:
            await service.create_rule("OVERTIME", "+".join(["1"] * 3000))

        assert "nested" in exc_info.value.issues[0]

    @pytest.mark.asyncio
    async def test_inverted_rule_range_rejected(self, session, seed):
        service = ConfigurationService(session)

        with pytest.raises(BusinessRuleViolation):
            await service.create_rule(
                "OVERTIME", "1", effective_from=date(2024, 2, 1), effective_to=date(2024, 1, 1)
            )


class TestValidateFormula:
    @pytest.mark.asyncio
    async def test_valid_formula_with_stubbed_tax(self, session):
        check = await ConfigurationService(session).validate_formula(
            "tax('INCOME', taxableGross) + 10", {"taxableGross": Decimal("100")}
        )

        assert check.valid is True
        assert check.value == Decimal("110")
        assert check.missing_variables == ()

    @pytest.mark.asyncio
    async def test_missing_variables_reported(self, session):
        check = await ConfigurationService(session).validate_formula("grossSalary * rate", {"grossSalary": 1})

        assert check.valid is False
        assert check.missing_variables == ("rate",)

    @pytest.mark.asyncio
    async def test_grammar_violation(self, session):
        check = await ConfigurationService(session).validate_formula("x.attr", {"x": 1})

        assert check.valid is False
        assert check.error


class TestExchangeRates:
    @pytest.mark.asyncio
    async def test_create_normalizes_and_quantizes(self, session):
        service = ConfigurationService(session)

        rate = await service.create_exchange_rate("eur", "usd", date(2024, 1, 2), Decimal("1.0987654"))

        assert rate.from_currency == "EUR"
        assert rate.to_currency == "USD"
        assert rate.rate == Decimal("1.098765")

    @pytest.mark.asyncio
    async def test_duplicate_and_replace(self, session):
        service = ConfigurationService(session)
        await service.create_exchange_rate("EUR", "USD", date(2024, 1, 2), Decimal("1.1"))

        with pytest.raises(BusinessRuleViolation, match="already exists"):
            await service.create_exchange_rate("EUR", "USD", date(2024, 1, 2), Decimal("1.2"))

        replaced = await service.create_exchange_rate(
            "EUR", "USD", date(2024, 1, 2), Decimal("1.2"), replace_existing=True
        )
        assert replaced.rate == Decimal("1.200000")

    @pytest.mark.asyncio
    async def test_validation(self, session):
        service = ConfigurationService(session)

        with pytest.raises(BusinessRuleViolation):
            await service.create_exchange_rate("EUR", "EUR", date(2024, 1, 2), Decimal("1"))
        with pytest.raises(BusinessRuleViolation):
            await service.create_exchange_rate("EURO", "USD", date(2024, 1, 2), Decimal("1"))
        with pytest.raises(BusinessRuleViolation):
            await service.create_exchange_rate("EUR", "USD", date(2024, 1, 2), Decimal("0"))

    @pytest.mark.asyncio
    async def test_bulk_rates_and_history(self, session):
        service = ConfigurationService(session)

        created = await service.create_bulk_rates(
            "USD", date(2024, 1, 2), {"GBP": Decimal("0.79"), "EUR": Decimal("0.91")}
        )
        await service.create_exchange_rate("USD", "EUR", date(2024, 1, 3), Decimal("0.92"))

        assert [r.to_currency for r in created] == ["EUR", "GBP"]
        history = await service.rate_history("usd", "eur", date(2024, 1, 1), date(2024, 1, 31))
        assert [r.rate for r in history] == [Decimal("0.910000"), Decimal("0.920000")]


class TestTaxBrackets:
    @pytest.mark.asyncio
    async def test_overlap_rejected(self, session, seed):
        service = ConfigurationService(session)

        with pytest.raises(BusinessRuleViolation, match="overlaps"):
            await service.create_tax_bracket("US", "INCOME", Decimal("2500"), Decimal("0.25"), date(2024, 1, 1))

    @pytest.mark.asyncio
    async def test_adjacent_and_other_schedules_allowed(self, session, seed):
        service = ConfigurationService(session)

        other_code = await service.create_tax_bracket("US", "SOCIAL", Decimal("0"), Decimal("0.06"), date(2024, 1, 1))
        expired_range = await service.create_tax_bracket(
            "US", "INCOME", Decimal("0"), Decimal("0.05"), date(2018, 1, 1), valid_to=date(2019, 12, 31)
        )

        assert other_code.tax_code == "SOCIAL"
        assert expired_range.valid_to == date(2019, 12, 31)

    @pytest.mark.asyncio
    async def test_bracket_validation(self, session):
        service = ConfigurationService(session)

        with pytest.raises(BusinessRuleViolation):
            await service.create_tax_bracket("US", "INCOME", Decimal("-1"), Decimal("0.1"), date(2024, 1, 1))
        with pytest.raises(BusinessRuleViolation):
            await service.create_tax_bracket(
                "US", "INCOME", Decimal("100"), Decimal("0.1"), date(2024, 1, 1), upper_bound=Decimal("100")
            )
        with pytest.raises(BusinessRuleViolation):
            await service.create_tax_bracket("US", "INCOME", Decimal("0"), Decimal("1.5"), date(2024, 1, 1))
        with pytest.raises(BusinessRuleViolation):
            await service.create_tax_bracket(
                "US", "INCOME", Decimal("0"), Decimal("0.1"), date(2024, 1, 1), valid_to=date(2023, 1, 1)
            )
