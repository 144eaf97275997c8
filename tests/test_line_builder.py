"""Tests for LineBuilder."""

from decimal import Decimal
from uuid import uuid4

from payroll_compute.calculators.line_builder import LineBuilder
from payroll_compute.calculators.types import ComponentDefinition, ComponentKind, InputValue


def component(code: str, kind: ComponentKind = ComponentKind.EARNING) -> ComponentDefinition:
    return ComponentDefinition(component_id=uuid4(), code=code, name=code.title(), kind=kind)


class TestRounding:
    def test_round_half_up(self):
        assert LineBuilder.round_to_cents(Decimal("10.005")) == Decimal("10.01")
        assert LineBuilder.round_to_cents(Decimal("10.004")) == Decimal("10.00")
        assert LineBuilder.round_to_cents(Decimal("-10.005")) == Decimal("-10.01")


class TestAdd:
    def test_sequences_follow_creation_order(self):
        builder = LineBuilder()
        builder.add(component("BASIC"), Decimal("3000"))
        builder.add(component("PENSION", ComponentKind.DEDUCTION), Decimal("150"))

        assert [(l.component_code, l.sequence) for l in builder.lines] == [("BASIC", 1), ("PENSION", 2)]

    def test_zero_amount_produces_no_line(self):
        builder = LineBuilder()
        assert builder.add(component("BONUS"), Decimal("0.004")) is None
        assert builder.lines == []

    def test_quantity_and_rate_come_from_input(self):
        builder = LineBuilder()
        source = InputValue(component_code="OVERTIME", quantity=Decimal("10"), rate=Decimal("18.75"))

        line = builder.add(component("OVERTIME"), Decimal("187.5"), source)

        assert line.amount == Decimal("187.50")
        assert line.quantity == Decimal("10")
        assert line.rate == Decimal("18.75")


class TestHashing:
    def test_hash_is_deterministic(self):
        basic = component("BASIC")
        first, second = LineBuilder(), LineBuilder()
        first.add(basic, Decimal("3000"))
        second.add(basic, Decimal("3000.00"))

        assert LineBuilder.compute_lines_hash(first.lines) == LineBuilder.compute_lines_hash(second.lines)

    def test_hash_changes_with_amount(self):
        basic = component("BASIC")
        first, second = LineBuilder(), LineBuilder()
        first.add(basic, Decimal("3000"))
        second.add(basic, Decimal("3000.01"))

        assert LineBuilder.compute_lines_hash(first.lines) != LineBuilder.compute_lines_hash(second.lines)

    def test_line_hash_ignores_component_id(self):
        """Hashes depend on the component code, not on database ids."""
        first, second = LineBuilder(), LineBuilder()
        first.add(component("BASIC"), Decimal("1"))
        second.add(component("BASIC"), Decimal("1"))

        assert LineBuilder.compute_line_hash(first.lines[0]) == LineBuilder.compute_line_hash(second.lines[0])
