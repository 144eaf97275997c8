"""Line builder with cent rounding and deterministic hashing."""

from __future__ import annotations

import hashlib
import json
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable

from payroll_compute.calculators.types import ComponentDefinition, InputValue, LineCandidate


class LineBuilder:
    """Builds result lines in calculation order.

    Amounts are kept at full precision while formulas run and rounded to
    cents (HALF_UP) once, when the line is created. Zero amounts produce no
    line. Sequence numbers follow creation order starting at 1.
    """

    OUTPUT_PRECISION = Decimal("0.01")

    def __init__(self) -> None:
        self.lines: list[LineCandidate] = []

    @staticmethod
    def round_to_cents(amount: Decimal) -> Decimal:
        """Round amount to 2 decimal places (cents)."""
        return amount.quantize(LineBuilder.OUTPUT_PRECISION, rounding=ROUND_HALF_UP)

    def add(
        self,
        component: ComponentDefinition,
        amount: Decimal,
        source: InputValue | None = None,
    ) -> LineCandidate | None:
        """Append a line for a component amount; returns None for zero."""
        rounded = self.round_to_cents(amount)
        if rounded == 0:
            return None
        line = LineCandidate(
            component_id=component.component_id,
            component_code=component.code,
            kind=component.kind,
            amount=rounded,
            sequence=len(self.lines) + 1,
            quantity=source.quantity if source is not None else None,
            rate=source.rate if source is not None else None,
        )
        self.lines.append(line)
        return line

    @staticmethod
    def compute_line_hash(line: LineCandidate) -> str:
        """Deterministic hash of a line's defining fields."""
        json_str = json.dumps(line.to_canonical_dict(), sort_keys=True)
        return hashlib.sha256(json_str.encode()).hexdigest()[:32]

    @staticmethod
    def compute_lines_hash(lines: Iterable[LineCandidate]) -> str:
        """Hash of an ordered set of lines; identical inputs give identical hashes."""
        hashes = [LineBuilder.compute_line_hash(line) for line in lines]
        return hashlib.sha256("|".join(hashes).encode()).hexdigest()
