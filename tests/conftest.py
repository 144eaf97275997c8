"""Pytest fixtures for payroll computation tests."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import AsyncGenerator

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from payroll_compute.config import Settings
from payroll_compute.database import create_schema, make_session_factory
from payroll_compute.models import (
    Compensation,
    Employee,
    PayComponent,
    PayrollPeriod,
    PayRule,
    TaxBracket,
)
from payroll_compute.services.locking_service import RunLockRegistry
from payroll_compute.services.pay_run_service import PayrollRunService

PERIOD_START = date(2024, 1, 1)
PERIOD_END = date(2024, 1, 31)


@pytest.fixture
def database_url(tmp_path) -> str:
    # File-backed so that the per-employee sessions of a run share one database
    return f"sqlite+aiosqlite:///{tmp_path / 'payroll.db'}"


@pytest.fixture
def settings(database_url: str) -> Settings:
    return Settings(
        database_url=database_url,
        engine_version="test",
        host="127.0.0.1",
        port=8000,
        debug=False,
        log_level="DEBUG",
        calc_max_concurrency=1,
    )


@pytest.fixture
async def engine(database_url: str):
    """Create test database engine."""
    engine = create_async_engine(database_url, echo=False)
    await create_schema(engine)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(engine) -> async_sessionmaker[AsyncSession]:
    return make_session_factory(engine)


@pytest.fixture
async def session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create a database session for each test."""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def run_service(session_factory, settings) -> PayrollRunService:
    return PayrollRunService(session_factory, settings=settings, lock_registry=RunLockRegistry())


@dataclass
class SeedData:
    """Ids of the records created by the ``seed`` fixture."""

    alice: Employee
    bob: Employee
    carol: Employee
    dave: Employee
    period: PayrollPeriod
    components: dict[str, PayComponent]


@pytest.fixture
async def seed(session_factory) -> SeedData:
    """A January 2024 period, four employees and a small component set.

    - alice: 3000.00 USD monthly, department ENG
    - bob: 24000.00 USD annual (2000.00 monthly), department OPS
    - carol: active, department ENG, no compensation
    - dave: terminated

    Components (phase): BASIC, BONUS, OVERTIME (1); INCOME_TAX, PENSION (2);
    EMPLOYER_SOCIAL (3). Income tax brackets: 10% to 1000, 20% to 3000,
    30% above.
    """
    async with session_factory() as session, session.begin():
        alice = Employee(first_name="Alice", last_name="Archer", department="ENG", country_code="US")
        bob = Employee(first_name="Bob", last_name="Baker", department="OPS", country_code="US")
        carol = Employee(first_name="Carol", last_name="Cole", department="ENG", country_code="US")
        dave = Employee(first_name="Dave", last_name="Dunn", status="TERMINATED", country_code="US")
        session.add_all([alice, bob, carol, dave])
        await session.flush()

        session.add_all(
            [
                Compensation(
                    employee_id=alice.employee_id,
                    base_amount=Decimal("3000.00"),
                    basis="MONTHLY",
                    currency="USD",
                    effective_from=date(2023, 1, 1),
                ),
                Compensation(
                    employee_id=bob.employee_id,
                    base_amount=Decimal("24000.00"),
                    basis="ANNUAL",
                    currency="USD",
                    effective_from=date(2023, 6, 1),
                ),
            ]
        )

        period = PayrollPeriod(
            code="2024-01",
            start_date=PERIOD_START,
            end_date=PERIOD_END,
            payment_date=PERIOD_END,
            closed=False,
        )
        session.add(period)

        components = {
            "BASIC": PayComponent(code="BASIC", name="Base salary", kind="EARNING", calc_phase=1),
            "BONUS": PayComponent(code="BONUS", name="Bonus", kind="EARNING", calc_phase=1),
            "OVERTIME": PayComponent(code="OVERTIME", name="Overtime", kind="EARNING", calc_phase=1),
            "INCOME_TAX": PayComponent(code="INCOME_TAX", name="Income tax", kind="DEDUCTION", calc_phase=2),
            "PENSION": PayComponent(code="PENSION", name="Pension", kind="DEDUCTION", calc_phase=2),
            "EMPLOYER_SOCIAL": PayComponent(
                code="EMPLOYER_SOCIAL",
                name="Employer social charge",
                kind="EMPLOYER_CHARGE",
                calc_phase=3,
            ),
        }
        session.add_all(components.values())
        await session.flush()

        session.add_all(
            [
                PayRule(
                    pay_component_id=components["INCOME_TAX"].pay_component_id,
                    formula="tax('INCOME', taxableGross)",
                ),
                PayRule(
                    pay_component_id=components["PENSION"].pay_component_id,
                    formula="grossSalary * 0.05",
                ),
                PayRule(
                    pay_component_id=components["EMPLOYER_SOCIAL"].pay_component_id,
                    formula="grossSalary * 0.10",
                ),
            ]
        )

        session.add_all(
            [
                TaxBracket(
                    country_code="US",
                    tax_code="INCOME",
                    lower_bound=Decimal("0"),
                    upper_bound=Decimal("1000"),
                    rate=Decimal("0.10"),
                    valid_from=date(2020, 1, 1),
                ),
                TaxBracket(
                    country_code="US",
                    tax_code="INCOME",
                    lower_bound=Decimal("1000"),
                    upper_bound=Decimal("3000"),
                    rate=Decimal("0.20"),
                    valid_from=date(2020, 1, 1),
                ),
                TaxBracket(
                    country_code="US",
                    tax_code="INCOME",
                    lower_bound=Decimal("3000"),
                    upper_bound=None,
                    rate=Decimal("0.30"),
                    valid_from=date(2020, 1, 1),
                ),
            ]
        )

    return SeedData(
        alice=alice,
        bob=bob,
        carol=carol,
        dave=dave,
        period=period,
        components=components,
    )
