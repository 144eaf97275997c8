"""Payroll run service - main orchestrator for payroll operations."""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import AsyncIterator, Awaitable, Callable
from uuid import UUID

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from payroll_compute.calculators.components import PayComponentRegistry
from payroll_compute.calculators.engine import EmployeePayrollCalculator
from payroll_compute.calculators.exchange_rates import ExchangeRateResolver
from payroll_compute.calculators.formula import FormulaEvaluator
from payroll_compute.calculators.line_builder import LineBuilder
from payroll_compute.calculators.types import (
    EmployeeOutcome,
    OutcomeStatus,
    PayrollValidationError,
)
from payroll_compute.config import Settings, get_settings
from payroll_compute.errors import BusinessRuleViolation, NotFoundError, PayrollError
from payroll_compute.models import (
    Bonus,
    Employee,
    PayComponent,
    PayrollLine,
    PayrollPeriod,
    PayrollResult,
    PayrollRun,
    PayrollRunError,
)
from payroll_compute.services.batch import BoundedExecutor
from payroll_compute.services.locking_service import RunLockRegistry, get_run_lock_registry
from payroll_compute.services.state_machine import (
    InvalidTransitionError,
    PayrollRunStateMachine,
    PayrollRunStatus,
)

logger = logging.getLogger(__name__)

SCOPE_ALL = "ALL"
SCOPE_DEPARTMENT_PREFIX = "DEPARTMENT:"

ApprovalAuthority = Callable[[AsyncSession, UUID, PayrollRun], Awaitable[bool]]


class ApprovalNotAuthorizedError(BusinessRuleViolation):
    """Raised when the approver fails the approval authority check."""

    code = "APPROVAL_NOT_AUTHORIZED"

    def __init__(self, approver_id: UUID, payroll_run_id: UUID):
        self.approver_id = approver_id
        self.payroll_run_id = payroll_run_id
        super().__init__(f"Employee {approver_id} may not approve payroll run {payroll_run_id}")


async def default_approval_authority(session: AsyncSession, approver_id: UUID, run: PayrollRun) -> bool:
    """An approver must be a known, active employee."""
    approver = await session.get(Employee, approver_id)
    if approver is None:
        raise NotFoundError("Employee", approver_id)
    return approver.is_active


def parse_scope(scope: str) -> str | None:
    """Validate a run scope; returns the department name for DEPARTMENT scopes."""
    if scope == SCOPE_ALL:
        return None
    if scope.startswith(SCOPE_DEPARTMENT_PREFIX) and scope[len(SCOPE_DEPARTMENT_PREFIX):].strip():
        return scope[len(SCOPE_DEPARTMENT_PREFIX):].strip()
    raise BusinessRuleViolation(
        f"Unsupported payroll run scope '{scope}'; use 'ALL' or 'DEPARTMENT:<name>'"
    )


@dataclass(frozen=True)
class EmployeeTarget:
    """Employee dispatched to a worker."""

    employee_id: UUID
    employee_name: str


@dataclass
class RunCalculationReport:
    """Outcome of one calculate() call."""

    payroll_run_id: UUID
    status: str
    outcomes: list[EmployeeOutcome] = field(default_factory=list)
    cancelled: bool = False

    def _count(self, status: OutcomeStatus) -> int:
        return sum(1 for o in self.outcomes if o.status == status)

    @property
    def succeeded(self) -> int:
        return self._count(OutcomeStatus.SUCCEEDED)

    @property
    def failed(self) -> int:
        return self._count(OutcomeStatus.FAILED)

    @property
    def skipped(self) -> int:
        return self._count(OutcomeStatus.SKIPPED)

    @property
    def errors(self) -> list[PayrollValidationError]:
        return [o.error for o in self.outcomes if o.error is not None]


@dataclass
class RunTotals:
    """Summed amounts over a set of results."""

    gross: Decimal = Decimal("0")
    total_deductions: Decimal = Decimal("0")
    net: Decimal = Decimal("0")
    employer_cost: Decimal = Decimal("0")

    def add(self, gross: Decimal, total_deductions: Decimal, net: Decimal, employer_cost: Decimal) -> None:
        self.gross += gross
        self.total_deductions += total_deductions
        self.net += net
        self.employer_cost += employer_cost


@dataclass
class RunSummary:
    """Aggregated view of a run's results."""

    payroll_run_id: UUID
    status: str
    employee_count: int
    error_count: int
    totals_by_currency: dict[str, RunTotals] = field(default_factory=dict)
    amounts_by_component: dict[str, Decimal] = field(default_factory=dict)
    reporting_currency: str | None = None
    reporting_totals: RunTotals | None = None


class PayrollRunService:
    """Service for managing the payroll run lifecycle.

    Operations:
    - initiate_run: Create a DRAFT run for an open period
    - calculate: Compute every in-scope employee, DRAFT → CALCULATED
    - recalculate: Reset to DRAFT, then calculate again
    - approve: CALCULATED → APPROVED after the approval authority check
    - post: APPROVED → POSTED, closing the period
    - cancel: Stop a calculation in progress (run stays DRAFT)
    - summary: Totals per currency and per component

    Each employee is calculated in its own session and transaction, so
    replacing one employee's lines is atomic and a failure never touches
    another employee's result. Status changes are serialized per run and
    finalized with a conditional UPDATE on the expected status.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Settings | None = None,
        approval_authority: ApprovalAuthority | None = None,
        lock_registry: RunLockRegistry | None = None,
    ):
        self.session_factory = session_factory
        self.settings = settings or get_settings()
        self.approval_authority = approval_authority or default_approval_authority
        self.lock_registry = lock_registry or get_run_lock_registry(self.settings.is_postgres)
        self.evaluator = FormulaEvaluator(
            max_steps=self.settings.formula_max_steps,
            timeout_seconds=self.settings.formula_timeout_seconds,
        )
        self.executor: BoundedExecutor[EmployeeTarget, EmployeeOutcome] = BoundedExecutor(
            self.settings.calc_max_concurrency
        )

    # ===== Queries =====

    async def get_run(self, payroll_run_id: UUID) -> PayrollRun:
        """Load a run with its period and error list.

        Raises:
            NotFoundError: If the run does not exist
        """
        async with self.session_factory() as session:
            return await self._load_run(session, payroll_run_id, load_errors=True)

    async def get_result(self, payroll_run_id: UUID, employee_id: UUID) -> PayrollResult:
        """Load one employee's result with its lines and their components."""
        async with self.session_factory() as session:
            result = await session.scalar(
                select(PayrollResult)
                .where(
                    PayrollResult.payroll_run_id == payroll_run_id,
                    PayrollResult.employee_id == employee_id,
                )
                .options(selectinload(PayrollResult.lines).selectinload(PayrollLine.component))
            )
            if result is None:
                raise NotFoundError("PayrollResult", f"{payroll_run_id}/{employee_id}")
            return result

    async def list_results(self, payroll_run_id: UUID) -> list[PayrollResult]:
        async with self.session_factory() as session:
            await self._load_run(session, payroll_run_id)
            result = await session.execute(
                select(PayrollResult)
                .where(PayrollResult.payroll_run_id == payroll_run_id)
                .options(selectinload(PayrollResult.lines).selectinload(PayrollLine.component))
                .order_by(PayrollResult.employee_id)
            )
            return list(result.scalars().all())

    # ===== Lifecycle =====

    async def initiate_run(
        self,
        payroll_period_id: UUID,
        scope: str = SCOPE_ALL,
        allow_coexisting: bool = False,
    ) -> PayrollRun:
        """Create a DRAFT run for a period.

        Raises:
            NotFoundError: If the period does not exist
            BusinessRuleViolation: If the period is closed, the scope is
                unknown, or a DRAFT run already exists and coexisting runs
                are not allowed
        """
        parse_scope(scope)
        async with self.session_factory() as session, session.begin():
            period = await session.get(PayrollPeriod, payroll_period_id)
            if period is None:
                raise NotFoundError("PayrollPeriod", payroll_period_id)
            if period.closed:
                raise BusinessRuleViolation(f"Payroll period {period.code} is closed")

            if not allow_coexisting:
                existing = await session.scalar(
                    select(PayrollRun.payroll_run_id).where(
                        PayrollRun.payroll_period_id == payroll_period_id,
                        PayrollRun.status == PayrollRunStatus.DRAFT.value,
                    )
                )
                if existing is not None:
                    raise BusinessRuleViolation(
                        f"A draft payroll run ({existing}) already exists for period {period.code}"
                    )

            run = PayrollRun(
                payroll_period_id=payroll_period_id,
                scope=scope,
                status=PayrollRunStatus.DRAFT.value,
            )
            run.run_hash = self.compute_run_hash(payroll_period_id, scope, {})
            session.add(run)
            await session.flush()

        logger.info("Initiated payroll run %s for period %s (%s)", run.payroll_run_id, period.code, scope)
        return run

    async def calculate(
        self,
        payroll_run_id: UUID,
        cancel_event: asyncio.Event | None = None,
    ) -> RunCalculationReport:
        """Calculate every in-scope employee of a DRAFT or CALCULATED run.

        Employee failures are recorded on the run and never stop the others;
        the run ends CALCULATED unless cancelled, in which case it stays
        DRAFT with the results committed so far.
        """
        async with self._run_lock(payroll_run_id):
            return await self._calculate_locked(payroll_run_id, cancel_event)

    async def recalculate(
        self,
        payroll_run_id: UUID,
        cancel_event: asyncio.Event | None = None,
    ) -> RunCalculationReport:
        """Reset a DRAFT, CALCULATED or APPROVED run to DRAFT and calculate it again.

        Raises:
            InvalidTransitionError: If the run is POSTED
        """
        async with self._run_lock(payroll_run_id):
            async with self.session_factory() as session, session.begin():
                run = await self._load_run(session, payroll_run_id)
                PayrollRunStateMachine.validate_reset(run.status)
                previous = run.status
                outcome = await session.execute(
                    update(PayrollRun)
                    .where(
                        PayrollRun.payroll_run_id == payroll_run_id,
                        PayrollRun.status.in_([s.value for s in PayrollRunStateMachine.RESET_ALLOWED]),
                    )
                    .values(
                        status=PayrollRunStatus.DRAFT.value,
                        approved_by=None,
                        approved_at=None,
                    )
                )
                if outcome.rowcount == 0:
                    raise InvalidTransitionError(
                        previous, PayrollRunStatus.DRAFT, "Status changed during reset"
                    )
            logger.info("Reset payroll run %s from %s to DRAFT", payroll_run_id, previous)
            return await self._calculate_locked(payroll_run_id, cancel_event)

    async def approve(self, payroll_run_id: UUID, approver_id: UUID) -> PayrollRun:
        """Approve a CALCULATED run.

        Raises:
            InvalidTransitionError: If the run is not CALCULATED
            NotFoundError: If the approver is unknown to the authority
            ApprovalNotAuthorizedError: If the authority check fails
        """
        async with self._run_lock(payroll_run_id):
            async with self.session_factory() as session, session.begin():
                run = await self._load_run(session, payroll_run_id)
                PayrollRunStateMachine.validate_transition(run.status, PayrollRunStatus.APPROVED)

                if not await self.approval_authority(session, approver_id, run):
                    raise ApprovalNotAuthorizedError(approver_id, payroll_run_id)

                approved_at = datetime.now(timezone.utc)
                await self._finalize_status(
                    session,
                    run,
                    PayrollRunStatus.CALCULATED,
                    PayrollRunStatus.APPROVED,
                    approved_by=approver_id,
                    approved_at=approved_at,
                )

        logger.info("Payroll run %s approved by %s", payroll_run_id, approver_id)
        return run

    async def post(self, payroll_run_id: UUID) -> PayrollRun:
        """Post an APPROVED run, closing its period and settling paid bonuses.

        Raises:
            InvalidTransitionError: If the run is not APPROVED
        """
        async with self._run_lock(payroll_run_id):
            async with self.session_factory() as session, session.begin():
                run = await self._load_run(session, payroll_run_id)
                problems = PayrollRunStateMachine.validate_run_for_transition(run, PayrollRunStatus.POSTED)
                if problems:
                    raise InvalidTransitionError(run.status, PayrollRunStatus.POSTED, "; ".join(problems))

                posted_at = datetime.now(timezone.utc)
                await self._finalize_status(
                    session,
                    run,
                    PayrollRunStatus.APPROVED,
                    PayrollRunStatus.POSTED,
                    posted_at=posted_at,
                )

                period = run.period
                period.closed = True

                paid_employees = select(PayrollResult.employee_id).where(
                    PayrollResult.payroll_run_id == payroll_run_id
                )
                settled = await session.execute(
                    update(Bonus)
                    .where(
                        Bonus.employee_id.in_(paid_employees),
                        Bonus.is_paid.is_(False),
                        Bonus.payment_date >= period.start_date,
                        Bonus.payment_date <= period.end_date,
                    )
                    .values(is_paid=True)
                    .execution_options(synchronize_session=False)
                )

        logger.info(
            "Posted payroll run %s; period %s closed, %d bonuses settled",
            payroll_run_id,
            period.code,
            settled.rowcount or 0,
        )
        return run

    def cancel(self, payroll_run_id: UUID) -> bool:
        """Request cancellation of a calculation in progress."""
        return self.lock_registry.request_cancellation(payroll_run_id)

    async def summary(self, payroll_run_id: UUID, reporting_currency: str | None = None) -> RunSummary:
        """Totals per currency and per component, optionally converted.

        Conversion uses rates at the period end date; a missing rate raises
        ExchangeRateNotFoundError.
        """
        async with self.session_factory() as session:
            run = await self._load_run(session, payroll_run_id, load_errors=True)
            results = list(
                (
                    await session.execute(
                        select(PayrollResult).where(PayrollResult.payroll_run_id == payroll_run_id)
                    )
                ).scalars().all()
            )

            summary = RunSummary(
                payroll_run_id=payroll_run_id,
                status=run.status,
                employee_count=len(results),
                error_count=len(run.errors),
            )
            for result in results:
                totals = summary.totals_by_currency.setdefault(result.currency, RunTotals())
                totals.add(result.gross, result.total_deductions, result.net, result.employer_cost)

            component_rows = await session.execute(
                select(PayComponent.code, func.sum(PayrollLine.amount))
                .join(PayrollLine, PayrollLine.pay_component_id == PayComponent.pay_component_id)
                .join(PayrollResult, PayrollResult.payroll_result_id == PayrollLine.payroll_result_id)
                .where(PayrollResult.payroll_run_id == payroll_run_id)
                .group_by(PayComponent.code)
                .order_by(PayComponent.code)
            )
            summary.amounts_by_component = {
                code: Decimal(str(amount)) for code, amount in component_rows.all()
            }

            if reporting_currency is not None:
                resolver = ExchangeRateResolver(session)
                as_of = run.period.end_date
                converted = RunTotals()
                for currency, totals in summary.totals_by_currency.items():
                    converted.add(
                        await resolver.convert(totals.gross, currency, reporting_currency, as_of),
                        await resolver.convert(totals.total_deductions, currency, reporting_currency, as_of),
                        await resolver.convert(totals.net, currency, reporting_currency, as_of),
                        await resolver.convert(totals.employer_cost, currency, reporting_currency, as_of),
                    )
                summary.reporting_currency = reporting_currency
                summary.reporting_totals = converted

        return summary

    # ===== Calculation =====

    async def _calculate_locked(
        self,
        payroll_run_id: UUID,
        cancel_event: asyncio.Event | None,
    ) -> RunCalculationReport:
        async with self.session_factory() as session, session.begin():
            run = await self._load_run(session, payroll_run_id)
            PayrollRunStateMachine.validate_calculation(run.status)
            if run.status == PayrollRunStatus.CALCULATED.value:
                await self._finalize_status(
                    session, run, PayrollRunStatus.CALCULATED, PayrollRunStatus.DRAFT
                )
            period = run.period
            employees = await self._population(session, run.scope)
            registry = await PayComponentRegistry.load(
                session, self.evaluator, self.settings.base_pay_component
            )

            # Previous error list and results of employees now out of scope are replaced.
            await session.execute(
                delete(PayrollRunError).where(PayrollRunError.payroll_run_id == payroll_run_id)
            )
            await self._delete_results(
                session,
                payroll_run_id,
                exclude_employee_ids=[e.employee_id for e in employees],
            )

        targets = [EmployeeTarget(e.employee_id, e.full_name) for e in employees]
        logger.info(
            "Calculating payroll run %s: %d employees, %d components",
            payroll_run_id,
            len(targets),
            len(registry),
        )

        event = self.lock_registry.start_calculation(payroll_run_id, cancel_event)
        try:

            async def worker(target: EmployeeTarget) -> EmployeeOutcome:
                return await self._calculate_employee(payroll_run_id, period, registry, target)

            outcomes = await self.executor.run(
                targets,
                worker,
                on_skip=lambda target: EmployeeOutcome.skipped(target.employee_id),
                cancel_event=event,
            )
        finally:
            self.lock_registry.finish_calculation(payroll_run_id)

        cancelled = any(o.status == OutcomeStatus.SKIPPED for o in outcomes)
        report = RunCalculationReport(payroll_run_id=payroll_run_id, status=run.status, outcomes=outcomes)

        async with self.session_factory() as session, session.begin():
            for error in report.errors:
                session.add(
                    PayrollRunError(
                        payroll_run_id=payroll_run_id,
                        employee_id=error.employee_id,
                        employee_name=error.employee_name,
                        code=error.code,
                        message=error.message,
                        severity=error.severity,
                    )
                )

            if cancelled:
                report.cancelled = True
                logger.warning(
                    "Payroll run %s cancelled: %d calculated, %d skipped; run stays DRAFT",
                    payroll_run_id,
                    report.succeeded,
                    report.skipped,
                )
                return report

            result_hashes = {o.employee_id: o.result_hash for o in outcomes if o.result_hash}
            await self._finalize_status(
                session,
                run,
                PayrollRunStatus.DRAFT,
                PayrollRunStatus.CALCULATED,
                run_hash=self.compute_run_hash(run.payroll_period_id, run.scope, result_hashes),
            )
            report.status = run.status

        logger.info(
            "Payroll run %s calculated: %d succeeded, %d failed",
            payroll_run_id,
            report.succeeded,
            report.failed,
        )
        return report

    async def _calculate_employee(
        self,
        payroll_run_id: UUID,
        period: PayrollPeriod,
        registry: PayComponentRegistry,
        target: EmployeeTarget,
    ) -> EmployeeOutcome:
        """Calculate and store one employee in its own transaction."""
        try:
            async with self.session_factory() as session, session.begin():
                employee = await session.get(Employee, target.employee_id)
                if employee is None:
                    raise NotFoundError("Employee", target.employee_id)
                calculator = EmployeePayrollCalculator(
                    session, registry, self.settings.standard_monthly_hours
                )
                calculation = await calculator.calculate(employee, period)
                result = await calculator.save_result(payroll_run_id, period, calculation)
                return EmployeeOutcome.succeeded(
                    target.employee_id,
                    result.payroll_result_id,
                    LineBuilder.compute_lines_hash(calculation.lines),
                )
        except PayrollError as e:
            error = PayrollValidationError(
                employee_id=target.employee_id,
                employee_name=target.employee_name,
                code=e.code,
                message=str(e),
            )
            logger.error(
                "Payroll calculation failed for employee %s: %s",
                target.employee_id,
                e,
                extra={"employee_id": str(target.employee_id), "error_code": e.code},
            )
        except Exception as e:
            # Unexpected errors are isolated to the employee like any other failure
            error = PayrollValidationError(
                employee_id=target.employee_id,
                employee_name=target.employee_name,
                code="UNEXPECTED_ERROR",
                message=f"Unexpected error: {e}",
            )
            logger.exception(
                "Unexpected error calculating employee %s",
                target.employee_id,
                extra={"employee_id": str(target.employee_id), "error_type": type(e).__name__},
            )

        # A failed employee must not keep a result from an earlier calculation.
        async with self.session_factory() as session, session.begin():
            await self._delete_results(session, payroll_run_id, employee_ids=[target.employee_id])
        return EmployeeOutcome.failed(error)

    async def _population(self, session: AsyncSession, scope: str) -> list[Employee]:
        """Active employees in scope, in a stable order."""
        department = parse_scope(scope)
        stmt = select(Employee).where(Employee.status == "ACTIVE")
        if department is not None:
            stmt = stmt.where(Employee.department == department)
        stmt = stmt.order_by(Employee.last_name, Employee.first_name, Employee.employee_id)
        result = await session.execute(stmt)
        return list(result.scalars().all())

    async def _delete_results(
        self,
        session: AsyncSession,
        payroll_run_id: UUID,
        employee_ids: list[UUID] | None = None,
        exclude_employee_ids: list[UUID] | None = None,
    ) -> None:
        criteria = [PayrollResult.payroll_run_id == payroll_run_id]
        if employee_ids is not None:
            criteria.append(PayrollResult.employee_id.in_(employee_ids))
        if exclude_employee_ids is not None:
            criteria.append(PayrollResult.employee_id.not_in(exclude_employee_ids))
        result_ids = select(PayrollResult.payroll_result_id).where(*criteria)
        await session.execute(
            delete(PayrollLine)
            .where(PayrollLine.payroll_result_id.in_(result_ids))
            .execution_options(synchronize_session=False)
        )
        await session.execute(
            delete(PayrollResult).where(*criteria).execution_options(synchronize_session=False)
        )

    # ===== Helpers =====

    @asynccontextmanager
    async def _run_lock(self, payroll_run_id: UUID) -> AsyncIterator[None]:
        """Hold the run's identity lock; the advisory lock lives on its own session."""
        async with self.session_factory() as lock_session:
            async with self.lock_registry.hold(payroll_run_id, lock_session):
                yield

    async def _load_run(
        self,
        session: AsyncSession,
        payroll_run_id: UUID,
        load_errors: bool = False,
    ) -> PayrollRun:
        options = [selectinload(PayrollRun.period)]
        if load_errors:
            options.append(selectinload(PayrollRun.errors))
        run = await session.scalar(
            select(PayrollRun).where(PayrollRun.payroll_run_id == payroll_run_id).options(*options)
        )
        if run is None:
            raise NotFoundError("PayrollRun", payroll_run_id)
        return run

    async def _finalize_status(
        self,
        session: AsyncSession,
        run: PayrollRun,
        from_status: PayrollRunStatus,
        to_status: PayrollRunStatus,
        **values: object,
    ) -> None:
        """Conditional status update; fails if the status moved underneath us."""
        outcome = await session.execute(
            update(PayrollRun)
            .where(
                PayrollRun.payroll_run_id == run.payroll_run_id,
                PayrollRun.status == from_status.value,
            )
            .values(status=to_status.value, **values)
            .execution_options(synchronize_session=False)
        )
        if outcome.rowcount == 0:
            raise InvalidTransitionError(from_status, to_status, "Status changed concurrently")
        run.status = to_status.value
        for key, value in values.items():
            setattr(run, key, value)

    def compute_run_hash(
        self,
        payroll_period_id: UUID,
        scope: str,
        result_hashes: dict[UUID, str],
    ) -> str:
        """Deterministic hash of a run's identity and its results."""
        payload = {
            "engine_version": self.settings.engine_version,
            "period": str(payroll_period_id),
            "scope": scope,
            "results": sorted((str(k), v) for k, v in result_hashes.items()),
        }
        json_str = json.dumps(payload, sort_keys=True)
        return hashlib.sha256(json_str.encode()).hexdigest()
