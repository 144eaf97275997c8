"""Payroll run API endpoints."""

from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Path, Query, status

from payroll_compute.api.dependencies import PayRunService
from payroll_compute.api.schemas import (
    ApprovalRequest,
    CalculationResponse,
    CancellationResponse,
    ErrorResponse,
    PayrollResultResponse,
    PayrollRunCreate,
    PayrollRunResponse,
    RunSummaryResponse,
)
from payroll_compute.services.pay_run_service import PayrollRunService

router = APIRouter(prefix="/payroll-runs", tags=["payroll-runs"])

NOT_FOUND = {404: {"model": ErrorResponse}}
CONFLICT = {404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}}


async def run_response(service: PayrollRunService, payroll_run_id: UUID) -> PayrollRunResponse:
    run = await service.get_run(payroll_run_id)
    return PayrollRunResponse.from_run(run, await service.summary(payroll_run_id))


# ============================================================================
# Payroll run lifecycle
# ============================================================================


@router.post(
    "",
    response_model=PayrollRunResponse,
    status_code=status.HTTP_201_CREATED,
    responses={404: {"model": ErrorResponse}, 422: {"model": ErrorResponse}},
)
async def initiate_payroll_run(service: PayRunService, payload: PayrollRunCreate) -> PayrollRunResponse:
    """Create a DRAFT run for an open period."""
    run = await service.initiate_run(
        payload.payroll_period_id,
        scope=payload.scope,
        allow_coexisting=payload.allow_coexisting,
    )
    return await run_response(service, run.payroll_run_id)


@router.get("/{payroll_run_id}", response_model=PayrollRunResponse, responses=NOT_FOUND)
async def get_payroll_run(
    service: PayRunService,
    payroll_run_id: Annotated[UUID, Path()],
) -> PayrollRunResponse:
    """Get a run with its per-employee error list."""
    return await run_response(service, payroll_run_id)


@router.post("/{payroll_run_id}/calculate", response_model=CalculationResponse, responses=CONFLICT)
async def calculate_payroll_run(
    service: PayRunService,
    payroll_run_id: Annotated[UUID, Path()],
) -> CalculationResponse:
    """Calculate every in-scope employee of a DRAFT or CALCULATED run."""
    report = await service.calculate(payroll_run_id)
    return CalculationResponse.from_report(report)


@router.post("/{payroll_run_id}/recalculate", response_model=CalculationResponse, responses=CONFLICT)
async def recalculate_payroll_run(
    service: PayRunService,
    payroll_run_id: Annotated[UUID, Path()],
) -> CalculationResponse:
    """Reset a non-posted run to DRAFT and calculate it again."""
    report = await service.recalculate(payroll_run_id)
    return CalculationResponse.from_report(report)


@router.post("/{payroll_run_id}/approve", response_model=PayrollRunResponse, responses=CONFLICT)
async def approve_payroll_run(
    service: PayRunService,
    payroll_run_id: Annotated[UUID, Path()],
    payload: ApprovalRequest,
) -> PayrollRunResponse:
    """Approve a CALCULATED run."""
    await service.approve(payroll_run_id, payload.approver_id)
    return await run_response(service, payroll_run_id)


@router.post("/{payroll_run_id}/post", response_model=PayrollRunResponse, responses=CONFLICT)
async def post_payroll_run(
    service: PayRunService,
    payroll_run_id: Annotated[UUID, Path()],
) -> PayrollRunResponse:
    """Post an APPROVED run and close its period."""
    await service.post(payroll_run_id)
    return await run_response(service, payroll_run_id)


@router.post(
    "/{payroll_run_id}/cancel",
    response_model=CancellationResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def cancel_payroll_run(
    service: PayRunService,
    payroll_run_id: Annotated[UUID, Path()],
) -> CancellationResponse:
    """Ask a calculation in progress to stop dispatching employees."""
    return CancellationResponse(
        payroll_run_id=payroll_run_id,
        cancellation_requested=service.cancel(payroll_run_id),
    )


# ============================================================================
# Results
# ============================================================================


@router.get("/{payroll_run_id}/results", response_model=list[PayrollResultResponse], responses=NOT_FOUND)
async def list_payroll_results(
    service: PayRunService,
    payroll_run_id: Annotated[UUID, Path()],
) -> list[PayrollResultResponse]:
    results = await service.list_results(payroll_run_id)
    return [PayrollResultResponse.from_result(r) for r in results]


@router.get(
    "/{payroll_run_id}/results/{employee_id}",
    response_model=PayrollResultResponse,
    responses=NOT_FOUND,
)
async def get_payroll_result(
    service: PayRunService,
    payroll_run_id: Annotated[UUID, Path()],
    employee_id: Annotated[UUID, Path()],
) -> PayrollResultResponse:
    """One employee's lines and totals."""
    return PayrollResultResponse.from_result(await service.get_result(payroll_run_id, employee_id))


@router.get("/{payroll_run_id}/summary", response_model=RunSummaryResponse, responses=NOT_FOUND)
async def get_payroll_run_summary(
    service: PayRunService,
    payroll_run_id: Annotated[UUID, Path()],
    reporting_currency: Annotated[str | None, Query(min_length=3, max_length=3)] = None,
) -> RunSummaryResponse:
    """Totals per currency and component, optionally converted."""
    summary = await service.summary(payroll_run_id, reporting_currency)
    return RunSummaryResponse.from_summary(summary)
