"""API routes."""

from payroll_compute.api.routes.health import router as health_router
from payroll_compute.api.routes.pay_runs import router as pay_runs_router

__all__ = ["pay_runs_router", "health_router"]
