"""Logging setup for the payroll computation engine."""

from __future__ import annotations

import logging

from payroll_compute.config import get_settings

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging(level: str | None = None) -> None:
    """Configure root logging once, using LOG_LEVEL when no level is given."""
    level_name = (level or get_settings().log_level).upper()
    logging.basicConfig(level=getattr(logging, level_name, logging.INFO), format=LOG_FORMAT)
    logging.getLogger("payroll_compute").setLevel(level_name)
