"""Command line entry point.

Usage:
    python -m payroll_compute serve
    python -m payroll_compute init-db
"""

from __future__ import annotations

import argparse
import asyncio
import logging

import uvicorn

from payroll_compute.config import get_settings
from payroll_compute.database import create_schema, get_engine
from payroll_compute.logging_config import configure_logging

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="payroll-compute",
        description="Payroll computation engine",
    )
    subparsers = parser.add_subparsers(dest="command")
    subparsers.add_parser("serve", help="Run the HTTP API (default)")
    subparsers.add_parser("init-db", help="Create missing tables in DATABASE_URL")
    return parser


async def init_db() -> None:
    engine = get_engine()
    try:
        await create_schema(engine)
    finally:
        await engine.dispose()
    logger.info("Database schema is up to date")


def serve() -> None:
    """Run the application."""
    settings = get_settings()
    uvicorn.run(
        "payroll_compute.api.app:create_app",
        factory=True,
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
    )


def main(argv: list[str] | None = None) -> None:
    args = build_parser().parse_args(argv)
    if args.command == "init-db":
        configure_logging()
        asyncio.run(init_db())
    else:
        serve()


if __name__ == "__main__":
    main()
