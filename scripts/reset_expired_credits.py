#!/usr/bin/env python3
"""
Expired Credit Period Sweep

Rolls over every credit account whose period has ended. Charges roll
accounts over lazily, so this only keeps idle accounts current.

Usage:
    # Single pass (for cron)
    python3 scripts/reset_expired_credits.py

    # Keep running, one pass every 15 minutes
    python3 scripts/reset_expired_credits.py --loop --interval 900
"""

import argparse
import asyncio
import sys

import structlog

from mycelia_billing.api.dependencies import get_plan_allowances
from mycelia_billing.config import settings
from mycelia_billing.db.session import close_engine, get_session
from mycelia_billing.observability import setup_logging
from mycelia_billing.services.credit_ledger import rollover_expired_accounts
from mycelia_billing.services.credit_store import SqlCreditAccountStore

logger = structlog.get_logger()


async def sweep_once() -> int:
    """Run one sweep in its own session."""
    async with get_session() as session:
        return await rollover_expired_accounts(
            SqlCreditAccountStore(session),
            get_plan_allowances(),
            period_months=settings.credit_period_months,
        )


async def run(loop: bool, interval: int) -> None:
    logger.info("credit_sweep_started", loop=loop, interval_seconds=interval)
    try:
        while True:
            try:
                await sweep_once()
            except Exception as e:
                if not loop:
                    raise
                logger.error("credit_sweep_error", error=str(e), exc_info=True)

            if not loop:
                return
            await asyncio.sleep(interval)
    finally:
        await close_engine()


def main() -> None:
    """Main entry point."""
    parser = argparse.ArgumentParser(description="Roll over expired credit periods")
    parser.add_argument("--loop", action="store_true", help="Run continuously")
    parser.add_argument(
        "--interval", type=int, default=900, help="Seconds between passes with --loop"
    )
    args = parser.parse_args()

    setup_logging()
    try:
        asyncio.run(run(args.loop, args.interval))
    except KeyboardInterrupt:
        logger.info("credit_sweep_stopped")
        sys.exit(0)


if __name__ == "__main__":
    main()
