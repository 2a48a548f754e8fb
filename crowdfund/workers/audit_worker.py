"""
Ledger audit background worker.

Runs the ledger audit daily at the configured hour (e.g., 2 AM).
"""
import asyncio
import signal
from datetime import datetime, timedelta
from typing import Any, Optional

import structlog

from crowdfund.config import get_settings
from crowdfund.core.audit import LedgerAuditor
from crowdfund.database.connection import close_db, get_session_factory
from crowdfund.monitoring.logging import setup_logging

logger = structlog.get_logger(__name__)


async def run_ledger_audit() -> dict[str, Any]:
    """
    Audit every campaign once.

    Returns:
        dict[str, Any]: Audit results
    """
    logger.info("scheduled_ledger_audit_started")

    session_factory = get_session_factory()
    async with session_factory() as db:
        try:
            result = await LedgerAuditor().audit(db)
        except Exception as e:
            logger.error("scheduled_ledger_audit_failed", error=str(e))
            raise

    logger.info(
        "scheduled_ledger_audit_completed",
        audit_id=result["audit_id"],
        campaigns_checked=result["campaigns_checked"],
        discrepancy_count=result["discrepancy_count"],
        discrepancy_amount=result["discrepancy_amount"],
    )
    return result


def calculate_next_run_time(target_hour: int = 2, now: Optional[datetime] = None) -> float:
    """
    Calculate seconds until next scheduled run.

    Args:
        target_hour: Hour of day to run (24-hour format)
        now: Reference time (defaults to the current local time)

    Returns:
        float: Seconds until next run
    """
    now = now or datetime.now()
    next_run = now.replace(hour=target_hour, minute=0, second=0, microsecond=0)

    # If we've passed today's run time, schedule for tomorrow
    if now >= next_run:
        next_run += timedelta(days=1)

    seconds_until = (next_run - now).total_seconds()

    logger.info(
        "ledger_audit_next_run_scheduled",
        next_run=next_run.isoformat(),
        seconds_until=seconds_until,
    )

    return seconds_until


async def start_audit_worker(target_hour: Optional[int] = None) -> None:
    """
    Start the ledger audit worker.

    Args:
        target_hour: Hour of day to run (defaults to the `audit_hour` setting)
    """
    setup_logging()
    if target_hour is None:
        target_hour = get_settings().audit_hour

    logger.info("audit_worker_starting", target_hour=target_hour)

    running = True

    def signal_handler(sig: int, frame: Any) -> None:
        nonlocal running
        logger.info("audit_worker_shutdown_signal_received", signal=sig)
        running = False

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        while running:
            seconds_until = calculate_next_run_time(target_hour)

            # Sleep in short slices so a shutdown signal is noticed
            while seconds_until > 0 and running:
                sleep_time = min(seconds_until, 60)
                await asyncio.sleep(sleep_time)
                seconds_until -= sleep_time

            if not running:
                break

            try:
                await run_ledger_audit()
            except Exception as e:
                logger.error("audit_execution_error", error=str(e))
                # Keep the schedule alive after a failed run

    finally:
        await close_db()
        logger.info("audit_worker_stopped")


def main() -> None:
    """Command-line entry point."""
    import argparse

    parser = argparse.ArgumentParser(description="Ledger audit worker")
    parser.add_argument(
        "--hour", type=int, default=None, help="Hour of day to run the audit (0-23)"
    )
    parser.add_argument(
        "--once", action="store_true", help="Run a single audit and exit"
    )
    args = parser.parse_args()

    if args.once:
        setup_logging()

        async def _run_once() -> None:
            try:
                await run_ledger_audit()
            finally:
                await close_db()

        asyncio.run(_run_once())
    else:
        asyncio.run(start_audit_worker(target_hour=args.hour))


if __name__ == "__main__":
    main()
