"""
Expiration background worker.

Each cycle:
- expires overdue pending orders
- retries audit entries that failed to write
- once per day, purges audit entries past the retention window
"""
import argparse
import asyncio
import signal
from datetime import date, timedelta
from typing import Any, Dict, Optional

import structlog

from upi_orders.api.dependencies import ServiceContainer
from upi_orders.config import get_settings
from upi_orders.database.connection import close_db, get_session_factory, init_db
from upi_orders.monitoring.logging import setup_logging

logger = structlog.get_logger(__name__)


async def run_cycle(container: ServiceContainer, purge: bool = False) -> Dict[str, Any]:
    """
    Run one worker cycle.

    Args:
        container: Wired services
        purge: Also apply audit retention

    Returns:
        Dict[str, Any]: Cycle summary
    """
    now = container.sweeper.clock()
    result = await container.sweeper.sweep(now)
    retried = await container.audit_trail.retry_pending()

    purged = 0
    if purge:
        cutoff = now - timedelta(days=container.settings.audit_retention_days)
        purged = await container.audit_logger.purge_older_than(cutoff)

    summary = {
        "expired_count": result.expired_count,
        "failures": len(result.failures),
        "audit_retried": retried,
        "audit_pending": container.audit_trail.pending_count,
        "audit_purged": purged,
    }
    logger.info("expiration_cycle_completed", **summary)
    return summary


async def start_expiration_worker(
    interval_seconds: Optional[float] = None, once: bool = False
) -> None:
    """
    Start the expiration worker.

    Args:
        interval_seconds: Seconds between cycles (default from settings)
        once: Run a single cycle and exit
    """
    setup_logging()
    settings = get_settings()
    interval = interval_seconds or settings.sweep_interval_seconds

    logger.info("expiration_worker_starting", interval_seconds=interval, once=once)

    await init_db()
    container = ServiceContainer(get_session_factory(), settings)

    running = True

    def signal_handler(sig: int, frame: Any) -> None:
        nonlocal running
        logger.info("expiration_worker_shutdown_signal_received", signal=sig)
        running = False

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    last_purge: Optional[date] = None
    try:
        while running:
            today = container.sweeper.clock().date()
            try:
                await run_cycle(container, purge=last_purge != today)
                last_purge = today
            except Exception as e:
                logger.error("expiration_cycle_error", error=str(e))
                # Keep running; the next cycle picks up whatever is left

            if once:
                break

            # Sleep in short steps so shutdown signals are honoured promptly
            remaining = interval
            while remaining > 0 and running:
                step = min(remaining, 1.0)
                await asyncio.sleep(step)
                remaining -= step

    finally:
        await close_db()
        logger.info("expiration_worker_stopped")


def main() -> None:
    parser = argparse.ArgumentParser(description="Order expiration worker")
    parser.add_argument(
        "--interval", type=float, default=None, help="Seconds between sweeps"
    )
    parser.add_argument("--once", action="store_true", help="Run a single cycle and exit")
    args = parser.parse_args()

    asyncio.run(start_expiration_worker(interval_seconds=args.interval, once=args.once))


if __name__ == "__main__":
    main()
