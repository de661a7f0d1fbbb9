"""Command-line entry point for the delivery worker process."""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys

from newsletter.clients.email_client import EmailClient
from newsletter.config import settings, validate_security_settings
from newsletter.database import check_connection, close_db
from newsletter.services.delivery_worker import DeliveryWorker

logger = logging.getLogger("newsletter.worker")


async def run_worker() -> int:
    try:
        await check_connection()
    except Exception:
        logger.exception("Cannot reach the database, refusing to start")
        await close_db()
        return 1

    email_client = EmailClient.from_settings(settings)
    worker = DeliveryWorker.from_settings(settings, email_client)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, worker.stop)

    try:
        await worker.run()
    finally:
        await email_client.close()
        await close_db()
    return 0


def main() -> int:
    parser = argparse.ArgumentParser(description="Deliver queued newsletter issues")
    parser.add_argument(
        "--log-level",
        default=None,
        help=f"Logging level (default: {settings.log_level})",
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=(args.log_level or settings.log_level).upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    validate_security_settings()
    return asyncio.run(run_worker())


if __name__ == "__main__":
    sys.exit(main())
