"""Worker process for scheduled ledger maintenance.

Runs an asyncio loop that expires old accruals, removes duplicate rows and
reconciles leftover tombstones once per ``maintenance_interval_seconds``.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import date

from toil_ledger.config import get_settings

logger = logging.getLogger(__name__)


async def run_maintenance_loop() -> None:
    """Main worker loop that runs ledger maintenance on a fixed interval."""
    from toil_ledger.services.maintenance import run_maintenance
    from toil_ledger.services.toil import TOILService

    settings = get_settings()
    service = TOILService(settings)
    await service.start()
    logger.info("Maintenance worker started")

    try:
        while True:
            today = date.today()
            logger.info("Running ledger maintenance for %s", today)
            try:
                result = await run_maintenance(service, today)
                if result.errors:
                    logger.warning("Maintenance for %s finished with %d errors", today, result.errors)
            except Exception:
                logger.exception("Maintenance run failed for %s", today)

            await asyncio.sleep(settings.maintenance_interval_seconds)
    finally:
        await service.stop()


def main() -> None:
    """Entry point for the worker process."""
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(name)s %(levelname)s %(message)s")
    asyncio.run(run_maintenance_loop())


if __name__ == "__main__":
    main()
