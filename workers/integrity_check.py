"""Worker to run the inventory integrity check.

Intended to be triggered by an external scheduler (cron, k8s CronJob):
each invocation runs one check and exits. Pass ``--loop`` to keep running
and check every ``--interval`` seconds instead.
"""

import argparse
import asyncio
import logging
import traceback
from typing import Optional

from database import init_db, close as db_close
from escrow import IntegrityAuditor

# Configure logging
logger = logging.getLogger(__name__)

async def run_check(auditor: Optional[IntegrityAuditor] = None) -> int:
    """Run one integrity check and log what it found.

    Returns:
        Number of issues found
    """
    auditor = auditor or IntegrityAuditor()
    report = await auditor.run_integrity_check()

    for issue in report.issues:
        logger.warning(f"[{issue.severity}] {issue.issue_type}: {issue.description}")

    logger.info(f"Integrity check at {report.checked_at.isoformat()}: {report.total_issues} issues")
    return report.total_issues

async def run_worker(loop: bool = False, interval: int = 3600):
    """Run the integrity check once, or repeatedly when ``loop`` is set."""
    logger.info("Integrity check worker starting up")
    await init_db()
    try:
        if not loop:
            return await run_check()

        while True:
            try:
                await run_check()
            except Exception as e:
                logger.error(f"Error in worker loop: {str(e)}")
                logger.error(traceback.format_exc())
            finally:
                await asyncio.sleep(interval)
    finally:
        await db_close()

if __name__ == "__main__":
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    parser = argparse.ArgumentParser(description="Run the inventory integrity check")
    parser.add_argument('--loop', action='store_true', help="Keep running instead of exiting after one check")
    parser.add_argument('--interval', type=int, default=3600, help="Seconds between checks with --loop")
    args = parser.parse_args()

    try:
        asyncio.run(run_worker(loop=args.loop, interval=args.interval))
    except KeyboardInterrupt:
        pass
