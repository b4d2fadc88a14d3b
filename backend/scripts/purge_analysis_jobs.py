#!/usr/bin/env python3
"""
Analysis Job Maintenance Script.

Treats expired worker leases as failed attempts and deletes finished
analysis jobs that are past their retention window. Run it from cron when
Celery beat is not deployed.

Usage:
    python backend/scripts/purge_analysis_jobs.py [--completed-hours N] [--failed-hours N] [--skip-expire] [--verbose]

Options:
    --completed-hours   Retention for completed jobs (default from settings)
    --failed-hours      Retention for failed jobs (default from settings)
    --skip-expire       Do not touch active jobs with expired leases
    --verbose           Show detailed information
"""

import argparse
import asyncio
import logging
import sys
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

# Add backend directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from observa.core.config import get_settings
from observa.models.analysis import JobStats
from observa.repositories.control_plane_repository import ControlPlaneRepository


@dataclass
class PurgeReport:
    """Report of one maintenance run."""

    stats_before: JobStats = field(default_factory=JobStats)
    stats_after: JobStats = field(default_factory=JobStats)
    expired_leases: int = 0
    purged_jobs: int = 0

    def summary(self) -> str:
        """Generate a human-readable summary."""
        lines = [
            "=" * 60,
            "ANALYSIS JOB MAINTENANCE REPORT",
            "=" * 60,
            f"Expired leases requeued/failed: {self.expired_leases}",
            f"Finished jobs purged:           {self.purged_jobs}",
            "-" * 60,
            f"{'status':<12}{'before':>10}{'after':>10}",
        ]
        for status in ("queued", "active", "completed", "failed"):
            lines.append(
                f"{status:<12}{getattr(self.stats_before, status):>10}{getattr(self.stats_after, status):>10}"
            )
        lines.append("=" * 60)
        return "\n".join(lines)


class JobPurger:
    """Applies lease expiry and retention to the analysis job table."""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        completed_retention: timedelta,
        failed_retention: timedelta,
        backoff_base_seconds: float,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._session_factory = session_factory
        self._completed_retention = completed_retention
        self._failed_retention = failed_retention
        self._backoff_base_seconds = backoff_base_seconds
        self._logger = logger or logging.getLogger("purge_analysis_jobs")

    async def run(self, expire_leases: bool = True, now: Optional[datetime] = None) -> PurgeReport:
        report = PurgeReport()
        async with self._session_factory() as session:
            repo = ControlPlaneRepository(session)
            report.stats_before = await repo.job_stats()

            if expire_leases:
                self._logger.info("Expiring stale leases...")
                report.expired_leases = await repo.expire_stale_jobs(self._backoff_base_seconds, now=now)

            self._logger.info("Purging finished jobs past retention...")
            report.purged_jobs = await repo.purge_finished_jobs(
                self._completed_retention, self._failed_retention, now=now
            )
            report.stats_after = await repo.job_stats()

        if report.expired_leases:
            self._logger.warning(f"Found {report.expired_leases} jobs with expired leases")
        return report


def setup_logging(verbose: bool = False) -> None:
    """Configure logging for the script."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def main(argv: Optional[list] = None) -> int:
    """
    Main entry point for the maintenance script.

    Returns:
        Exit code: 0 on success, 2 on error
    """
    settings = get_settings()
    parser = argparse.ArgumentParser(
        description="Expire stale analysis job leases and purge old jobs",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--completed-hours", type=float, default=settings.completed_job_retention_hours)
    parser.add_argument("--failed-hours", type=float, default=settings.failed_job_retention_hours)
    parser.add_argument("--skip-expire", action="store_true", help="Leave expired leases alone")
    parser.add_argument("--verbose", "-v", action="store_true", help="Show detailed information")

    args = parser.parse_args(argv)
    setup_logging(args.verbose)
    logger = logging.getLogger("purge_analysis_jobs")

    # Imported late so --help works without a database driver configured.
    from observa.core.database import AsyncSessionLocal

    try:
        purger = JobPurger(
            AsyncSessionLocal,
            completed_retention=timedelta(hours=args.completed_hours),
            failed_retention=timedelta(hours=args.failed_hours),
            backoff_base_seconds=settings.analysis_backoff_base_seconds,
            logger=logger,
        )
        report = asyncio.run(purger.run(expire_leases=not args.skip_expire))
        print(report.summary())
        return 0
    except Exception as e:
        logger.error(f"Maintenance failed: {e}")
        return 2


if __name__ == "__main__":
    sys.exit(main())
