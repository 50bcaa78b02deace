"""
Scheduler for periodic consensus maintenance.

Runs two background jobs:

- the expiration sweeper, which deletes expired submissions and
  recomputes the aggregates they fed;
- the score recalculation, which re-applies recency decay to every
  aggregate with verifications.

Both jobs do synchronous database work, so they run in a worker thread
and never block the event loop serving requests.
"""

import asyncio
import logging
from datetime import datetime
from typing import Callable, Dict, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from consensus_api.config import get_settings
from consensus_api.database import SessionLocal, init_db, utcnow
from consensus_api.decay import ScoreRecalculator
from consensus_api.sweeper import ExpirationSweeper


logger = logging.getLogger(__name__)

settings = get_settings()

SWEEP_JOB_ID = "expiration_sweep"
RECALCULATION_JOB_ID = "score_recalculation"


def run_sweep_job() -> dict:
    with SessionLocal() as db:
        return ExpirationSweeper(db).run().model_dump(mode="json")


def run_recalculation_job() -> dict:
    with SessionLocal() as db:
        return ScoreRecalculator(db).run().model_dump(mode="json")


class MaintenanceScheduler:
    """
    Scheduler for periodic sweeper and recalculation runs.

    Each job has its own skip-if-running guard on top of APScheduler's
    ``max_instances=1``, so a manual run and a scheduled run of the same job
    never overlap inside one process.
    """

    def __init__(
        self,
        sweep_interval_minutes: Optional[int] = None,
        recalculation_interval_minutes: Optional[int] = None,
    ):
        """
        Initialize the scheduler.

        Args:
            sweep_interval_minutes: Sweeper interval (default from settings)
            recalculation_interval_minutes: Recalculation interval (default from settings)
        """
        self.intervals = {
            SWEEP_JOB_ID: sweep_interval_minutes or settings.sweep_interval_minutes,
            RECALCULATION_JOB_ID: (
                recalculation_interval_minutes or settings.recalculation_interval_minutes
            ),
        }
        self.jobs: Dict[str, Callable[[], dict]] = {
            SWEEP_JOB_ID: run_sweep_job,
            RECALCULATION_JOB_ID: run_recalculation_job,
        }
        self.scheduler = AsyncIOScheduler()
        self._running_jobs = set()
        self._last_run: Dict[str, datetime] = {}
        self._last_result: Dict[str, dict] = {}

    async def run_job(self, job_id: str):
        """
        Run one maintenance iteration.

        This is called by the scheduler at each interval.
        """
        if job_id in self._running_jobs:
            logger.warning(f"Job {job_id} already in progress, skipping this iteration")
            return

        self._running_jobs.add(job_id)
        start_time = utcnow()

        try:
            logger.info(f"Starting scheduled {job_id} run at {start_time.isoformat()}")

            result = await asyncio.to_thread(self.jobs[job_id])

            self._last_run[job_id] = utcnow()
            self._last_result[job_id] = result

            logger.info(
                f"Scheduled {job_id} complete in {result.get('duration_seconds', 0):.2f}s"
            )

        except Exception as e:
            logger.exception(f"Error in scheduled {job_id}: {e}")
            self._last_result[job_id] = {"success": False, "error": str(e)}
        finally:
            self._running_jobs.discard(job_id)

    def start(self):
        """Start the scheduler."""
        if self.scheduler.running:
            logger.warning("Scheduler already running")
            return

        for job_id, name in (
            (SWEEP_JOB_ID, "Expiration Sweep"),
            (RECALCULATION_JOB_ID, "Score Recalculation"),
        ):
            self.scheduler.add_job(
                self.run_job,
                trigger=IntervalTrigger(minutes=self.intervals[job_id]),
                args=[job_id],
                id=job_id,
                name=name,
                replace_existing=True,
                max_instances=1,  # Prevent overlapping runs
            )

        self.scheduler.start()
        logger.info(
            f"Maintenance scheduler started - sweep every {self.intervals[SWEEP_JOB_ID]} "
            f"minutes, recalculation every {self.intervals[RECALCULATION_JOB_ID]} minutes"
        )

    def stop(self):
        """Stop the scheduler."""
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Maintenance scheduler stopped")

    def get_status(self) -> dict:
        """Get scheduler status."""
        return {
            "running": self.scheduler.running,
            "jobs": {
                job_id: {
                    "interval_minutes": self.intervals[job_id],
                    "last_run": self._last_run[job_id].isoformat() if job_id in self._last_run else None,
                    "last_result": self._last_result.get(job_id),
                    "in_progress": job_id in self._running_jobs,
                    "next_run": self._get_next_run_time(job_id),
                }
                for job_id in self.jobs
            },
        }

    def _get_next_run_time(self, job_id: str) -> Optional[str]:
        """Get the next scheduled run time."""
        if not self.scheduler.running:
            return None

        job = self.scheduler.get_job(job_id)
        if job and job.next_run_time:
            return job.next_run_time.isoformat()
        return None


# Global scheduler instance
_scheduler: Optional[MaintenanceScheduler] = None


def get_scheduler() -> MaintenanceScheduler:
    """Get or create the global scheduler instance."""
    global _scheduler
    if _scheduler is None:
        _scheduler = MaintenanceScheduler()
    return _scheduler


def start_scheduler():
    """Start the global scheduler."""
    scheduler = get_scheduler()
    scheduler.start()


def stop_scheduler():
    """Stop the global scheduler."""
    global _scheduler
    if _scheduler is not None:
        _scheduler.stop()
        _scheduler = None


# CLI entry point for running scheduler standalone
if __name__ == "__main__":
    import argparse

    parser = argparse.ArgumentParser(description="Consensus Maintenance Scheduler")
    parser.add_argument(
        "--sweep-interval",
        type=int,
        default=None,
        help="Sweeper interval in minutes (default from settings)"
    )
    parser.add_argument(
        "--recalculation-interval",
        type=int,
        default=None,
        help="Recalculation interval in minutes (default from settings)"
    )
    parser.add_argument(
        "--run-once",
        action="store_true",
        help="Run the sweeper and the recalculation once and exit"
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )
    init_db()

    if args.run_once:
        print(f"Sweep complete: {run_sweep_job()}")
        print(f"Recalculation complete: {run_recalculation_job()}")
    else:
        async def main():
            scheduler = MaintenanceScheduler(
                sweep_interval_minutes=args.sweep_interval,
                recalculation_interval_minutes=args.recalculation_interval,
            )
            scheduler.start()
            try:
                await asyncio.Event().wait()
            finally:
                scheduler.stop()

        try:
            asyncio.run(main())
        except KeyboardInterrupt:
            print("\nScheduler stopped")
