"""
API routes for triggering and monitoring maintenance jobs.
"""

from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Query
from sqlalchemy import desc, func, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from consensus_api.config import get_settings
from consensus_api.database import Aggregate, MaintenanceRun, SessionLocal, Submission, Vote, get_db
from consensus_api.decay import ScoreRecalculator
from consensus_api.dependencies import require_api_key
from consensus_api.models import (
    AbuseReportResponse, ExpirationStatsResponse, HealthResponse,
    RecalculationResultResponse, SweepResultResponse, TriggerRecalculationRequest,
    TriggerSweepRequest,
)
from consensus_api.monitoring import AbuseMonitor
from consensus_api.scheduler import get_scheduler
from consensus_api.sweeper import ExpirationSweeper


router = APIRouter(prefix="/maintenance", tags=["Maintenance"])

settings = get_settings()


# =============================================================================
# Trigger Jobs
# =============================================================================


@router.post(
    "/sweep",
    response_model=SweepResultResponse,
    dependencies=[Depends(require_api_key)],
)
def trigger_sweep(
    request: Optional[TriggerSweepRequest] = None,
    db: Session = Depends(get_db),
):
    """
    Manually run the expiration sweeper.

    Deletes submissions past their TTL and recomputes the aggregates they
    fed. In production this is normally run by the scheduler once a day.
    Use ``dry_run`` to see what would be removed.

    Requires API key if configured.
    """
    request = request or TriggerSweepRequest()
    return ExpirationSweeper(db).run(dry_run=request.dry_run, batch_size=request.batch_size)


@router.post(
    "/recalculate",
    response_model=RecalculationResultResponse,
    dependencies=[Depends(require_api_key)],
)
def trigger_recalculation(
    request: Optional[TriggerRecalculationRequest] = None,
    db: Session = Depends(get_db),
):
    """
    Recalculate cached confidence scores so recency decay is reflected.

    Requires API key if configured.
    """
    request = request or TriggerRecalculationRequest()
    return ScoreRecalculator(db).run(
        dry_run=request.dry_run, limit=request.limit, batch_size=request.batch_size
    )


@router.post("/recalculate-async", dependencies=[Depends(require_api_key)])
async def trigger_recalculation_async(
    background_tasks: BackgroundTasks,
    request: Optional[TriggerRecalculationRequest] = None,
):
    """
    Trigger recalculation in the background.

    Returns immediately. Use GET /maintenance/status to check progress.
    """
    request = request or TriggerRecalculationRequest()

    def run_recalculation_background():
        with SessionLocal() as session:
            ScoreRecalculator(session).run(
                dry_run=request.dry_run, limit=request.limit, batch_size=request.batch_size
            )

    background_tasks.add_task(run_recalculation_background)

    return {"message": "Recalculation started in background", "status": "running"}


# =============================================================================
# Status & Monitoring
# =============================================================================


@router.get("/status")
def get_maintenance_status(db: Session = Depends(get_db)):
    """Get the status of recent maintenance runs and the scheduler."""
    recent_runs = db.query(MaintenanceRun).order_by(
        desc(MaintenanceRun.started_at), desc(MaintenanceRun.id)
    ).limit(10).all()

    return {
        "scheduler": get_scheduler().get_status(),
        "recent_runs": [
            {
                "id": run.id,
                "job": run.job,
                "started_at": run.started_at.isoformat() if run.started_at else None,
                "completed_at": run.completed_at.isoformat() if run.completed_at else None,
                "success": run.success,
                "dry_run": run.dry_run,
                "processed": run.processed,
                "deleted": run.deleted,
                "updated": run.updated,
                "duration_seconds": run.duration_seconds,
                "error": run.error_message,
            }
            for run in recent_runs
        ]
    }


@router.get("/expiration-stats", response_model=ExpirationStatsResponse)
def get_expiration_stats(db: Session = Depends(get_db)):
    """TTL statistics: how much data is expired or about to expire."""
    return ExpirationSweeper(db).expiration_stats()


@router.get(
    "/abuse-report",
    response_model=AbuseReportResponse,
    dependencies=[Depends(require_api_key)],
)
def get_abuse_report(
    window_hours: int = Query(default=24, ge=1, le=24 * 30),
    threshold: Optional[int] = Query(default=None, ge=1),
    db: Session = Depends(get_db),
):
    """
    Per-origin activity over a recent window, with heavy origins flagged.

    Requires API key if configured.
    """
    return AbuseMonitor(db).build_report(window_hours=window_hours, threshold=threshold)


# =============================================================================
# Health Check
# =============================================================================


@router.get("/health", response_model=HealthResponse)
def health_check(db: Session = Depends(get_db)):
    """
    Health check endpoint.

    Returns service health status and basic statistics.
    """
    try:
        # Test database connection
        db.execute(text("SELECT 1"))
        db_connected = True
    except SQLAlchemyError:
        db_connected = False

    if not db_connected:
        return HealthResponse(
            status="degraded",
            version=settings.app_version,
            database_connected=False,
        )

    # Get counts
    submissions_count = db.query(func.count(Submission.id)).scalar() or 0
    votes_count = db.query(func.count(Vote.id)).scalar() or 0
    aggregates_count = db.query(func.count(Aggregate.id)).scalar() or 0

    # Get last completed maintenance run
    last_run = db.query(MaintenanceRun).filter(
        MaintenanceRun.completed_at.isnot(None)
    ).order_by(desc(MaintenanceRun.completed_at)).first()

    return HealthResponse(
        status="healthy",
        version=settings.app_version,
        database_connected=True,
        last_maintenance_run=last_run.completed_at if last_run else None,
        submissions_count=submissions_count,
        votes_count=votes_count,
        aggregates_count=aggregates_count,
    )
