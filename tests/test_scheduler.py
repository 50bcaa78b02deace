"""Tests for the maintenance scheduler."""

import pytest

from consensus_api import scheduler as scheduler_module
from consensus_api.scheduler import RECALCULATION_JOB_ID, SWEEP_JOB_ID, MaintenanceScheduler


@pytest.fixture
def maintenance():
    return MaintenanceScheduler(sweep_interval_minutes=60, recalculation_interval_minutes=120)


class TestRunJob:

    @pytest.mark.asyncio
    async def test_successful_run_is_recorded(self, maintenance):
        maintenance.jobs[SWEEP_JOB_ID] = lambda: {"success": True, "duration_seconds": 0.25}

        await maintenance.run_job(SWEEP_JOB_ID)

        status = maintenance.get_status()
        sweep = status["jobs"][SWEEP_JOB_ID]
        assert sweep["last_result"] == {"success": True, "duration_seconds": 0.25}
        assert sweep["last_run"] is not None
        assert sweep["in_progress"] is False
        assert status["jobs"][RECALCULATION_JOB_ID]["last_run"] is None

    @pytest.mark.asyncio
    async def test_failure_is_captured(self, maintenance):
        def broken():
            raise RuntimeError("database unavailable")

        maintenance.jobs[RECALCULATION_JOB_ID] = broken

        await maintenance.run_job(RECALCULATION_JOB_ID)

        result = maintenance.get_status()["jobs"][RECALCULATION_JOB_ID]["last_result"]
        assert result == {"success": False, "error": "database unavailable"}
        assert maintenance.get_status()["jobs"][RECALCULATION_JOB_ID]["last_run"] is None

    @pytest.mark.asyncio
    async def test_overlapping_run_is_skipped(self, maintenance):
        calls = []
        maintenance.jobs[SWEEP_JOB_ID] = lambda: calls.append(1) or {}
        maintenance._running_jobs.add(SWEEP_JOB_ID)

        await maintenance.run_job(SWEEP_JOB_ID)

        assert calls == []
        assert maintenance.get_status()["jobs"][SWEEP_JOB_ID]["in_progress"] is True


class TestStatus:

    def test_idle_scheduler_status(self, maintenance):
        status = maintenance.get_status()

        assert status["running"] is False
        assert status["jobs"][SWEEP_JOB_ID]["interval_minutes"] == 60
        assert status["jobs"][RECALCULATION_JOB_ID]["interval_minutes"] == 120
        assert status["jobs"][SWEEP_JOB_ID]["next_run"] is None

    def test_stop_is_safe_when_not_started(self, maintenance):
        maintenance.stop()
        assert maintenance.get_status()["running"] is False


class TestJobFunctions:

    def test_jobs_use_a_fresh_session(self, monkeypatch, session_factory, db):
        monkeypatch.setattr(scheduler_module, "SessionLocal", session_factory)

        sweep = scheduler_module.run_sweep_job()
        recalculation = scheduler_module.run_recalculation_job()

        assert sweep["success"] is True
        assert sweep["deleted_submissions"] == 0
        assert isinstance(sweep["completed_at"], str)
        assert recalculation["processed"] == 0
