"""Tests for the IntegrationSyncService facade.

WHAT:
    End-to-end wiring against SQLite and a mocked Graph API: cron tick
    (reclaim, schedule, drain), job budgets, disconnect and cleanup.

REFERENCES:
    - adsync/services/integration_service.py (module under test)
"""

from datetime import timedelta

import httpx
import pytest

from adsync.models import JobStatusEnum, JobTypeEnum, SyncStatusEnum
from adsync.services.integration_service import IntegrationSyncService

from conftest import link_integration, mock_client

pytestmark = pytest.mark.anyio


def graph_handler(request: httpx.Request) -> httpx.Response:
    """Insights for any account: three campaign/day rows with string spend."""
    if request.url.path.endswith("/insights"):
        return httpx.Response(200, json={"data": [
            {"date_start": "2024-01-01", "spend": "12.50", "impressions": "100", "clicks": "4"},
            {"date_start": "2024-01-02", "spend": "12.50", "impressions": "90", "clicks": "3"},
            {"date_start": "2024-01-03", "spend": "12.50", "impressions": "80", "clicks": "2"},
        ]})
    return httpx.Response(404, json={"error": {"message": "unexpected call"}})


@pytest.fixture
def service(settings, session_factory, cipher, clock, sleeper):
    svc = IntegrationSyncService(
        settings, session_factory, cipher, mock_client(graph_handler), clock=clock, sleep=sleeper,
    )
    clock.now = clock.now.replace(year=2024, month=1, day=3)
    return svc


class TestSyncOperations:
    async def test_manual_sync_then_run(self, service):
        """WHAT: fetch for 2024-01-01..2024-01-03 stores three rows at spend 12.5."""
        link_integration(service.store, "w1", "meta")

        enqueued = await service.enqueue_sync("w1", "meta", timeframe_days=3)
        outcome = await service.run_next_job("w1")

        assert enqueued.scheduled is True
        assert outcome.status == JobStatusEnum.completed
        assert outcome.rows_written == 3
        metrics = await service.list_metrics("w1")
        assert [m.date for m in metrics] == ["2024-01-01", "2024-01-02", "2024-01-03"]
        assert all(m.spend == 12.5 for m in metrics)
        assert (await service.get_integration("w1", "meta")).last_sync_status == SyncStatusEnum.success

    async def test_non_manual_job_types_go_straight_to_queue(self, service):
        link_integration(service.store, "w1", "meta")
        result = await service.enqueue_sync("w1", "meta", job_type=JobTypeEnum.initial_backfill)

        assert result.scheduled is True
        assert service.queue.get_job(result.job_id).job_type == JobTypeEnum.initial_backfill
        # only manual syncs mark the integration pending
        assert (await service.get_integration("w1", "meta")).last_sync_status == SyncStatusEnum.never

    async def test_cron_tick_schedules_and_drains(self, service):
        link_integration(service.store, "w1", "meta")
        link_integration(service.store, "w2", "meta", account_id="act_2")

        summary = await service.run_cron_tick()

        stats = summary.as_dict()
        assert stats["scheduled"] == 2
        assert stats["jobs_run"] == 2
        assert stats["jobs_failed"] == 0
        assert len(await service.list_metrics("w2")) == 3

    async def test_cron_tick_reclaims_stale_jobs(self, service, clock):
        link_integration(service.store, "w1", "meta")
        job_id = (await service.enqueue_sync("w1", "meta")).job_id
        service.queue.claim_next("w1")
        clock.advance(timedelta(minutes=service.settings.SYNC_STALE_JOB_MINUTES + 1))

        summary = await service.run_cron_tick()

        assert summary.reclaimed == 1
        assert service.queue.get_job(job_id).status == JobStatusEnum.completed

    async def test_process_workspaces_respects_budgets(self, service):
        for ws in ("w1", "w2"):
            for provider in ("meta", "google"):
                await service.enqueue_sync(ws, provider)

        outcomes = await service.process_workspaces(["w1", "w2"], max_jobs_per_workspace=1, max_total_jobs=5)
        assert len(outcomes) == 2

        outcomes = await service.process_workspaces(["w1", "w2"], max_jobs_per_workspace=5, max_total_jobs=1)
        assert len(outcomes) == 1

    async def test_process_workspaces_stops_before_time_budget(self, settings, session_factory, cipher, clock, sleeper):
        """WHAT: No job starts unless a full job deadline still fits in the time budget.
        WHY: The host cancels the whole drain at its own timeout; jobs must not be cut mid-run.
        """
        ticks = iter(range(0, 10_000, 300))
        service = IntegrationSyncService(
            settings, session_factory, cipher, mock_client(graph_handler),
            clock=clock, sleep=sleeper, monotonic=lambda: next(ticks),
        )
        for ws in ("w1", "w2"):
            link_integration(service.store, ws, "meta")
            await service.enqueue_sync(ws, "meta")

        # start at t=0; t=300 leaves room for a 540s deadline, t=600 does not
        outcomes = await service.process_workspaces(["w1", "w2"], time_budget_seconds=1000)

        assert len(outcomes) == 1
        assert service.queue.has_pending_sync_job("w2", "meta") is True
        assert service.queue.workspaces_with_queued_jobs() == ["w2"]

    async def test_disconnect_removes_integration_and_pending_jobs(self, service):
        link_integration(service.store, "w1", "meta")
        await service.enqueue_sync("w1", "meta")

        assert await service.disconnect_integration("w1", "meta") is True
        assert await service.get_integration("w1", "meta") is None
        assert service.queue.has_pending_sync_job("w1", "meta") is False
        assert await service.disconnect_integration("w1", "meta") is False

    async def test_cleanup_jobs(self, service, clock):
        link_integration(service.store, "w1", "meta")
        await service.enqueue_sync("w1", "meta")
        await service.run_next_job("w1")
        clock.advance(timedelta(days=service.settings.SYNC_JOB_RETENTION_DAYS + 1))

        assert await service.cleanup_jobs() == 1
