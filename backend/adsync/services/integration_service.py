"""Integration sync service (facade).

WHAT:
    Wires the credential store, queue, writer, refresher, scheduler, OAuth
    controller and job runner together and exposes the operations used by
    the HTTP router and the ARQ worker.

WHY:
    - One object owns the shared HTTP client and the refresh-lock registry,
      so there is no hidden module-level state
    - Database-bound calls run in worker threads; the event loop only ever
      waits on network I/O and backoff sleeps

REFERENCES:
    - adsync/workers/arq_worker.py (cron entry points)
    - adsync/workers/sync_worker.py
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, List, Optional, Sequence

import httpx
from sqlalchemy.orm import sessionmaker

from adsync.database import build_engine, build_session_factory, init_db
from adsync.deps import Settings, get_settings
from adsync.models import JobTypeEnum, ProviderEnum, utcnow
from adsync.schemas import (
    EnqueueResult,
    IntegrationCredentials,
    IntegrationRecord,
    JobOutcome,
    MetricFilters,
    NormalizedMetric,
    SyncPreferencesUpdate,
)
from adsync.security import TokenCipher
from adsync.services.credential_store import CredentialStore
from adsync.services.metrics_writer import MetricsWriter
from adsync.services.oauth_flow import OAuthFlowController
from adsync.services.providers.base import DEFAULT_TIMEOUT, ProviderAdapter, SleepFunc
from adsync.services.providers.registry import build_adapter
from adsync.services.sync_queue import SyncJobQueue
from adsync.services.sync_scheduler import ScheduleSummary, SyncScheduler
from adsync.services.token_refresh import RefreshLockRegistry, TokenRefresher
from adsync.workers.sync_worker import SyncWorker

logger = logging.getLogger(__name__)

MAX_JOBS_PER_WORKSPACE = 3
MAX_TOTAL_JOBS = 25


@dataclass
class CronTickSummary:
    reclaimed: int = 0
    schedule: ScheduleSummary = field(default_factory=ScheduleSummary)
    outcomes: List[JobOutcome] = field(default_factory=list)

    def as_dict(self) -> dict:
        return {
            "reclaimed": self.reclaimed,
            "considered": self.schedule.considered,
            "scheduled": self.schedule.scheduled,
            "not_due": self.schedule.not_due,
            "already_pending": self.schedule.already_pending,
            "jobs_run": len(self.outcomes),
            "jobs_failed": sum(1 for o in self.outcomes if o.error),
        }


class IntegrationSyncService:
    def __init__(
        self,
        settings: Settings,
        session_factory: sessionmaker,
        cipher: TokenCipher,
        http_client: httpx.AsyncClient,
        *,
        clock: Callable[[], datetime] = utcnow,
        sleep: SleepFunc = asyncio.sleep,
        monotonic: Callable[[], float] = time.monotonic,
        owns_http_client: bool = False,
    ):
        self.settings = settings
        self._monotonic = monotonic
        self._http_client = http_client
        self._owns_http_client = owns_http_client
        self._sleep = sleep

        self.store = CredentialStore(session_factory, cipher, clock)
        self.queue = SyncJobQueue(session_factory, clock)
        self.writer = MetricsWriter(session_factory)
        self.refresh_locks = RefreshLockRegistry()
        self.refresher = TokenRefresher(self.store, self.refresh_locks, clock)
        self.scheduler = SyncScheduler(self.store, self.queue, clock)
        self.oauth = OAuthFlowController(cipher, self.store, self.queue, self.adapter_for, clock)
        self.worker = SyncWorker(
            self.queue, self.store, self.writer, self.refresher, self._adapter_for_credentials, clock,
        )

    @classmethod
    def build(cls, settings: Optional[Settings] = None, http_client: Optional[httpx.AsyncClient] = None) -> "IntegrationSyncService":
        """Construct from settings: engine, tables, cipher and HTTP client."""
        settings = settings or get_settings()
        engine = build_engine(settings.DATABASE_URL)
        init_db(engine)
        owns_client = http_client is None
        return cls(
            settings,
            build_session_factory(engine),
            TokenCipher(settings.TOKEN_ENCRYPTION_KEY),
            http_client or httpx.AsyncClient(timeout=DEFAULT_TIMEOUT),
            owns_http_client=owns_client,
        )

    async def aclose(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()

    # --- adapters ------------------------------------------------------------

    def adapter_for(self, provider: ProviderEnum) -> ProviderAdapter:
        return build_adapter(provider, self.settings, self._http_client, sleep=self._sleep)

    def _adapter_for_credentials(self, provider: ProviderEnum, credentials: IntegrationCredentials) -> ProviderAdapter:
        return build_adapter(
            provider,
            self.settings,
            self._http_client,
            developer_token=credentials.developer_token,
            login_customer_id=credentials.login_customer_id,
            sleep=self._sleep,
        )

    # --- consumed operations -------------------------------------------------

    async def enqueue_sync(
        self,
        workspace_id: str,
        provider: ProviderEnum,
        client_id: Optional[str] = None,
        job_type: JobTypeEnum = JobTypeEnum.manual_sync,
        timeframe_days: Optional[int] = None,
    ) -> EnqueueResult:
        job_type = JobTypeEnum(job_type)
        if job_type is JobTypeEnum.manual_sync:
            return await asyncio.to_thread(
                self.scheduler.trigger_manual_sync, workspace_id, provider, client_id, timeframe_days,
            )
        return await asyncio.to_thread(
            self.queue.enqueue, workspace_id, provider, client_id, job_type, timeframe_days,
        )

    async def run_next_job(self, workspace_id: str, deadline_seconds: Optional[float] = None) -> Optional[JobOutcome]:
        if deadline_seconds is None:
            deadline_seconds = self.settings.SYNC_JOB_DEADLINE_SECONDS
        return await self.worker.run_next_job(workspace_id, deadline_seconds)

    async def disconnect_integration(self, workspace_id: str, provider: ProviderEnum, client_id: Optional[str] = None) -> bool:
        """Delete credentials and any queued/running jobs for the key."""
        removed_jobs = await asyncio.to_thread(self.queue.delete_jobs_for_key, workspace_id, provider, client_id)
        deleted = await asyncio.to_thread(self.store.delete_integration, workspace_id, provider, client_id)
        logger.info(
            "[INTEGRATIONS] Disconnected %s:%s:%s (integration=%s, jobs removed=%d)",
            workspace_id, ProviderEnum(provider).value, client_id or "-", deleted, removed_jobs,
        )
        return deleted

    # --- exposed operations --------------------------------------------------

    async def get_integration(self, workspace_id: str, provider: ProviderEnum, client_id: Optional[str] = None) -> Optional[IntegrationRecord]:
        return await asyncio.to_thread(self.store.get_integration, workspace_id, provider, client_id)

    async def list_metrics(self, workspace_id: str, filters: Optional[MetricFilters] = None) -> List[NormalizedMetric]:
        return await asyncio.to_thread(self.writer.list_metrics, workspace_id, filters)

    async def update_sync_preferences(
        self,
        workspace_id: str,
        provider: ProviderEnum,
        client_id: Optional[str],
        preferences: SyncPreferencesUpdate,
    ) -> Optional[IntegrationRecord]:
        return await asyncio.to_thread(self.store.update_sync_preferences, workspace_id, provider, client_id, preferences)

    # --- batch / cron --------------------------------------------------------

    async def process_workspaces(
        self,
        workspace_ids: Sequence[str],
        max_jobs_per_workspace: int = MAX_JOBS_PER_WORKSPACE,
        max_total_jobs: int = MAX_TOTAL_JOBS,
        time_budget_seconds: Optional[float] = None,
    ) -> List[JobOutcome]:
        """Drain several workspaces in one invocation, within job and time budgets.

        A job is only started while a full job deadline still fits in the
        time budget, so the drain ends before the host's own timeout
        (WorkerSettings.job_timeout) can cancel a job mid-run.
        """
        budget = time_budget_seconds or self.settings.SYNC_DRAIN_BUDGET_SECONDS
        deadline = self.settings.SYNC_JOB_DEADLINE_SECONDS
        started = self._monotonic()
        outcomes: List[JobOutcome] = []
        for workspace_id in workspace_ids:
            for _ in range(max_jobs_per_workspace):
                if len(outcomes) >= max_total_jobs:
                    logger.info("[INTEGRATIONS] Job budget of %d reached", max_total_jobs)
                    return outcomes
                elapsed = self._monotonic() - started
                if elapsed + deadline > budget:
                    logger.info(
                        "[INTEGRATIONS] Time budget of %.0fs reached after %d job(s); rest left for the next tick",
                        budget, len(outcomes),
                    )
                    return outcomes
                outcome = await self.run_next_job(workspace_id, deadline)
                if outcome is None:
                    break
                outcomes.append(outcome)
        return outcomes

    async def run_cron_tick(self) -> CronTickSummary:
        """Reclaim stale jobs, schedule due syncs, then drain queues."""
        summary = CronTickSummary()
        summary.reclaimed = await asyncio.to_thread(self.queue.reclaim_stale_jobs, self.settings.SYNC_STALE_JOB_MINUTES)
        summary.schedule = await asyncio.to_thread(self.scheduler.schedule_due_syncs)
        workspaces = await asyncio.to_thread(self.queue.workspaces_with_queued_jobs)
        summary.outcomes = await self.process_workspaces(workspaces)
        logger.info("[INTEGRATIONS] Cron tick: %s", summary.as_dict())
        return summary

    async def cleanup_jobs(self) -> int:
        return await asyncio.to_thread(self.queue.cleanup_old_jobs, self.settings.SYNC_JOB_RETENTION_DAYS)
