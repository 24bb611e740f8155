"""Sync job runner.

WHAT:
    Claims one queued job for a workspace and carries it to a terminal
    state: credentials -> fresh token -> paged fetch -> normalize -> upsert.

WHY:
    - Invocations are short-lived and may run concurrently; the queue's
      compare-and-set claim is the only coordination between them
    - Each job fetches at most MAX_PAGES_PER_JOB pages so one large account
      cannot hold a worker past its deadline
    - Job and Integration status must be truthful after every outcome,
      including timeouts and unexpected exceptions

FAILURE MAPPING:
    PersistenceUnavailable   -> job failed, Integration status untouched
    other SyncEngineError    -> job failed, Integration error + message
    deadline exceeded        -> treated as UpstreamUnavailable
    anything else            -> as above, and reported to Sentry
    cancelled by the host    -> job failed, Integration untouched, re-raised
    job gone at completion   -> rows kept, Integration status not touched

REFERENCES:
    - adsync/services/sync_queue.py (claim / complete / fail)
    - adsync/services/token_refresh.py (ensure_fresh_token, on_auth_expired)
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Callable, List, Optional

from adsync.errors import PersistenceUnavailable, SyncEngineError, UpstreamUnavailable
from adsync.models import JobStatusEnum, ProviderEnum, utcnow
from adsync.schemas import IntegrationCredentials, JobOutcome, NormalizedMetric, SyncJobRecord, TimeRange
from adsync.services.credential_store import CredentialStore
from adsync.services.metric_normalizer import normalize_rows
from adsync.services.metrics_writer import MetricsWriter
from adsync.services.providers.base import ProviderAdapter
from adsync.services.sync_queue import SyncJobQueue
from adsync.services.token_refresh import TokenRefresher
from adsync.telemetry import capture_exception

logger = logging.getLogger(__name__)

MAX_PAGES_PER_JOB = 10
MISSING_CREDENTIALS = "missing credentials"
JOB_CANCELLED = "cancelled before completion"
JOB_SUPERSEDED = "job was no longer running at completion"

AdapterFactory = Callable[[ProviderEnum, IntegrationCredentials], ProviderAdapter]


class SyncWorker:
    def __init__(
        self,
        queue: SyncJobQueue,
        store: CredentialStore,
        writer: MetricsWriter,
        refresher: TokenRefresher,
        adapter_factory: AdapterFactory,
        clock: Callable[[], datetime] = utcnow,
        max_pages: int = MAX_PAGES_PER_JOB,
    ):
        self._queue = queue
        self._store = store
        self._writer = writer
        self._refresher = refresher
        self._adapter_factory = adapter_factory
        self._clock = clock
        self._max_pages = max_pages

    async def run_next_job(self, workspace_id: str, deadline_seconds: Optional[float] = None) -> Optional[JobOutcome]:
        """Process at most one job for the workspace.

        Returns:
            None when nothing was claimable, else the job's outcome.
        """
        job = await asyncio.to_thread(self._queue.claim_next, workspace_id)
        if job is None:
            logger.debug("[SYNC_WORKER] No claimable job for workspace %s", workspace_id)
            return None

        logger.info(
            "[SYNC_WORKER] Running %s job %s for %s:%s:%s (%d days)",
            job.job_type.value, job.id, job.workspace_id, job.provider.value, job.client_id or "-", job.timeframe_days,
        )

        try:
            if deadline_seconds:
                outcome = await asyncio.wait_for(self._execute(job), timeout=deadline_seconds)
            else:
                outcome = await self._execute(job)
        except asyncio.CancelledError:
            # Host cancelled the invocation (e.g. its own job timeout); leave no job in `running`
            logger.warning("[SYNC_WORKER] Job %s cancelled mid-run", job.id)
            await asyncio.to_thread(self._queue.fail, job.id, JOB_CANCELLED, False)
            raise
        except asyncio.TimeoutError:
            error = UpstreamUnavailable(f"deadline exceeded after {deadline_seconds:.0f}s")
            return await self._fail(job, str(error))
        except PersistenceUnavailable as e:
            return await self._fail(job, str(e), update_integration=False)
        except SyncEngineError as e:
            return await self._fail(job, str(e))
        except Exception as e:
            logger.exception("[SYNC_WORKER] Unexpected failure in job %s", job.id)
            capture_exception(e, extra={
                "operation": "run_next_job",
                "job_id": str(job.id),
                "workspace_id": job.workspace_id,
                "provider": job.provider.value,
            })
            return await self._fail(job, f"Unexpected error: {e}")

        completed = await asyncio.to_thread(self._queue.complete, job.id)
        if not completed:
            # Reclaimed, deleted on disconnect, or failed elsewhere while we ran
            logger.warning(
                "[SYNC_WORKER] Job %s was no longer running at completion; Integration status left as is",
                job.id,
            )
            return outcome.model_copy(update={"error": JOB_SUPERSEDED})

        await asyncio.to_thread(
            self._store.record_sync_success,
            job.workspace_id, job.provider, job.client_id,
            f"Synced {outcome.rows_written} rows",
        )
        logger.info(
            "[SYNC_WORKER] Job %s completed: %d rows from %d page(s)",
            job.id, outcome.rows_written, outcome.pages_fetched,
        )
        return outcome

    async def _execute(self, job: SyncJobRecord) -> JobOutcome:
        credentials = await asyncio.to_thread(
            self._store.get_credentials, job.workspace_id, job.provider, job.client_id,
        )
        if credentials is None or not credentials.account_id:
            raise SyncEngineError(MISSING_CREDENTIALS)

        adapter = self._adapter_factory(job.provider, credentials)
        active = self._refresher.bind(adapter, credentials)
        await active.ensure_fresh()

        time_range = TimeRange.last_days(job.timeframe_days, self._clock().date())
        metrics: List[NormalizedMetric] = []
        cursor: Optional[str] = None
        pages = 0

        while pages < self._max_pages:
            rows, cursor = await adapter.fetch_metrics(
                active.access_token,
                credentials.account_id,
                time_range,
                cursor=cursor,
                on_auth_expired=active.on_auth_expired,
            )
            pages += 1
            metrics.extend(normalize_rows(job.provider, rows, job.client_id, credentials.account_id))
            if not cursor:
                break
        else:
            if cursor:
                logger.warning(
                    "[SYNC_WORKER] Job %s stopped at the %d-page cap; remaining pages left for the next sync",
                    job.id, self._max_pages,
                )

        result = await asyncio.to_thread(self._writer.write_batch, job.workspace_id, metrics)
        return JobOutcome(
            job_id=job.id,
            status=JobStatusEnum.completed,
            rows_written=result.written,
            pages_fetched=pages,
        )

    async def _fail(self, job: SyncJobRecord, message: str, update_integration: bool = True) -> JobOutcome:
        await asyncio.to_thread(self._queue.fail, job.id, message, update_integration)
        return JobOutcome(job_id=job.id, status=JobStatusEnum.failed, error=message)
