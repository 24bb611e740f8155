"""Durable sync job queue.

WHAT:
    SyncJob rows move queued -> running -> {completed | failed}. The queue
    guarantees at most one in-flight job per (workspace, provider, client).

WHY:
    - Workers are short-lived invocations, so the queue lives in the database
    - Claiming uses a compare-and-set UPDATE; only the caller whose UPDATE
      matched a still-queued row owns the job, with no application lock
    - Crashed workers leave jobs in `running`; `reclaim_stale_jobs` puts
      them back after a timeout

CLAIM PROTOCOL:
    1. Read the oldest queued job ids for the workspace
    2. UPDATE ... SET status='running' WHERE id=:id AND status='queued'
       AND no other job for the same key is running
    3. rowcount == 1 -> claimed; rowcount == 0 -> someone else won, try next
    4. Candidates lost to other callers are excluded and the next batch is
       read, until a claim succeeds or no queued job is left

    A partial unique index on the key (status queued or running) backs the
    at-most-one rule; an enqueue that loses the insert race is reported as
    already pending.

REFERENCES:
    - adsync/tests/test_sync_queue.py (two-session and threaded claims)
    - adsync/workers/sync_worker.py (consumer)
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Callable, List, Optional
from uuid import UUID

from sqlalchemy import delete, exists, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import aliased, sessionmaker

from adsync.database import session_scope
from adsync.models import (
    Integration,
    JobStatusEnum,
    JobTypeEnum,
    ProviderEnum,
    SyncJob,
    SyncStatusEnum,
    client_key,
    utcnow,
)
from adsync.schemas import EnqueueResult, SyncJobRecord

logger = logging.getLogger(__name__)

PENDING_STATUSES = (JobStatusEnum.queued, JobStatusEnum.running)
TERMINAL_STATUSES = (JobStatusEnum.completed, JobStatusEnum.failed)

# Candidates read per batch; losers of a CAS race move on to the next one.
CLAIM_CANDIDATES = 5

DEFAULT_TIMEFRAME_DAYS = 90


class SyncJobQueue:
    """Queue operations over the `sync_jobs` table."""

    def __init__(self, session_factory: sessionmaker, clock: Callable[[], datetime] = utcnow):
        self._session_factory = session_factory
        self._clock = clock

    def has_pending_sync_job(self, workspace_id: str, provider: ProviderEnum, client_id: Optional[str] = None) -> bool:
        """True when a queued or running job exists for the key."""
        with session_scope(self._session_factory) as db:
            stmt = select(
                exists().where(
                    SyncJob.workspace_id == workspace_id,
                    SyncJob.provider == ProviderEnum(provider),
                    SyncJob.client_id == client_key(client_id),
                    SyncJob.status.in_(PENDING_STATUSES),
                )
            )
            return bool(db.execute(stmt).scalar())

    def enqueue(
        self,
        workspace_id: str,
        provider: ProviderEnum,
        client_id: Optional[str] = None,
        job_type: JobTypeEnum = JobTypeEnum.manual_sync,
        timeframe_days: Optional[int] = None,
    ) -> EnqueueResult:
        """Create a queued job unless one is already pending for the key."""
        provider = ProviderEnum(provider)
        job_type = JobTypeEnum(job_type)
        key = client_key(client_id)

        if self.has_pending_sync_job(workspace_id, provider, key):
            return self._already_pending(job_type, workspace_id, provider, key)

        with session_scope(self._session_factory) as db:
            job = SyncJob(
                workspace_id=workspace_id,
                provider=provider,
                client_id=key,
                job_type=job_type,
                timeframe_days=timeframe_days or DEFAULT_TIMEFRAME_DAYS,
                status=JobStatusEnum.queued,
                created_at=self._clock(),
            )
            db.add(job)
            try:
                db.commit()
            except IntegrityError:
                # Another caller inserted a pending job for the key after our check
                db.rollback()
                return self._already_pending(job_type, workspace_id, provider, key)
            logger.info(
                "[SYNC_QUEUE] Enqueued %s job %s for %s:%s:%s (%d days)",
                job_type.value, job.id, workspace_id, provider.value, key or "-", job.timeframe_days,
            )
            return EnqueueResult(scheduled=True, job_id=job.id)

    def _already_pending(self, job_type: JobTypeEnum, workspace_id: str, provider: ProviderEnum, key: str) -> EnqueueResult:
        logger.info(
            "[SYNC_QUEUE] Skipping %s for %s:%s:%s, job already pending",
            job_type.value, workspace_id, provider.value, key or "-",
        )
        return EnqueueResult(scheduled=False, reason="already_pending")

    def claim_next(self, workspace_id: str) -> Optional[SyncJobRecord]:
        """Atomically move the oldest queued job for the workspace to running.

        Safe under concurrent callers: each candidate is claimed with a
        conditional UPDATE, so exactly one caller sees rowcount == 1.
        """
        now = self._clock()
        running = aliased(SyncJob)
        key_is_busy = (
            select(running.id)
            .where(
                running.workspace_id == SyncJob.workspace_id,
                running.provider == SyncJob.provider,
                running.client_id == SyncJob.client_id,
                running.status == JobStatusEnum.running,
            )
            .correlate(SyncJob)
            .exists()
        )

        tried: List[UUID] = []
        with session_scope(self._session_factory) as db:
            while True:
                stmt = (
                    select(SyncJob.id)
                    .where(
                        SyncJob.workspace_id == workspace_id,
                        SyncJob.status == JobStatusEnum.queued,
                        ~key_is_busy,
                    )
                    .order_by(SyncJob.created_at, SyncJob.id)
                    .limit(CLAIM_CANDIDATES)
                )
                if tried:
                    stmt = stmt.where(SyncJob.id.notin_(tried))
                candidates = db.execute(stmt).scalars().all()
                db.commit()
                if not candidates:
                    return None

                for job_id in candidates:
                    if self._claim_candidate(db, job_id, now, key_is_busy):
                        job = db.get(SyncJob, job_id, populate_existing=True)
                        logger.info("[SYNC_QUEUE] Claimed job %s (%s)", job_id, job.job_type.value)
                        return SyncJobRecord.model_validate(job)
                    tried.append(job_id)

    def _claim_candidate(self, db, job_id: UUID, now: datetime, key_is_busy) -> bool:
        """Compare-and-set one queued job to running; False when another caller won."""
        result = db.execute(
            update(SyncJob)
            .where(
                SyncJob.id == job_id,
                SyncJob.status == JobStatusEnum.queued,
                ~key_is_busy,
            )
            .values(status=JobStatusEnum.running, started_at=now)
            .execution_options(synchronize_session=False)
        )
        db.commit()
        return result.rowcount == 1

    def _finish(self, db, job_id: UUID, status: JobStatusEnum, error_message: Optional[str] = None) -> Optional[SyncJob]:
        result = db.execute(
            update(SyncJob)
            .where(SyncJob.id == job_id, SyncJob.status == JobStatusEnum.running)
            .values(status=status, processed_at=self._clock(), error_message=error_message)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            logger.warning("[SYNC_QUEUE] Job %s is not running; %s ignored", job_id, status.value)
            return None
        return db.get(SyncJob, job_id, populate_existing=True)

    def complete(self, job_id: UUID) -> bool:
        with session_scope(self._session_factory) as db:
            job = self._finish(db, job_id, JobStatusEnum.completed)
            db.commit()
            if job is not None:
                logger.info("[SYNC_QUEUE] Completed job %s", job_id)
            return job is not None

    def fail(self, job_id: UUID, message: str, update_integration: bool = True) -> bool:
        """Mark a running job failed and surface the error on its Integration.

        Args:
            update_integration: False leaves the Integration status untouched
                (used for persistence failures, which say nothing about the
                health of the provider connection).
        """
        with session_scope(self._session_factory) as db:
            job = self._finish(db, job_id, JobStatusEnum.failed, message)
            if job is not None and update_integration:
                db.execute(
                    update(Integration)
                    .where(
                        Integration.workspace_id == job.workspace_id,
                        Integration.provider == job.provider,
                        Integration.client_id == job.client_id,
                    )
                    .values(last_sync_status=SyncStatusEnum.error, last_sync_message=message)
                    .execution_options(synchronize_session=False)
                )
            db.commit()
            if job is not None:
                logger.warning("[SYNC_QUEUE] Failed job %s: %s", job_id, message)
            return job is not None

    def reclaim_stale_jobs(self, max_age_minutes: int = 10) -> int:
        """Return jobs stuck in `running` longer than the cutoff to `queued`."""
        cutoff = self._clock() - timedelta(minutes=max_age_minutes)
        with session_scope(self._session_factory) as db:
            result = db.execute(
                update(SyncJob)
                .where(SyncJob.status == JobStatusEnum.running, SyncJob.started_at < cutoff)
                .values(status=JobStatusEnum.queued, started_at=None)
                .execution_options(synchronize_session=False)
            )
            db.commit()
            if result.rowcount:
                logger.warning("[SYNC_QUEUE] Reclaimed %d stale running job(s)", result.rowcount)
            return result.rowcount

    def cleanup_old_jobs(self, older_than_days: int = 7) -> int:
        """Delete terminal jobs processed before the cutoff."""
        cutoff = self._clock() - timedelta(days=older_than_days)
        with session_scope(self._session_factory) as db:
            result = db.execute(
                delete(SyncJob)
                .where(SyncJob.status.in_(TERMINAL_STATUSES), SyncJob.processed_at < cutoff)
                .execution_options(synchronize_session=False)
            )
            db.commit()
            logger.info("[SYNC_QUEUE] Deleted %d old job(s)", result.rowcount)
            return result.rowcount

    def delete_jobs_for_key(self, workspace_id: str, provider: ProviderEnum, client_id: Optional[str] = None) -> int:
        """Remove queued and running jobs for a key (used on disconnect)."""
        with session_scope(self._session_factory) as db:
            result = db.execute(
                delete(SyncJob)
                .where(
                    SyncJob.workspace_id == workspace_id,
                    SyncJob.provider == ProviderEnum(provider),
                    SyncJob.client_id == client_key(client_id),
                    SyncJob.status.in_(PENDING_STATUSES),
                )
                .execution_options(synchronize_session=False)
            )
            db.commit()
            return result.rowcount

    def workspaces_with_queued_jobs(self, limit: int = 100) -> List[str]:
        with session_scope(self._session_factory) as db:
            return list(
                db.execute(
                    select(SyncJob.workspace_id)
                    .where(SyncJob.status == JobStatusEnum.queued)
                    .group_by(SyncJob.workspace_id)
                    .order_by(SyncJob.workspace_id)
                    .limit(limit)
                ).scalars().all()
            )

    def get_job(self, job_id: UUID) -> Optional[SyncJobRecord]:
        with session_scope(self._session_factory) as db:
            job = db.get(SyncJob, job_id)
            return SyncJobRecord.model_validate(job) if job else None
