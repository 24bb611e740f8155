"""Sync scheduler service.

WHAT:
    Decides which integrations are due for a scheduled sync and enqueues
    them; also the entry point for user-triggered manual syncs.

WHY:
    - Each integration carries its own cadence (sync_frequency_minutes) and
      window (scheduled_timeframe_days), so due-ness is evaluated per row
      rather than with one fixed cron per provider
    - The cron tick runs every 15 minutes; an integration requested within
      half its frequency is skipped so slow jobs are not stacked up
    - Enqueue is deduplicated by the queue, so calling this twice is safe

DUE-NESS:
    auto_sync_enabled
    AND (last_synced_at is None OR now - last_synced_at >= frequency)
    AND NOT (last_sync_requested_at within frequency / 2)

REFERENCES:
    - adsync/services/sync_queue.py (dedup + enqueue)
    - adsync/workers/arq_worker.py (scheduled_sync_tick)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from adsync.models import JobTypeEnum, ProviderEnum, utcnow
from adsync.schemas import EnqueueResult, IntegrationRecord
from adsync.services.credential_store import CredentialStore
from adsync.services.sync_queue import SyncJobQueue

logger = logging.getLogger(__name__)


@dataclass
class ScheduleSummary:
    considered: int = 0
    scheduled: int = 0
    not_due: int = 0
    already_pending: int = 0
    job_ids: List[str] = field(default_factory=list)


def is_due(integration: IntegrationRecord, now: datetime) -> bool:
    if not integration.auto_sync_enabled:
        return False

    frequency = timedelta(minutes=integration.sync_frequency_minutes)

    requested_at = integration.last_sync_requested_at
    if requested_at is not None and now - requested_at < frequency / 2:
        return False

    synced_at = integration.last_synced_at
    return synced_at is None or now - synced_at >= frequency


class SyncScheduler:
    def __init__(
        self,
        store: CredentialStore,
        queue: SyncJobQueue,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._store = store
        self._queue = queue
        self._clock = clock

    def is_due(self, integration: IntegrationRecord, now: Optional[datetime] = None) -> bool:
        return is_due(integration, now or self._clock())

    def schedule_due_syncs(self) -> ScheduleSummary:
        """Enqueue a scheduled-sync for every due integration."""
        now = self._clock()
        summary = ScheduleSummary()

        for integration in self._store.list_auto_sync_integrations():
            summary.considered += 1
            if not is_due(integration, now):
                summary.not_due += 1
                continue

            result = self._queue.enqueue(
                integration.workspace_id,
                integration.provider,
                integration.client_id,
                job_type=JobTypeEnum.scheduled_sync,
                timeframe_days=integration.scheduled_timeframe_days,
            )
            if result.scheduled:
                self._store.mark_sync_requested(integration.workspace_id, integration.provider, integration.client_id)
                summary.scheduled += 1
                summary.job_ids.append(str(result.job_id))
            else:
                summary.already_pending += 1

        logger.info(
            "[SCHEDULER] Tick: %d integrations, %d scheduled, %d not due, %d already pending",
            summary.considered, summary.scheduled, summary.not_due, summary.already_pending,
        )
        return summary

    def trigger_manual_sync(
        self,
        workspace_id: str,
        provider: ProviderEnum,
        client_id: Optional[str] = None,
        timeframe_days: Optional[int] = None,
    ) -> EnqueueResult:
        """User-requested sync. Ignores due-ness; the queue still dedups."""
        result = self._queue.enqueue(
            workspace_id,
            provider,
            client_id,
            job_type=JobTypeEnum.manual_sync,
            timeframe_days=timeframe_days,
        )
        if result.scheduled:
            self._store.mark_sync_requested(workspace_id, provider, client_id)
        return result
