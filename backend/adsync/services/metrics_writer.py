"""Metrics writer: idempotent, chunked persistence of normalized rows.

WHAT:
    Upserts NormalizedMetric rows into `ad_metrics`, at most 100 per
    statement, keyed by (workspace, provider, account/client, campaign, date).

WHY:
    - Overlapping re-syncs (90-day backfill, then daily syncs) must overwrite
      instead of duplicating
    - Chunking bounds statement size and parameter counts

CONSISTENCY:
    Each chunk commits on its own. If chunk N fails, chunks < N stay
    written and the caller receives PersistenceUnavailable; the next sync
    of the same window overwrites them.

REFERENCES:
    - adsync/database.py (dialect_insert)
"""

from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Sequence, Tuple

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from adsync.database import dialect_insert, session_scope
from adsync.errors import PersistenceUnavailable
from adsync.models import AdMetric, ProviderEnum, client_key, utcnow
from adsync.schemas import MetricFilters, NormalizedMetric, WriteBatchResult

logger = logging.getLogger(__name__)

CHUNK_SIZE = 100

UPSERT_KEY = ("workspace_id", "provider", "account_key", "campaign_id", "date")
UPDATE_COLUMNS = (
    "client_id", "account_id", "campaign_name", "spend", "impressions", "clicks",
    "conversions", "revenue", "creatives", "raw_payload",
)


def _chunks(items: Sequence, size: int) -> Iterable[Sequence]:
    for start in range(0, len(items), size):
        yield items[start:start + size]


def _to_values(workspace_id: str, metric: NormalizedMetric) -> Dict:
    return {
        "workspace_id": workspace_id,
        "provider": metric.provider_id,
        "account_key": client_key(metric.account_id or metric.client_id),
        "client_id": metric.client_id,
        "account_id": metric.account_id,
        "campaign_id": client_key(metric.campaign_id),
        "campaign_name": metric.campaign_name,
        "date": metric.date,
        "spend": metric.spend,
        "impressions": metric.impressions,
        "clicks": metric.clicks,
        "conversions": metric.conversions,
        "revenue": metric.revenue,
        "creatives": [c.model_dump() for c in metric.creatives] or None,
        "raw_payload": metric.raw_payload,
    }


def _dedupe(rows: List[Dict]) -> List[Dict]:
    """Collapse rows sharing an upsert key, last one wins.

    PostgreSQL rejects ON CONFLICT DO UPDATE touching the same row twice in
    one statement.
    """
    by_key: Dict[Tuple, Dict] = {}
    for row in rows:
        by_key[tuple(row[col] for col in UPSERT_KEY)] = row
    return list(by_key.values())


class MetricsWriter:
    """Writes and reads normalized metrics."""

    def __init__(self, session_factory: sessionmaker, chunk_size: int = CHUNK_SIZE):
        self._session_factory = session_factory
        self._chunk_size = chunk_size

    def write_batch(self, workspace_id: str, metrics: Sequence[NormalizedMetric]) -> WriteBatchResult:
        """Upsert metrics in chunks.

        Raises:
            PersistenceUnavailable: A chunk could not be written. Earlier
                chunks remain committed.
        """
        result = WriteBatchResult()
        if not metrics:
            return result

        for chunk in _chunks(list(metrics), self._chunk_size):
            rows = _dedupe([_to_values(workspace_id, m) for m in chunk])
            try:
                with session_scope(self._session_factory) as db:
                    stmt = dialect_insert(db, AdMetric).values(rows)
                    stmt = stmt.on_conflict_do_update(
                        index_elements=list(UPSERT_KEY),
                        set_={
                            **{col: getattr(stmt.excluded, col) for col in UPDATE_COLUMNS},
                            "updated_at": utcnow(),
                        },
                    )
                    db.execute(stmt)
                    db.commit()
            except SQLAlchemyError as e:
                logger.error(
                    "[METRICS_WRITER] Chunk %d failed for workspace %s after %d rows written: %s",
                    result.chunks + 1, workspace_id, result.written, e,
                )
                raise PersistenceUnavailable(f"Metrics store unavailable: {e.__class__.__name__}") from e

            result.written += len(rows)
            result.chunks += 1

        logger.info(
            "[METRICS_WRITER] Upserted %d metric rows for workspace %s in %d chunk(s)",
            result.written, workspace_id, result.chunks,
        )
        return result

    def list_metrics(self, workspace_id: str, filters: MetricFilters | None = None) -> List[NormalizedMetric]:
        filters = filters or MetricFilters()
        stmt = select(AdMetric).where(AdMetric.workspace_id == workspace_id)
        if filters.provider:
            stmt = stmt.where(AdMetric.provider == ProviderEnum(filters.provider))
        if filters.client_id:
            stmt = stmt.where(AdMetric.client_id == filters.client_id)
        if filters.account_id:
            stmt = stmt.where(AdMetric.account_id == filters.account_id)
        if filters.campaign_id:
            stmt = stmt.where(AdMetric.campaign_id == filters.campaign_id)
        if filters.date_from:
            stmt = stmt.where(AdMetric.date >= filters.date_from)
        if filters.date_to:
            stmt = stmt.where(AdMetric.date <= filters.date_to)
        stmt = stmt.order_by(AdMetric.date, AdMetric.provider, AdMetric.campaign_id).limit(filters.limit)

        with session_scope(self._session_factory) as db:
            rows = db.execute(stmt).scalars().all()
            return [
                NormalizedMetric(
                    provider_id=row.provider,
                    client_id=row.client_id,
                    account_id=row.account_id,
                    date=row.date,
                    spend=row.spend,
                    impressions=row.impressions,
                    clicks=row.clicks,
                    conversions=row.conversions,
                    revenue=row.revenue,
                    campaign_id=row.campaign_id,
                    campaign_name=row.campaign_name,
                    creatives=row.creatives or [],
                    raw_payload=row.raw_payload or {},
                )
                for row in rows
            ]
