"""SQLAlchemy ORM models and enums.

Three collections back the sync engine: `integrations` (one encrypted
credential record per workspace/provider/client), `sync_jobs` (the durable
work queue), and `ad_metrics` (normalized daily campaign rows).

Optional key parts (client id, account id, campaign id) are stored as empty
strings instead of NULL so unique constraints behave the same on every
dialect.
"""

import uuid
from datetime import datetime, timezone
import enum

from sqlalchemy import (
    Column, String, DateTime, Enum, Integer, Float, JSON, Text, Boolean,
    UniqueConstraint, Index, text,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.types import TypeDecorator
from sqlalchemy.orm import declarative_base


# Single Base used by the entire application
Base = declarative_base()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _enum_values(obj):
    return [e.value for e in obj]


def client_key(client_id) -> str:
    """Storage form of an optional sub-client id."""
    return (client_id or "").strip()


class UTCDateTime(TypeDecorator):
    """DateTime that always binds and returns timezone-aware UTC values.

    SQLite drops tzinfo on the way back; this puts it back so comparisons
    with `utcnow()` never mix naive and aware datetimes.
    """

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value, dialect):
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value


# Enums ---------------------------------------------------------

class ProviderEnum(str, enum.Enum):
    google = "google"
    meta = "meta"
    tiktok = "tiktok"
    linkedin = "linkedin"


class SyncStatusEnum(str, enum.Enum):
    never = "never"
    pending = "pending"
    success = "success"
    error = "error"


class JobTypeEnum(str, enum.Enum):
    initial_backfill = "initial-backfill"
    scheduled_sync = "scheduled-sync"
    manual_sync = "manual-sync"


class JobStatusEnum(str, enum.Enum):
    queued = "queued"
    running = "running"
    completed = "completed"
    failed = "failed"


# Models --------------------------------------------------------

class Integration(Base):
    """Stored OAuth credential plus sync preferences.

    WHAT:
        One row per (workspace, provider, client). Tokens are Fernet
        ciphertext produced by `TokenCipher.encrypt_secret`.
    WHY:
        The job runner needs credentials and the scheduler needs
        preferences; keeping both on one row makes status updates atomic.
    """
    __tablename__ = "integrations"
    __table_args__ = (
        UniqueConstraint("workspace_id", "provider", "client_id", name="uq_integration_key"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    workspace_id = Column(String, nullable=False, index=True)
    provider = Column(Enum(ProviderEnum, values_callable=_enum_values), nullable=False)
    client_id = Column(String, nullable=False, default="")  # "" when not scoped to a sub-client

    access_token_enc = Column(Text, nullable=False)
    refresh_token_enc = Column(Text, nullable=True)
    id_token_enc = Column(Text, nullable=True)
    scopes = Column(JSON, nullable=False, default=list)

    account_id = Column(String, nullable=True)
    account_name = Column(String, nullable=True)
    # Google manager-hierarchy fields
    developer_token = Column(String, nullable=True)
    login_customer_id = Column(String, nullable=True)

    access_token_expires_at = Column(UTCDateTime(timezone=True), nullable=True)
    refresh_token_expires_at = Column(UTCDateTime(timezone=True), nullable=True)

    last_sync_status = Column(
        Enum(SyncStatusEnum, values_callable=_enum_values),
        nullable=False,
        default=SyncStatusEnum.never,
    )
    last_sync_message = Column(Text, nullable=True)
    last_synced_at = Column(UTCDateTime(timezone=True), nullable=True)
    last_sync_requested_at = Column(UTCDateTime(timezone=True), nullable=True)
    linked_at = Column(UTCDateTime(timezone=True), default=utcnow)

    auto_sync_enabled = Column(Boolean, nullable=False, default=True)
    sync_frequency_minutes = Column(Integer, nullable=False, default=360)
    scheduled_timeframe_days = Column(Integer, nullable=False, default=90)

    updated_at = Column(UTCDateTime(timezone=True), default=utcnow, onupdate=utcnow)

    def __str__(self):
        return f"{self.workspace_id}:{self.provider.value}:{self.client_id or '-'}"


class SyncJob(Base):
    """Queued unit of work: fetch metrics for one integration over a timeframe."""
    __tablename__ = "sync_jobs"
    __table_args__ = (
        Index("ix_sync_jobs_key_status", "workspace_id", "provider", "client_id", "status"),
        # At most one queued or running job per key, enforced by the database
        Index(
            "uq_sync_jobs_pending_key", "workspace_id", "provider", "client_id",
            unique=True,
            sqlite_where=text("status IN ('queued', 'running')"),
            postgresql_where=text("status IN ('queued', 'running')"),
        ),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    workspace_id = Column(String, nullable=False)
    provider = Column(Enum(ProviderEnum, values_callable=_enum_values), nullable=False)
    client_id = Column(String, nullable=False, default="")
    job_type = Column(Enum(JobTypeEnum, values_callable=_enum_values), nullable=False)
    timeframe_days = Column(Integer, nullable=False, default=90)
    status = Column(
        Enum(JobStatusEnum, values_callable=_enum_values),
        nullable=False,
        default=JobStatusEnum.queued,
    )
    created_at = Column(UTCDateTime(timezone=True), nullable=False, default=utcnow)
    started_at = Column(UTCDateTime(timezone=True), nullable=True)
    processed_at = Column(UTCDateTime(timezone=True), nullable=True)
    error_message = Column(Text, nullable=True)

    def __str__(self):
        return f"{self.job_type.value} {self.provider.value} ({self.status.value})"


class AdMetric(Base):
    """Normalized per-day, per-campaign performance row.

    Upsert key: (workspace_id, provider, account_key, campaign_id, date), where
    account_key is the account id, else the client id, else "".
    """
    __tablename__ = "ad_metrics"
    __table_args__ = (
        UniqueConstraint(
            "workspace_id", "provider", "account_key", "campaign_id", "date",
            name="uq_ad_metric_key",
        ),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    workspace_id = Column(String, nullable=False, index=True)
    provider = Column(Enum(ProviderEnum, values_callable=_enum_values), nullable=False)
    account_key = Column(String, nullable=False, default="")
    client_id = Column(String, nullable=True)
    account_id = Column(String, nullable=True)
    campaign_id = Column(String, nullable=False, default="")
    campaign_name = Column(String, nullable=True)
    date = Column(String(10), nullable=False)  # YYYY-MM-DD

    spend = Column(Float, nullable=False, default=0.0)
    impressions = Column(Integer, nullable=False, default=0)
    clicks = Column(Integer, nullable=False, default=0)
    conversions = Column(Float, nullable=False, default=0.0)
    revenue = Column(Float, nullable=True)

    creatives = Column(JSON, nullable=True)
    raw_payload = Column(JSON, nullable=True)  # untouched provider row, kept for audit
    updated_at = Column(UTCDateTime(timezone=True), default=utcnow, onupdate=utcnow)
