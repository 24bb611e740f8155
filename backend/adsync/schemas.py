"""Pydantic schemas shared by services, workers, and routers."""

from datetime import date, datetime, timedelta
from uuid import UUID
from typing import Annotated, Optional, List, Any, Dict

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field

from .models import ProviderEnum, SyncStatusEnum, JobTypeEnum, JobStatusEnum


def _blank_to_none(value):
    return value or None


# Key parts stored as "" in the database surface as None
OptionalKey = Annotated[Optional[str], BeforeValidator(_blank_to_none)]


# --- OAuth -------------------------------------------------------------------

class OAuthStatePayload(BaseModel):
    """Sealed into the OAuth `state` query parameter.

    Serialized with camelCase keys (`clientId`, `createdAt`); createdAt is
    epoch milliseconds.
    """

    state: str = Field(description="Context id (workspace) the flow was started for")
    redirect: Optional[str] = None
    client_id: Optional[str] = Field(default=None, alias="clientId")
    created_at: int = Field(alias="createdAt")

    model_config = ConfigDict(populate_by_name=True)


class TokenBundle(BaseModel):
    """Tokens returned by a code exchange, extension, or refresh."""

    access_token: str
    refresh_token: Optional[str] = None
    id_token: Optional[str] = None
    expires_in: Optional[int] = None  # seconds
    refresh_expires_in: Optional[int] = None  # seconds
    scopes: List[str] = Field(default_factory=list)


class ProviderAccount(BaseModel):
    """Ad account visible to the authorized user."""

    id: str
    name: str
    status: Optional[str] = None
    currency: Optional[str] = None
    is_active: bool = False
    is_manager: bool = False


class OAuthResult(BaseModel):
    integration: "IntegrationRecord"
    account: ProviderAccount
    job_scheduled: bool
    redirect: Optional[str] = None
    state_replayed: bool = False


# --- Metrics -----------------------------------------------------------------

class TimeRange(BaseModel):
    """Inclusive date window for a metrics fetch."""

    since: date
    until: date

    @classmethod
    def last_days(cls, days: int, today: date) -> "TimeRange":
        """Window of `days` days ending today (today counts as one)."""
        return cls(since=today - timedelta(days=max(0, days - 1)), until=today)


class Creative(BaseModel):
    id: str
    name: str
    type: str
    url: Optional[str] = None
    spend: Optional[float] = None
    impressions: Optional[int] = None
    clicks: Optional[int] = None
    conversions: Optional[float] = None
    revenue: Optional[float] = None


class NormalizedMetric(BaseModel):
    """Canonical per-day, per-campaign record shared by all providers."""

    provider_id: ProviderEnum
    client_id: OptionalKey = None
    account_id: OptionalKey = None
    date: str = Field(description="YYYY-MM-DD")
    spend: float = 0.0
    impressions: int = 0
    clicks: int = 0
    conversions: float = 0.0
    revenue: Optional[float] = None
    campaign_id: OptionalKey = None
    campaign_name: Optional[str] = None
    creatives: List[Creative] = Field(default_factory=list)
    raw_payload: Dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(from_attributes=True)


class MetricFilters(BaseModel):
    provider: Optional[ProviderEnum] = None
    client_id: Optional[str] = None
    account_id: Optional[str] = None
    campaign_id: Optional[str] = None
    date_from: Optional[str] = None
    date_to: Optional[str] = None
    limit: int = Field(default=1000, ge=1, le=10000)


class WriteBatchResult(BaseModel):
    written: int = 0
    chunks: int = 0


# --- Integrations & jobs -----------------------------------------------------

class IntegrationRecord(BaseModel):
    """Integration as exposed to callers. Never carries token material."""

    id: UUID
    workspace_id: str
    provider: ProviderEnum
    client_id: OptionalKey = None
    scopes: List[str] = Field(default_factory=list)
    account_id: Optional[str] = None
    account_name: Optional[str] = None
    login_customer_id: Optional[str] = None
    access_token_expires_at: Optional[datetime] = None
    refresh_token_expires_at: Optional[datetime] = None
    last_sync_status: SyncStatusEnum
    last_sync_message: Optional[str] = None
    last_synced_at: Optional[datetime] = None
    last_sync_requested_at: Optional[datetime] = None
    linked_at: Optional[datetime] = None
    auto_sync_enabled: bool = True
    sync_frequency_minutes: int = 360
    scheduled_timeframe_days: int = 90

    model_config = ConfigDict(from_attributes=True)


class IntegrationCredentials(BaseModel):
    """Decrypted credentials handed to adapters. Kept in memory only."""

    integration_id: UUID
    workspace_id: str
    provider: ProviderEnum
    client_id: Optional[str] = None
    account_id: Optional[str] = None
    access_token: str
    refresh_token: Optional[str] = None
    developer_token: Optional[str] = None
    login_customer_id: Optional[str] = None
    access_token_expires_at: Optional[datetime] = None
    refresh_token_expires_at: Optional[datetime] = None

    def __repr__(self) -> str:
        return f"IntegrationCredentials({self.workspace_id}:{self.provider.value}:{self.client_id or '-'})"

    __str__ = __repr__


class SyncPreferencesUpdate(BaseModel):
    auto_sync_enabled: Optional[bool] = None
    sync_frequency_minutes: Optional[int] = Field(default=None, ge=5, le=1440)
    scheduled_timeframe_days: Optional[int] = Field(default=None, ge=1, le=365)


class SyncJobRecord(BaseModel):
    id: UUID
    workspace_id: str
    provider: ProviderEnum
    client_id: OptionalKey = None
    job_type: JobTypeEnum
    timeframe_days: int
    status: JobStatusEnum
    created_at: datetime
    started_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None
    error_message: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class EnqueueResult(BaseModel):
    scheduled: bool
    job_id: Optional[UUID] = None
    reason: Optional[str] = None


class JobOutcome(BaseModel):
    job_id: UUID
    status: JobStatusEnum
    rows_written: int = 0
    pages_fetched: int = 0
    error: Optional[str] = None


class ManualSyncRequest(BaseModel):
    client_id: Optional[str] = None
    timeframe_days: Optional[int] = Field(default=None, ge=1, le=365)


OAuthResult.model_rebuild()
