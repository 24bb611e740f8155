"""Integration endpoints.

WHAT:
    Thin HTTP surface over IntegrationSyncService: OAuth state + callback,
    manual sync, queue processing, integration read/delete, metrics listing,
    and the scheduler trigger.

WHY:
    - Routers only parse requests and map errors; all logic lives in the
      service layer, shared with the ARQ worker
    - The workspace id in the path is trusted: authentication happens in
      the surrounding request-routing layer

ERROR MAPPING:
    InvalidState / OAuthExchangeFailed / NoAccountsAvailable -> 400 (message verbatim)
    ConfigurationMissing                                     -> 500
    UpstreamUnavailable / PersistenceUnavailable             -> 503
    UpstreamAuthExpired                                      -> 401
    other SyncEngineError                                    -> 502

REFERENCES:
    - adsync/services/integration_service.py
"""

from __future__ import annotations

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse

from adsync.deps import get_sync_service, verify_cron_secret
from adsync.errors import (
    OAUTH_FLOW_ERRORS,
    ConfigurationMissing,
    PersistenceUnavailable,
    SyncEngineError,
    UpstreamAuthExpired,
    UpstreamUnavailable,
)
from adsync.models import ProviderEnum
from adsync.schemas import (
    EnqueueResult,
    IntegrationRecord,
    JobOutcome,
    ManualSyncRequest,
    MetricFilters,
    NormalizedMetric,
    OAuthResult,
    SyncPreferencesUpdate,
)
from adsync.services.integration_service import IntegrationSyncService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/integrations", tags=["Integrations"])


def error_status(exc: SyncEngineError) -> int:
    if isinstance(exc, OAUTH_FLOW_ERRORS):
        return status.HTTP_400_BAD_REQUEST
    if isinstance(exc, ConfigurationMissing):
        return status.HTTP_500_INTERNAL_SERVER_ERROR
    if isinstance(exc, (UpstreamUnavailable, PersistenceUnavailable)):
        return status.HTTP_503_SERVICE_UNAVAILABLE
    if isinstance(exc, UpstreamAuthExpired):
        return status.HTTP_401_UNAUTHORIZED
    return status.HTTP_502_BAD_GATEWAY


async def sync_engine_error_handler(request: Request, exc: SyncEngineError) -> JSONResponse:
    code = error_status(exc)
    log = logger.warning if code < 500 else logger.error
    log("[INTEGRATIONS] %s %s -> %d %s: %s", request.method, request.url.path, code, type(exc).__name__, exc)
    return JSONResponse(status_code=code, content={"detail": str(exc), "error": type(exc).__name__})


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(SyncEngineError, sync_engine_error_handler)


# --- OAuth -------------------------------------------------------------------

@router.get("/{provider}/authorize-state")
async def authorize_state(
    provider: ProviderEnum,
    workspace_id: str = Query(..., min_length=1),
    redirect: Optional[str] = Query(None),
    client_id: Optional[str] = Query(None),
    service: IntegrationSyncService = Depends(get_sync_service),
) -> dict:
    """Issue a sealed OAuth state for the provider's consent redirect."""
    state = service.oauth.create_state(workspace_id, redirect=redirect, client_id=client_id)
    logger.info("[INTEGRATIONS] Issued %s OAuth state for workspace %s", provider.value, workspace_id)
    return {"provider": provider.value, "state": state}


@router.get("/{provider}/callback", response_model=OAuthResult)
async def oauth_callback(
    provider: ProviderEnum,
    request: Request,
    code: Optional[str] = Query(None),
    state: Optional[str] = Query(None),
    error: Optional[str] = Query(None),
    redirect_uri: Optional[str] = Query(None),
    service: IntegrationSyncService = Depends(get_sync_service),
) -> OAuthResult:
    """Provider redirect target. Completes the flow and schedules a backfill."""
    if error:
        # User cancelled or the provider refused consent
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"{provider.value} authorization failed: {error}")
    callback_url = redirect_uri or str(request.url.replace(query=""))
    return await service.oauth.complete_oauth(provider, code or "", state or "", callback_url)


# --- Scheduler trigger -----------------------------------------------------

@router.post("/cron", dependencies=[Depends(verify_cron_secret)])
async def cron_tick(service: IntegrationSyncService = Depends(get_sync_service)) -> dict:
    summary = await service.run_cron_tick()
    return summary.as_dict()


# --- Workspace-scoped --------------------------------------------------------

@router.get("/{workspace_id}/metrics", response_model=List[NormalizedMetric])
async def list_metrics(
    workspace_id: str,
    filters: MetricFilters = Depends(),
    service: IntegrationSyncService = Depends(get_sync_service),
) -> List[NormalizedMetric]:
    return await service.list_metrics(workspace_id, filters)


@router.post("/{workspace_id}/process", response_model=Optional[JobOutcome], dependencies=[Depends(verify_cron_secret)])
async def process_next_job(
    workspace_id: str,
    service: IntegrationSyncService = Depends(get_sync_service),
) -> Optional[JobOutcome]:
    """Run at most one queued job for the workspace."""
    return await service.run_next_job(workspace_id)


@router.post("/{workspace_id}/{provider}/sync", response_model=EnqueueResult)
async def trigger_sync(
    workspace_id: str,
    provider: ProviderEnum,
    payload: Optional[ManualSyncRequest] = None,
    service: IntegrationSyncService = Depends(get_sync_service),
) -> EnqueueResult:
    payload = payload or ManualSyncRequest()
    integration = await service.get_integration(workspace_id, provider, payload.client_id)
    if integration is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Integration not found")
    logger.info("[INTEGRATIONS] Manual %s sync requested for workspace %s", provider.value, workspace_id)
    return await service.enqueue_sync(workspace_id, provider, payload.client_id, timeframe_days=payload.timeframe_days)


@router.get("/{workspace_id}/{provider}", response_model=IntegrationRecord)
async def get_integration(
    workspace_id: str,
    provider: ProviderEnum,
    client_id: Optional[str] = Query(None),
    service: IntegrationSyncService = Depends(get_sync_service),
) -> IntegrationRecord:
    integration = await service.get_integration(workspace_id, provider, client_id)
    if integration is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Integration not found")
    return integration


@router.patch("/{workspace_id}/{provider}/preferences", response_model=IntegrationRecord)
async def update_preferences(
    workspace_id: str,
    provider: ProviderEnum,
    preferences: SyncPreferencesUpdate,
    client_id: Optional[str] = Query(None),
    service: IntegrationSyncService = Depends(get_sync_service),
) -> IntegrationRecord:
    integration = await service.update_sync_preferences(workspace_id, provider, client_id, preferences)
    if integration is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Integration not found")
    return integration


@router.delete("/{workspace_id}/{provider}")
async def disconnect(
    workspace_id: str,
    provider: ProviderEnum,
    client_id: Optional[str] = Query(None),
    service: IntegrationSyncService = Depends(get_sync_service),
) -> dict:
    deleted = await service.disconnect_integration(workspace_id, provider, client_id)
    if not deleted:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Integration not found")
    return {"deleted": True}
