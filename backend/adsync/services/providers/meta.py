"""Meta (Facebook) Marketing API adapter.

WHAT:
    Campaign/day insights with cursor paging, ad account listing,
    long-lived token exchange, and ad status updates.

WHY:
    - Meta has no refresh tokens. "Refreshing" means re-running the
      fb_exchange_token grant while the current token is still valid
    - Expired tokens come back as HTTP 400 with error code 190, not 401,
      so `_classify` reads the error body
    - Every call is signed with appsecret_proof when the app secret is known

REFERENCES:
    - https://developers.facebook.com/docs/marketing-api/insights
    - https://developers.facebook.com/docs/graph-api/guides/error-handling
    - https://developers.facebook.com/docs/graph-api/securing-requests
"""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import json
import logging
from typing import Any, Dict, List, Mapping, Optional, Tuple

import httpx

from adsync.errors import ConfigurationMissing
from adsync.models import ProviderEnum
from adsync.schemas import ProviderAccount, TimeRange, TokenBundle
from adsync.services.metric_normalizer import MetaRawRow
from adsync.services.providers.base import AuthRefreshCallback, ProviderAdapter, RefreshingToken
from adsync.utils.backoff import NO_RETRY_POLICY, OAUTH_RETRY_POLICY, RetryPolicy

logger = logging.getLogger(__name__)

GRAPH_BASE_URL = "https://graph.facebook.com"

INSIGHTS_FIELDS = ",".join([
    "account_id",
    "campaign_id",
    "campaign_name",
    "date_start",
    "date_stop",
    "spend",
    "impressions",
    "clicks",
    "actions",
    "action_values",
])

INSIGHTS_PAGE_SIZE = 500

# Only the first N campaigns of a page get creative details
CREATIVE_ENRICHMENT_LIMIT = 20

# Graph error codes: 190 = invalid/expired token; 4/17/32/613 = rate limits
AUTH_ERROR_CODES = frozenset({190})
THROTTLE_ERROR_CODES = frozenset({4, 17, 32, 613})


def act_id(account_id: str) -> str:
    account_id = str(account_id)
    return account_id if account_id.startswith("act_") else f"act_{account_id}"


class MetaAdsAdapter(ProviderAdapter):
    provider = ProviderEnum.meta
    log_tag = "META_ADAPTER"

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        *,
        app_id: Optional[str] = None,
        app_secret: Optional[str] = None,
        graph_version: str = "v18.0",
        **kwargs,
    ):
        super().__init__(http_client, **kwargs)
        self._app_id = app_id
        self._app_secret = app_secret
        self._base_url = f"{GRAPH_BASE_URL}/{graph_version}"

    def _authorize(self, access_token: str, headers: Dict[str, str], params: Dict[str, Any]) -> None:
        params["access_token"] = access_token
        if self._app_secret:
            params["appsecret_proof"] = hmac.new(
                self._app_secret.encode("utf-8"),
                access_token.encode("utf-8"),
                hashlib.sha256,
            ).hexdigest()

    def _classify(self, status_code: Optional[int], response: Optional[httpx.Response]) -> str:
        error: Mapping[str, Any] = {}
        if response is not None:
            try:
                body = response.json()
            except ValueError:
                body = None
            if isinstance(body, dict) and isinstance(body.get("error"), dict):
                error = body["error"]

        code = error.get("code")
        if code in AUTH_ERROR_CODES or (error.get("type") == "OAuthException" and code not in THROTTLE_ERROR_CODES):
            return "auth"
        if code in THROTTLE_ERROR_CODES:
            return "transient"
        return super()._classify(status_code, response)

    def _app_credentials(self) -> Tuple[str, str]:
        if not self._app_id or not self._app_secret:
            raise ConfigurationMissing("META_APP_ID and META_APP_SECRET are required")
        return self._app_id, self._app_secret

    # --- metrics -------------------------------------------------------------

    async def fetch_metrics(
        self,
        access_token: str,
        account_id: str,
        time_range: TimeRange,
        cursor: Optional[str] = None,
        on_auth_expired: Optional[AuthRefreshCallback] = None,
    ) -> Tuple[List[MetaRawRow], Optional[str]]:
        params: Dict[str, Any] = {
            "level": "campaign",
            "time_increment": 1,
            "fields": INSIGHTS_FIELDS,
            "limit": INSIGHTS_PAGE_SIZE,
            "time_range": json.dumps({
                "since": time_range.since.isoformat(),
                "until": time_range.until.isoformat(),
            }),
        }
        if cursor:
            params["after"] = cursor

        token = RefreshingToken(access_token, on_auth_expired)
        response = await self._send(
            "GET",
            f"{self._base_url}/{act_id(account_id)}/insights",
            access_token=token.value,
            on_auth_expired=token.on_auth_expired,
            operation="insights",
            params=params,
        )
        payload = response.json() or {}
        data = payload.get("data") or []

        paging = payload.get("paging") or {}
        next_cursor = None
        if paging.get("next"):
            next_cursor = (paging.get("cursors") or {}).get("after")

        creatives = await self._campaign_creatives(token, data)
        rows = [
            MetaRawRow(payload=entry, creatives=tuple(creatives.get(str(entry.get("campaign_id")), ())))
            for entry in data
        ]
        logger.debug("[%s] %s page rows=%d more=%s", self.log_tag, account_id, len(rows), bool(next_cursor))
        return rows, next_cursor

    async def _campaign_creatives(self, token: RefreshingToken, data: List[Mapping[str, Any]]) -> Dict[str, List[Dict[str, Any]]]:
        """Best-effort ad/creative lookup for the first campaigns of a page."""
        campaign_ids: List[str] = []
        for entry in data:
            campaign_id = entry.get("campaign_id")
            if campaign_id and str(campaign_id) not in campaign_ids:
                campaign_ids.append(str(campaign_id))
        campaign_ids = campaign_ids[:CREATIVE_ENRICHMENT_LIMIT]
        if not campaign_ids:
            return {}

        results = await asyncio.gather(
            *(self._ads_for_campaign(token, cid) for cid in campaign_ids),
            return_exceptions=True,
        )
        creatives: Dict[str, List[Dict[str, Any]]] = {}
        for campaign_id, result in zip(campaign_ids, results):
            if isinstance(result, Exception):
                # Enrichment never fails the page
                logger.warning("[%s] Creative lookup failed for campaign %s: %s", self.log_tag, campaign_id, result)
                continue
            creatives[campaign_id] = result
        return creatives

    async def _ads_for_campaign(self, token: RefreshingToken, campaign_id: str) -> List[Dict[str, Any]]:
        response = await self._send(
            "GET",
            f"{self._base_url}/{campaign_id}/ads",
            access_token=token.value,
            on_auth_expired=token.on_auth_expired,
            operation="ads",
            params={"fields": "id,name,creative{id,thumbnail_url,object_type}", "limit": 25},
        )
        out = []
        for ad in (response.json() or {}).get("data") or []:
            creative = ad.get("creative") or {}
            out.append({
                "id": str(ad.get("id") or ""),
                "name": ad.get("name") or "",
                "type": (creative.get("object_type") or "ad").lower(),
                "url": creative.get("thumbnail_url"),
            })
        return out

    # --- accounts & tokens ---------------------------------------------------

    async def list_accounts(
        self,
        access_token: str,
        on_auth_expired: Optional[AuthRefreshCallback] = None,
    ) -> List[ProviderAccount]:
        response = await self._send(
            "GET",
            f"{self._base_url}/me/adaccounts",
            access_token=access_token,
            on_auth_expired=on_auth_expired,
            operation="adaccounts",
            params={"fields": "id,account_id,name,account_status,currency", "limit": 100},
        )
        accounts = []
        for entry in (response.json() or {}).get("data") or []:
            account_id = act_id(entry.get("account_id") or entry.get("id"))
            accounts.append(ProviderAccount(
                id=account_id,
                name=entry.get("name") or account_id,
                status=str(entry.get("account_status")) if entry.get("account_status") is not None else None,
                currency=entry.get("currency"),
                # account_status 1 = ACTIVE
                is_active=entry.get("account_status") == 1,
            ))
        return accounts

    async def _exchange(self, params: Dict[str, Any], operation: str, retry_policy: RetryPolicy) -> TokenBundle:
        response = await self._send(
            "GET",
            f"{self._base_url}/oauth/access_token",
            operation=operation,
            params=params,
            retry_policy=retry_policy,
        )
        payload = self._token_payload(response, operation)
        return TokenBundle(access_token=payload["access_token"], expires_in=payload.get("expires_in"))

    async def exchange_code(self, code: str, redirect_uri: str) -> TokenBundle:
        app_id, app_secret = self._app_credentials()
        return await self._exchange(
            {"client_id": app_id, "client_secret": app_secret, "redirect_uri": redirect_uri, "code": code},
            "exchangeCode",
            NO_RETRY_POLICY,
        )

    async def extend_token(self, access_token: str) -> Optional[TokenBundle]:
        """Short-lived (~1-2h) user token -> long-lived (~60 day) token."""
        app_id, app_secret = self._app_credentials()
        bundle = await self._exchange(
            {
                "grant_type": "fb_exchange_token",
                "client_id": app_id,
                "client_secret": app_secret,
                "fb_exchange_token": access_token,
            },
            "extendToken",
            OAUTH_RETRY_POLICY,
        )
        logger.info("[%s] Extended token, expires_in=%s", self.log_tag, bundle.expires_in)
        return bundle

    async def refresh_access_token(self, access_token: str, refresh_token: Optional[str] = None) -> TokenBundle:
        # A still-valid long-lived token can be exchanged for a fresh one
        return await self.extend_token(access_token)

    async def update_creative_status(
        self,
        access_token: str,
        account_id: str,
        creative_id: str,
        active: bool,
        on_auth_expired: Optional[AuthRefreshCallback] = None,
    ) -> bool:
        status = "ACTIVE" if active else "PAUSED"
        response = await self._send(
            "POST",
            f"{self._base_url}/{creative_id}",
            access_token=access_token,
            on_auth_expired=on_auth_expired,
            operation="updateAdStatus",
            data={"status": status},
        )
        success = bool((response.json() or {}).get("success", True))
        logger.info("[%s] Set ad %s to %s (success=%s)", self.log_tag, creative_id, status, success)
        return success
