"""LinkedIn Marketing API adapter.

WHAT:
    Campaign/day analytics, ad account search, OAuth token exchange and
    refresh, and creative status updates.

WHY:
    - Analytics paginate with start/count offsets; the cursor is the next
      offset as a string
    - Money fields can be plain numbers or {"amount": ...} objects (the
      normalizer copes with both)
    - Access tokens live 60 days and refresh tokens a year, so refresh is
      rarely needed but must work when it is

REFERENCES:
    - https://learn.microsoft.com/linkedin/marketing/integrations/ads-reporting/ads-reporting
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Tuple

import httpx

from adsync.errors import ConfigurationMissing, UpstreamAuthExpired, UpstreamRequestRejected
from adsync.models import ProviderEnum
from adsync.schemas import ProviderAccount, TimeRange, TokenBundle
from adsync.services.metric_normalizer import LinkedInRawRow
from adsync.services.providers.base import AuthRefreshCallback, ProviderAdapter
from adsync.utils.backoff import NO_RETRY_POLICY, RetryPolicy

logger = logging.getLogger(__name__)

LINKEDIN_API_URL = "https://api.linkedin.com/v2"
LINKEDIN_TOKEN_URL = "https://www.linkedin.com/oauth/v2/accessToken"
LINKEDIN_VERSION = "202310"

ANALYTICS_FIELDS = ",".join([
    "dateRange",
    "pivotValue",
    "impressions",
    "clicks",
    "costInLocalCurrency",
    "externalWebsiteConversions",
    "externalWebsiteConversionsValue",
])
ANALYTICS_PAGE_SIZE = 1000


def strip_urn(value: Any) -> str:
    """urn:li:sponsoredAccount:123 -> 123"""
    return str(value).rsplit(":", 1)[-1]


class LinkedInAdsAdapter(ProviderAdapter):
    provider = ProviderEnum.linkedin
    log_tag = "LINKEDIN_ADAPTER"

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        *,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        **kwargs,
    ):
        super().__init__(http_client, **kwargs)
        self._client_id = client_id
        self._client_secret = client_secret

    def _oauth_client(self) -> Tuple[str, str]:
        if not self._client_id or not self._client_secret:
            raise ConfigurationMissing("LINKEDIN_CLIENT_ID and LINKEDIN_CLIENT_SECRET are required")
        return self._client_id, self._client_secret

    async def fetch_metrics(
        self,
        access_token: str,
        account_id: str,
        time_range: TimeRange,
        cursor: Optional[str] = None,
        on_auth_expired: Optional[AuthRefreshCallback] = None,
    ) -> Tuple[List[LinkedInRawRow], Optional[str]]:
        start = int(cursor or 0)
        since, until = time_range.since, time_range.until
        response = await self._send(
            "GET",
            f"{LINKEDIN_API_URL}/adAnalyticsV2",
            access_token=access_token,
            on_auth_expired=on_auth_expired,
            operation="adAnalytics",
            params={
                "q": "analytics",
                "pivot": "CAMPAIGN",
                "timeGranularity": "DAILY",
                "accounts[0]": f"urn:li:sponsoredAccount:{strip_urn(account_id)}",
                "dateRange.start.year": since.year,
                "dateRange.start.month": since.month,
                "dateRange.start.day": since.day,
                "dateRange.end.year": until.year,
                "dateRange.end.month": until.month,
                "dateRange.end.day": until.day,
                "fields": ANALYTICS_FIELDS,
                "start": start,
                "count": ANALYTICS_PAGE_SIZE,
            },
        )
        payload = response.json() or {}
        elements = payload.get("elements") or []
        rows = [LinkedInRawRow(payload=entry, fallback_date=since.isoformat()) for entry in elements]

        paging = payload.get("paging") or {}
        total = paging.get("total")
        next_start = start + len(elements)
        if total is not None:
            has_more = next_start < int(total)
        else:
            has_more = len(elements) >= ANALYTICS_PAGE_SIZE
        next_cursor = str(next_start) if has_more and elements else None

        logger.debug("[%s] account %s start=%d rows=%d more=%s", self.log_tag, account_id, start, len(rows), bool(next_cursor))
        return rows, next_cursor

    async def list_accounts(
        self,
        access_token: str,
        on_auth_expired: Optional[AuthRefreshCallback] = None,
    ) -> List[ProviderAccount]:
        response = await self._send(
            "GET",
            f"{LINKEDIN_API_URL}/adAccountsV2",
            access_token=access_token,
            on_auth_expired=on_auth_expired,
            operation="adAccounts",
            params={"q": "search", "sort.field": "ID", "sort.order": "DESCENDING", "count": 100},
        )
        accounts = []
        for entry in (response.json() or {}).get("elements") or []:
            account_id = strip_urn(entry.get("id"))
            accounts.append(ProviderAccount(
                id=account_id,
                name=entry.get("name") or f"LinkedIn {account_id}",
                status=entry.get("status"),
                currency=entry.get("currency"),
                is_active=entry.get("status") == "ACTIVE",
            ))
        return accounts

    async def _token_request(
        self,
        data: Dict[str, str],
        operation: str,
        retry_policy: Optional[RetryPolicy] = None,
    ) -> TokenBundle:
        try:
            response = await self._send(
                "POST", LINKEDIN_TOKEN_URL, operation=operation, data=data, retry_policy=retry_policy,
            )
        except UpstreamRequestRejected as e:
            if isinstance(e.payload, dict) and e.payload.get("error") == "invalid_grant":
                raise UpstreamAuthExpired("LinkedIn grant invalid or expired; reconnect required") from e
            raise
        payload = self._token_payload(response, operation)
        return TokenBundle(
            access_token=payload["access_token"],
            refresh_token=payload.get("refresh_token"),
            expires_in=payload.get("expires_in"),
            refresh_expires_in=payload.get("refresh_token_expires_in"),
            scopes=[s for s in (payload.get("scope") or "").replace(",", " ").split() if s],
        )

    async def exchange_code(self, code: str, redirect_uri: str) -> TokenBundle:
        client_id, client_secret = self._oauth_client()
        return await self._token_request(
            {
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": redirect_uri,
                "client_id": client_id,
                "client_secret": client_secret,
            },
            "exchangeCode",
            NO_RETRY_POLICY,
        )

    async def refresh_access_token(self, access_token: str, refresh_token: Optional[str] = None) -> TokenBundle:
        if not refresh_token:
            raise UpstreamAuthExpired("LinkedIn integration has no refresh token; reconnect required")
        client_id, client_secret = self._oauth_client()
        return await self._token_request(
            {
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
                "client_id": client_id,
                "client_secret": client_secret,
            },
            "refreshToken",
        )

    async def update_creative_status(
        self,
        access_token: str,
        account_id: str,
        creative_id: str,
        active: bool,
        on_auth_expired: Optional[AuthRefreshCallback] = None,
    ) -> bool:
        status = "ACTIVE" if active else "PAUSED"
        await self._send(
            "POST",
            f"{LINKEDIN_API_URL}/adCreativesV2/urn:li:sponsoredCreative:{strip_urn(creative_id)}",
            access_token=access_token,
            on_auth_expired=on_auth_expired,
            operation="updateCreative",
            headers={
                "X-Restli-Protocol-Version": "2.0.0",
                "Linkedin-Version": LINKEDIN_VERSION,
                "X-HTTP-Method-Override": "PATCH",
            },
            json={"patch": {"$set": {"status": status}}},
        )
        logger.info("[%s] Set creative %s to %s", self.log_tag, creative_id, status)
        return True
