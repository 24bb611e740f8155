"""Google Ads adapter (REST, googleAds:search).

WHAT:
    Campaign/day metrics via GAQL, accessible-customer listing, OAuth token
    refresh, and ad status mutation.

WHY:
    - Every call carries the developer token; manager (MCC) access adds a
      login-customer-id header
    - Pagination is pageToken / nextPageToken
    - cost arrives in micros and must be divided by 1e6 downstream

REFERENCES:
    - https://developers.google.com/google-ads/api/docs/query/overview
    - https://developers.google.com/google-ads/api/rest/reference/rest
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional, Tuple

import httpx

from adsync.errors import ConfigurationMissing, UpstreamAuthExpired, UpstreamRequestRejected
from adsync.models import ProviderEnum
from adsync.schemas import ProviderAccount, TimeRange, TokenBundle
from adsync.services.metric_normalizer import GoogleRawRow
from adsync.services.providers.base import AuthRefreshCallback, ProviderAdapter
from adsync.utils.backoff import NO_RETRY_POLICY

logger = logging.getLogger(__name__)

GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_ADS_BASE_URL = "https://googleads.googleapis.com"

METRICS_QUERY = (
    "SELECT segments.date, campaign.id, campaign.name, "
    "metrics.impressions, metrics.clicks, metrics.cost_micros, "
    "metrics.conversions, metrics.conversions_value "
    "FROM campaign "
    "WHERE segments.date BETWEEN '{since}' AND '{until}'"
)

CUSTOMER_QUERY = (
    "SELECT customer.id, customer.descriptive_name, customer.manager, "
    "customer.currency_code, customer.status FROM customer LIMIT 1"
)


def normalize_customer_id(customer_id: str) -> str:
    """Google UI shows 123-456-7890; the API wants digits only."""
    return "".join(ch for ch in str(customer_id) if ch.isdigit())


class GoogleAdsAdapter(ProviderAdapter):
    provider = ProviderEnum.google
    log_tag = "GOOGLE_ADAPTER"

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        *,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        developer_token: Optional[str] = None,
        login_customer_id: Optional[str] = None,
        api_version: str = "v17",
        **kwargs,
    ):
        super().__init__(http_client, **kwargs)
        self._client_id = client_id
        self._client_secret = client_secret
        self._developer_token = developer_token
        self._login_customer_id = normalize_customer_id(login_customer_id) if login_customer_id else None
        self._base_url = f"{GOOGLE_ADS_BASE_URL}/{api_version}"

    def _ads_headers(self) -> Dict[str, str]:
        if not self._developer_token:
            raise ConfigurationMissing("GOOGLE_DEVELOPER_TOKEN is required for Google Ads API calls")
        headers = {"developer-token": self._developer_token}
        if self._login_customer_id:
            headers["login-customer-id"] = self._login_customer_id
        return headers

    def _oauth_client(self) -> Tuple[str, str]:
        if not self._client_id or not self._client_secret:
            raise ConfigurationMissing("GOOGLE_CLIENT_ID and GOOGLE_CLIENT_SECRET are required")
        return self._client_id, self._client_secret

    async def _search(
        self,
        access_token: str,
        customer_id: str,
        query: str,
        page_token: Optional[str] = None,
        on_auth_expired: Optional[AuthRefreshCallback] = None,
    ) -> Dict[str, Any]:
        body: Dict[str, Any] = {"query": query}
        if page_token:
            body["pageToken"] = page_token
        response = await self._send(
            "POST",
            f"{self._base_url}/customers/{normalize_customer_id(customer_id)}/googleAds:search",
            access_token=access_token,
            on_auth_expired=on_auth_expired,
            operation="search",
            headers=self._ads_headers(),
            json=body,
        )
        return response.json() or {}

    async def fetch_metrics(
        self,
        access_token: str,
        account_id: str,
        time_range: TimeRange,
        cursor: Optional[str] = None,
        on_auth_expired: Optional[AuthRefreshCallback] = None,
    ) -> Tuple[List[GoogleRawRow], Optional[str]]:
        query = METRICS_QUERY.format(since=time_range.since.isoformat(), until=time_range.until.isoformat())
        payload = await self._search(access_token, account_id, query, cursor, on_auth_expired)
        rows = [GoogleRawRow(payload=result) for result in payload.get("results") or []]
        next_cursor = payload.get("nextPageToken") or None
        logger.debug("[%s] customer %s page rows=%d more=%s", self.log_tag, account_id, len(rows), bool(next_cursor))
        return rows, next_cursor

    async def _describe_customer(self, access_token: str, customer_id: str) -> ProviderAccount:
        payload = await self._search(access_token, customer_id, CUSTOMER_QUERY)
        results = payload.get("results") or [{}]
        customer = results[0].get("customer") or {}
        return ProviderAccount(
            id=customer_id,
            name=customer.get("descriptiveName") or f"Google Ads {customer_id}",
            status=customer.get("status"),
            currency=customer.get("currencyCode"),
            is_active=customer.get("status", "ENABLED") == "ENABLED",
            is_manager=bool(customer.get("manager")),
        )

    async def list_accounts(
        self,
        access_token: str,
        on_auth_expired: Optional[AuthRefreshCallback] = None,
    ) -> List[ProviderAccount]:
        response = await self._send(
            "GET",
            f"{self._base_url}/customers:listAccessibleCustomers",
            access_token=access_token,
            on_auth_expired=on_auth_expired,
            operation="listAccessibleCustomers",
            headers=self._ads_headers(),
        )
        resource_names = (response.json() or {}).get("resourceNames") or []
        customer_ids = [name.split("/", 1)[-1] for name in resource_names if name]

        details = await asyncio.gather(
            *(self._describe_customer(access_token, cid) for cid in customer_ids),
            return_exceptions=True,
        )
        accounts: List[ProviderAccount] = []
        for cid, detail in zip(customer_ids, details):
            if isinstance(detail, Exception):
                # Customers the user cannot query directly still show up in the list
                logger.warning("[%s] Could not describe customer %s: %s", self.log_tag, cid, detail)
                accounts.append(ProviderAccount(id=cid, name=f"Google Ads {cid}"))
            else:
                accounts.append(detail)
        return accounts

    async def refresh_access_token(self, access_token: str, refresh_token: Optional[str] = None) -> TokenBundle:
        if not refresh_token:
            raise UpstreamAuthExpired("Google integration has no refresh token; reconnect required")
        client_id, client_secret = self._oauth_client()
        try:
            response = await self._send(
                "POST",
                GOOGLE_TOKEN_URL,
                operation="refreshToken",
                data={
                    "client_id": client_id,
                    "client_secret": client_secret,
                    "refresh_token": refresh_token,
                    "grant_type": "refresh_token",
                },
            )
        except UpstreamRequestRejected as e:
            if isinstance(e.payload, dict) and e.payload.get("error") == "invalid_grant":
                raise UpstreamAuthExpired("Google refresh token revoked or expired; reconnect required") from e
            raise
        payload = self._token_payload(response, "refreshToken")
        return TokenBundle(
            access_token=payload["access_token"],
            refresh_token=payload.get("refresh_token"),
            expires_in=payload.get("expires_in"),
            scopes=(payload.get("scope") or "").split(),
        )

    async def exchange_code(self, code: str, redirect_uri: str) -> TokenBundle:
        client_id, client_secret = self._oauth_client()
        response = await self._send(
            "POST",
            GOOGLE_TOKEN_URL,
            operation="exchangeCode",
            data={
                "code": code,
                "client_id": client_id,
                "client_secret": client_secret,
                "redirect_uri": redirect_uri,
                "grant_type": "authorization_code",
            },
            retry_policy=NO_RETRY_POLICY,
        )
        payload = self._token_payload(response, "exchangeCode")
        return TokenBundle(
            access_token=payload["access_token"],
            refresh_token=payload.get("refresh_token"),
            id_token=payload.get("id_token"),
            expires_in=payload.get("expires_in"),
            scopes=(payload.get("scope") or "").split(),
        )

    async def update_creative_status(
        self,
        access_token: str,
        account_id: str,
        creative_id: str,
        active: bool,
        on_auth_expired: Optional[AuthRefreshCallback] = None,
    ) -> bool:
        """Enable or pause an ad. `creative_id` is the "adGroupId~adId" pair."""
        customer_id = normalize_customer_id(account_id)
        await self._send(
            "POST",
            f"{self._base_url}/customers/{customer_id}/adGroupAds:mutate",
            access_token=access_token,
            on_auth_expired=on_auth_expired,
            operation="adGroupAds:mutate",
            headers=self._ads_headers(),
            json={
                "operations": [
                    {
                        "update": {
                            "resourceName": f"customers/{customer_id}/adGroupAds/{creative_id}",
                            "status": "ENABLED" if active else "PAUSED",
                        },
                        "updateMask": "status",
                    }
                ]
            },
        )
        logger.info("[%s] Set ad %s on %s to %s", self.log_tag, creative_id, customer_id, "ENABLED" if active else "PAUSED")
        return True
