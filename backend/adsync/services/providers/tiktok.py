"""TikTok Business API adapter.

WHAT:
    Integrated campaign/day reports, advertiser listing, token exchange and
    refresh, and ad status updates.

WHY:
    - TikTok answers HTTP 200 for most failures and puts the outcome in a
      body `code` (0 = ok), so success and classification read the body
    - The token rides in an `Access-Token` header, not a bearer header
    - Daily reports accept at most 30 days per request; longer windows are
      walked in 30-day slices, and the cursor carries "<slice start>:<page>"

REFERENCES:
    - https://business-api.tiktok.com/portal/docs?id=1740302848100353
"""

from __future__ import annotations

import json
import logging
from datetime import date, timedelta
from typing import Any, Dict, List, Optional, Tuple

import httpx

from adsync.errors import ConfigurationMissing, UpstreamAuthExpired
from adsync.models import ProviderEnum
from adsync.schemas import ProviderAccount, TimeRange, TokenBundle
from adsync.services.metric_normalizer import TikTokRawRow
from adsync.services.providers.base import AuthRefreshCallback, ProviderAdapter
from adsync.utils.backoff import NO_RETRY_POLICY

logger = logging.getLogger(__name__)

TIKTOK_BASE_URL = "https://business-api.tiktok.com/open_api/v1.3"

REPORT_DIMENSIONS = ["campaign_id", "stat_time_day"]
REPORT_METRICS = ["campaign_name", "spend", "impressions", "clicks", "conversion", "total_complete_payment"]
REPORT_PAGE_SIZE = 200
REPORT_MAX_DAYS = 30
ADVERTISER_INFO_BATCH = 50
ACTIVE_STATUSES = frozenset({"STATUS_ENABLE", "ENABLE", "ACTIVE"})

# Body codes: token problems vs. throttling / server-side trouble
AUTH_ERROR_CODES = frozenset({40001, 40102, 40104, 40105})
THROTTLE_ERROR_CODES = frozenset({40100, 50000, 50002})


def _body(response: Optional[httpx.Response]) -> Dict[str, Any]:
    if response is None:
        return {}
    try:
        body = response.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


def _parse_cursor(cursor: Optional[str], default_start: date) -> Tuple[date, int]:
    if not cursor:
        return default_start, 1
    start, _, page = cursor.partition(":")
    return date.fromisoformat(start), int(page or 1)


class TikTokAdsAdapter(ProviderAdapter):
    provider = ProviderEnum.tiktok
    log_tag = "TIKTOK_ADAPTER"

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        *,
        app_id: Optional[str] = None,
        app_secret: Optional[str] = None,
        **kwargs,
    ):
        super().__init__(http_client, **kwargs)
        self._app_id = app_id
        self._app_secret = app_secret

    def _authorize(self, access_token: str, headers: Dict[str, str], params: Dict[str, Any]) -> None:
        headers["Access-Token"] = access_token

    def _succeeded(self, response: httpx.Response) -> bool:
        return response.is_success and _body(response).get("code", 0) == 0

    def _classify(self, status_code: Optional[int], response: Optional[httpx.Response]) -> str:
        code = _body(response).get("code")
        if code in AUTH_ERROR_CODES:
            return "auth"
        if code in THROTTLE_ERROR_CODES:
            return "transient"
        return super()._classify(status_code, response)

    def _app_credentials(self) -> Tuple[str, str]:
        if not self._app_id or not self._app_secret:
            raise ConfigurationMissing("TIKTOK_APP_ID and TIKTOK_APP_SECRET are required")
        return self._app_id, self._app_secret

    async def fetch_metrics(
        self,
        access_token: str,
        account_id: str,
        time_range: TimeRange,
        cursor: Optional[str] = None,
        on_auth_expired: Optional[AuthRefreshCallback] = None,
    ) -> Tuple[List[TikTokRawRow], Optional[str]]:
        slice_start, page = _parse_cursor(cursor, time_range.since)
        slice_end = min(slice_start + timedelta(days=REPORT_MAX_DAYS - 1), time_range.until)

        response = await self._send(
            "GET",
            f"{TIKTOK_BASE_URL}/report/integrated/get/",
            access_token=access_token,
            on_auth_expired=on_auth_expired,
            operation="report",
            params={
                "advertiser_id": account_id,
                "report_type": "BASIC",
                "data_level": "AUCTION_CAMPAIGN",
                "dimensions": json.dumps(REPORT_DIMENSIONS),
                "metrics": json.dumps(REPORT_METRICS),
                "start_date": slice_start.isoformat(),
                "end_date": slice_end.isoformat(),
                "page": page,
                "page_size": REPORT_PAGE_SIZE,
            },
        )
        data = _body(response).get("data") or {}
        rows = [TikTokRawRow(payload=entry) for entry in data.get("list") or []]

        page_info = data.get("page_info") or {}
        next_cursor = None
        if page < int(page_info.get("total_page") or 1):
            next_cursor = f"{slice_start.isoformat()}:{page + 1}"
        elif slice_end < time_range.until:
            next_cursor = f"{(slice_end + timedelta(days=1)).isoformat()}:1"

        logger.debug(
            "[%s] advertiser %s %s..%s page %d rows=%d",
            self.log_tag, account_id, slice_start, slice_end, page, len(rows),
        )
        return rows, next_cursor

    async def list_accounts(
        self,
        access_token: str,
        on_auth_expired: Optional[AuthRefreshCallback] = None,
    ) -> List[ProviderAccount]:
        app_id, app_secret = self._app_credentials()
        response = await self._send(
            "GET",
            f"{TIKTOK_BASE_URL}/oauth2/advertiser/get/",
            access_token=access_token,
            on_auth_expired=on_auth_expired,
            operation="advertiserGet",
            params={"app_id": app_id, "secret": app_secret},
        )
        listed = (_body(response).get("data") or {}).get("list") or []
        names = {str(entry["advertiser_id"]): entry.get("advertiser_name") for entry in listed if entry.get("advertiser_id")}
        advertiser_ids = list(names)

        accounts: List[ProviderAccount] = []
        for start in range(0, len(advertiser_ids), ADVERTISER_INFO_BATCH):
            batch = advertiser_ids[start:start + ADVERTISER_INFO_BATCH]
            info = await self._send(
                "GET",
                f"{TIKTOK_BASE_URL}/advertiser/info/",
                access_token=access_token,
                on_auth_expired=on_auth_expired,
                operation="advertiserInfo",
                params={
                    "advertiser_ids": json.dumps(batch),
                    "fields": json.dumps(["advertiser_id", "name", "status", "currency"]),
                },
            )
            details = {
                str(entry.get("advertiser_id")): entry
                for entry in (_body(info).get("data") or {}).get("list") or []
            }
            for advertiser_id in batch:
                entry = details.get(advertiser_id, {})
                status = entry.get("status")
                accounts.append(ProviderAccount(
                    id=advertiser_id,
                    name=entry.get("name") or names.get(advertiser_id) or f"TikTok {advertiser_id}",
                    status=status,
                    currency=entry.get("currency"),
                    is_active=status in ACTIVE_STATUSES,
                ))
        return accounts

    def _token_bundle(self, data: Any, operation: str) -> TokenBundle:
        data = self._require_token(data, operation)
        scope = data.get("scope") or []
        return TokenBundle(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token"),
            expires_in=data.get("access_token_expire_in") or data.get("expires_in"),
            refresh_expires_in=data.get("refresh_token_expire_in"),
            scopes=[str(s) for s in scope] if isinstance(scope, list) else str(scope).split(","),
        )

    async def exchange_code(self, code: str, redirect_uri: str) -> TokenBundle:
        app_id, app_secret = self._app_credentials()
        response = await self._send(
            "POST",
            f"{TIKTOK_BASE_URL}/oauth2/access_token/",
            operation="exchangeCode",
            json={"app_id": app_id, "secret": app_secret, "auth_code": code},
            retry_policy=NO_RETRY_POLICY,
        )
        return self._token_bundle(_body(response).get("data"), "exchangeCode")

    async def refresh_access_token(self, access_token: str, refresh_token: Optional[str] = None) -> TokenBundle:
        if not refresh_token:
            raise UpstreamAuthExpired("TikTok integration has no refresh token; reconnect required")
        app_id, app_secret = self._app_credentials()
        # Code 40001 (revoked refresh token) is classified as auth and surfaces as UpstreamAuthExpired
        response = await self._send(
            "POST",
            f"{TIKTOK_BASE_URL}/oauth2/refresh_token/",
            operation="refreshToken",
            json={
                "app_id": app_id,
                "secret": app_secret,
                "refresh_token": refresh_token,
                "grant_type": "refresh_token",
            },
        )
        return self._token_bundle(_body(response).get("data"), "refreshToken")

    async def update_creative_status(
        self,
        access_token: str,
        account_id: str,
        creative_id: str,
        active: bool,
        on_auth_expired: Optional[AuthRefreshCallback] = None,
    ) -> bool:
        status = "ENABLE" if active else "DISABLE"
        await self._send(
            "POST",
            f"{TIKTOK_BASE_URL}/ad/status/update/",
            access_token=access_token,
            on_auth_expired=on_auth_expired,
            operation="adStatusUpdate",
            json={"advertiser_id": account_id, "ad_ids": [creative_id], "operation_status": status},
        )
        logger.info("[%s] Set ad %s on %s to %s", self.log_tag, creative_id, account_id, status)
        return True
