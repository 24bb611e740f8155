"""Tests for provider adapters against a mocked HTTP transport.

WHAT:
    The shared request loop (transient backoff, refresh-once, rejection),
    per-provider paging and error shapes, token exchanges and account
    selection.

WHY:
    Adapters are the only code that talks to ad platforms. These tests pin
    the failure discipline without network access or provider credentials.

REFERENCES:
    - adsync/services/providers/base.py (_send policy)
    - adsync/services/providers/{google,meta,tiktok,linkedin}.py
"""

import json
from datetime import date
from urllib.parse import parse_qs

import httpx
import pytest

from adsync.errors import (
    ConfigurationMissing,
    UpstreamAuthExpired,
    UpstreamRequestRejected,
    UpstreamUnavailable,
)
from adsync.models import ProviderEnum
from adsync.schemas import ProviderAccount, TimeRange
from adsync.services.providers.base import pick_preferred_account
from adsync.services.providers.google import GoogleAdsAdapter, normalize_customer_id
from adsync.services.providers.linkedin import LinkedInAdsAdapter, strip_urn
from adsync.services.providers.meta import MetaAdsAdapter, act_id
from adsync.services.providers.registry import build_adapter
from adsync.services.providers.tiktok import TikTokAdsAdapter
from adsync.utils.backoff import OAUTH_RETRY_POLICY, PROVIDER_RETRY_POLICY

from conftest import mock_client

pytestmark = pytest.mark.anyio

MARCH = TimeRange(since=date(2024, 3, 1), until=date(2024, 3, 7))


def _responses(*responses):
    """Handler that replays responses in order and records requests."""
    queue = list(responses)
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        item = queue.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    handler.requests = seen
    return handler


def _meta(handler, sleeper, **kwargs):
    return MetaAdsAdapter(mock_client(handler), app_id="app", app_secret="secret", sleep=sleeper, **kwargs)


def _insights(data=None, after=None):
    body = {"data": data or []}
    if after:
        body["paging"] = {"cursors": {"after": after}, "next": "https://graph.facebook.com/next"}
    return httpx.Response(200, json=body)


class TestRequestLoop:
    """Shared `_send` policy, exercised through the Meta adapter."""

    async def test_transient_failures_back_off_then_succeed(self, sleeper):
        """WHAT: 500, 500, 200 -> success after sleeping 200ms then 400ms.
        WHY: Two extra attempts with 200ms x 2^attempt backoff.
        """
        handler = _responses(httpx.Response(500), httpx.Response(503), _insights())
        rows, cursor = await _meta(handler, sleeper).fetch_metrics("tok", "1", MARCH)

        assert rows == []
        assert cursor is None
        assert len(handler.requests) == 3
        assert sleeper.delays == [pytest.approx(0.2), pytest.approx(0.4)]

    async def test_transient_failures_exhaust_retries(self, sleeper):
        handler = _responses(httpx.Response(429), httpx.Response(500), httpx.Response(502))
        with pytest.raises(UpstreamUnavailable) as exc_info:
            await _meta(handler, sleeper).fetch_metrics("tok", "1", MARCH)

        assert exc_info.value.status_code == 502
        assert len(handler.requests) == PROVIDER_RETRY_POLICY.max_attempts

    async def test_network_errors_are_transient(self, sleeper):
        handler = _responses(httpx.ConnectError("refused"), _insights())
        await _meta(handler, sleeper).fetch_metrics("tok", "1", MARCH)
        assert len(sleeper.delays) == 1

    async def test_auth_failure_refreshes_once_and_retries(self, sleeper):
        """WHAT: A 401 calls on_auth_expired once and retries with the new token."""
        handler = _responses(httpx.Response(401, json={"error": {"message": "expired"}}), _insights())
        refreshed = []

        async def on_auth_expired():
            refreshed.append(True)
            return "fresh-token"

        await _meta(handler, sleeper).fetch_metrics("old-token", "1", MARCH, on_auth_expired=on_auth_expired)

        assert refreshed == [True]
        assert handler.requests[0].url.params["access_token"] == "old-token"
        assert handler.requests[1].url.params["access_token"] == "fresh-token"
        assert sleeper.delays == []

    async def test_second_auth_failure_is_final(self, sleeper):
        handler = _responses(httpx.Response(401), httpx.Response(401))

        async def on_auth_expired():
            return "fresh-token"

        with pytest.raises(UpstreamAuthExpired):
            await _meta(handler, sleeper).fetch_metrics("tok", "1", MARCH, on_auth_expired=on_auth_expired)
        assert len(handler.requests) == 2

    async def test_auth_failure_without_callback(self, sleeper):
        handler = _responses(httpx.Response(403))
        with pytest.raises(UpstreamAuthExpired):
            await _meta(handler, sleeper).fetch_metrics("tok", "1", MARCH)

    async def test_other_client_errors_are_rejected(self, sleeper):
        handler = _responses(httpx.Response(400, json={"error": {"message": "bad field", "code": 100}}))
        with pytest.raises(UpstreamRequestRejected) as exc_info:
            await _meta(handler, sleeper).fetch_metrics("tok", "1", MARCH)

        assert exc_info.value.status_code == 400
        assert "bad field" in str(exc_info.value)
        assert sleeper.delays == []


class TestMetaAdapter:
    async def test_code_190_is_auth_even_on_400(self, sleeper):
        """WHAT: Meta reports expired tokens as HTTP 400 with error code 190."""
        handler = _responses(httpx.Response(400, json={"error": {"code": 190, "type": "OAuthException"}}))
        with pytest.raises(UpstreamAuthExpired):
            await _meta(handler, sleeper).fetch_metrics("tok", "1", MARCH)

    async def test_throttle_codes_are_transient(self, sleeper):
        handler = _responses(
            httpx.Response(400, json={"error": {"code": 17, "type": "OAuthException"}}),
            _insights(),
        )
        await _meta(handler, sleeper).fetch_metrics("tok", "1", MARCH)
        assert len(sleeper.delays) == 1

    async def test_insights_request_shape_and_paging(self, sleeper):
        handler = _responses(_insights([{"date_start": "2024-03-01", "spend": "1"}], after="CURSOR"))
        rows, cursor = await _meta(handler, sleeper).fetch_metrics("tok", "1", MARCH, cursor="PREV")

        request = handler.requests[0]
        assert request.url.path == "/v18.0/act_1/insights"
        assert request.url.params["level"] == "campaign"
        assert request.url.params["time_increment"] == "1"
        assert request.url.params["after"] == "PREV"
        assert json.loads(request.url.params["time_range"]) == {"since": "2024-03-01", "until": "2024-03-07"}
        assert "appsecret_proof" in request.url.params
        assert cursor == "CURSOR"
        assert len(rows) == 1

    async def test_creative_enrichment_failure_does_not_fail_page(self, sleeper):
        def handler(request):
            if request.url.path.endswith("/insights"):
                return _insights([{"campaign_id": "c1", "date_start": "2024-03-01"}, {"campaign_id": "c2", "date_start": "2024-03-01"}])
            if request.url.path.endswith("/c1/ads"):
                return httpx.Response(200, json={"data": [
                    {"id": "ad1", "name": "Hero", "creative": {"object_type": "VIDEO", "thumbnail_url": "https://cdn/t.jpg"}},
                ]})
            return httpx.Response(400, json={"error": {"message": "nope", "code": 100}})

        rows, _ = await _meta(handler, sleeper).fetch_metrics("tok", "1", MARCH)

        assert rows[0].creatives == ({"id": "ad1", "name": "Hero", "type": "video", "url": "https://cdn/t.jpg"},)
        assert rows[1].creatives == ()

    async def test_creative_lookups_use_token_refreshed_by_insights(self, sleeper):
        """WHAT: Insights 401s on "old", refreshes to "new"; the /ads lookups then send "new".
        WHY: Reusing the caller's token would 401 every lookup and silently drop creatives.
        """
        seen = []

        def handler(request):
            token = request.url.params["access_token"]
            seen.append((request.url.path, token))
            if token != "new":
                return httpx.Response(401, json={"error": {"message": "Session has expired", "code": 190}})
            if request.url.path.endswith("/insights"):
                return _insights([{"campaign_id": "c1", "date_start": "2024-03-01"}])
            return httpx.Response(200, json={"data": [{"id": "ad1", "name": "Hero", "creative": {}}]})

        refreshes = []

        async def on_auth_expired():
            refreshes.append("new")
            return "new"

        rows, _ = await _meta(handler, sleeper).fetch_metrics("old", "1", MARCH, on_auth_expired=on_auth_expired)

        assert seen == [
            ("/v18.0/act_1/insights", "old"),
            ("/v18.0/act_1/insights", "new"),
            ("/v18.0/c1/ads", "new"),
        ]
        assert refreshes == ["new"]
        assert rows[0].creatives == ({"id": "ad1", "name": "Hero", "type": "ad", "url": None},)

    async def test_exchange_code_is_sent_once(self, sleeper):
        """WHAT: A 500 on code exchange is not retried.
        WHY: Authorization codes are single-use; a resend is always rejected.
        """
        handler = _responses(httpx.Response(500))
        with pytest.raises(UpstreamUnavailable):
            await _meta(handler, sleeper).exchange_code("abc123", "https://app/callback")
        assert len(handler.requests) == 1
        assert sleeper.delays == []

    @pytest.mark.parametrize("failure", [
        httpx.Response(400, json={"error": {"message": "User request limit reached", "code": 17}}),
        httpx.ConnectError("connection refused"),
    ])
    async def test_extend_token_retries_only_429_and_5xx(self, sleeper, failure):
        """WHAT: Graph throttle codes on HTTP 400 and transport errors end the extension at once."""
        handler = _responses(failure)
        with pytest.raises(UpstreamUnavailable):
            await _meta(handler, sleeper).extend_token("short")
        assert len(handler.requests) == 1
        assert sleeper.delays == []

    async def test_token_response_without_access_token_is_rejected(self, sleeper):
        handler = _responses(httpx.Response(200, json={"error_hint": "token not issued"}))
        with pytest.raises(UpstreamRequestRejected) as exc_info:
            await _meta(handler, sleeper).extend_token("short")
        assert exc_info.value.payload == {"error_hint": "token not issued"}

    async def test_extend_token_retries_with_oauth_policy(self, sleeper):
        """WHAT: Long-lived exchange survives 500, 500 and succeeds on the third try.
        WHY: Delays follow the OAuth policy (500ms base, +/-20% jitter).
        """
        handler = _responses(
            httpx.Response(500),
            httpx.Response(500),
            httpx.Response(200, json={"access_token": "long", "expires_in": 5184000}),
        )
        bundle = await _meta(handler, sleeper).extend_token("short")

        assert bundle.access_token == "long"
        assert bundle.expires_in == 5184000
        assert handler.requests[0].url.params["grant_type"] == "fb_exchange_token"
        assert handler.requests[0].url.params["fb_exchange_token"] == "short"
        assert len(sleeper.delays) == 2
        for attempt, delay in enumerate(sleeper.delays):
            low, high = OAUTH_RETRY_POLICY.bounds_for(attempt)
            assert low <= delay <= high

    async def test_extend_token_requires_app_credentials(self, sleeper):
        adapter = MetaAdsAdapter(mock_client(_responses()), sleep=sleeper)
        with pytest.raises(ConfigurationMissing):
            await adapter.extend_token("short")

    async def test_list_accounts_marks_active_and_prefixes_ids(self, sleeper):
        handler = _responses(httpx.Response(200, json={"data": [
            {"account_id": "1", "name": "Disabled", "account_status": 2},
            {"id": "act_2", "name": "Live", "account_status": 1, "currency": "EUR"},
        ]}))
        accounts = await _meta(handler, sleeper).list_accounts("tok")

        assert [a.id for a in accounts] == ["act_1", "act_2"]
        assert [a.is_active for a in accounts] == [False, True]
        assert pick_preferred_account(accounts).id == "act_2"

    async def test_update_creative_status(self, sleeper):
        handler = _responses(httpx.Response(200, json={"success": True}))
        assert await _meta(handler, sleeper).update_creative_status("tok", "act_1", "ad9", active=False) is True
        assert parse_qs(handler.requests[0].content.decode()) == {"status": ["PAUSED"]}

    def test_act_id(self):
        assert act_id("123") == "act_123"
        assert act_id("act_123") == "act_123"


class TestTikTokAdapter:
    def _adapter(self, handler, sleeper):
        return TikTokAdsAdapter(mock_client(handler), app_id="app", app_secret="secret", sleep=sleeper)

    async def test_nonzero_body_code_on_http_200_is_rejected(self, sleeper):
        """WHAT: HTTP 200 with code != 0 is a failure, not a success."""
        handler = _responses(httpx.Response(200, json={"code": 40002, "message": "invalid advertiser"}))
        with pytest.raises(UpstreamRequestRejected) as exc_info:
            await self._adapter(handler, sleeper).fetch_metrics("tok", "adv1", MARCH)
        assert "invalid advertiser" in str(exc_info.value)

    async def test_auth_body_code_triggers_refresh(self, sleeper):
        handler = _responses(
            httpx.Response(200, json={"code": 40105, "message": "access token expired"}),
            httpx.Response(200, json={"code": 0, "data": {"list": [], "page_info": {"total_page": 1}}}),
        )

        async def on_auth_expired():
            return "fresh"

        await self._adapter(handler, sleeper).fetch_metrics("tok", "adv1", MARCH, on_auth_expired=on_auth_expired)
        assert handler.requests[0].headers["Access-Token"] == "tok"
        assert handler.requests[1].headers["Access-Token"] == "fresh"

    async def test_throttle_body_code_is_transient(self, sleeper):
        handler = _responses(
            httpx.Response(200, json={"code": 50000, "message": "busy"}),
            httpx.Response(200, json={"code": 0, "data": {"list": []}}),
        )
        await self._adapter(handler, sleeper).fetch_metrics("tok", "adv1", MARCH)
        assert sleeper.delays == [pytest.approx(0.2)]

    async def test_long_windows_are_walked_in_30_day_slices(self, sleeper):
        """WHAT: A 45-day window is fetched as 30 days, then the remaining 15."""
        window = TimeRange(since=date(2024, 1, 1), until=date(2024, 2, 14))
        page = {"code": 0, "data": {"list": [{"dimensions": {}, "metrics": {}}], "page_info": {"total_page": 1}}}
        handler = _responses(httpx.Response(200, json=page), httpx.Response(200, json=page))
        adapter = self._adapter(handler, sleeper)

        _, cursor = await adapter.fetch_metrics("tok", "adv1", window)
        assert cursor == "2024-01-31:1"
        _, cursor = await adapter.fetch_metrics("tok", "adv1", window, cursor=cursor)
        assert cursor is None

        first, second = (r.url.params for r in handler.requests)
        assert (first["start_date"], first["end_date"]) == ("2024-01-01", "2024-01-30")
        assert (second["start_date"], second["end_date"]) == ("2024-01-31", "2024-02-14")

    async def test_pages_within_a_slice(self, sleeper):
        page = {"code": 0, "data": {"list": [], "page_info": {"total_page": 2}}}
        handler = _responses(httpx.Response(200, json=page))
        _, cursor = await self._adapter(handler, sleeper).fetch_metrics("tok", "adv1", MARCH)
        assert cursor == "2024-03-01:2"

    async def test_refresh_without_refresh_token(self, sleeper):
        with pytest.raises(UpstreamAuthExpired):
            await self._adapter(_responses(), sleeper).refresh_access_token("tok", None)

    async def test_exchange_code(self, sleeper):
        handler = _responses(httpx.Response(200, json={"code": 0, "data": {
            "access_token": "at", "refresh_token": "rt", "access_token_expire_in": 86400,
            "refresh_token_expire_in": 31536000, "scope": [1, 2],
        }}))
        bundle = await self._adapter(handler, sleeper).exchange_code("code", "https://app/callback")
        assert bundle.access_token == "at"
        assert bundle.refresh_token == "rt"
        assert bundle.expires_in == 86400
        assert bundle.scopes == ["1", "2"]
        assert json.loads(handler.requests[0].content)["auth_code"] == "code"

    async def test_exchange_without_access_token_is_rejected(self, sleeper):
        handler = _responses(httpx.Response(200, json={"code": 0, "data": {"advertiser_ids": ["adv1"]}}))
        with pytest.raises(UpstreamRequestRejected):
            await self._adapter(handler, sleeper).exchange_code("code", "https://app/callback")


class TestGoogleAdapter:
    def _adapter(self, handler, sleeper, **kwargs):
        options = dict(client_id="cid", client_secret="csecret", developer_token="dev", sleep=sleeper)
        options.update(kwargs)
        return GoogleAdsAdapter(mock_client(handler), **options)

    async def test_search_headers_and_page_token(self, sleeper):
        handler = _responses(httpx.Response(200, json={"results": [{"campaign": {"id": "1"}}], "nextPageToken": "NEXT"}))
        adapter = self._adapter(handler, sleeper, login_customer_id="999-000-1111")
        rows, cursor = await adapter.fetch_metrics("tok", "123-456-7890", MARCH, cursor="PREV")

        request = handler.requests[0]
        assert request.url.path == "/v17/customers/1234567890/googleAds:search"
        assert request.headers["developer-token"] == "dev"
        assert request.headers["login-customer-id"] == "9990001111"
        assert request.headers["Authorization"] == "Bearer tok"
        body = json.loads(request.content)
        assert body["pageToken"] == "PREV"
        assert "BETWEEN '2024-03-01' AND '2024-03-07'" in body["query"]
        assert cursor == "NEXT"
        assert len(rows) == 1

    async def test_missing_developer_token(self, sleeper):
        with pytest.raises(ConfigurationMissing):
            await self._adapter(_responses(), sleeper, developer_token=None).fetch_metrics("tok", "1", MARCH)

    async def test_invalid_grant_on_refresh_is_auth_expired(self, sleeper):
        handler = _responses(httpx.Response(400, json={"error": "invalid_grant", "error_description": "Token has been revoked"}))
        with pytest.raises(UpstreamAuthExpired):
            await self._adapter(handler, sleeper).refresh_access_token("tok", "refresh")

    async def test_refresh_returns_bundle(self, sleeper):
        handler = _responses(httpx.Response(200, json={"access_token": "new", "expires_in": 3599, "scope": "a b"}))
        bundle = await self._adapter(handler, sleeper).refresh_access_token("tok", "refresh")
        assert bundle.access_token == "new"
        assert bundle.refresh_token is None
        assert bundle.scopes == ["a", "b"]

    async def test_refresh_without_access_token_is_rejected(self, sleeper):
        handler = _responses(httpx.Response(200, json={"expires_in": 3599}))
        with pytest.raises(UpstreamRequestRejected):
            await self._adapter(handler, sleeper).refresh_access_token("tok", "refresh")

    async def test_exchange_code_is_not_retried(self, sleeper):
        handler = _responses(httpx.Response(503))
        with pytest.raises(UpstreamUnavailable):
            await self._adapter(handler, sleeper).exchange_code("code", "https://app/callback")
        assert len(handler.requests) == 1

    async def test_list_accounts_falls_back_when_customer_lookup_fails(self, sleeper):
        def handler(request):
            if request.url.path.endswith("listAccessibleCustomers"):
                return httpx.Response(200, json={"resourceNames": ["customers/111", "customers/222"]})
            if "/customers/111/" in request.url.path:
                return httpx.Response(200, json={"results": [{"customer": {
                    "descriptiveName": "Manager", "manager": True, "status": "ENABLED",
                }}]})
            return httpx.Response(403, json={"error": {"message": "USER_PERMISSION_DENIED"}})

        accounts = await self._adapter(handler, sleeper).list_accounts("tok")

        assert [a.id for a in accounts] == ["111", "222"]
        assert accounts[0].is_manager is True
        assert accounts[1].name == "Google Ads 222"
        assert pick_preferred_account(accounts).id == "222"

    def test_normalize_customer_id(self):
        assert normalize_customer_id("123-456-7890") == "1234567890"


class TestLinkedInAdapter:
    def _adapter(self, handler, sleeper):
        return LinkedInAdsAdapter(mock_client(handler), client_id="cid", client_secret="secret", sleep=sleeper)

    async def test_offset_paging(self, sleeper):
        handler = _responses(httpx.Response(200, json={
            "elements": [{"impressions": 1}, {"impressions": 2}],
            "paging": {"start": 0, "count": 1000, "total": 3},
        }))
        rows, cursor = await self._adapter(handler, sleeper).fetch_metrics("tok", "urn:li:sponsoredAccount:508", MARCH)

        params = handler.requests[0].url.params
        assert params["accounts[0]"] == "urn:li:sponsoredAccount:508"
        assert params["dateRange.start.day"] == "1"
        assert params["dateRange.end.day"] == "7"
        assert cursor == "2"
        assert rows[0].fallback_date == "2024-03-01"

    async def test_last_page(self, sleeper):
        handler = _responses(httpx.Response(200, json={"elements": [{"impressions": 1}], "paging": {"total": 3}}))
        _, cursor = await self._adapter(handler, sleeper).fetch_metrics("tok", "508", MARCH, cursor="2")
        assert handler.requests[0].url.params["start"] == "2"
        assert cursor is None

    async def test_invalid_grant_on_refresh(self, sleeper):
        handler = _responses(httpx.Response(400, json={"error": "invalid_grant"}))
        with pytest.raises(UpstreamAuthExpired):
            await self._adapter(handler, sleeper).refresh_access_token("tok", "refresh")

    async def test_exchange_without_access_token_is_rejected(self, sleeper):
        handler = _responses(httpx.Response(200, json={"expires_in": 5184000}))
        with pytest.raises(UpstreamRequestRejected):
            await self._adapter(handler, sleeper).exchange_code("code", "https://app/callback")

    async def test_update_creative_status_uses_patch_override(self, sleeper):
        handler = _responses(httpx.Response(204))
        await self._adapter(handler, sleeper).update_creative_status("tok", "508", "urn:li:sponsoredCreative:77", True)

        request = handler.requests[0]
        assert request.url.path.endswith("urn:li:sponsoredCreative:77")
        assert request.headers["X-HTTP-Method-Override"] == "PATCH"
        assert json.loads(request.content) == {"patch": {"$set": {"status": "ACTIVE"}}}

    def test_strip_urn(self):
        assert strip_urn("urn:li:sponsoredAccount:508") == "508"


class TestAccountsAndRegistry:
    def test_pick_preferred_account_order(self):
        accounts = [
            ProviderAccount(id="mgr", name="Manager", is_active=True, is_manager=True),
            ProviderAccount(id="paused", name="Paused"),
            ProviderAccount(id="live", name="Live", is_active=True),
        ]
        assert pick_preferred_account(accounts).id == "live"
        assert pick_preferred_account(accounts[:2]).id == "paused"
        assert pick_preferred_account(accounts[:1]).id == "mgr"
        assert pick_preferred_account([]) is None

    @pytest.mark.parametrize("provider,adapter_cls", [
        (ProviderEnum.google, GoogleAdsAdapter),
        (ProviderEnum.meta, MetaAdsAdapter),
        (ProviderEnum.tiktok, TikTokAdsAdapter),
        (ProviderEnum.linkedin, LinkedInAdsAdapter),
    ])
    def test_build_adapter(self, settings, provider, adapter_cls):
        adapter = build_adapter(provider, settings, mock_client(_responses()))
        assert isinstance(adapter, adapter_cls)
        assert adapter.provider is provider
