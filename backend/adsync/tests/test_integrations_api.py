"""HTTP tests for the integrations router.

WHAT:
    OAuth state + callback over HTTP, manual sync, queue processing, metric
    listing, preferences, disconnect, cron secret enforcement and the
    SyncEngineError -> status code mapping.

WHY:
    The router is thin, but its error mapping and auth checks are the
    contract the dashboard and the scheduler rely on.

REFERENCES:
    - adsync/routers/integrations.py (module under test)
    - adsync/main.py (create_app)
"""

import httpx
import pytest
from fastapi.testclient import TestClient

from adsync.errors import (
    ConfigurationMissing,
    InvalidState,
    NoAccountsAvailable,
    OAuthExchangeFailed,
    PersistenceUnavailable,
    SyncEngineError,
    UpstreamAuthExpired,
    UpstreamRequestRejected,
    UpstreamUnavailable,
)
from adsync.main import create_app
from adsync.routers.integrations import error_status
from adsync.services.integration_service import IntegrationSyncService

from conftest import mock_client

CRON_HEADERS = {"X-Cron-Secret": "cron-secret"}


def graph_handler(request: httpx.Request) -> httpx.Response:
    """Mock Graph API covering the OAuth flow and insights."""
    path = request.url.path
    if path.endswith("/oauth/access_token"):
        if request.url.params.get("code") == "bad-code":
            return httpx.Response(400, json={"error": {"message": "Invalid verification code", "code": 100}})
        return httpx.Response(200, json={"access_token": "tok", "expires_in": 5184000})
    if path.endswith("/me/adaccounts"):
        return httpx.Response(200, json={"data": [{"account_id": "1", "name": "Main", "account_status": 1}]})
    if path.endswith("/insights"):
        return httpx.Response(200, json={"data": [
            {"date_start": "2024-03-14", "spend": "12.50", "impressions": "100"},
            {"date_start": "2024-03-15", "spend": "7.25", "impressions": "50"},
        ]})
    return httpx.Response(404)


@pytest.fixture
def service(settings, session_factory, cipher, clock, sleeper):
    return IntegrationSyncService(settings, session_factory, cipher, mock_client(graph_handler), clock=clock, sleep=sleeper)


@pytest.fixture
def client(settings, service):
    app = create_app(settings, sync_service=service)
    with TestClient(app) as test_client:
        yield test_client


def _connect(client, workspace_id="w1"):
    state = client.get("/integrations/meta/authorize-state", params={"workspace_id": workspace_id}).json()["state"]
    return client.get("/integrations/meta/callback", params={
        "code": "abc123",
        "state": state,
        "redirect_uri": "https://app.example.com/callback",
    })


class TestOAuthEndpoints:
    def test_callback_links_integration(self, client):
        response = _connect(client)

        assert response.status_code == 200
        body = response.json()
        assert body["account"]["id"] == "act_1"
        assert body["job_scheduled"] is True
        assert body["integration"]["last_sync_status"] == "never"
        assert "tok" not in body["integration"].values()
        assert "access_token_enc" not in body["integration"]

    def test_invalid_state_is_400(self, client):
        response = client.get("/integrations/meta/callback", params={"code": "abc123", "state": "garbage"})
        assert response.status_code == 400
        assert response.json()["error"] == "InvalidState"

    def test_rejected_code_is_400_with_message(self, client):
        state = client.get("/integrations/meta/authorize-state", params={"workspace_id": "w1"}).json()["state"]
        response = client.get("/integrations/meta/callback", params={"code": "bad-code", "state": state})

        assert response.status_code == 400
        assert response.json()["error"] == "OAuthExchangeFailed"
        assert "Invalid verification code" in response.json()["detail"]

    def test_provider_error_param(self, client):
        response = client.get("/integrations/meta/callback", params={"error": "access_denied"})
        assert response.status_code == 400

    def test_unknown_provider(self, client):
        response = client.get("/integrations/myspace/authorize-state", params={"workspace_id": "w1"})
        assert response.status_code == 422


class TestWorkspaceEndpoints:
    def test_get_integration(self, client):
        _connect(client)
        response = client.get("/integrations/w1/meta")

        assert response.status_code == 200
        assert response.json()["account_id"] == "act_1"
        assert client.get("/integrations/w1/google").status_code == 404

    def test_manual_sync_requires_integration(self, client):
        assert client.post("/integrations/w1/meta/sync", json={}).status_code == 404

    def test_manual_sync_is_deduplicated_with_backfill(self, client):
        _connect(client)
        response = client.post("/integrations/w1/meta/sync", json={"timeframe_days": 7})

        assert response.status_code == 200
        assert response.json() == {"scheduled": False, "job_id": None, "reason": "already_pending"}

    def test_process_runs_job_and_metrics_are_listed(self, client):
        _connect(client)

        response = client.post("/integrations/w1/process", headers=CRON_HEADERS)
        assert response.status_code == 200
        assert response.json()["status"] == "completed"
        assert response.json()["rows_written"] == 2

        metrics = client.get("/integrations/w1/metrics", params={"provider": "meta"}).json()
        assert [m["spend"] for m in metrics] == [12.5, 7.25]
        assert client.get("/integrations/w1/meta").json()["last_sync_status"] == "success"

    def test_process_with_empty_queue(self, client):
        response = client.post("/integrations/w1/process", headers=CRON_HEADERS)
        assert response.status_code == 200
        assert response.json() is None

    def test_preferences(self, client):
        _connect(client)
        response = client.patch("/integrations/w1/meta/preferences", json={"sync_frequency_minutes": 60})

        assert response.status_code == 200
        assert response.json()["sync_frequency_minutes"] == 60
        assert client.patch("/integrations/w1/meta/preferences", json={"sync_frequency_minutes": 1}).status_code == 422

    def test_disconnect(self, client):
        _connect(client)
        assert client.delete("/integrations/w1/meta").json() == {"deleted": True}
        assert client.delete("/integrations/w1/meta").status_code == 404


class TestCronEndpoint:
    def test_missing_or_wrong_secret(self, client):
        assert client.post("/integrations/cron").status_code == 401
        assert client.post("/integrations/cron", headers={"X-Cron-Secret": "nope"}).status_code == 401
        assert client.post("/integrations/w1/process").status_code == 401

    def test_unconfigured_secret_disables_endpoint(self, settings, service):
        app = create_app(settings.model_copy(update={"INTEGRATIONS_CRON_SECRET": None}), sync_service=service)
        with TestClient(app) as client:
            assert client.post("/integrations/cron", headers=CRON_HEADERS).status_code == 503

    def test_tick(self, client):
        _connect(client)
        response = client.post("/integrations/cron", headers=CRON_HEADERS)

        assert response.status_code == 200
        body = response.json()
        # the pending backfill counts as already pending and is drained in the same tick
        assert body["already_pending"] == 1
        assert body["jobs_run"] == 1

    def test_health(self, client):
        assert client.get("/health").json() == {"status": "ok"}


class TestErrorMapping:
    @pytest.mark.parametrize("exc,status", [
        (InvalidState("x"), 400),
        (OAuthExchangeFailed("x"), 400),
        (NoAccountsAvailable("x"), 400),
        (ConfigurationMissing("x"), 500),
        (UpstreamUnavailable("x"), 503),
        (PersistenceUnavailable("x"), 503),
        (UpstreamAuthExpired("x"), 401),
        (UpstreamRequestRejected("x"), 502),
        (SyncEngineError("x"), 502),
    ])
    def test_error_status(self, exc, status):
        assert error_status(exc) == status
