"""Provider adapter base class.

WHAT:
    Uniform async interface over the four ad platforms plus the shared
    request loop: auth-expiry refresh-and-retry and transient backoff.

WHY:
    - Every provider needs the same failure discipline; only auth headers,
      pagination fields, and error shapes differ
    - Backoff waits are `asyncio.sleep`, so a bounded worker pool is never
      blocked while an upstream recovers
    - The HTTP client is injected per adapter instance; nothing is cached at
      module scope

REQUEST POLICY (`_send`):
    401/403      -> await on_auth_expired() once for a fresh token, retry the
                    same request once; otherwise UpstreamAuthExpired
    429/5xx/net  -> sleep 200ms x 2^attempt, up to 2 extra attempts; then
                    UpstreamUnavailable
    other 4xx    -> UpstreamRequestRejected

    Per-call `retry_policy` overrides the adapter default: single-use code
    exchanges never retry, and OAuth token extension retries 429/5xx only.

REFERENCES:
    - adsync/utils/backoff.py (retry policies)
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

import httpx

from adsync.errors import UpstreamAuthExpired, UpstreamRequestRejected, UpstreamUnavailable
from adsync.models import ProviderEnum
from adsync.schemas import ProviderAccount, TimeRange, TokenBundle
from adsync.services.metric_normalizer import RawMetricRow
from adsync.utils.backoff import PROVIDER_RETRY_POLICY, RetryPolicy, is_retryable_status

logger = logging.getLogger(__name__)

AuthRefreshCallback = Callable[[], Awaitable[str]]
SleepFunc = Callable[[float], Awaitable[None]]

DEFAULT_TIMEOUT = httpx.Timeout(30.0, connect=10.0)


def _error_message(response: httpx.Response) -> str:
    """Best-effort human message from a provider error body."""
    try:
        body = response.json()
    except ValueError:
        return response.text[:200] or response.reason_phrase
    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict):
            return str(error.get("message") or error.get("status") or error)
        if isinstance(error, str):
            return str(body.get("error_description") or error)
        if body.get("message"):
            return str(body["message"])
    return str(body)[:200]


def _safe_json(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return None


class RefreshingToken:
    """Access token shared by the requests of one operation.

    Wraps `on_auth_expired` so a refresh triggered by one request is seen
    by every later request of the same page (e.g. Meta creative lookups
    issued after the insights call refreshed).
    """

    def __init__(self, access_token: str, on_auth_expired: Optional[AuthRefreshCallback] = None):
        self.value = access_token
        self._on_auth_expired = on_auth_expired

    @property
    def on_auth_expired(self) -> Optional[AuthRefreshCallback]:
        return self._refresh if self._on_auth_expired is not None else None

    async def _refresh(self) -> str:
        self.value = await self._on_auth_expired()
        return self.value


class ProviderAdapter:
    """Base class for provider adapters.

    Subclasses implement `_authorize` (how the token rides on a request)
    and the public operations. All public operations accept an optional
    `on_auth_expired` coroutine used for the single refresh-and-retry.
    """

    provider: ProviderEnum
    log_tag = "PROVIDER"

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        *,
        retry_policy: RetryPolicy = PROVIDER_RETRY_POLICY,
        sleep: SleepFunc = asyncio.sleep,
    ):
        self._client = http_client
        self._retry_policy = retry_policy
        self._sleep = sleep

    # --- hooks -------------------------------------------------------------

    def _authorize(self, access_token: str, headers: Dict[str, str], params: Dict[str, Any]) -> None:
        """Attach the access token (default: bearer header)."""
        headers["Authorization"] = f"Bearer {access_token}"

    def _succeeded(self, response: httpx.Response) -> bool:
        """True when the response carries a usable result."""
        return response.is_success

    def _classify(self, status_code: Optional[int], response: Optional[httpx.Response]) -> str:
        """Map a failed response to "auth", "transient", or "rejected"."""
        if status_code in (401, 403):
            return "auth"
        if status_code is None or is_retryable_status(status_code):
            return "transient"
        return "rejected"

    # --- request loop --------------------------------------------------------

    async def _send(
        self,
        method: str,
        url: str,
        *,
        access_token: Optional[str] = None,
        on_auth_expired: Optional[AuthRefreshCallback] = None,
        operation: str = "request",
        headers: Optional[Dict[str, str]] = None,
        params: Optional[Dict[str, Any]] = None,
        json: Any = None,
        data: Optional[Dict[str, Any]] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ) -> httpx.Response:
        """Send a request under the shared retry/refresh policy.

        Returns the successful (2xx) response.
        """
        policy = retry_policy or self._retry_policy
        token = access_token
        refreshed = False
        attempt = 0

        while True:
            request_headers = dict(headers or {})
            request_params = dict(params or {})
            if token is not None:
                self._authorize(token, request_headers, request_params)

            status_code: Optional[int] = None
            try:
                response = await self._client.request(
                    method,
                    url,
                    headers=request_headers,
                    params=request_params or None,
                    json=json,
                    data=data,
                    timeout=DEFAULT_TIMEOUT,
                )
                status_code = response.status_code
            except httpx.TransportError as exc:
                response = None
                failure = f"{exc.__class__.__name__}: {exc}"
            else:
                if self._succeeded(response):
                    return response
                failure = _error_message(response)

            kind = self._classify(status_code, response)

            if kind == "auth":
                if on_auth_expired is not None and not refreshed and token is not None:
                    logger.info("[%s] %s got %s, refreshing token once", self.log_tag, operation, status_code)
                    refreshed = True
                    token = await on_auth_expired()
                    continue
                raise UpstreamAuthExpired(f"{self.provider.value} rejected credentials ({status_code}): {failure}")

            if kind == "transient":
                if attempt < policy.max_retries and policy.allows_retry(status_code):
                    delay = policy.delay_for(attempt)
                    logger.warning(
                        "[%s] %s transient failure (%s), retry %d/%d in %.2fs",
                        self.log_tag, operation, status_code or failure,
                        attempt + 1, policy.max_retries, delay,
                    )
                    attempt += 1
                    await self._sleep(delay)
                    continue
                raise UpstreamUnavailable(
                    f"{self.provider.value} {operation} failed after {attempt + 1} attempts: {failure}",
                    status_code=status_code,
                )

            raise UpstreamRequestRejected(
                f"{self.provider.value} {operation} rejected ({status_code}): {failure}",
                status_code=status_code,
                payload=_safe_json(response),
            )

    def _require_token(self, payload: Any, operation: str) -> Dict[str, Any]:
        """A token payload that carries an `access_token`, or UpstreamRequestRejected."""
        if not isinstance(payload, dict) or not payload.get("access_token"):
            raise UpstreamRequestRejected(
                f"{self.provider.value} {operation} response carried no access_token",
                payload=payload,
            )
        return payload

    def _token_payload(self, response: httpx.Response, operation: str) -> Dict[str, Any]:
        return self._require_token(_safe_json(response), operation)

    # --- interface -----------------------------------------------------------

    async def fetch_metrics(
        self,
        access_token: str,
        account_id: str,
        time_range: TimeRange,
        cursor: Optional[str] = None,
        on_auth_expired: Optional[AuthRefreshCallback] = None,
    ) -> Tuple[List[RawMetricRow], Optional[str]]:
        """Fetch one page of campaign/day rows; returns (rows, next_cursor)."""
        raise NotImplementedError

    async def refresh_access_token(
        self,
        access_token: str,
        refresh_token: Optional[str] = None,
    ) -> TokenBundle:
        raise NotImplementedError

    async def list_accounts(
        self,
        access_token: str,
        on_auth_expired: Optional[AuthRefreshCallback] = None,
    ) -> List[ProviderAccount]:
        raise NotImplementedError

    async def update_creative_status(
        self,
        access_token: str,
        account_id: str,
        creative_id: str,
        active: bool,
        on_auth_expired: Optional[AuthRefreshCallback] = None,
    ) -> bool:
        raise NotImplementedError

    async def exchange_code(self, code: str, redirect_uri: str) -> TokenBundle:
        """Exchange an authorization code for tokens."""
        raise NotImplementedError

    async def extend_token(self, access_token: str) -> Optional[TokenBundle]:
        """Swap a short-lived token for a long-lived one.

        Returns None for providers without a long-lived exchange.
        """
        return None


def pick_preferred_account(accounts: Sequence[ProviderAccount]) -> Optional[ProviderAccount]:
    """First active, non-manager account; else first non-manager; else first."""
    if not accounts:
        return None
    for account in accounts:
        if account.is_active and not account.is_manager:
            return account
    for account in accounts:
        if not account.is_manager:
            return account
    return accounts[0]
