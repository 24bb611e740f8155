"""Access-token refresh coordination.

WHAT:
    Keeps a job's access token usable: refreshes pre-emptively when it is
    about to expire and on demand when a provider rejects it mid-sync.

WHY:
    - Several jobs for one integration can run in the same process (batch
      worker). Without coordination each would hit the provider's refresh
      endpoint and the later ones could invalidate the earlier tokens
    - Locks are per (workspace, provider, client) and held in an injected
      registry, never at module scope, so tests and workers own their state

FLOW (per refresh):
    1. Acquire the key's asyncio.Lock
    2. Re-read stored credentials; if the access token changed since the
       caller loaded it, another job already refreshed -> reuse it
    3. Otherwise call the adapter's refresh and persist the result
       (expiries only move forward, see CredentialStore)

REFERENCES:
    - adsync/workers/sync_worker.py (bind / on_auth_expired)
    - adsync/services/credential_store.py (store_refreshed_tokens)
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional, Tuple

from adsync.errors import UpstreamAuthExpired
from adsync.models import ProviderEnum, client_key, utcnow
from adsync.schemas import IntegrationCredentials
from adsync.services.credential_store import CredentialStore
from adsync.services.providers.base import ProviderAdapter

logger = logging.getLogger(__name__)

REFRESH_BUFFER = timedelta(minutes=5)
# LinkedIn tokens live 60 days; refreshing a day early keeps long backfills safe
LINKEDIN_REFRESH_BUFFER = timedelta(days=1)


def refresh_buffer(provider: ProviderEnum) -> timedelta:
    return LINKEDIN_REFRESH_BUFFER if ProviderEnum(provider) is ProviderEnum.linkedin else REFRESH_BUFFER


def needs_refresh(credentials: IntegrationCredentials, now: datetime) -> bool:
    """True when the access token expires within the provider's buffer.

    Tokens without a known expiry are used as-is; a 401 will still trigger
    the on-demand path.
    """
    expires_at = credentials.access_token_expires_at
    if expires_at is None:
        return False
    return expires_at - refresh_buffer(credentials.provider) <= now


class RefreshLockRegistry:
    """One asyncio.Lock per integration key."""

    def __init__(self):
        self._locks: Dict[Tuple[str, str, str], asyncio.Lock] = {}

    def lock_for(self, workspace_id: str, provider: ProviderEnum, client_id: Optional[str]) -> asyncio.Lock:
        key = (workspace_id, ProviderEnum(provider).value, client_key(client_id))
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    def __len__(self) -> int:
        return len(self._locks)


class TokenRefresher:
    def __init__(
        self,
        store: CredentialStore,
        locks: RefreshLockRegistry,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._store = store
        self._locks = locks
        self._clock = clock

    async def ensure_fresh_token(
        self,
        adapter: ProviderAdapter,
        credentials: IntegrationCredentials,
    ) -> IntegrationCredentials:
        """Refresh ahead of expiry; returns credentials safe to use now."""
        if not needs_refresh(credentials, self._clock()):
            return credentials
        logger.info(
            "[TOKEN_REFRESH] Token for %s expires at %s, refreshing early",
            credentials, credentials.access_token_expires_at,
        )
        return await self.refresh(adapter, credentials, force=False)

    async def refresh(
        self,
        adapter: ProviderAdapter,
        credentials: IntegrationCredentials,
        force: bool = True,
    ) -> IntegrationCredentials:
        """Refresh under the key lock.

        Args:
            force: True when the provider already rejected the token; the
                stored expiry is then not trusted.

        Raises:
            UpstreamAuthExpired: The integration vanished or the provider
                refused the refresh (revoked / no refresh token).
        """
        lock = self._locks.lock_for(credentials.workspace_id, credentials.provider, credentials.client_id)
        async with lock:
            current = await asyncio.to_thread(
                self._store.get_credentials,
                credentials.workspace_id, credentials.provider, credentials.client_id,
            )
            if current is None:
                raise UpstreamAuthExpired(f"Credentials for {credentials} are no longer available")

            if current.access_token != credentials.access_token:
                logger.info("[TOKEN_REFRESH] %s already refreshed by another job", credentials)
                return current
            if not force and not needs_refresh(current, self._clock()):
                return current

            bundle = await adapter.refresh_access_token(current.access_token, current.refresh_token)
            updated = await asyncio.to_thread(
                self._store.store_refreshed_tokens,
                current.workspace_id, current.provider, current.client_id, bundle,
            )
            if updated is None:
                raise UpstreamAuthExpired(f"Credentials for {credentials} are no longer available")

            logger.info("[TOKEN_REFRESH] Refreshed token for %s (expires_in=%s)", credentials, bundle.expires_in)
            return updated

    def bind(self, adapter: ProviderAdapter, credentials: IntegrationCredentials) -> "ActiveCredentials":
        return ActiveCredentials(self, adapter, credentials)


class ActiveCredentials:
    """Credentials for one running job.

    `on_auth_expired` is handed to adapter calls; after a refresh the
    following pages use the new token.
    """

    def __init__(self, refresher: TokenRefresher, adapter: ProviderAdapter, credentials: IntegrationCredentials):
        self._refresher = refresher
        self._adapter = adapter
        self.credentials = credentials

    @property
    def access_token(self) -> str:
        return self.credentials.access_token

    async def ensure_fresh(self) -> str:
        self.credentials = await self._refresher.ensure_fresh_token(self._adapter, self.credentials)
        return self.credentials.access_token

    async def on_auth_expired(self) -> str:
        self.credentials = await self._refresher.refresh(self._adapter, self.credentials, force=True)
        return self.credentials.access_token
