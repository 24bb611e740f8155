"""OAuth flow controller.

WHAT:
    Issues and validates OAuth `state`, exchanges authorization codes,
    upgrades Meta tokens to long-lived ones, binds the preferred ad account,
    and hands the new integration to the queue for an initial backfill.

WHY:
    - The state parameter is a Fernet token over a small JSON payload, so the
      callback can trust the workspace id without a server-side session
    - State lives 5 minutes. It is not single-use: a replay inside the TTL is
      accepted and logged (browsers re-submit callbacks on refresh)
    - OAuth failures are returned to the caller and never touch job or
      integration state

FLOW (complete_oauth):
    validate_state -> exchange_code_for_token -> extend_to_long_lived_token
    -> resolve_preferred_account -> upsert Integration -> enqueue
    initial-backfill (90 days)

REFERENCES:
    - https://developers.facebook.com/docs/facebook-login/guides/access-tokens/get-long-lived
    - adsync/security.py (Fernet)
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional, Tuple

from pydantic import ValidationError

from adsync.errors import (
    InvalidState,
    NoAccountsAvailable,
    OAuthExchangeFailed,
    SyncEngineError,
    UpstreamAuthExpired,
    UpstreamRequestRejected,
    UpstreamUnavailable,
)
from adsync.models import JobTypeEnum, ProviderEnum, utcnow
from adsync.schemas import OAuthResult, OAuthStatePayload, ProviderAccount, TokenBundle
from adsync.security import TokenCipher
from adsync.services.credential_store import CredentialStore
from adsync.services.providers.base import ProviderAdapter, pick_preferred_account
from adsync.services.sync_queue import SyncJobQueue

logger = logging.getLogger(__name__)

STATE_TTL = timedelta(minutes=5)
STATE_CONTEXT = "oauth_state"
INITIAL_BACKFILL_DAYS = 90

UPSTREAM_ERRORS = (UpstreamUnavailable, UpstreamAuthExpired, UpstreamRequestRejected)


def _epoch_ms(moment: datetime) -> int:
    return int(moment.timestamp() * 1000)


class OAuthFlowController:
    def __init__(
        self,
        cipher: TokenCipher,
        store: CredentialStore,
        queue: SyncJobQueue,
        adapter_for: Callable[[ProviderEnum], ProviderAdapter],
        clock: Callable[[], datetime] = utcnow,
    ):
        self._cipher = cipher
        self._store = store
        self._queue = queue
        self._adapter_for = adapter_for
        self._clock = clock
        # digest -> createdAt of states already seen, for replay logging only
        self._seen_states: Dict[str, int] = {}

    # --- state -------------------------------------------------------------

    def create_state(self, context_id: str, redirect: Optional[str] = None, client_id: Optional[str] = None) -> str:
        payload = OAuthStatePayload(
            state=context_id,
            redirect=redirect,
            client_id=client_id,
            created_at=_epoch_ms(self._clock()),
        )
        return self._cipher.encrypt_secret(
            payload.model_dump_json(by_alias=True, exclude_none=True),
            context=STATE_CONTEXT,
        )

    def validate_state(self, token: str) -> OAuthStatePayload:
        """Decrypt and check a state token.

        Raises:
            InvalidState: Undecryptable, not JSON, missing `state` or
                `createdAt`, or older than 5 minutes.
        """
        payload, _ = self._check_state(token)
        return payload

    def _check_state(self, token: str) -> Tuple[OAuthStatePayload, bool]:
        """validate_state plus whether the token was seen before."""
        if not token:
            raise InvalidState("Missing OAuth state")
        try:
            raw = self._cipher.decrypt_secret(token, context=STATE_CONTEXT)
        except ValueError as e:
            raise InvalidState("OAuth state could not be decrypted") from e

        try:
            data = json.loads(raw)
        except ValueError as e:
            raise InvalidState("OAuth state is not valid JSON") from e
        if not isinstance(data, dict) or not data.get("state") or data.get("createdAt") is None:
            raise InvalidState("OAuth state is incomplete")

        try:
            payload = OAuthStatePayload.model_validate(data)
        except ValidationError as e:
            raise InvalidState("OAuth state is malformed") from e

        now_ms = _epoch_ms(self._clock())
        age_ms = now_ms - payload.created_at
        if age_ms > STATE_TTL.total_seconds() * 1000:
            raise InvalidState("OAuth state expired; please restart the connection")

        return payload, self._note_state(token, payload, now_ms)

    def _note_state(self, token: str, payload: OAuthStatePayload, now_ms: int) -> bool:
        ttl_ms = STATE_TTL.total_seconds() * 1000
        self._seen_states = {k: v for k, v in self._seen_states.items() if now_ms - v <= ttl_ms}

        digest = hashlib.sha256(token.encode("utf-8")).hexdigest()
        replayed = digest in self._seen_states
        self._seen_states[digest] = payload.created_at
        if replayed:
            logger.warning("[OAUTH] State for workspace %s replayed within its TTL", payload.state)
        return replayed

    # --- token exchange ------------------------------------------------------

    async def exchange_code_for_token(self, provider: ProviderEnum, code: str, redirect_uri: str) -> TokenBundle:
        provider = ProviderEnum(provider)
        if not code:
            raise OAuthExchangeFailed("Missing authorization code")
        try:
            tokens = await self._adapter_for(provider).exchange_code(code, redirect_uri)
        except UPSTREAM_ERRORS as e:
            logger.error("[OAUTH] %s code exchange failed: %s", provider.value, e)
            raise OAuthExchangeFailed(
                f"{provider.value} token exchange failed: {e}",
                status_code=getattr(e, "status_code", None),
            ) from e
        logger.info(
            "[OAUTH] %s code exchanged (token length=%d, refresh=%s)",
            provider.value, len(tokens.access_token), bool(tokens.refresh_token),
        )
        return tokens

    async def extend_to_long_lived_token(self, provider: ProviderEnum, short_lived_token: str) -> TokenBundle:
        """Meta only; other providers get their input back.

        Never raises for upstream trouble: after the retry budget is spent
        the short-lived token is returned and the flow continues.
        """
        provider = ProviderEnum(provider)
        try:
            extended = await self._adapter_for(provider).extend_token(short_lived_token)
        except SyncEngineError as e:
            logger.warning("[OAUTH] %s token extension failed, keeping short-lived token: %s", provider.value, e)
            return TokenBundle(access_token=short_lived_token)
        return extended or TokenBundle(access_token=short_lived_token)

    async def resolve_preferred_account(self, provider: ProviderEnum, access_token: str) -> ProviderAccount:
        provider = ProviderEnum(provider)
        try:
            accounts = await self._adapter_for(provider).list_accounts(access_token)
        except UPSTREAM_ERRORS as e:
            logger.error("[OAUTH] %s account listing failed: %s", provider.value, e)
            raise OAuthExchangeFailed(f"Could not list {provider.value} ad accounts: {e}") from e

        account = pick_preferred_account(accounts)
        if account is None:
            raise NoAccountsAvailable(f"No {provider.value} ad accounts are available for this user")
        logger.info("[OAUTH] %s: picked account %s of %d", provider.value, account.id, len(accounts))
        return account

    # --- full callback -------------------------------------------------------

    async def complete_oauth(
        self,
        provider: ProviderEnum,
        code: str,
        state_token: str,
        redirect_uri: str,
    ) -> OAuthResult:
        provider = ProviderEnum(provider)
        state, replayed = self._check_state(state_token)

        tokens = await self.exchange_code_for_token(provider, code, redirect_uri)
        long_lived = await self.extend_to_long_lived_token(provider, tokens.access_token)
        if long_lived.access_token != tokens.access_token:
            tokens = tokens.model_copy(update={
                "access_token": long_lived.access_token,
                "expires_in": long_lived.expires_in,
            })

        account = await self.resolve_preferred_account(provider, tokens.access_token)

        integration = await asyncio.to_thread(
            self._store.upsert_integration,
            state.state,
            provider,
            tokens=tokens,
            account=account,
            client_id=state.client_id,
        )
        enqueued = await asyncio.to_thread(
            self._queue.enqueue,
            state.state,
            provider,
            state.client_id,
            JobTypeEnum.initial_backfill,
            INITIAL_BACKFILL_DAYS,
        )
        logger.info(
            "[OAUTH] %s linked for workspace %s (account=%s, backfill=%s)",
            provider.value, state.state, account.id, enqueued.scheduled,
        )
        return OAuthResult(
            integration=integration,
            account=account,
            job_scheduled=enqueued.scheduled,
            redirect=state.redirect,
            state_replayed=replayed,
        )
