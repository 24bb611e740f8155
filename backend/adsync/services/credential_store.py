"""Credential store for encrypted provider integrations.

WHAT:
    Persists one Integration row per (workspace, provider, client) with
    Fernet-encrypted tokens, and owns every mutation of that row: linking,
    token refresh, sync status, and sync preferences.

WHY:
    - Keeps encryption out of the OAuth flow and the job runner
    - Refresh writes enforce that expiry timestamps only move forward
    - Status writes are the single place `last_sync_status` changes

REFERENCES:
    - adsync/security.py (TokenCipher)
    - adsync/services/token_refresh.py (consumes decrypted credentials)
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from sqlalchemy.orm import Session, sessionmaker

from adsync.database import session_scope
from adsync.models import Integration, ProviderEnum, SyncStatusEnum, client_key, utcnow
from adsync.schemas import (
    IntegrationCredentials,
    IntegrationRecord,
    ProviderAccount,
    SyncPreferencesUpdate,
    TokenBundle,
)
from adsync.security import TokenCipher

logger = logging.getLogger(__name__)

# Providers report lifetimes from their clock; shave a margin so we refresh early.
EXPIRY_SAFETY_MARGIN = timedelta(seconds=30)


def compute_expiry(now: datetime, expires_in: Optional[int]) -> Optional[datetime]:
    """now + expires_in - 30s, or None when the provider gave no lifetime."""
    if not expires_in or expires_in <= 0:
        return None
    return now + timedelta(seconds=expires_in) - EXPIRY_SAFETY_MARGIN


def _later(current: Optional[datetime], candidate: Optional[datetime]) -> Optional[datetime]:
    """Pick the later of two expiry timestamps; None never replaces a value."""
    if candidate is None:
        return current
    if current is None:
        return candidate
    return max(current, candidate)


def _label(workspace_id: str, provider: ProviderEnum, client_id: str) -> str:
    return f"{workspace_id}:{provider.value}:{client_id or '-'}"


class CredentialStore:
    """SQLAlchemy-backed store for Integration rows.

    Every public method opens its own session, so one store instance can be
    shared by concurrent jobs and threads.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        cipher: TokenCipher,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._session_factory = session_factory
        self._cipher = cipher
        self._clock = clock

    # --- lookups -----------------------------------------------------------

    def _find(self, db: Session, workspace_id: str, provider: ProviderEnum, client_id: Optional[str]) -> Optional[Integration]:
        return (
            db.query(Integration)
            .filter(
                Integration.workspace_id == workspace_id,
                Integration.provider == ProviderEnum(provider),
                Integration.client_id == client_key(client_id),
            )
            .first()
        )

    def get_integration(
        self,
        workspace_id: str,
        provider: ProviderEnum,
        client_id: Optional[str] = None,
    ) -> Optional[IntegrationRecord]:
        with session_scope(self._session_factory) as db:
            row = self._find(db, workspace_id, provider, client_id)
            return IntegrationRecord.model_validate(row) if row else None

    def get_credentials(
        self,
        workspace_id: str,
        provider: ProviderEnum,
        client_id: Optional[str] = None,
    ) -> Optional[IntegrationCredentials]:
        """Decrypt tokens for an integration.

        Returns None when the integration is missing or its access token
        cannot be decrypted (e.g. after an encryption key rotation).
        """
        with session_scope(self._session_factory) as db:
            row = self._find(db, workspace_id, provider, client_id)
            if not row:
                logger.warning("[CREDENTIAL_STORE] No integration for %s", _label(workspace_id, ProviderEnum(provider), client_key(client_id)))
                return None
            return self._decrypt(row)

    def _decrypt(self, row: Integration) -> Optional[IntegrationCredentials]:
        label = _label(row.workspace_id, row.provider, row.client_id)
        try:
            access_token = self._cipher.decrypt_secret(row.access_token_enc, context=f"{label}:access")
            refresh_token = (
                self._cipher.decrypt_secret(row.refresh_token_enc, context=f"{label}:refresh")
                if row.refresh_token_enc else None
            )
        except ValueError as e:
            logger.error("[CREDENTIAL_STORE] Failed to decrypt tokens for %s: %s", label, e)
            return None

        return IntegrationCredentials(
            integration_id=row.id,
            workspace_id=row.workspace_id,
            provider=row.provider,
            client_id=row.client_id or None,
            account_id=row.account_id,
            access_token=access_token,
            refresh_token=refresh_token,
            developer_token=row.developer_token,
            login_customer_id=row.login_customer_id,
            access_token_expires_at=row.access_token_expires_at,
            refresh_token_expires_at=row.refresh_token_expires_at,
        )

    def list_auto_sync_integrations(self) -> List[IntegrationRecord]:
        with session_scope(self._session_factory) as db:
            rows = (
                db.query(Integration)
                .filter(Integration.auto_sync_enabled.is_(True))
                .order_by(Integration.workspace_id, Integration.provider, Integration.client_id)
                .all()
            )
            return [IntegrationRecord.model_validate(row) for row in rows]

    # --- writes --------------------------------------------------------------

    def upsert_integration(
        self,
        workspace_id: str,
        provider: ProviderEnum,
        *,
        tokens: TokenBundle,
        account: ProviderAccount,
        client_id: Optional[str] = None,
        developer_token: Optional[str] = None,
        login_customer_id: Optional[str] = None,
    ) -> IntegrationRecord:
        """Encrypt and persist tokens after a completed OAuth flow.

        Creates the row on first link. On re-link it replaces tokens and the
        bound account and resets sync status to `never`; sync preferences
        chosen by the user are kept.
        """
        provider = ProviderEnum(provider)
        key = client_key(client_id)
        label = _label(workspace_id, provider, key)
        now = self._clock()

        with session_scope(self._session_factory) as db:
            row = self._find(db, workspace_id, provider, key)
            if row is None:
                row = Integration(workspace_id=workspace_id, provider=provider, client_id=key)
                db.add(row)
                logger.info("[CREDENTIAL_STORE] Created integration %s", label)
            else:
                logger.info("[CREDENTIAL_STORE] Re-linked integration %s", label)

            row.access_token_enc = self._cipher.encrypt_secret(tokens.access_token, context=f"{label}:access")
            row.refresh_token_enc = (
                self._cipher.encrypt_secret(tokens.refresh_token, context=f"{label}:refresh")
                if tokens.refresh_token else None
            )
            row.id_token_enc = (
                self._cipher.encrypt_secret(tokens.id_token, context=f"{label}:id")
                if tokens.id_token else None
            )
            row.scopes = list(tokens.scopes)
            row.account_id = account.id
            row.account_name = account.name
            row.developer_token = developer_token
            row.login_customer_id = login_customer_id
            row.access_token_expires_at = compute_expiry(now, tokens.expires_in)
            row.refresh_token_expires_at = compute_expiry(now, tokens.refresh_expires_in)
            row.last_sync_status = SyncStatusEnum.never
            row.last_sync_message = None
            row.linked_at = now

            db.commit()
            return IntegrationRecord.model_validate(row)

    def store_refreshed_tokens(
        self,
        workspace_id: str,
        provider: ProviderEnum,
        client_id: Optional[str],
        tokens: TokenBundle,
    ) -> Optional[IntegrationCredentials]:
        """Persist tokens returned by a refresh.

        Expiry timestamps only move forward. A refresh response without a
        new refresh token keeps the stored one.
        """
        provider = ProviderEnum(provider)
        key = client_key(client_id)
        label = _label(workspace_id, provider, key)
        now = self._clock()

        with session_scope(self._session_factory) as db:
            row = self._find(db, workspace_id, provider, key)
            if row is None:
                logger.warning("[CREDENTIAL_STORE] Integration %s vanished during refresh", label)
                return None

            row.access_token_enc = self._cipher.encrypt_secret(tokens.access_token, context=f"{label}:access")
            if tokens.refresh_token:
                row.refresh_token_enc = self._cipher.encrypt_secret(tokens.refresh_token, context=f"{label}:refresh")
            row.access_token_expires_at = _later(row.access_token_expires_at, compute_expiry(now, tokens.expires_in))
            row.refresh_token_expires_at = _later(row.refresh_token_expires_at, compute_expiry(now, tokens.refresh_expires_in))
            if tokens.scopes:
                row.scopes = list(tokens.scopes)

            db.commit()
            logger.info("[CREDENTIAL_STORE] Stored refreshed tokens for %s", label)
            return self._decrypt(row)

    def _update_status(
        self,
        workspace_id: str,
        provider: ProviderEnum,
        client_id: Optional[str],
        **values,
    ) -> bool:
        with session_scope(self._session_factory) as db:
            row = self._find(db, workspace_id, provider, client_id)
            if row is None:
                return False
            for name, value in values.items():
                setattr(row, name, value)
            db.commit()
            return True

    def mark_sync_requested(self, workspace_id: str, provider: ProviderEnum, client_id: Optional[str] = None) -> bool:
        return self._update_status(
            workspace_id, provider, client_id,
            last_sync_requested_at=self._clock(),
            last_sync_status=SyncStatusEnum.pending,
        )

    def record_sync_success(self, workspace_id: str, provider: ProviderEnum, client_id: Optional[str] = None, message: Optional[str] = None) -> bool:
        return self._update_status(
            workspace_id, provider, client_id,
            last_sync_status=SyncStatusEnum.success,
            last_sync_message=message,
            last_synced_at=self._clock(),
        )

    def record_sync_error(self, workspace_id: str, provider: ProviderEnum, client_id: Optional[str], message: str) -> bool:
        return self._update_status(
            workspace_id, provider, client_id,
            last_sync_status=SyncStatusEnum.error,
            last_sync_message=message,
        )

    def update_sync_preferences(
        self,
        workspace_id: str,
        provider: ProviderEnum,
        client_id: Optional[str],
        preferences: SyncPreferencesUpdate,
    ) -> Optional[IntegrationRecord]:
        values = preferences.model_dump(exclude_none=True)
        with session_scope(self._session_factory) as db:
            row = self._find(db, workspace_id, provider, client_id)
            if row is None:
                return None
            for name, value in values.items():
                setattr(row, name, value)
            db.commit()
            return IntegrationRecord.model_validate(row)

    def delete_integration(self, workspace_id: str, provider: ProviderEnum, client_id: Optional[str] = None) -> bool:
        with session_scope(self._session_factory) as db:
            row = self._find(db, workspace_id, provider, client_id)
            if row is None:
                return False
            db.delete(row)
            db.commit()
            logger.info("[CREDENTIAL_STORE] Deleted integration %s", _label(workspace_id, ProviderEnum(provider), client_key(client_id)))
            return True
