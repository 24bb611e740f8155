"""Error taxonomy for the integration sync engine.

WHAT:
    One exception hierarchy shared by the OAuth flow, provider adapters,
    the job queue, and the metrics writer.

WHY:
    - Callers branch on error class, never on message text
    - OAuth-flow errors are returned to the caller verbatim for display
    - Job runner maps each class to a SyncJob/Integration status update

REFERENCES:
    - adsync/routers/integrations.py (HTTP status mapping)
    - adsync/workers/sync_worker.py (job failure mapping)
"""

from __future__ import annotations

from typing import Any, Optional


class SyncEngineError(Exception):
    """Base exception for all sync engine errors."""
    pass


# --- OAuth flow (caller must restart the flow) -----------------------------

class InvalidState(SyncEngineError):
    """Raised when an OAuth state token cannot be decrypted, is incomplete, or expired."""
    pass


class OAuthExchangeFailed(SyncEngineError):
    """Raised when the provider rejects an authorization code exchange."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class NoAccountsAvailable(SyncEngineError):
    """Raised when the authorized user has no ad accounts to bind."""
    pass


# --- Upstream provider errors ----------------------------------------------

class UpstreamUnavailable(SyncEngineError):
    """Raised after transient failures (429/5xx/network) exhaust the retry policy."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class UpstreamAuthExpired(SyncEngineError):
    """Raised when credentials are rejected and a refresh is impossible or failed."""
    pass


class UpstreamRequestRejected(SyncEngineError):
    """Raised for non-retryable provider errors (4xx, API error codes)."""

    def __init__(self, message: str, status_code: Optional[int] = None, payload: Any = None):
        super().__init__(message)
        self.status_code = status_code
        self.payload = payload


# --- Local failures ----------------------------------------------------------

class PersistenceUnavailable(SyncEngineError):
    """Raised when the metrics store cannot be written."""
    pass


class ConfigurationMissing(SyncEngineError):
    """Raised when app credentials or developer tokens are absent. Never retried."""
    pass


OAUTH_FLOW_ERRORS = (InvalidState, OAuthExchangeFailed, NoAccountsAvailable)
