"""
OAuth2 token management for the CRM connection.

Provides OAuth 2.0 token lifecycle handling with support for:
- A single active credential per provider, persisted in the sync database
- Proactive refresh before expiry, serialized so only one refresh is in flight
- Forced refresh after the CRM rejects a token (without racing other callers)
- The initial authorization-code exchange and token status reporting
"""

import logging
import secrets
import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional
from urllib.parse import urlencode

import requests

from crm_sync.storage.db import SyncDatabase

DEFAULT_PROVIDER = "practicepanther"
DEFAULT_TOKEN_URL = "https://app.practicepanther.com/OAuth/Token"
DEFAULT_AUTHORIZE_URL = "https://app.practicepanther.com/OAuth/Authorize"

# Tokens expiring within this many seconds are refreshed before use
DEFAULT_REFRESH_MARGIN = 60

# Lifetime assumed when the token endpoint omits expires_in (24 hours)
DEFAULT_EXPIRES_IN = 86400

# Timeout for token endpoint requests (in seconds)
DEFAULT_AUTH_TIMEOUT = 30

# token_status() reports expiring_soon below this many minutes
EXPIRING_SOON_MINUTES = 60

# OAuth error codes meaning the grant itself is no longer usable
INVALID_GRANT_ERRORS = frozenset(
    {"invalid_grant", "invalid_client", "unauthorized_client"}
)

logger = logging.getLogger(__name__)


class AuthenticationRequired(Exception):
    """Raised when no usable credential exists and a human must re-authorize."""

    pass


class TokenRefreshError(Exception):
    """Raised when a token refresh fails for a reason other than a rejected grant."""

    pass


def _parse_timestamp(value: Any) -> datetime:
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class OAuthCredential:
    """
    An OAuth credential for the CRM.

    Attributes:
        access_token: Bearer token sent with API requests
        expires_at: Aware UTC expiry time of the access token
        refresh_token: Token used to obtain a new access token
        token_type: Token type, normally 'Bearer'
        scope: Granted scope, if reported
        provider: Provider the credential belongs to
        is_active: Whether this is the provider's current credential
        id: Store-assigned row id
        created_at: When the credential was stored
        last_used_at: When the credential was last handed out
    """

    access_token: str
    expires_at: datetime
    refresh_token: Optional[str] = None
    token_type: str = "Bearer"
    scope: Optional[str] = None
    provider: str = DEFAULT_PROVIDER
    is_active: bool = True
    id: Optional[int] = None
    created_at: Optional[str] = None
    last_used_at: Optional[str] = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "OAuthCredential":
        """Build a credential from an oauth_tokens row."""
        return cls(
            access_token=row["access_token"],
            expires_at=_parse_timestamp(row["expires_at"]),
            refresh_token=row.get("refresh_token"),
            token_type=row.get("token_type") or "Bearer",
            scope=row.get("scope"),
            provider=row.get("provider") or DEFAULT_PROVIDER,
            is_active=bool(row.get("is_active", 1)),
            id=row.get("id"),
            created_at=row.get("created_at"),
            last_used_at=row.get("last_used_at"),
        )

    def seconds_until_expiry(self, now: datetime) -> float:
        return (self.expires_at - now).total_seconds()

    def expires_within(self, seconds: float, now: datetime) -> bool:
        """True if the token is expired or expires within ``seconds``."""
        return self.seconds_until_expiry(now) <= seconds


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class TokenManager:
    """
    Keeps a valid bearer token available for the CRM client.

    The active credential lives in the token store. get_valid_token() returns
    it directly while it is comfortably valid and refreshes it otherwise.
    Refreshes are serialized by a lock; a caller that waited on the lock
    re-reads the credential and reuses a token another caller just obtained.

    Usage:
        manager = TokenManager(db, client_id="...", client_secret="...")

        # First run: exchange the code from the authorize redirect
        manager.exchange_code(code, redirect_uri)

        # Afterwards
        token = manager.get_valid_token()
    """

    def __init__(
        self,
        db: SyncDatabase,
        client_id: Optional[str],
        client_secret: Optional[str],
        token_url: str = DEFAULT_TOKEN_URL,
        authorize_url: str = DEFAULT_AUTHORIZE_URL,
        provider: str = DEFAULT_PROVIDER,
        refresh_margin: float = DEFAULT_REFRESH_MARGIN,
        timeout: float = DEFAULT_AUTH_TIMEOUT,
        session: Optional[requests.Session] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """
        Initialize the token manager.

        Args:
            db: Database holding the oauth_tokens table
            client_id: OAuth client id
            client_secret: OAuth client secret
            token_url: Token endpoint
            authorize_url: Authorization endpoint (for authorization_url())
            provider: Provider name credentials are stored under
            refresh_margin: Refresh tokens expiring within this many seconds
            timeout: Timeout in seconds for token endpoint requests
            session: Optional requests session (tests inject a mock)
            clock: Optional callable returning the current aware UTC time
        """
        self.db = db
        self.client_id = client_id
        self.client_secret = client_secret
        self.token_url = token_url
        self.authorize_url = authorize_url
        self.provider = provider
        self.refresh_margin = refresh_margin
        self.timeout = timeout
        self.session = session or requests.Session()
        self._clock = clock or _utc_now
        self._refresh_lock = threading.Lock()
        self.refresh_count = 0

    def now(self) -> datetime:
        return self._clock()

    # =========================================================================
    # Credential access
    # =========================================================================

    def get_active_credential(self) -> Optional[OAuthCredential]:
        """Load the provider's active credential from the store."""
        row = self.db.get_active_credential(self.provider)
        return OAuthCredential.from_row(row) if row else None

    def get_valid_token(
        self, force_refresh: bool = False, stale_token: Optional[str] = None
    ) -> str:
        """
        Return an access token valid for at least the refresh margin.

        Args:
            force_refresh: Refresh even if the stored token looks valid, e.g.
                after the CRM answered 401
            stale_token: The token the CRM rejected. If the active token no
                longer matches it, another caller already refreshed and the
                current token is returned without refreshing again.

        Returns:
            The bearer access token

        Raises:
            AuthenticationRequired: If there is no credential, no refresh
                token, or the refresh grant was rejected
            TokenRefreshError: If the refresh failed for any other reason
        """
        credential = self.get_active_credential()
        if credential is None:
            raise AuthenticationRequired(
                f"No active {self.provider} credential. Run 'crm-sync authorize' first."
            )

        if not force_refresh and not credential.expires_within(
            self.refresh_margin, self.now()
        ):
            self._mark_used(credential)
            return credential.access_token

        with self._refresh_lock:
            # Another caller may have refreshed while we waited
            credential = self.get_active_credential()
            if credential is None:
                raise AuthenticationRequired(
                    f"No active {self.provider} credential. "
                    "Run 'crm-sync authorize' first."
                )

            if force_refresh:
                if stale_token is not None and credential.access_token != stale_token:
                    logger.debug("Token already rotated by another caller")
                    self._mark_used(credential)
                    return credential.access_token
            elif not credential.expires_within(self.refresh_margin, self.now()):
                self._mark_used(credential)
                return credential.access_token

            refreshed = self._refresh(credential)
            self._mark_used(refreshed)
            return refreshed.access_token

    def _mark_used(self, credential: OAuthCredential) -> None:
        if credential.id is not None:
            self.db.touch_credential(credential.id)

    # =========================================================================
    # Token endpoint
    # =========================================================================

    def _post_token_request(self, data: dict[str, str]) -> dict[str, Any]:
        """
        POST a form-encoded grant to the token endpoint.

        Raises:
            AuthenticationRequired: If the grant was rejected
            TokenRefreshError: On network errors, server errors or a
                malformed response
        """
        if not self.client_id or not self.client_secret:
            raise AuthenticationRequired(
                "OAuth client id and secret are not configured"
            )

        form = {
            **data,
            "client_id": self.client_id,
            "client_secret": self.client_secret,
        }

        try:
            response = self.session.post(
                self.token_url,
                data=form,
                headers={"Accept": "application/json"},
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise TokenRefreshError(f"Token endpoint unreachable: {e}") from e

        try:
            payload = response.json()
        except ValueError:
            payload = None

        error_code = payload.get("error") if isinstance(payload, dict) else None

        if response.status_code in (400, 401) or error_code in INVALID_GRANT_ERRORS:
            description = ""
            if isinstance(payload, dict):
                description = payload.get("error_description") or error_code or ""
            raise AuthenticationRequired(
                f"Token grant rejected (HTTP {response.status_code}) {description}".strip()
            )

        if response.status_code >= 400:
            raise TokenRefreshError(
                f"Token endpoint returned HTTP {response.status_code}"
            )

        if not isinstance(payload, dict):
            raise TokenRefreshError("Token endpoint returned a non-JSON response")

        if not payload.get("access_token"):
            raise TokenRefreshError("Token response did not include an access_token")

        return payload

    def _store_token_response(
        self,
        payload: dict[str, Any],
        previous: Optional[OAuthCredential] = None,
    ) -> OAuthCredential:
        """Persist a token response as the new active credential."""
        try:
            expires_in = int(payload.get("expires_in") or DEFAULT_EXPIRES_IN)
        except (TypeError, ValueError):
            expires_in = DEFAULT_EXPIRES_IN

        credential = OAuthCredential(
            access_token=payload["access_token"],
            expires_at=self.now() + timedelta(seconds=expires_in),
            # Providers that don't rotate refresh tokens omit it
            refresh_token=payload.get("refresh_token")
            or (previous.refresh_token if previous else None),
            token_type=payload.get("token_type") or "Bearer",
            scope=payload.get("scope") or (previous.scope if previous else None),
            provider=self.provider,
        )
        credential.id = self.db.store_credential(
            provider=credential.provider,
            access_token=credential.access_token,
            refresh_token=credential.refresh_token,
            expires_at=credential.expires_at,
            token_type=credential.token_type,
            scope=credential.scope,
        )
        return credential

    def _refresh(self, credential: OAuthCredential) -> OAuthCredential:
        """Exchange the refresh token for a new access token. Caller holds the lock."""
        if not credential.refresh_token:
            raise AuthenticationRequired(
                "Access token expired and no refresh token is available"
            )

        logger.info(f"Refreshing {self.provider} access token")
        try:
            payload = self._post_token_request(
                {
                    "grant_type": "refresh_token",
                    "refresh_token": credential.refresh_token,
                }
            )
        except AuthenticationRequired:
            deactivated = self.db.deactivate_credentials(self.provider)
            logger.error(
                f"Refresh token rejected; deactivated {deactivated} credential(s)"
            )
            raise

        self.refresh_count += 1
        refreshed = self._store_token_response(payload, previous=credential)
        logger.info(f"Access token refreshed, expires at {refreshed.expires_at.isoformat()}")
        return refreshed

    # =========================================================================
    # Authorization bootstrap
    # =========================================================================

    def authorization_url(self, redirect_uri: str, state: Optional[str] = None) -> str:
        """
        Build the URL a user visits to authorize this application.

        Args:
            redirect_uri: Callback URL registered with the CRM
            state: Anti-forgery value echoed back on the redirect; random if omitted
        """
        params = {
            "response_type": "code",
            "client_id": self.client_id or "",
            "redirect_uri": redirect_uri,
            "state": state or secrets.token_urlsafe(16),
        }
        return f"{self.authorize_url}?{urlencode(params)}"

    def exchange_code(self, code: str, redirect_uri: str) -> OAuthCredential:
        """
        Exchange an authorization code for the first credential.

        Raises:
            AuthenticationRequired: If the code was rejected
            TokenRefreshError: If the exchange failed for another reason
        """
        with self._refresh_lock:
            payload = self._post_token_request(
                {
                    "grant_type": "authorization_code",
                    "code": code,
                    "redirect_uri": redirect_uri,
                }
            )
            credential = self._store_token_response(payload)
        logger.info(f"Stored new {self.provider} credential")
        return credential

    # =========================================================================
    # Status
    # =========================================================================

    def token_status(self) -> dict[str, Any]:
        """
        Summarize the active credential for monitoring.

        Returns:
            Dictionary with ``status`` (no_token, expired, expiring_soon or
            valid), ``message``, and when a credential exists
            ``expires_at``, ``minutes_until_expiry`` and ``has_refresh_token``
        """
        credential = self.get_active_credential()
        if credential is None:
            return {"status": "no_token", "message": "No token found"}

        minutes = int(credential.seconds_until_expiry(self.now()) // 60)
        status: dict[str, Any] = {
            "expires_at": credential.expires_at.isoformat(),
            "minutes_until_expiry": minutes,
            "has_refresh_token": bool(credential.refresh_token),
            "last_used_at": credential.last_used_at,
        }

        if minutes < 0:
            status["status"] = "expired"
            status["message"] = f"Token expired {abs(minutes)} minutes ago"
        elif minutes < EXPIRING_SOON_MINUTES:
            status["status"] = "expiring_soon"
            status["message"] = f"Token expires in {minutes} minutes"
        else:
            status["status"] = "valid"
            status["message"] = f"Token valid for {minutes // 60} hours"
        return status

    def revoke(self) -> int:
        """
        Deactivate the active credential locally.

        Returns:
            Number of credentials deactivated
        """
        with self._refresh_lock:
            count = self.db.deactivate_credentials(self.provider)
        if count:
            logger.info(f"Deactivated {self.provider} credential")
        return count
