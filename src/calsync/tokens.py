"""
Credential lifecycle: storing, expiry-driven refresh, and the OAuth connect flow.
"""

import logging
import re
import secrets
from datetime import UTC
from datetime import datetime
from datetime import timedelta
from urllib.parse import urlencode

import httpx

from calsync.db import StateDatabase
from calsync.models import CalendarSyncError
from calsync.models import ConnectResult
from calsync.models import Credential
from calsync.models import OAuthError
from calsync.models import OAuthStateError
from calsync.models import Provider
from calsync.models import SyncSettings
from calsync.models import TokenData
from calsync.models import UnsupportedProviderError

logger = logging.getLogger(__name__)

_STATE_RE = re.compile(r"^userId:(\d+)(?::([A-Za-z0-9_\-]+))?$")


class TokenManager:
    """Wraps the credential store and guarantees callers a live access token."""

    def __init__(
        self,
        state_db: StateDatabase,
        settings: SyncSettings,
        client: httpx.Client | None = None,
    ):
        self.state_db = state_db
        self.settings = settings
        self.client = client or httpx.Client(timeout=settings.http_timeout)

    # ------------------------------------------------------------------ #
    # Store / remove                                                       #
    # ------------------------------------------------------------------ #

    def store(self, user_id: int, provider: Provider, tokens: TokenData) -> None:
        """Upsert the OAuth credential for (user_id, provider); errors propagate."""
        existing = self.state_db.get_credential(user_id, provider)
        credential = Credential(
            user_id=user_id,
            provider=provider,
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token,
            app_password=existing.app_password if existing else None,
            username=existing.username if existing else None,
            expires_at=tokens.expires_at,
        )
        self.state_db.upsert_credential(credential)
        self.state_db.commit()
        logger.info(f"Stored {provider.value} tokens for user {user_id}")

    def store_app_password(self, user_id: int, username: str, app_password: str) -> None:
        """Store the CalDAV app-specific password; it never expires."""
        self.state_db.upsert_credential(
            Credential(
                user_id=user_id,
                provider=Provider.APPLE,
                app_password=app_password,
                username=username,
            )
        )
        self.state_db.commit()
        logger.info(f"Stored apple app password for user {user_id}")

    def remove(self, user_id: int, provider: Provider) -> None:
        """Delete the credential. Removing an absent credential is a no-op."""
        self.state_db.delete_credential(user_id, provider)
        self.state_db.commit()
        logger.info(f"Removed {provider.value} credential for user {user_id}")

    # ------------------------------------------------------------------ #
    # Read with refresh                                                    #
    # ------------------------------------------------------------------ #

    @staticmethod
    def is_expired(credential: Credential, now: datetime | None = None) -> bool:
        if credential.expires_at is None:
            return False
        now = now or datetime.now(UTC)
        return credential.expires_at <= now

    def get(self, user_id: int, provider: Provider) -> TokenData | None:
        """Return live tokens, or None when not connected or not refreshable."""
        credential = self.state_db.get_credential(user_id, provider)
        if credential is None:
            logger.info(f"No {provider.value} integration for user {user_id}")
            return None

        if provider is Provider.APPLE:
            if not credential.app_password:
                logger.warning(f"apple integration for user {user_id} has no app password")
                return None
            return TokenData(access_token=credential.app_password)

        if self.is_expired(credential):
            logger.info(f"{provider.value} token for user {user_id} expired, refreshing")
            refreshed = self.refresh(user_id, provider)
            if refreshed is None:
                logger.warning(
                    f"{provider.value} token for user {user_id} expired and could not be "
                    f"refreshed; treating as disconnected"
                )
            return refreshed

        if not credential.access_token:
            logger.warning(f"{provider.value} integration for user {user_id} has no access token")
            return None

        return TokenData(
            access_token=credential.access_token,
            refresh_token=credential.refresh_token,
            expires_at=credential.expires_at,
        )

    def refresh(self, user_id: int, provider: Provider) -> TokenData | None:
        """Exchange the stored refresh token; None on any failure, credential kept."""
        if provider is Provider.APPLE:
            logger.warning(
                f"apple uses app-specific passwords and cannot refresh (user {user_id})"
            )
            return None

        credential = self.state_db.get_credential(user_id, provider)
        if credential is None or not credential.refresh_token:
            logger.warning(f"No {provider.value} refresh token available for user {user_id}")
            return None

        oauth = self.settings.oauth_config(provider)
        try:
            tokens = self._token_request(
                oauth.token_url,
                {
                    "client_id": oauth.client_id,
                    "client_secret": oauth.client_secret,
                    "refresh_token": credential.refresh_token,
                    "grant_type": "refresh_token",
                },
                fallback_refresh_token=credential.refresh_token,
            )
        except OAuthError as e:
            logger.warning(f"{provider.value} token refresh failed for user {user_id}: {e}")
            return None

        self.store(user_id, provider, tokens)
        logger.info(f"Refreshed {provider.value} access token for user {user_id}")
        return tokens

    # ------------------------------------------------------------------ #
    # Token endpoint                                                       #
    # ------------------------------------------------------------------ #

    def exchange_code(self, provider: Provider, code: str) -> TokenData:
        """Trade an authorization code for tokens; raises OAuthError."""
        oauth = self.settings.oauth_config(provider)
        return self._token_request(
            oauth.token_url,
            {
                "client_id": oauth.client_id,
                "client_secret": oauth.client_secret,
                "code": code,
                "grant_type": "authorization_code",
                "redirect_uri": oauth.redirect_uri,
            },
        )

    def _token_request(
        self, url: str, form: dict[str, str], fallback_refresh_token: str | None = None
    ) -> TokenData:
        try:
            response = self.client.post(
                url,
                data=form,
                headers={"Accept": "application/json"},
                timeout=self.settings.http_timeout,
            )
        except httpx.HTTPError as e:
            raise OAuthError(f"token endpoint unreachable: {e}") from e

        if response.is_error:
            raise OAuthError(
                f"token endpoint returned {response.status_code} {response.reason_phrase}"
            )

        try:
            data = response.json()
            access_token = data["access_token"]
        except (ValueError, KeyError, TypeError) as e:
            raise OAuthError(f"malformed token response: {e}") from e
        if not access_token:
            raise OAuthError("No access token received")

        expires_at = None
        if data.get("expires_in"):
            try:
                expires_at = datetime.now(UTC) + timedelta(seconds=int(data["expires_in"]))
            except (TypeError, ValueError, OverflowError) as e:
                raise OAuthError(f"malformed expires_in: {data['expires_in']!r}") from e

        return TokenData(
            access_token=access_token,
            refresh_token=data.get("refresh_token") or fallback_refresh_token,
            expires_at=expires_at,
        )


# ---------------------------------------------------------------------------
# Consent URL and state round-trip
# ---------------------------------------------------------------------------


def encode_state(user_id: int, nonce: str | None = None) -> str:
    return f"userId:{user_id}:{nonce or secrets.token_urlsafe(16)}"


def parse_state(state: str | None) -> int:
    """Recover the initiating user id from the OAuth ``state`` parameter."""
    if not state:
        raise OAuthStateError("Missing OAuth state")
    match = _STATE_RE.match(state.strip())
    if not match:
        raise OAuthStateError(f"Invalid OAuth state: {state!r}")
    return int(match.group(1))


def build_authorization_url(
    provider: Provider | str,
    settings: SyncSettings,
    user_id: int,
    nonce: str | None = None,
) -> str:
    """Provider consent-screen URL for starting the OAuth connect flow."""
    provider = Provider.parse(provider)
    if not provider.uses_oauth:
        raise UnsupportedProviderError(
            f"{provider.value} connects with an app-specific password, not OAuth"
        )
    oauth = settings.oauth_config(provider)
    params = {
        "client_id": oauth.client_id,
        "redirect_uri": oauth.redirect_uri,
        "response_type": "code",
        "scope": " ".join(oauth.scopes),
        "state": encode_state(user_id, nonce),
    }
    if provider is Provider.GOOGLE:
        params["access_type"] = "offline"
        params["prompt"] = "consent"
    elif provider is Provider.OUTLOOK:
        params["response_mode"] = "query"
    return f"{oauth.authorize_url}?{urlencode(params)}"


# ---------------------------------------------------------------------------
# Connect / disconnect actions
# ---------------------------------------------------------------------------


def complete_oauth_callback(
    manager: TokenManager,
    provider: str,
    code: str | None,
    state: str | None,
    error: str | None = None,
) -> ConnectResult:
    """Finish the consent flow; every failure is returned, never raised."""
    try:
        parsed = Provider.parse(provider)
        if not parsed.uses_oauth:
            raise UnsupportedProviderError(f"{parsed.value} does not use OAuth")
        if error:
            raise OAuthError(f"OAuth failed: {error}")
        if not code:
            raise OAuthError("No authorization code received")
        user_id = parse_state(state)
        tokens = manager.exchange_code(parsed, code)
        manager.store(user_id, parsed, tokens)
    except CalendarSyncError as e:
        logger.error(f"Failed to connect {provider}: {e}")
        return ConnectResult(success=False, provider=provider, error=str(e))
    return ConnectResult(success=True, provider=parsed.value, user_id=user_id)


def connect_app_password(
    manager: TokenManager, user_id: int, username: str, app_password: str
) -> ConnectResult:
    if not username or not app_password:
        return ConnectResult(
            success=False,
            provider=Provider.APPLE.value,
            user_id=user_id,
            error="Username and app-specific password are required",
        )
    manager.store_app_password(user_id, username, app_password)
    return ConnectResult(success=True, provider=Provider.APPLE.value, user_id=user_id)


def disconnect(manager: TokenManager, user_id: int, provider: str) -> ConnectResult:
    try:
        parsed = Provider.parse(provider)
    except UnsupportedProviderError as e:
        return ConnectResult(success=False, provider=provider, user_id=user_id, error=str(e))
    manager.remove(user_id, parsed)
    return ConnectResult(success=True, provider=parsed.value, user_id=user_id)
